"""
API Routes Module
"""
from .aggregation import router as aggregation_router
from .health import router as health_router
from .jobs import router as jobs_router

__all__ = [
    "aggregation_router",
    "health_router",
    "jobs_router",
]
