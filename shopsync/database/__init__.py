"""
Database Module
"""
from .connection import (
    init_database,
    close_database,
    create_tables,
    get_db,
    get_session_factory,
)
from .models import Base

__all__ = [
    "init_database",
    "close_database",
    "create_tables",
    "get_db",
    "get_session_factory",
    "Base",
]
