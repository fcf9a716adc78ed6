"""
FastAPI Production Application

Main entry point for the Shop Sync API.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from shopsync.config import get_settings
from shopsync.config.logging import configure_logging
from shopsync.database.connection import close_database, create_tables, init_database
from shopsync.errors import ShopSyncError, TerminalUpstreamError, TransientUpstreamError
from shopsync.serving.api.middleware import RequestLoggingMiddleware
from shopsync.serving.api.routes import aggregation_router, health_router, jobs_router

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting Shop Sync API", environment=settings.app_env)
    
    await init_database()
    await create_tables()
    
    yield
    
    logger.info("Shutting down...")
    await close_database()


app = FastAPI(
    title="Shop Sync API",
    description="Bulk export orchestration and daily aggregation for Shopify stores",
    version=settings.version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["Jobs"])
app.include_router(aggregation_router, prefix="/api/v1/aggregation", tags=["Aggregation"])


@app.exception_handler(ShopSyncError)
async def shopsync_error_handler(request: Request, exc: ShopSyncError) -> JSONResponse:
    """Pipeline errors as JSON, without stack traces"""
    status_code = 502 if isinstance(exc, (TransientUpstreamError, TerminalUpstreamError)) else 500
    logger.error(
        "Request failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": str(exc)},
    )


@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Shop Sync API",
        "version": settings.version,
        "environment": settings.app_env,
        "shops": settings.shopify.shops,
        "documentation": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
