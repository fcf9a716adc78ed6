#!/usr/bin/env python
"""
Shop Sync API entry point.

    python run_server.py --dev      auto-reload on shopsync/ changes
    python run_server.py            uvicorn workers, settings from the environment

Under Gunicorn use ``gunicorn shopsync.main:app -c gunicorn.conf.py``.
The scheduler and aggregation endpoints are driven by an external timer, so
the server itself runs no background loops.
"""

import argparse
import os

import uvicorn

from shopsync.config import get_settings


def run_dev_server(port: int) -> None:
    """Single process with auto-reload and text logs."""
    os.environ.setdefault("LOG_FORMAT", "text")
    uvicorn.run(
        "shopsync.main:app",
        host="127.0.0.1",
        port=port,
        reload=True,
        reload_dirs=["shopsync"],
        log_config=None,
    )


def run_prod_server(port: int = None) -> None:
    """Uvicorn workers bound to API_HOST/API_PORT."""
    settings = get_settings()
    uvicorn.run(
        "shopsync.main:app",
        host=settings.api_host,
        port=port or settings.api_port,
        workers=int(os.getenv("WORKERS", 4)),
        log_config=None,
        proxy_headers=True,
        server_header=False,
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Shop Sync API server")
    parser.add_argument("--dev", action="store_true", help="Run with auto-reload")
    parser.add_argument("--port", type=int, default=None, help="Override API_PORT")
    args = parser.parse_args()
    
    if args.dev:
        run_dev_server(args.port or get_settings().api_port)
    else:
        run_prod_server(args.port)
