"""
Logging for the Shop Sync Pipeline

Every event carries the service name and environment. Events logged while a
job runs also carry ``job_id``, ``shop`` and ``object_type`` through
structlog context variables, so worker, client and loader logs can be joined
to the job row without passing a logger around.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, MutableMapping, Optional

import structlog
from structlog.stdlib import ProcessorFormatter

from shopsync.config.settings import get_settings

# Libraries that log every request or statement at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "prefect.events")


def add_service_context(_, __, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Stamp service name and environment on each event"""
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("environment", settings.app_env)
    return event_dict


def _renderer(log_format: str):
    if log_format == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def configure_logging(log_level: Optional[str] = None) -> None:
    """
    Route structlog and stdlib logging through one stdout handler.
    
    Args:
        log_level: Override LOG_LEVEL
    """
    settings = get_settings()
    level = (log_level or settings.monitoring.log_level).upper()
    numeric_level = getattr(logging, level, logging.INFO)
    
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(
        processor=_renderer(settings.monitoring.log_format),
        foreign_pre_chain=shared_processors,
    ))
    
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)
    
    # uvicorn installs its own handlers
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.propagate = True
    
    quiet_level = max(numeric_level, logging.WARNING)
    for name in NOISY_LOGGERS:
        if name == "sqlalchemy.engine" and settings.database.echo:
            continue
        logging.getLogger(name).setLevel(quiet_level)
    
    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
    )


@contextmanager
def job_context(job_id: Any, shop: str, object_type: str) -> Iterator[None]:
    """Bind job identity to every event logged inside the block"""
    with structlog.contextvars.bound_contextvars(
        job_id=job_id,
        shop=shop,
        object_type=object_type,
    ):
        yield
