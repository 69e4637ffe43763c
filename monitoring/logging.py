"""
Structured logging configuration.

structlog renders every line as a single JSON object on stdout. Records from
the standard library (uvicorn, SQLAlchemy, httpx) go through the same
renderer, so all output shares one shape:

    {"event": "payment_settled", "level": "info", "logger": "...",
     "@timestamp": "...", "app_name": "...", "reference": "ORDER-..."}
"""
import logging
import sys
from typing import Any, List, Optional, TextIO

import structlog

from config import Settings, get_settings


def _app_context_processor(settings: Settings) -> Any:
    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def _shared_processors(settings: Settings) -> List[Any]:
    """Processors applied to structlog events and foreign stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", key="@timestamp"),
        _app_context_processor(settings),
    ]


def setup_logging(settings: Optional[Settings] = None, stream: Optional[TextIO] = None) -> None:
    """
    Configure structured logging.

    Sets up:
    - One JSON object per line, rendered once by structlog
    - Request ID / reference context via contextvars
    - The same rendering for standard library loggers

    Args:
        settings: Settings (defaults to get_settings())
        stream: Output stream (defaults to stdout)
    """
    settings = settings or get_settings()
    shared = _shared_processors(settings)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level))

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
