"""
Structured logging setup for FacilityXL.

Configures structlog with the stdlib integration and tags every event with
the extraction session currently running in this context.
"""
import logging
import sys
from contextvars import ContextVar
from typing import Any, Optional

import structlog

from facilityxl.config import Settings, get_settings

# Session id of the pipeline running in the current task
session_id_var: ContextVar[str] = ContextVar("session_id", default="")


def get_session_id() -> str:
    """Get the current extraction session id."""
    return session_id_var.get()


def add_session_id_processor(
    logger: Any, method_name: str, event_dict: dict
) -> dict:
    """Structlog processor that adds the session id to every log event."""
    session_id = get_session_id()
    if session_id and "session_id" not in event_dict:
        event_dict["session_id"] = session_id
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure stdlib logging and structlog from settings."""
    settings = settings or get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_session_id_processor,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
