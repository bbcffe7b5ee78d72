"""
Structured Logging with Structlog.

JSON logs in production, console rendering in development. Request ids
and other per-request context are carried in contextvars.
"""

import hashlib
import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

# Keys whose values are credentials and must never be written out verbatim
SECRET_KEYS = frozenset({"session_token", "api_key", "x_api_key", "authorization"})


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def mask_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Replace credential values with a short digest.

    The digest still lets operators correlate lines for the same token.
    """
    for key in SECRET_KEYS.intersection(event_dict):
        value = event_dict[key]
        if value is None:
            continue
        digest = hashlib.sha256(str(value).encode()).hexdigest()[:8]
        event_dict[key] = f"sha256:{digest}"
    return event_dict


def _renderer() -> Processor:
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Configure structlog over the standard library logging module.

    A JSON line looks like:
    {
        "event": "trial_consumed",
        "level": "info",
        "timestamp": "2026-03-10T12:00:00.123456Z",
        "logger": "app.services.trial_quota",
        "service": "trialsync-api",
        "version": "0.1.0",
        "request_id": "0f8c...",
        "fingerprint": "fp-...",
        "remaining": 3
    }
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        mask_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("trial_consumed", fingerprint=fingerprint, remaining=3)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured context for the duration of a block.

    Usage:
        with log_context(request_id="req-123", user_id="user-456"):
            logger.info("device_login_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
