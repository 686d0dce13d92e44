"""
structlog setup for the lifecycle service.

JSON lines in production, coloured console output elsewhere. Request and actor
context travel through contextvars, so every edit, refund and audit event
logged during a request carries the same request_id and actor_id.
Card references and email addresses are masked before rendering.
"""

import logging
import sys
from typing import Any, Optional

import structlog

from booking_lifecycle.core.config import get_settings

SENSITIVE_KEYS = frozenset({"payment_method_id", "email", "actor_email", "customer_email"})

_configured = False


def _mask(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{value[-4:]}"


def redact_sensitive(logger, method_name: str, event_dict: dict) -> dict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = _mask(event_dict[key])
    return event_dict


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = level or settings.LOG_LEVEL
    if json_output is None:
        json_output = settings.ENVIRONMENT == "production"

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
    ]
    if json_output:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # uvicorn and sqlalchemy records go through the same pipeline
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _configured = True


def bind_actor(actor_id: str, role: str) -> None:
    """Attach the calling actor to every log line for the rest of the request."""
    structlog.contextvars.bind_contextvars(actor_id=actor_id, actor_role=role)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
