"""Structured logging for tutorbridge.

Every module logs through ``get_logger(__name__)`` with event-style calls::

    logger.info("auth_login", account_id=account.id, outcome="success")

Output is JSON by default. ``LOG_DEV_MODE=true`` (or ``LOG_JSON=false``)
switches to the coloured console renderer; ``LOG_LEVEL`` sets the threshold.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Client-supplied request ids are echoed into logs and headers
_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "email")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for the current context.

    A missing or unusable id (too long, odd characters) is replaced by a
    fresh uuid4 so that nothing the client sends is written verbatim.
    """
    if not correlation_id or not _CORRELATION_ID_PATTERN.match(correlation_id):
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _add_correlation_id(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    correlation_id = correlation_id_var.get()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def _redact_sensitive(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask string values whose key names a credential or contact detail."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if any(part in lowered for part in _SENSITIVE_KEY_PARTS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
