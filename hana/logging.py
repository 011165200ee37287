from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_cid: ContextVar[Optional[str]] = ContextVar("hana_request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}
_SECRET_KEYS = ("secret", "token", "authorization", "password", "api_key")
_NON_DIGITS = re.compile(r"\D")

EventDict = Dict[str, Any]


def get_correlation_id() -> Optional[str]:
    return _request_cid.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting a UUID when none is given."""
    value = correlation_id or uuid.uuid4().hex
    _request_cid.set(value)
    return value


def mask_phone(value: str) -> str:
    """Keep only the last four digits of a phone number."""
    digits = _NON_DIGITS.sub("", value)
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


def _stamp_request_id(_logger: Any, _method: str, event: EventDict) -> EventDict:
    request_id = _request_cid.get()
    if request_id:
        event.setdefault("correlation_id", request_id)
    return event


def _redact_pii(_logger: Any, _method: str, event: EventDict) -> EventDict:
    """Mask phone numbers and shorten credential-like values before rendering."""
    for field, raw in list(event.items()):
        if not isinstance(raw, str):
            continue
        name = field.lower()
        if name == "to" or "phone" in name:
            event[field] = mask_phone(raw)
        elif name.endswith("_id"):
            continue
        elif len(raw) > 4 and any(marker in name for marker in _SECRET_KEYS):
            event[field] = f"{raw[:2]}***{raw[-2:]}"
    return event


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    renderer: list[Any]
    if dev_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _stamp_request_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
