"""Structured logging with payment context for tracing a payment end to end.

This module provides:
- JSON structured logging
- Contextual fields (request, card, user, transaction) carried in contextvars
- Masking of signing keys and secrets before they reach a handler
"""
from __future__ import annotations

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
card_id_var: ContextVar[Optional[str]] = ContextVar("card_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
transaction_id_var: ContextVar[Optional[str]] = ContextVar("transaction_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "card_id": card_id_var,
    "user_id": user_id_var,
    "transaction_id": transaction_id_var,
}

MASK_PATTERN = "***MASKED***"

SENSITIVE_FIELDS = frozenset({
    "private_key",
    "signing_key",
    "encrypted_key_handle",
    "key_encryption_key",
    "webhook_secret",
    "secret",
    "password",
    "authorization",
})

# 32-byte hex strings with 0x prefix look like raw private keys
_PRIVATE_KEY_RE = re.compile(r"0x[0-9a-fA-F]{64}(?![0-9a-fA-F])")

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName",
    *_CONTEXT_VARS.keys(),
})


def mask_sensitive_data(data: Any, _depth: int = 0, _max_depth: int = 10) -> Any:
    """Recursively mask sensitive fields in a dict/list structure."""
    if _depth > _max_depth:
        return data
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            if str(key).lower() in SENSITIVE_FIELDS:
                masked[key] = MASK_PATTERN
            else:
                masked[key] = mask_sensitive_data(value, _depth + 1, _max_depth)
        return masked
    if isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(v, _depth + 1, _max_depth) for v in data)
    return data


def mask_text(text: str) -> str:
    """Redact anything shaped like a raw private key."""
    return _PRIVATE_KEY_RE.sub(MASK_PATTERN, text)


class ContextFilter(logging.Filter):
    """Stamp payment context onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_text(record.getMessage()),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in _CONTEXT_VARS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = mask_text(self.formatException(record.exc_info))

        extra = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}
        log_data.update(mask_sensitive_data(extra))

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ContextFilter())
        root_logger.addHandler(file_handler)


@contextmanager
def payment_context(**values: Optional[str]) -> Iterator[None]:
    """Bind request/card/user/transaction ids for the duration of a block."""
    tokens = []
    for name, value in values.items():
        var = _CONTEXT_VARS.get(name)
        if var is None:
            raise KeyError(f"Unknown logging context field: {name}")
        tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def set_transaction_context(tx_id: str) -> None:
    """Set transaction ID in logging context."""
    transaction_id_var.set(tx_id)


def clear_context() -> None:
    """Clear all context variables."""
    for var in _CONTEXT_VARS.values():
        var.set(None)
