"""
Structured logging for the ledger kernel and the recurring processor.

Every record under the ``ledger_kernel`` logger tree is written as one JSON
object per line::

    {"ts": "...", "level": "INFO", "logger": "ledger_kernel.recurring.runner",
     "message": "recurring_item_processed", "run_id": "...",
     "template_id": "...", "next_run_at": "2025-02-01T00:00:00+00:00"}

Pass-scoped fields come from ``LogContext`` and are merged into every record
emitted while they are bound.  ``extra=`` fields follow; a record that
carries an exception adds an ``error`` object (type, message, and for a
``LedgerError`` its code and structured attributes) plus the traceback.

The context lives in one ContextVar.  Worker threads see it only when the
work is run inside ``contextvars.copy_context()``.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any
from uuid import UUID

CONTEXT_FIELDS = ("correlation_id", "run_id", "template_id", "owner_id", "trigger")

_EMPTY: Mapping[str, str] = MappingProxyType({})

_context: ContextVar[Mapping[str, str]] = ContextVar("ledger_log_context", default=_EMPTY)


class LogContext:
    """Pass-scoped fields attached to every record."""

    @staticmethod
    def current() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    @contextmanager
    def bind(**fields: str | None) -> Iterator[None]:
        """Add fields for the duration of the block; ``None`` values are ignored.

        Raises:
            TypeError: A field name is not one of ``CONTEXT_FIELDS``.
        """
        unknown = sorted(set(fields) - set(CONTEXT_FIELDS))
        if unknown:
            raise TypeError(f"unknown log context field(s): {', '.join(unknown)}")
        merged = dict(_context.get())
        merged.update((k, v) for k, v in fields.items() if v is not None)
        token = _context.set(MappingProxyType(merged))
        try:
            yield
        finally:
            _context.reset(token)

    @staticmethod
    def clear() -> None:
        _context.set(_EMPTY)


_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    return str(value)


def _describe(exc: BaseException) -> dict[str, Any]:
    described: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    code = getattr(exc, "code", None)
    if code is not None:
        described["code"] = code
    for key, value in vars(exc).items():
        if not key.startswith("_"):
            described.setdefault(key, value)
    return described


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload["error"] = _describe(record.exc_info[1])
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


_LOGGER_ROOT = "ledger_kernel"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_LOGGER_ROOT}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``ledger_kernel`` tree.

    Only the first call has any effect; later calls are no-ops so that the
    engine, the CLI and the HTTP app can each ask for logging.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())

        root = logging.getLogger(_LOGGER_ROOT)
        root.setLevel(level.upper() if isinstance(level, str) else level)
        root.propagate = False
        root.addHandler(handler)


def reset_logging() -> None:
    """Detach handlers and allow ``configure_logging`` again. For tests."""
    global _configured
    with _lock:
        _configured = False
        root = logging.getLogger(_LOGGER_ROOT)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
