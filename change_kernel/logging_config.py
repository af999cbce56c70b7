"""
Structured JSON logging for the change kernel.

Every record is written as one JSON object.  Context bound for the duration
of an operation is merged into each record:

* ChangeRequestWorkflow binds ``correlation_id``, ``operation``,
  ``request_id``, ``scope_id`` and ``actor_id`` around every public call;
* ApprovalChain binds ``number``, ``approver_id``, ``approval_round`` and
  ``current_level`` while it applies a decision.

So all log lines of one decision can be joined on ``correlation_id`` and
filtered by approver without parsing messages.  Kernel errors attached to a
record contribute their ``code`` and structured attributes.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "configure_from_settings",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "operation",
    "request_id",
    "number",
    "scope_id",
    "actor_id",
    "approver_id",
    "approval_round",
    "current_level",
)

_CONTEXT: dict[str, ContextVar] = {
    name: ContextVar(f"change_kernel_log_{name}", default=None)
    for name in CONTEXT_FIELDS
}


def _context_var(name: str) -> ContextVar:
    try:
        return _CONTEXT[name]
    except KeyError:
        raise TypeError(f"Unknown log context field: {name!r}") from None


class LogContext:
    """Operation-scoped log fields; safe across threads and asyncio tasks."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Set fields for the rest of the current context.  None is skipped."""
        for name, value in fields.items():
            if value is not None:
                _context_var(name).set(value)

    @staticmethod
    def get_all() -> dict[str, Any]:
        """Bound fields in CONTEXT_FIELDS order, None values omitted."""
        return {
            name: var.get() for name, var in _CONTEXT.items() if var.get() is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _CONTEXT.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """
        Bind fields for the duration of a ``with`` block.

        Previous values are restored on exit, so nested binds (an approval
        decision inside a workflow operation) unwind cleanly.
        """
        tokens = [
            (var, var.set(value))
            for var, value in ((_context_var(n), v) for n, v in fields.items())
            if value is not None
        ]
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _error_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["error_code"] = code
        detail = {k: v for k, v in vars(exc).items() if not k.startswith("_")}
        if detail:
            fields["error_detail"] = detail
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())

        # Explicit extras win over bound context.
        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            for key, val in _error_fields(record.exc_info[1]).items():
                payload.setdefault(key, val)
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_jsonable)


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "change_kernel"

_configured = False
_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the change_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the change_kernel logger (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.setLevel(level)
    kernel_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    kernel_logger.addHandler(h)


def configure_from_settings(settings, stream: Any = None) -> None:
    """Configure logging at the level named by ``WorkflowSettings.log_level``."""
    configure_logging(level=settings.log_level, stream=stream)


def reset_logging() -> None:
    """Drop handlers and forget configuration.  For tests."""
    global _configured
    with _lock:
        _configured = False
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.handlers.clear()
    kernel_logger.setLevel(logging.WARNING)
