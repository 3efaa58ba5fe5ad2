"""
Structured logging for the billing kernel.

Every line written under the ``agency_kernel`` logger is one JSON object:

    {"ts": ..., "level": "INFO", "logger": "agency_kernel.services.aggregation",
     "message": "task_records_linked", "job_order_id": "...", "task_type":
     "EquipmentUsed", "debit_note_id": "...", "linked_count": 2}

The billing scope (request correlation id, acting user, job order, task type
and debit note) lives in a single context variable so that it follows the
request across threads started with ``contextvars.copy_context`` and across
``await`` points.  Services enter the scope with ``LogContext.bind()``; the
formatter merges it into every record emitted inside.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, TextIO

from agency_kernel.exceptions import BillingKernelError

__all__ = [
    "SCOPE_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

ROOT_LOGGER = "agency_kernel"

SCOPE_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "actor_id",
    "job_order_id",
    "task_type",
    "debit_note_id",
)

_EMPTY: Mapping[str, str] = MappingProxyType({})
_scope: ContextVar[Mapping[str, str]] = ContextVar("billing_log_scope", default=_EMPTY)


def _render(value: Any) -> str:
    # TaskType is a str enum; str() would give "TaskType.EQUIPMENT_USED"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _merged(fields: Mapping[str, Any]) -> Mapping[str, str]:
    unknown = set(fields) - set(SCOPE_FIELDS)
    if unknown:
        raise TypeError(f"Unknown log scope field(s): {', '.join(sorted(unknown))}")
    scope = dict(_scope.get())
    scope.update((name, _render(value)) for name, value in fields.items() if value is not None)
    return MappingProxyType(scope)


class LogContext:
    """
    Billing scope attached to every log line.

    Values may be UUIDs, TaskType members or strings; they are stored as
    strings.  ``None`` leaves a field as it was.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        _scope.set(_merged(fields))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_scope.get())

    @staticmethod
    def clear() -> None:
        _scope.set(_EMPTY)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[Mapping[str, str]]:
        """Narrow the scope for the duration of a block, then restore it."""
        token = _scope.set(_merged(fields))
        try:
            yield _scope.get()
        finally:
            _scope.reset(token)


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    # UUID, Decimal and anything else without a JSON type
    return str(value)


# Attributes every LogRecord has; whatever else is on a record came in via extra=
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    if isinstance(exc, BillingKernelError):
        fields["exc_code"] = exc.code
        fields.update(
            (f"exc_{name}", value)
            for name, value in vars(exc).items()
            if not name.startswith("_")
        )
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: header, billing scope, extras, then the exception."""

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_scope.get(),
        }
        for name, value in vars(record).items():
            if name not in _RECORD_ATTRS:
                line.setdefault(name, value)

        if record.exc_info and record.exc_info[1] is not None:
            line.update(_exception_fields(record.exc_info[1]))
            line["traceback"] = self.formatException(record.exc_info)

        return json.dumps(line, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


_setup_lock = threading.Lock()


def _installed_handlers(root: logging.Logger) -> list[logging.Handler]:
    return [h for h in root.handlers if getattr(h, "billing_structured", False)]


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Route the ``agency_kernel`` hierarchy to one JSON handler.

    Only the first call takes effect until reset_logging().  The hierarchy
    does not propagate to the root logger, so host applications keep their
    own format for their own loggers.
    """
    root = logging.getLogger(ROOT_LOGGER)
    with _setup_lock:
        if _installed_handlers(root):
            return
        target = handler or logging.StreamHandler(stream or sys.stderr)
        target.setFormatter(StructuredFormatter())
        target.billing_structured = True
        root.addHandler(target)
        root.setLevel(level)
        root.propagate = False


def reset_logging() -> None:
    """Remove the handler installed by configure_logging(); used by tests."""
    root = logging.getLogger(ROOT_LOGGER)
    with _setup_lock:
        for installed in _installed_handlers(root):
            root.removeHandler(installed)
        root.setLevel(logging.WARNING)
        root.propagate = True
