"""
BaseService -- abstract base for all kernel stores.

Responsibility:
    Provides the common constructor and session-handling contract for every
    store in the kernel layer.  Stores receive a SQLAlchemy ``Session`` and
    use ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    Transaction boundaries: stores flush within the caller's transaction and
    never commit or roll back.  The services in ``agency_services`` own
    commit/rollback, so a multi-step billing operation is atomic.

Failure modes:
    - A guarded UPDATE/DELETE that matches zero rows surfaces as
      OptimisticLockError through ``_flush()``.
    - A unique-constraint violation on a debit note number, a detail's
      source record or a history revision means another transaction won the
      race; ``_flush()`` reports it as OptimisticLockError as well.
    - A serialization failure (SQLSTATE 40001/40P01) on a row-locking read
      or a flush becomes OptimisticLockError.
"""

from abc import ABC
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy.engine import Result
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from agency_kernel.db.base import Base
from agency_kernel.exceptions import OptimisticLockError

ModelType = TypeVar("ModelType", bound=Base)

# Unique constraints a concurrent biller can trip, by constraint name and by
# the column list SQLite reports instead.
_RACE_CONSTRAINTS: tuple[tuple[str, str], ...] = (
    ("uq_debit_note_detail_source", "debit_note_details.source_task_record_id"),
    ("uq_debit_note_no", "debit_notes.debit_note_no"),
    ("uq_debit_note_history_revision", "debit_note_history.debit_note_id, debit_note_history.revision"),
)

# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def is_serialization_failure(exc: DBAPIError) -> bool:
    """True if the driver reports a serialization failure or a deadlock."""
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return sqlstate in _RETRYABLE_SQLSTATES


def is_billing_race(exc: IntegrityError) -> bool:
    """True if ``exc`` violates one of the constraints guarding billing links."""
    message = str(exc.orig)
    return any(name in message or columns in message for name, columns in _RACE_CONSTRAINTS)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel stores.

    Guarantees:
        - The store never calls ``session.commit()`` or ``session.rollback()``.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session):
        self.session = session

    def _flush(self, entity_type: str, entity_id: UUID | str | None = None) -> None:
        """
        Flush pending changes.

        Stale version guards, billing-race constraint violations and
        serialization failures all raise OptimisticLockError; any other
        database error propagates unchanged.
        """
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError(entity_type, str(entity_id or "?")) from exc
        except IntegrityError as exc:
            if not is_billing_race(exc):
                raise
            raise OptimisticLockError(entity_type, str(entity_id or "?")) from exc
        except DBAPIError as exc:
            if not is_serialization_failure(exc):
                raise
            raise OptimisticLockError(entity_type, str(entity_id or "?")) from exc

    def _execute(self, stmt: Any, entity_type: str, entity_id: UUID | str | None = None) -> Result:
        """Execute a (possibly row-locking) read; serialization failures raise OptimisticLockError."""
        try:
            return self.session.execute(stmt)
        except DBAPIError as exc:
            if not is_serialization_failure(exc):
                raise
            raise OptimisticLockError(entity_type, str(entity_id or "?")) from exc

    @staticmethod
    def _check_version(
        entity_type: str,
        entity_id: UUID,
        current: int,
        expected: int | None,
    ) -> None:
        """Fail fast when the caller's view of the row is stale."""
        if expected is not None and expected != current:
            raise OptimisticLockError(entity_type, str(entity_id), expected, current)
