"""
Shared plumbing for the transaction-owning billing services.

Used by agency_services/*_service.py to hold the stores, resolve enabled
task types, roll back uniformly and unlink a whole debit note.

Architecture: Services layer. Imports only from agency_kernel.
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from agency_kernel.domain.clock import Clock, SystemClock
from agency_kernel.domain.task_types import TaskType, parse_task_type
from agency_kernel.exceptions import BillingKernelError, UnknownTaskTypeError
from agency_kernel.logging_config import get_logger
from agency_kernel.models.debit_note import DebitNote
from agency_kernel.services.debit_note_store import DebitNoteStore
from agency_kernel.services.task_record_store import TaskRecordStore

logger = get_logger("services.billing")


class BillingServiceBase:
    """
    Common constructor and helpers for the billing services.

    Transaction boundary: every public method of a subclass commits on
    success and rolls back on any exception, then re-raises.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        disabled_task_types: Iterable[TaskType | str] = (),
        decimals: int = 2,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._disabled = frozenset(parse_task_type(t) for t in disabled_task_types)
        self._decimals = decimals
        self._records = TaskRecordStore(session)
        self._notes = DebitNoteStore(session, clock=self._clock)

    def _resolve_task_type(self, task_type: TaskType | str) -> TaskType:
        resolved = parse_task_type(task_type)
        if resolved in self._disabled:
            raise UnknownTaskTypeError(resolved.value)
        return resolved

    def _rollback(self, operation: str, exc: Exception) -> None:
        self._session.rollback()
        logger.warning(
            "transaction_rolled_back",
            extra={
                "operation": operation,
                "error_type": type(exc).__name__,
                "error_code": exc.code if isinstance(exc, BillingKernelError) else None,
            },
        )

    def _unlink_and_delete(self, note: DebitNote, actor_id: UUID) -> tuple[UUID, ...]:
        """
        Clear the billing link of every record on ``note``, then delete it.

        Returns the ids of the unlinked records.
        """
        records = self._records.list_by_debit_note(note.id, for_update=True)
        for record in records:
            self._records.update_billing_link(record.id, None, None, actor_id)

        self._notes.record_history(note, "deleted", actor_id)
        self._notes.delete_with_details(note)

        unlinked = tuple(r.id for r in records)
        logger.info(
            "task_records_unlinked",
            extra={
                "debit_note_id": str(note.id),
                "debit_note_no": note.debit_note_no,
                "record_count": len(unlinked),
            },
        )
        return unlinked
