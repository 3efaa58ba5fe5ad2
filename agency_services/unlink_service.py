"""
Module: agency_services.unlink_service
Responsibility:
    DeleteDebitNote -- remove a debit note and return every task record it
    covered to the unbilled state.

Architecture:
    Services layer -- owns the transaction boundary.  This is the only path
    that deletes a debit note header outright.

Invariants:
    - After success no task record references the deleted note, and the
      note and its details no longer exist.
    - A failure (e.g. a concurrent edit of one record) rolls back
      everything: the note stays intact with all its links.
    - A history row of the deleted header is kept.

Failure modes:
    - DebitNoteNotFoundError: missing, or outside the job order / task type.
    - DebitNoteLockedError: the note is locked.
    - OptimisticLockError: the note or a record changed concurrently.
"""

from __future__ import annotations

from uuid import UUID

from agency_kernel.domain.dtos import UnlinkResult
from agency_kernel.domain.task_types import TaskType
from agency_kernel.logging_config import LogContext, get_logger
from agency_services._billing_helpers import BillingServiceBase

logger = get_logger("services.unlink")


class UnlinkService(BillingServiceBase):
    """Deletes debit notes and clears the billing link of their records."""

    def delete_debit_note(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
        actor_id: UUID,
        expected_edit_version: int | None = None,
    ) -> UnlinkResult:
        """
        Delete a debit note with its details and unlink its records.

        Raises:
            DebitNoteNotFoundError: If the note is not in scope.
            DebitNoteLockedError: If the note is locked.
            OptimisticLockError: If expected_edit_version is stale.
        """
        with LogContext.bind(
            actor_id=actor_id,
            job_order_id=job_order_id,
            task_type=task_type,
            debit_note_id=debit_note_id,
        ):
            try:
                resolved = self._resolve_task_type(task_type)
                note = self._notes.get(job_order_id, resolved, debit_note_id, for_update=True)
                self._notes.check_unlocked(note)
                self._notes.check_version(note, expected_edit_version)
                debit_note_no = note.debit_note_no

                unlinked = self._unlink_and_delete(note, actor_id)
                self._session.commit()
            except Exception as exc:
                self._rollback("delete_debit_note", exc)
                raise

            logger.info(
                "debit_note_removed",
                extra={"debit_note_no": debit_note_no, "unlinked_count": len(unlinked)},
            )
        return UnlinkResult(
            debit_note_id=debit_note_id,
            debit_note_no=debit_note_no,
            unlinked_record_ids=unlinked,
            debit_note_deleted=True,
        )
