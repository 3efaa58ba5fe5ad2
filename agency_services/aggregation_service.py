"""
Module: agency_services.aggregation_service
Responsibility:
    GenerateOrAttachDebitNote -- bill a selection of task records of one task
    type within one job order on a single debit note.

    1. Loads and row-locks the selected records; rejects missing or
       out-of-scope ids.
    2. Partitions them into already billed and unbilled.
    3. All billed: returns the note they share (idempotent re-aggregation).
    4. Otherwise resolves or creates the target note, appends one detail per
       unbilled record, back-fills the billing link and recomputes totals.

Architecture:
    Services layer -- holds a Session and owns the transaction boundary.
    Document numbering is delegated to a DocumentNumberAllocator.

Invariants:
    - A task record is billed by at most one debit note; a record billed on
      a note other than the target is rejected, never moved.
    - On success every selected id points at the returned note.
    - Header totals equal the sum of the detail rows.
    - All-or-nothing: any failure rolls back both stores.

Failure modes:
    - EmptySelectionError, CrossScopeSelectionError, AlreadyBilledError,
      DebitNoteLockedError, UnknownTaskTypeError (ValidationError).
    - TaskRecordNotFoundError (NotFoundError).
    - OptimisticLockError when a record changed underneath the call.
    - DocumentNumberingError when no number could be allocated.
    - InconsistentBillingError (strict mode only) when all records are
      billed on different notes.
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from agency_kernel.domain.clock import Clock
from agency_kernel.domain.dtos import AggregationOutcome, AggregationResult
from agency_kernel.domain.task_types import (
    TaskType,
    build_detail_line,
    get_task_type_spec,
)
from agency_kernel.exceptions import (
    AlreadyBilledError,
    BillingKernelError,
    CrossScopeSelectionError,
    DebitNoteNotFoundError,
    DocumentNumberingError,
    EmptySelectionError,
    InconsistentBillingError,
    InconsistentStateWarning,
)
from agency_kernel.logging_config import LogContext, get_logger
from agency_kernel.models.debit_note import DebitNote
from agency_kernel.models.task_record import TaskRecord
from agency_kernel.selectors.debit_note_selector import to_debit_note_view
from agency_kernel.services.document_numbering import (
    DocumentNumberAllocator,
    SequenceDocumentNumberAllocator,
)
from agency_services._billing_helpers import BillingServiceBase

logger = get_logger("services.aggregation")


class AggregationService(BillingServiceBase):
    """
    Creates debit notes from task records or attaches records to one.

    Contract:
        Callers supply a live Session and, optionally, a document number
        allocator and a Clock.  generate_or_attach() commits on success and
        rolls back on failure.

    Guarantees:
        - Calling twice with the same fully billed selection returns the
          same note and writes nothing.
        - Every detail line is produced by build_detail_line(), so every
          task type bills the same way.
    """

    def __init__(
        self,
        session: Session,
        numberer: DocumentNumberAllocator | None = None,
        clock: Clock | None = None,
        strict_inconsistent_billing: bool = False,
        disabled_task_types: Iterable[TaskType | str] = (),
        decimals: int = 2,
    ):
        super().__init__(session, clock, disabled_task_types, decimals)
        self._numberer = numberer or SequenceDocumentNumberAllocator(session, clock=self._clock)
        self._strict = strict_inconsistent_billing

    def generate_or_attach(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        task_record_ids: Iterable[UUID],
        actor_id: UUID,
        existing_debit_note_no: str | None = None,
    ) -> AggregationResult:
        """
        Bill the selected records on one debit note.

        Args:
            job_order_id: Job order every record must belong to.
            task_type: Task type every record must have.
            task_record_ids: Selection; duplicates are collapsed.
            actor_id: Acting user, stamped on every write.
            existing_debit_note_no: Note to append to, if it resolves within
                the job order and task type.

        Returns:
            AggregationResult with the note view, the outcome and, for the
            inconsistent all-billed case, an InconsistentStateWarning.
        """
        with LogContext.bind(
            actor_id=actor_id,
            job_order_id=job_order_id,
            task_type=task_type,
        ):
            try:
                result = self._generate_or_attach(
                    job_order_id,
                    self._resolve_task_type(task_type),
                    set(task_record_ids),
                    actor_id,
                    existing_debit_note_no,
                )
                self._session.commit()
            except Exception as exc:
                self._rollback("generate_or_attach", exc)
                raise
        return result

    def _generate_or_attach(
        self,
        job_order_id: UUID,
        task_type: TaskType,
        ids: set[UUID],
        actor_id: UUID,
        existing_debit_note_no: str | None,
    ) -> AggregationResult:
        if not ids:
            raise EmptySelectionError()

        records = self._records.load_by_ids(ids)
        offending = [
            str(r.id) for r in records
            if r.job_order_id != job_order_id or r.task_type != task_type.value
        ]
        if offending:
            raise CrossScopeSelectionError(str(job_order_id), task_type.value, offending)

        billed = [r for r in records if r.debit_note_id is not None]
        unbilled = [r for r in records if r.debit_note_id is None]

        logger.info(
            "aggregation_started",
            extra={
                "selected_count": len(ids),
                "billed_count": len(billed),
                "unbilled_count": len(unbilled),
            },
        )

        if not unbilled:
            return self._all_billed(billed)

        target = self._resolve_target(job_order_id, task_type, billed, existing_debit_note_no)
        if target is None:
            if billed:
                raise AlreadyBilledError(
                    "a new debit note",
                    {str(r.id): r.debit_note_no for r in billed},
                )
            target = self._notes.create(
                job_order_id,
                task_type,
                self._allocate_number(job_order_id, task_type),
                actor_id,
            )
            outcome = AggregationOutcome.CREATED
        else:
            self._notes.check_unlocked(target)
            conflicts = {
                str(r.id): r.debit_note_no for r in billed if r.debit_note_id != target.id
            }
            if conflicts:
                raise AlreadyBilledError(target.debit_note_no, conflicts)
            outcome = AggregationOutcome.APPENDED

        spec = get_task_type_spec(task_type)
        for record in sorted(unbilled, key=_billing_order):
            self._notes.append_detail(
                target,
                build_detail_line(spec, record),
                actor_id,
                source_task_record_id=record.id,
            )
            self._records.update_billing_link(
                record.id, target.id, target.debit_note_no, actor_id
            )

        self._notes.recompute_totals(target, actor_id)
        self._notes.record_history(target, outcome.value, actor_id)

        linked = tuple(r.id for r in sorted(unbilled, key=_billing_order))
        logger.info(
            "task_records_linked",
            extra={
                "debit_note_id": str(target.id),
                "debit_note_no": target.debit_note_no,
                "outcome": outcome.value,
                "linked_count": len(linked),
                "total_after_tax": str(target.total_after_tax),
            },
        )
        return AggregationResult(
            outcome=outcome,
            debit_note=to_debit_note_view(target),
            linked_record_ids=linked,
        )

    def _all_billed(self, billed: list[TaskRecord]) -> AggregationResult:
        note_ids = {r.debit_note_id for r in billed}
        notes = self._notes.get_many(note_ids)
        if not notes:
            raise DebitNoteNotFoundError(", ".join(sorted(str(i) for i in note_ids)))

        first = notes[0]
        if len(note_ids) == 1:
            logger.info(
                "debit_note_already_covers_selection",
                extra={"debit_note_id": str(first.id), "debit_note_no": first.debit_note_no},
            )
            return AggregationResult(
                outcome=AggregationOutcome.EXISTING,
                debit_note=to_debit_note_view(first),
            )

        numbers = [n.debit_note_no for n in notes]
        if self._strict:
            raise InconsistentBillingError(numbers)

        warning = InconsistentStateWarning(numbers, first.debit_note_no)
        logger.warning(
            "inconsistent_billing_state",
            extra={
                "debit_note_nos": numbers,
                "returned_debit_note_no": first.debit_note_no,
                "code": warning.code,
            },
        )
        return AggregationResult(
            outcome=AggregationOutcome.EXISTING,
            debit_note=to_debit_note_view(first),
            warning=warning,
        )

    def _resolve_target(
        self,
        job_order_id: UUID,
        task_type: TaskType,
        billed: list[TaskRecord],
        existing_debit_note_no: str | None,
    ) -> DebitNote | None:
        """Supplied number, else the single note the billed records share, else None."""
        if existing_debit_note_no:
            note = self._notes.find_by_no(
                existing_debit_note_no, job_order_id, task_type, for_update=True
            )
            if note is not None:
                return note
            logger.warning(
                "existing_debit_note_not_resolved",
                extra={"debit_note_no": existing_debit_note_no},
            )

        shared = {r.debit_note_id for r in billed}
        if len(shared) == 1:
            notes = self._notes.get_many(shared, for_update=True)
            if notes:
                return notes[0]
        return None

    def _allocate_number(self, job_order_id: UUID, task_type: TaskType) -> str:
        try:
            number = self._numberer.allocate_document_number(job_order_id, task_type)
        except BillingKernelError:
            raise
        except Exception as exc:
            raise DocumentNumberingError(str(job_order_id), task_type.value, str(exc)) from exc
        if not number:
            raise DocumentNumberingError(str(job_order_id), task_type.value, "empty number")
        return number


def _billing_order(record: TaskRecord) -> tuple:
    return (record.service_date is None, record.service_date, str(record.id))
