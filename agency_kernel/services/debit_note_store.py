"""
DebitNoteStore -- persistence of debit note headers, details and history.

Responsibility:
    Owns the ``debit_notes``, ``debit_note_details`` and
    ``debit_note_history`` tables.  Creates headers, appends, inserts,
    removes and renumbers detail lines, recomputes header totals, deletes a
    note with its details, and snapshots the header into the history trail.

Architecture position:
    Kernel > Services.  Flush-only; called by the services in
    ``agency_services`` which own the transaction.

Invariants enforced:
    - get() is scope-checked: a note of another job order or task type is
      reported as not found.
    - recompute_totals() always rewrites the header, so its edit_version is
      bumped by every operation that touches its details.
    - Item numbers are 1..n after renumber_details().

Failure modes:
    - DebitNoteNotFoundError: unknown id/number or out of scope.
    - DebitNoteLockedError: check_unlocked() on a locked note.
    - OptimisticLockError: a guarded UPDATE/DELETE matched zero rows.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm.attributes import flag_modified

from agency_kernel.domain.amounts import ZERO
from agency_kernel.domain.clock import Clock, SystemClock
from agency_kernel.domain.task_types import DetailLine, TaskType
from agency_kernel.exceptions import DebitNoteLockedError, DebitNoteNotFoundError
from agency_kernel.logging_config import get_logger
from agency_kernel.models.debit_note import DebitNote, DebitNoteDetail, DebitNoteHistory
from agency_kernel.services.base import BaseService

logger = get_logger("services.debit_note_store")

_ENTITY = "DebitNote"


class DebitNoteStore(BaseService[DebitNote]):
    """
    Store for debit notes.

    Methods return ORM rows; services convert them with to_debit_note_view()
    before anything leaves the transaction.
    """

    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # =========================================================================
    # Headers
    # =========================================================================

    def create(
        self,
        job_order_id: UUID,
        task_type: TaskType,
        debit_note_no: str,
        actor_id: UUID,
        debit_note_date: date | None = None,
        currency_id: int | None = None,
        exchange_rate: Decimal = Decimal("1"),
    ) -> DebitNote:
        """Create an empty header with zero totals."""
        note = DebitNote(
            debit_note_no=debit_note_no,
            debit_note_date=debit_note_date or self._clock.today(),
            job_order_id=job_order_id,
            task_type=TaskType(task_type).value,
            currency_id=currency_id,
            exchange_rate=exchange_rate,
            total_amount=ZERO,
            tax_amount=ZERO,
            total_after_tax=ZERO,
            taxable_amount=ZERO,
            non_taxable_amount=ZERO,
            is_locked=False,
            created_by_id=actor_id,
        )
        self.session.add(note)
        self._flush(_ENTITY, note.id)

        logger.info(
            "debit_note_created",
            extra={
                "debit_note_id": str(note.id),
                "debit_note_no": debit_note_no,
                "job_order_id": str(job_order_id),
                "task_type": note.task_type,
            },
        )
        return note

    def get(
        self,
        job_order_id: UUID,
        task_type: TaskType,
        debit_note_id: UUID,
        for_update: bool = False,
    ) -> DebitNote:
        """
        Get a debit note with its details, scoped to a job order and task type.

        Raises:
            DebitNoteNotFoundError: If missing or outside the scope.
        """
        stmt = (
            select(DebitNote)
            .where(DebitNote.id == debit_note_id)
            .where(DebitNote.job_order_id == job_order_id)
            .where(DebitNote.task_type == TaskType(task_type).value)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        note = self._execute(stmt, _ENTITY, debit_note_id).scalar_one_or_none()
        if note is None:
            raise DebitNoteNotFoundError(str(debit_note_id))
        return note

    def find_by_no(
        self,
        debit_note_no: str,
        job_order_id: UUID | None = None,
        task_type: TaskType | None = None,
        for_update: bool = False,
    ) -> DebitNote | None:
        """Look a note up by number, optionally restricted to a scope."""
        stmt = select(DebitNote).where(DebitNote.debit_note_no == debit_note_no)
        if job_order_id is not None:
            stmt = stmt.where(DebitNote.job_order_id == job_order_id)
        if task_type is not None:
            stmt = stmt.where(DebitNote.task_type == TaskType(task_type).value)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._execute(stmt, _ENTITY, debit_note_no).scalar_one_or_none()

    def get_many(self, debit_note_ids: Iterable[UUID], for_update: bool = False) -> list[DebitNote]:
        """Load notes by id, ordered by debit_note_no."""
        ids = sorted(set(debit_note_ids), key=str)
        if not ids:
            return []
        stmt = (
            select(DebitNote)
            .where(DebitNote.id.in_(ids))
            .order_by(DebitNote.debit_note_no)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self._execute(stmt, _ENTITY).scalars())

    def list_for_job_order(
        self,
        job_order_id: UUID,
        task_type: TaskType | None = None,
    ) -> list[DebitNote]:
        stmt = select(DebitNote).where(DebitNote.job_order_id == job_order_id)
        if task_type is not None:
            stmt = stmt.where(DebitNote.task_type == TaskType(task_type).value)
        stmt = stmt.order_by(DebitNote.debit_note_no)
        return list(self.session.execute(stmt).scalars())

    def check_version(self, note: DebitNote, expected_edit_version: int | None) -> None:
        """Raise OptimisticLockError if the caller's view of the header is stale."""
        self._check_version(_ENTITY, note.id, note.edit_version, expected_edit_version)

    @staticmethod
    def check_unlocked(note: DebitNote) -> None:
        """Raise DebitNoteLockedError if the note is locked."""
        if note.is_locked:
            raise DebitNoteLockedError(note.debit_note_no)

    def set_locked(self, note: DebitNote, locked: bool, actor_id: UUID) -> DebitNote:
        note.is_locked = locked
        note.updated_by_id = actor_id
        self._flush(_ENTITY, note.id)
        return note

    # =========================================================================
    # Details
    # =========================================================================

    def _new_detail(
        self,
        note: DebitNote,
        item_no: int,
        line: DetailLine,
        actor_id: UUID,
        source_task_record_id: UUID | None,
    ) -> DebitNoteDetail:
        return DebitNoteDetail(
            item_no=item_no,
            task_type=note.task_type,
            source_task_record_id=source_task_record_id,
            charge_id=line.charge_id,
            gl_account_id=line.gl_account_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total_amount=line.total_amount,
            tax_id=line.tax_id,
            tax_percentage=line.tax_percentage,
            tax_amount=line.tax_amount,
            total_after_tax=line.total_after_tax,
            remarks=line.remarks,
            is_service_charge=False,
            service_charge_percentage=ZERO,
            created_by_id=actor_id,
        )

    def append_detail(
        self,
        note: DebitNote,
        line: DetailLine,
        actor_id: UUID,
        source_task_record_id: UUID | None = None,
    ) -> DebitNoteDetail:
        """Append a line with item_no = current max + 1."""
        detail = self._new_detail(note, note.next_item_no(), line, actor_id, source_task_record_id)
        note.details.append(detail)
        self._flush(_ENTITY, note.id)
        return detail

    def insert_service_charge(
        self,
        note: DebitNote,
        parent: DebitNoteDetail,
        line: DetailLine,
        percentage: Decimal,
        actor_id: UUID,
    ) -> DebitNoteDetail:
        """
        Insert a service-charge line directly after ``parent``.

        Lines after the parent shift down by one item number.
        """
        position = parent.item_no + 1
        for detail in note.details:
            if detail.item_no >= position:
                detail.item_no += 1

        companion = self._new_detail(note, position, line, actor_id, None)
        companion.is_service_charge = True
        companion.service_charge_percentage = percentage
        companion.parent_detail_id = parent.id
        note.details.append(companion)
        self._flush(_ENTITY, note.id)
        return companion

    @staticmethod
    def find_detail(note: DebitNote, item_no: int) -> DebitNoteDetail | None:
        for detail in note.details:
            if detail.item_no == item_no:
                return detail
        return None

    @staticmethod
    def service_charge_of(note: DebitNote, parent: DebitNoteDetail) -> DebitNoteDetail | None:
        for detail in note.details:
            if detail.is_service_charge and detail.parent_detail_id == parent.id:
                return detail
        return None

    def remove_details(self, note: DebitNote, details: Sequence[DebitNoteDetail]) -> None:
        """Remove lines from the note; delete-orphan deletes the rows on flush."""
        for detail in details:
            note.details.remove(detail)
        self._flush(_ENTITY, note.id)

    def renumber_details(self, note: DebitNote) -> None:
        """Close gaps so item numbers run 1..n in their current order."""
        for item_no, detail in enumerate(sorted(note.details, key=lambda d: d.item_no), start=1):
            if detail.item_no != item_no:
                detail.item_no = item_no
        self._flush(_ENTITY, note.id)

    def recompute_totals(self, note: DebitNote, actor_id: UUID) -> DebitNote:
        """
        Set header totals to the sum of the detail rows and bump edit_version.

        taxable_amount sums total_amount over lines carrying tax;
        non_taxable_amount over the rest.
        """
        total = tax = after = taxable = non_taxable = ZERO
        for detail in note.details:
            total += detail.total_amount
            tax += detail.tax_amount
            after += detail.total_after_tax
            if detail.tax_amount != ZERO:
                taxable += detail.total_amount
            else:
                non_taxable += detail.total_amount

        note.total_amount = total
        note.tax_amount = tax
        note.total_after_tax = after
        note.taxable_amount = taxable
        note.non_taxable_amount = non_taxable
        note.updated_by_id = actor_id
        # Unchanged sums still count as a revision of the note
        flag_modified(note, "total_after_tax")
        self._flush(_ENTITY, note.id)

        logger.debug(
            "debit_note_totals_recomputed",
            extra={
                "debit_note_id": str(note.id),
                "total_after_tax": str(after),
                "detail_count": len(note.details),
                "edit_version": note.edit_version,
            },
        )
        return note

    def delete_with_details(self, note: DebitNote) -> None:
        """
        Delete the header; its details go with it via the cascade.

        The billing links of the source task records must already be cleared
        and flushed.
        """
        note_id = note.id
        self.session.delete(note)
        self._flush(_ENTITY, note_id)
        logger.info(
            "debit_note_deleted",
            extra={"debit_note_id": str(note_id), "debit_note_no": note.debit_note_no},
        )

    # =========================================================================
    # History
    # =========================================================================

    def record_history(self, note: DebitNote, action: str, actor_id: UUID) -> DebitNoteHistory:
        """Append a snapshot of the header as it stands now."""
        last = self.session.execute(
            select(func.max(DebitNoteHistory.revision))
            .where(DebitNoteHistory.debit_note_id == note.id)
        ).scalar()
        row = DebitNoteHistory(
            debit_note_id=note.id,
            debit_note_no=note.debit_note_no,
            revision=(last or 0) + 1,
            action=action,
            edit_version=note.edit_version,
            total_amount=note.total_amount,
            tax_amount=note.tax_amount,
            total_after_tax=note.total_after_tax,
            is_locked=note.is_locked,
            detail_count=len(note.details),
            actor_id=actor_id,
            recorded_at=self._clock.now(),
        )
        self.session.add(row)
        self._flush("DebitNoteHistory", note.id)
        return row

    def list_history(self, debit_note_id: UUID) -> list[DebitNoteHistory]:
        stmt = (
            select(DebitNoteHistory)
            .where(DebitNoteHistory.debit_note_id == debit_note_id)
            .order_by(DebitNoteHistory.revision)
        )
        return list(self.session.execute(stmt).scalars())
