"""
Module: agency_kernel.selectors.debit_note_selector
Responsibility: Read-only debit note queries: a single note with its details,
    the notes of a job order, and the revision history of a note.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - get_view() is scope-checked like DebitNoteStore.get(): a note of another
      job order or task type is reported as not found.
    - History survives deletion of the note it describes.
"""

from uuid import UUID

from sqlalchemy import select

from agency_kernel.domain.dtos import (
    DebitNoteDetailInfo,
    DebitNoteHistoryEntry,
    DebitNoteView,
)
from agency_kernel.domain.task_types import TaskType, parse_task_type
from agency_kernel.exceptions import DebitNoteNotFoundError
from agency_kernel.models.debit_note import DebitNote, DebitNoteDetail, DebitNoteHistory
from agency_kernel.selectors.base import BaseSelector


def to_detail_info(detail: DebitNoteDetail) -> DebitNoteDetailInfo:
    return DebitNoteDetailInfo(
        id=detail.id,
        debit_note_id=detail.debit_note_id,
        item_no=detail.item_no,
        task_type=TaskType(detail.task_type),
        source_task_record_id=detail.source_task_record_id,
        charge_id=detail.charge_id,
        gl_account_id=detail.gl_account_id,
        quantity=detail.quantity,
        unit_price=detail.unit_price,
        total_amount=detail.total_amount,
        tax_id=detail.tax_id,
        tax_percentage=detail.tax_percentage,
        tax_amount=detail.tax_amount,
        total_after_tax=detail.total_after_tax,
        remarks=detail.remarks,
        is_service_charge=detail.is_service_charge,
        service_charge_percentage=detail.service_charge_percentage,
        parent_detail_id=detail.parent_detail_id,
        edit_version=detail.edit_version,
    )


def to_debit_note_view(note: DebitNote) -> DebitNoteView:
    """Convert ORM DebitNote (with details) to its view DTO."""
    return DebitNoteView(
        id=note.id,
        debit_note_no=note.debit_note_no,
        debit_note_date=note.debit_note_date,
        job_order_id=note.job_order_id,
        task_type=TaskType(note.task_type),
        currency_id=note.currency_id,
        exchange_rate=note.exchange_rate,
        total_amount=note.total_amount,
        tax_amount=note.tax_amount,
        total_after_tax=note.total_after_tax,
        taxable_amount=note.taxable_amount,
        non_taxable_amount=note.non_taxable_amount,
        is_locked=note.is_locked,
        edit_version=note.edit_version,
        details=tuple(
            to_detail_info(d) for d in sorted(note.details, key=lambda d: d.item_no)
        ),
    )


def to_history_entry(row: DebitNoteHistory) -> DebitNoteHistoryEntry:
    return DebitNoteHistoryEntry(
        debit_note_id=row.debit_note_id,
        debit_note_no=row.debit_note_no,
        revision=row.revision,
        action=row.action,
        edit_version=row.edit_version,
        total_amount=row.total_amount,
        tax_amount=row.tax_amount,
        total_after_tax=row.total_after_tax,
        is_locked=row.is_locked,
        detail_count=row.detail_count,
        actor_id=row.actor_id,
        recorded_at=row.recorded_at,
    )


class DebitNoteSelector(BaseSelector[DebitNote]):
    """Read-only queries over debit notes."""

    def get_view(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
    ) -> DebitNoteView:
        """
        Header plus details of one note.

        Raises:
            DebitNoteNotFoundError: If missing or outside the scope.
        """
        note = self.session.execute(
            select(DebitNote)
            .where(DebitNote.id == debit_note_id)
            .where(DebitNote.job_order_id == job_order_id)
            .where(DebitNote.task_type == parse_task_type(task_type).value)
        ).scalar_one_or_none()
        if note is None:
            raise DebitNoteNotFoundError(str(debit_note_id))
        return to_debit_note_view(note)

    def list_for_job_order(
        self,
        job_order_id: UUID,
        task_type: TaskType | str | None = None,
    ) -> list[DebitNoteView]:
        """All notes of a job order, optionally one task type, by number."""
        stmt = select(DebitNote).where(DebitNote.job_order_id == job_order_id)
        if task_type is not None:
            stmt = stmt.where(DebitNote.task_type == parse_task_type(task_type).value)
        stmt = stmt.order_by(DebitNote.debit_note_no)
        return [to_debit_note_view(n) for n in self.session.execute(stmt).scalars()]

    def history(self, debit_note_id: UUID) -> list[DebitNoteHistoryEntry]:
        """Revision trail of a note, oldest first."""
        stmt = (
            select(DebitNoteHistory)
            .where(DebitNoteHistory.debit_note_id == debit_note_id)
            .order_by(DebitNoteHistory.revision)
        )
        return [to_history_entry(r) for r in self.session.execute(stmt).scalars()]
