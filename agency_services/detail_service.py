"""
Module: agency_services.detail_service
Responsibility:
    Editing of an existing debit note from the debit note dialog: line
    edits with service-charge companions, manual charge lines, removal of
    lines (unlinking their source records) and locking.

Architecture:
    Services layer -- each public method owns its transaction boundary
    (commit on success, rollback and re-raise on failure).

Invariants:
    - A locked note rejects every mutation except unlocking.
    - A service-charge line sits directly after the line it derives from
      and is removed together with it.
    - Removing a line that carries a task record clears that record's
      billing link in the same transaction.
    - Item numbers run 1..n and header totals equal the sum of the details
      after every call.
    - A note left without details is deleted.

Failure modes:
    - DebitNoteNotFoundError / DebitNoteDetailNotFoundError.
    - DebitNoteLockedError, InvalidAmountError, ValidationError.
    - OptimisticLockError on a stale expected_edit_version.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable
from uuid import UUID

from agency_kernel.domain.amounts import (
    HUNDRED,
    ZERO,
    compute_line_amounts,
    format_percentage,
    service_charge_amount,
)
from agency_kernel.domain.dtos import DebitNoteView, UnlinkResult
from agency_kernel.domain.task_types import DetailLine, TaskType, get_task_type_spec
from agency_kernel.exceptions import (
    DebitNoteDetailNotFoundError,
    InvalidAmountError,
    ValidationError,
)
from agency_kernel.logging_config import LogContext, get_logger
from agency_kernel.models.debit_note import DebitNote, DebitNoteDetail
from agency_kernel.selectors.debit_note_selector import to_debit_note_view
from agency_services._billing_helpers import BillingServiceBase

logger = get_logger("services.detail")


class DetailService(BillingServiceBase):
    """Line-level editing of existing debit notes."""

    def _load(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
        expected_edit_version: int | None,
        allow_locked: bool = False,
    ) -> DebitNote:
        note = self._notes.get(
            job_order_id, self._resolve_task_type(task_type), debit_note_id, for_update=True
        )
        if not allow_locked:
            self._notes.check_unlocked(note)
        self._notes.check_version(note, expected_edit_version)
        return note

    def _finish(self, note: DebitNote, action: str, actor_id: UUID) -> DebitNoteView:
        self._notes.recompute_totals(note, actor_id)
        self._notes.record_history(note, action, actor_id)
        return to_debit_note_view(note)

    # =========================================================================
    # UpdateDetail
    # =========================================================================

    def update_detail(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
        item_no: int,
        actor_id: UUID,
        expected_edit_version: int | None = None,
        remarks: str | None = None,
        quantity: Decimal | None = None,
        unit_price: Decimal | None = None,
        service_charge_percentage: Decimal | None = None,
    ) -> DebitNoteView:
        """
        Edit one line of a debit note.

        ``None`` leaves a field unchanged.  A quantity or unit price change
        recomputes the line's total, tax and total after tax from its tax
        percentage.  A positive service-charge percentage (re)generates the
        companion line directly after this one; zero removes it.

        Raises:
            DebitNoteDetailNotFoundError: If item_no is not on the note.
            ValidationError: If item_no is a service-charge line and an
                amount or percentage is supplied.
            InvalidAmountError: On negative amounts or a percentage outside
                0-100.
        """
        with LogContext.bind(
            actor_id=actor_id,
            job_order_id=job_order_id,
            task_type=task_type,
            debit_note_id=debit_note_id,
        ):
            try:
                note = self._load(job_order_id, task_type, debit_note_id, expected_edit_version)
                detail = self._notes.find_detail(note, item_no)
                if detail is None:
                    raise DebitNoteDetailNotFoundError(note.debit_note_no, item_no)

                changes_amounts = quantity is not None or unit_price is not None
                if detail.is_service_charge and (
                    changes_amounts or service_charge_percentage is not None
                ):
                    raise ValidationError(
                        f"Item {item_no} is a service charge line; edit the line it derives from"
                    )

                if remarks is not None:
                    detail.remarks = remarks
                if changes_amounts:
                    amounts = compute_line_amounts(
                        quantity if quantity is not None else detail.quantity,
                        unit_price if unit_price is not None else detail.unit_price,
                        detail.tax_percentage,
                        self._decimals,
                    )
                    if quantity is not None:
                        detail.quantity = quantity
                    if unit_price is not None:
                        detail.unit_price = unit_price
                    detail.total_amount = amounts.total_amount
                    detail.tax_amount = amounts.tax_amount
                    detail.total_after_tax = amounts.total_after_tax

                if not detail.is_service_charge:
                    if service_charge_percentage is not None:
                        if not ZERO <= service_charge_percentage <= HUNDRED:
                            raise InvalidAmountError(
                                "service_charge_percentage", "must be between 0 and 100"
                            )
                        detail.service_charge_percentage = service_charge_percentage
                    self._sync_service_charge(note, detail, actor_id)

                view = self._finish(note, "detail_updated", actor_id)
                self._session.commit()
            except Exception as exc:
                self._rollback("update_detail", exc)
                raise

            logger.info(
                "debit_note_detail_updated",
                extra={"item_no": item_no, "edit_version": view.edit_version},
            )
        return view

    def _sync_service_charge(self, note: DebitNote, parent: DebitNoteDetail, actor_id: UUID) -> None:
        """Make the companion line match the parent's percentage and amount."""
        percentage = parent.service_charge_percentage
        companion = self._notes.service_charge_of(note, parent)

        if percentage <= ZERO or parent.total_after_tax <= ZERO:
            if companion is not None:
                self._notes.remove_details(note, [companion])
                self._notes.renumber_details(note)
            return

        amount = service_charge_amount(parent.total_after_tax, percentage, self._decimals)
        line = DetailLine(
            charge_id=parent.charge_id,
            gl_account_id=parent.gl_account_id,
            quantity=Decimal("1"),
            unit_price=amount,
            total_amount=amount,
            tax_id=None,
            tax_percentage=ZERO,
            tax_amount=ZERO,
            total_after_tax=amount,
            remarks=f"{format_percentage(percentage)} % Service Charges",
        )
        if companion is None:
            self._notes.insert_service_charge(note, parent, line, percentage, actor_id)
            return

        companion.unit_price = line.unit_price
        companion.total_amount = line.total_amount
        companion.total_after_tax = line.total_after_tax
        companion.remarks = line.remarks
        companion.service_charge_percentage = percentage
        companion.updated_by_id = actor_id

    # =========================================================================
    # AddChargeLine
    # =========================================================================

    def add_charge_line(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
        actor_id: UUID,
        charge_id: int,
        gl_account_id: int,
        quantity: Decimal,
        unit_price: Decimal,
        tax_id: int | None = None,
        tax_percentage: Decimal = ZERO,
        remarks: str | None = None,
        expected_edit_version: int | None = None,
    ) -> DebitNoteView:
        """Append a manual charge line that carries no task record."""
        with LogContext.bind(
            actor_id=actor_id,
            job_order_id=job_order_id,
            task_type=task_type,
            debit_note_id=debit_note_id,
        ):
            try:
                note = self._load(job_order_id, task_type, debit_note_id, expected_edit_version)
                amounts = compute_line_amounts(quantity, unit_price, tax_percentage, self._decimals)
                line = DetailLine(
                    charge_id=charge_id,
                    gl_account_id=gl_account_id,
                    quantity=quantity,
                    unit_price=unit_price,
                    total_amount=amounts.total_amount,
                    tax_id=tax_id,
                    tax_percentage=tax_percentage,
                    tax_amount=amounts.tax_amount,
                    total_after_tax=amounts.total_after_tax,
                    remarks=remarks or get_task_type_spec(note.task_type).display_name,
                )
                detail = self._notes.append_detail(note, line, actor_id)
                item_no = detail.item_no
                view = self._finish(note, "charge_line_added", actor_id)
                self._session.commit()
            except Exception as exc:
                self._rollback("add_charge_line", exc)
                raise

            logger.info("charge_line_added", extra={"item_no": item_no, "charge_id": charge_id})
        return view

    # =========================================================================
    # RemoveDetails
    # =========================================================================

    def remove_details(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
        item_nos: Iterable[int],
        actor_id: UUID,
        expected_edit_version: int | None = None,
    ) -> UnlinkResult:
        """
        Remove lines (with their service-charge companions) from a note.

        Source task records of removed lines return to unbilled.  Remaining
        lines are renumbered 1..n.  When nothing is left, the header is
        deleted too and ``debit_note_deleted`` is set on the result.
        """
        with LogContext.bind(
            actor_id=actor_id,
            job_order_id=job_order_id,
            task_type=task_type,
            debit_note_id=debit_note_id,
        ):
            try:
                result = self._remove_details(
                    job_order_id, task_type, debit_note_id, set(item_nos),
                    actor_id, expected_edit_version,
                )
                self._session.commit()
            except Exception as exc:
                self._rollback("remove_details", exc)
                raise

            logger.info(
                "debit_note_details_removed",
                extra={
                    "unlinked_count": len(result.unlinked_record_ids),
                    "debit_note_deleted": result.debit_note_deleted,
                },
            )
        return result

    def _remove_details(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
        item_nos: set[int],
        actor_id: UUID,
        expected_edit_version: int | None,
    ) -> UnlinkResult:
        if not item_nos:
            raise ValidationError("At least one item number is required")

        note = self._load(job_order_id, task_type, debit_note_id, expected_edit_version)

        selected: list[DebitNoteDetail] = []
        for item_no in sorted(item_nos):
            detail = self._notes.find_detail(note, item_no)
            if detail is None:
                raise DebitNoteDetailNotFoundError(note.debit_note_no, item_no)
            selected.append(detail)
        for detail in list(selected):
            companion = self._notes.service_charge_of(note, detail)
            if companion is not None and companion not in selected:
                selected.append(companion)

        if len(selected) == len(note.details):
            unlinked = self._unlink_and_delete(note, actor_id)
            return UnlinkResult(
                debit_note_id=note.id,
                debit_note_no=note.debit_note_no,
                unlinked_record_ids=unlinked,
                debit_note_deleted=True,
            )

        # A parent losing its companion no longer carries a service charge
        removed_ids = {d.id for d in selected}
        for detail in selected:
            if detail.is_service_charge and detail.parent_detail_id not in removed_ids:
                for parent in note.details:
                    if parent.id == detail.parent_detail_id:
                        parent.service_charge_percentage = ZERO

        source_ids = [d.source_task_record_id for d in selected if d.source_task_record_id]
        unlinked = []
        for record in self._records.load_by_ids(source_ids):
            if record.debit_note_id == note.id:
                self._records.update_billing_link(record.id, None, None, actor_id)
                unlinked.append(record.id)

        self._notes.remove_details(note, selected)
        self._notes.renumber_details(note)
        view = self._finish(note, "details_removed", actor_id)
        return UnlinkResult(
            debit_note_id=note.id,
            debit_note_no=note.debit_note_no,
            unlinked_record_ids=tuple(unlinked),
            debit_note_deleted=False,
            debit_note=view,
        )

    # =========================================================================
    # SetLocked
    # =========================================================================

    def set_locked(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        debit_note_id: UUID,
        locked: bool,
        actor_id: UUID,
        expected_edit_version: int | None = None,
    ) -> DebitNoteView:
        """Lock or unlock a note; a locked note rejects every other mutation."""
        with LogContext.bind(
            actor_id=actor_id,
            job_order_id=job_order_id,
            task_type=task_type,
            debit_note_id=debit_note_id,
        ):
            try:
                note = self._load(
                    job_order_id, task_type, debit_note_id, expected_edit_version,
                    allow_locked=True,
                )
                changed = note.is_locked != locked
                if changed:
                    self._notes.set_locked(note, locked, actor_id)
                    self._notes.record_history(note, "locked" if locked else "unlocked", actor_id)
                view = to_debit_note_view(note)
                self._session.commit()
            except Exception as exc:
                self._rollback("set_locked", exc)
                raise

            logger.info(
                "debit_note_lock_changed" if changed else "debit_note_lock_unchanged",
                extra={"is_locked": locked},
            )
        return view
