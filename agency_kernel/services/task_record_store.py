"""
TaskRecordStore -- persistence of billable task records.

Responsibility:
    Two disjoint surfaces over the ``task_records`` table:

    * Business-field CRUD for the checklist screens (create, update, delete,
      list).  These paths never touch ``debit_note_id`` / ``debit_note_no``.
    * Billing-link access for the aggregation and unlink services
      (``load_by_ids``, ``update_billing_link``, ``list_by_debit_note``).
      Nothing else may write the link.

Architecture position:
    Kernel > Services.  Flush-only; the caller owns the transaction.

Invariants enforced:
    - The billing link is never changed by ``update_record``.
    - A billed record cannot be deleted, and its money fields cannot change
      (its debit note detail would silently diverge).
    - Every write bumps edit_version; a stale expected version raises
      OptimisticLockError before anything is written.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select

from agency_kernel.domain.amounts import check_record_amounts
from agency_kernel.domain.dtos import TaskRecordInfo
from agency_kernel.domain.task_types import TaskType, parse_task_type
from agency_kernel.exceptions import (
    TaskRecordBilledError,
    TaskRecordNotFoundError,
    ValidationError,
)
from agency_kernel.logging_config import get_logger
from agency_kernel.models.task_record import TaskRecord
from agency_kernel.selectors.task_record_selector import to_task_record_info
from agency_kernel.services.base import BaseService

logger = get_logger("services.task_record_store")

_ENTITY = "TaskRecord"

# Fields the checklist screens may edit.
BUSINESS_FIELDS = frozenset({
    "reference_no",
    "service_date",
    "charge_id",
    "gl_account_id",
    "quantity",
    "unit_price",
    "total_amount",
    "tax_id",
    "tax_percentage",
    "tax_amount",
    "total_after_tax",
    "remarks",
    "attributes",
})

# Fields copied into a debit note detail; frozen while the record is billed.
BILLED_FIELDS = frozenset({
    "charge_id",
    "gl_account_id",
    "quantity",
    "unit_price",
    "total_amount",
    "tax_id",
    "tax_percentage",
    "tax_amount",
    "total_after_tax",
})


class TaskRecordStore(BaseService[TaskRecord]):
    """
    Store for task records of every task type.

    Business-field methods return TaskRecordInfo DTOs.  Billing-link methods
    return ORM rows because they are only called inside the billing
    services' transaction.
    """

    # =========================================================================
    # Business-field CRUD
    # =========================================================================

    def _get(self, record_id: UUID) -> TaskRecord:
        record = self.session.get(TaskRecord, record_id)
        if record is None:
            raise TaskRecordNotFoundError([str(record_id)])
        return record

    def get(self, record_id: UUID) -> TaskRecordInfo:
        """
        Get a task record by id.

        Raises:
            TaskRecordNotFoundError: If the record doesn't exist.
        """
        return to_task_record_info(self._get(record_id))

    def create_record(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        actor_id: UUID,
        charge_id: int,
        gl_account_id: int,
        total_amount: Decimal,
        tax_amount: Decimal = Decimal("0"),
        total_after_tax: Decimal | None = None,
        quantity: Decimal | None = None,
        unit_price: Decimal | None = None,
        tax_id: int | None = None,
        tax_percentage: Decimal = Decimal("0"),
        reference_no: str | None = None,
        service_date: date | None = None,
        remarks: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> TaskRecordInfo:
        """
        Create an unbilled task record.

        Raises:
            UnknownTaskTypeError: If task_type is not registered.
            InvalidAmountError: If the money fields do not add up.
        """
        task_type = parse_task_type(task_type)
        total_after_tax = check_record_amounts(total_amount, tax_amount, total_after_tax)

        record = TaskRecord(
            job_order_id=job_order_id,
            task_type=task_type.value,
            reference_no=reference_no,
            service_date=service_date,
            charge_id=charge_id,
            gl_account_id=gl_account_id,
            quantity=quantity,
            unit_price=unit_price,
            total_amount=total_amount,
            tax_id=tax_id,
            tax_percentage=tax_percentage,
            tax_amount=tax_amount,
            total_after_tax=total_after_tax,
            remarks=remarks,
            attributes=dict(attributes or {}),
            created_by_id=actor_id,
        )
        self.session.add(record)
        self._flush(_ENTITY, record.id)

        logger.info(
            "task_record_created",
            extra={
                "task_record_id": str(record.id),
                "job_order_id": str(job_order_id),
                "task_type": task_type.value,
                "total_after_tax": str(total_after_tax),
            },
        )
        return to_task_record_info(record)

    def update_record(
        self,
        record_id: UUID,
        expected_edit_version: int,
        actor_id: UUID,
        **changes: Any,
    ) -> TaskRecordInfo:
        """
        Update business fields of a task record.

        Raises:
            ValidationError: If a field outside BUSINESS_FIELDS is supplied
                (this includes the billing link).
            TaskRecordBilledError: If a billed record's money fields change.
            InvalidAmountError: If the resulting money fields do not add up.
            OptimisticLockError: If expected_edit_version is stale.
        """
        unknown = sorted(set(changes) - BUSINESS_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated here: {', '.join(unknown)}")

        record = self._get(record_id)
        self._check_version(_ENTITY, record.id, record.edit_version, expected_edit_version)

        changed = {
            name: value for name, value in changes.items()
            if getattr(record, name) != value
        }
        if record.is_billed and set(changed) & BILLED_FIELDS:
            raise TaskRecordBilledError(str(record.id), record.debit_note_no, "reprice")

        if set(changed) & {"total_amount", "tax_amount", "total_after_tax"}:
            total = changed.get("total_amount", record.total_amount)
            tax = changed.get("tax_amount", record.tax_amount)
            after = changed.get("total_after_tax")
            changed["total_after_tax"] = check_record_amounts(total, tax, after)

        for name, value in changed.items():
            setattr(record, name, dict(value) if name == "attributes" else value)
        record.updated_by_id = actor_id
        self._flush(_ENTITY, record.id)

        logger.info(
            "task_record_updated",
            extra={
                "task_record_id": str(record.id),
                "fields": sorted(changed),
                "edit_version": record.edit_version,
            },
        )
        return to_task_record_info(record)

    def delete_record(self, record_id: UUID, expected_edit_version: int) -> None:
        """
        Delete an unbilled task record.

        Raises:
            TaskRecordBilledError: If the record is billed.
            OptimisticLockError: If expected_edit_version is stale.
        """
        record = self._get(record_id)
        self._check_version(_ENTITY, record.id, record.edit_version, expected_edit_version)
        if record.is_billed:
            raise TaskRecordBilledError(str(record.id), record.debit_note_no, "delete")

        self.session.delete(record)
        self._flush(_ENTITY, record_id)
        logger.info("task_record_deleted", extra={"task_record_id": str(record_id)})

    def list_by_job_order(
        self,
        job_order_id: UUID,
        task_type: TaskType | str | None = None,
        billed: bool | None = None,
    ) -> list[TaskRecordInfo]:
        """
        List task records of a job order, optionally by type and billing state.
        """
        stmt = select(TaskRecord).where(TaskRecord.job_order_id == job_order_id)
        if task_type is not None:
            stmt = stmt.where(TaskRecord.task_type == parse_task_type(task_type).value)
        if billed is True:
            stmt = stmt.where(TaskRecord.debit_note_id.is_not(None))
        elif billed is False:
            stmt = stmt.where(TaskRecord.debit_note_id.is_(None))
        stmt = stmt.order_by(TaskRecord.created_at, TaskRecord.id)
        return [to_task_record_info(r) for r in self.session.execute(stmt).scalars()]

    # =========================================================================
    # Billing link (aggregation / unlink services only)
    # =========================================================================

    def load_by_ids(self, record_ids: Iterable[UUID], for_update: bool = True) -> list[TaskRecord]:
        """
        Load task records by id, row-locked by default.

        Returns the rows ordered by id so concurrent callers lock in the same
        order.

        Raises:
            TaskRecordNotFoundError: If any id is missing.
        """
        ids = sorted(set(record_ids), key=str)
        if not ids:
            return []
        stmt = (
            select(TaskRecord)
            .where(TaskRecord.id.in_(ids))
            .order_by(TaskRecord.id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        records = list(self._execute(stmt, _ENTITY).scalars())

        found = {r.id for r in records}
        missing = [str(i) for i in ids if i not in found]
        if missing:
            raise TaskRecordNotFoundError(missing)
        return records

    def update_billing_link(
        self,
        record_id: UUID,
        debit_note_id: UUID | None,
        debit_note_no: str | None,
        actor_id: UUID,
        expected_edit_version: int | None = None,
    ) -> TaskRecord:
        """
        Set or clear the debit note reference of a task record.

        Bumps edit_version.  ``debit_note_id`` and ``debit_note_no`` must be
        both set or both None.

        Raises:
            ValidationError: If only one of the pair is supplied.
            OptimisticLockError: If expected_edit_version is stale or the row
                changed underneath this transaction.
        """
        if (debit_note_id is None) != (debit_note_no is None):
            raise ValidationError("debit_note_id and debit_note_no must be set together")

        record = self._get(record_id)
        self._check_version(_ENTITY, record.id, record.edit_version, expected_edit_version)

        record.debit_note_id = debit_note_id
        record.debit_note_no = debit_note_no
        record.updated_by_id = actor_id
        self._flush(_ENTITY, record.id)
        return record

    def list_by_debit_note(self, debit_note_id: UUID, for_update: bool = False) -> list[TaskRecord]:
        """All task records currently pointing at a debit note."""
        stmt = (
            select(TaskRecord)
            .where(TaskRecord.debit_note_id == debit_note_id)
            .order_by(TaskRecord.id)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self._execute(stmt, _ENTITY, debit_note_id).scalars())
