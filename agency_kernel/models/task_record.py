"""
Module: agency_kernel.models.task_record
Responsibility: ORM persistence for billable task records of a job order.
    One table serves every task type; ``task_type`` discriminates and
    ``attributes`` carries the type-specific business fields.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - debit_note_id is NULL (unbilled) or references an existing debit note of
      the same job order and task type.  Only the aggregation and unlink
      services write it (through TaskRecordStore.update_billing_link).
    - debit_note_no is a denormalized display copy and moves with debit_note_id.
    - edit_version is the optimistic-concurrency counter (version_id_col).

Failure modes:
    - StaleDataError on a guarded UPDATE/DELETE after a concurrent edit.
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from agency_kernel.db.base import TrackedBase, UUIDString
from agency_kernel.domain.task_types import TaskType


class TaskRecord(TrackedBase):
    """
    A single billable service line of one job order and one task type.

    Guarantees:
        - task_type never changes after creation.
        - total_after_tax == total_amount + tax_amount (checked by the store).
    """

    __tablename__ = "task_records"

    __table_args__ = (
        Index("idx_task_record_scope", "job_order_id", "task_type"),
        Index("idx_task_record_debit_note", "debit_note_id"),
    )

    job_order_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    task_type: Mapped[TaskType] = mapped_column(String(40), nullable=False)

    reference_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    service_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Billing fields (copied verbatim into the debit note detail)
    charge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    gl_account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    unit_price: Mapped[Decimal | None] = mapped_column(nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tax_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tax_percentage: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_after_tax: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Type-specific business fields (crew name, boat name, ...)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Billing link
    debit_note_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("debit_notes.id"),
        nullable=True,
    )
    debit_note_no: Mapped[str | None] = mapped_column(String(50), nullable=True)

    edit_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": edit_version}

    @property
    def is_billed(self) -> bool:
        return self.debit_note_id is not None

    def __repr__(self) -> str:
        return (
            f"<TaskRecord {self.id} {self.task_type} "
            f"job_order={self.job_order_id} debit_note={self.debit_note_no}>"
        )
