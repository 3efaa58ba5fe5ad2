"""
Module: agency_kernel.models.debit_note
Responsibility: ORM persistence for debit note headers, their detail lines
    and the append-only header history.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A debit note is homogeneous: one job order, one task type.
    - Header totals equal the sum of the detail rows (maintained by
      DebitNoteStore.recompute_totals after every change).
    - source_task_record_id is unique across all detail rows, so a task
      record is carried by at most one detail line anywhere.
    - History rows hold no foreign key and outlive the note they describe.

Failure modes:
    - IntegrityError on a duplicate debit_note_no or a second detail for the
      same task record.
    - StaleDataError on a guarded UPDATE/DELETE after a concurrent edit.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agency_kernel.db.base import Base, TrackedBase, UUIDString
from agency_kernel.domain.task_types import TaskType

ZERO = Decimal("0")


class DebitNote(TrackedBase):
    """
    Billing document aggregating task records of one task type in one job order.

    Guarantees:
        - debit_note_no is unique (uq_debit_note_no).
        - details are loaded ordered by item_no and deleted with the header.
    """

    __tablename__ = "debit_notes"

    __table_args__ = (
        UniqueConstraint("debit_note_no", name="uq_debit_note_no"),
        Index("idx_debit_note_scope", "job_order_id", "task_type"),
    )

    debit_note_no: Mapped[str] = mapped_column(String(50), nullable=False)
    debit_note_date: Mapped[date] = mapped_column(Date, nullable=False)

    job_order_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    task_type: Mapped[TaskType] = mapped_column(String(40), nullable=False)

    currency_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exchange_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("1"))

    # Aggregated totals -- always the sum of the details
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_after_tax: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    taxable_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    non_taxable_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    edit_version: Mapped[int] = mapped_column(Integer, nullable=False)

    details: Mapped[list["DebitNoteDetail"]] = relationship(
        back_populates="debit_note",
        cascade="all, delete-orphan",
        order_by="DebitNoteDetail.item_no",
        lazy="selectin",
        foreign_keys="DebitNoteDetail.debit_note_id",
    )

    __mapper_args__ = {"version_id_col": edit_version}

    def next_item_no(self) -> int:
        return max((d.item_no for d in self.details), default=0) + 1

    def __repr__(self) -> str:
        return f"<DebitNote {self.debit_note_no} {self.task_type} job_order={self.job_order_id}>"


class DebitNoteDetail(TrackedBase):
    """
    One line of a debit note.

    Lines with a source_task_record_id mirror exactly one billed task record.
    Lines without one are manual charge lines or service-charge lines
    (is_service_charge, parent_detail_id pointing at the line they derive from).
    """

    __tablename__ = "debit_note_details"

    __table_args__ = (
        UniqueConstraint("source_task_record_id", name="uq_debit_note_detail_source"),
        Index("idx_debit_note_detail_note", "debit_note_id", "item_no"),
    )

    debit_note_id: Mapped[UUID] = mapped_column(
        ForeignKey("debit_notes.id"),
        nullable=False,
    )
    item_no: Mapped[int] = mapped_column(Integer, nullable=False)
    task_type: Mapped[TaskType] = mapped_column(String(40), nullable=False)

    source_task_record_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("task_records.id"),
        nullable=True,
    )

    charge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    gl_account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    tax_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tax_percentage: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_after_tax: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_service_charge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    service_charge_percentage: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    # Plain column: parent and companion are always removed together
    parent_detail_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    edit_version: Mapped[int] = mapped_column(Integer, nullable=False)

    debit_note: Mapped[DebitNote] = relationship(
        back_populates="details",
        foreign_keys=[debit_note_id],
    )

    __mapper_args__ = {"version_id_col": edit_version}

    def __repr__(self) -> str:
        return f"<DebitNoteDetail note={self.debit_note_id} item={self.item_no}>"


class DebitNoteHistory(Base):
    """
    Append-only snapshot of a debit note header after each mutation.

    Backs the revision history view.  Not tied to the header by a foreign key
    so the trail survives deletion of the note.
    """

    __tablename__ = "debit_note_history"

    __table_args__ = (
        UniqueConstraint("debit_note_id", "revision", name="uq_debit_note_history_revision"),
    )

    debit_note_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    debit_note_no: Mapped[str] = mapped_column(String(50), nullable=False)
    # 1, 2, 3 ... per note, in the order the snapshots were taken
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    edit_version: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_after_tax: Mapped[Decimal] = mapped_column(nullable=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False)
    detail_count: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)
