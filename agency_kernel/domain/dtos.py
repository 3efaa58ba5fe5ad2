"""
Frozen DTOs returned by stores, selectors and services.

No ORM instance leaves the kernel: callers (services, the HTTP façade,
tests) only ever see these immutable values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from agency_kernel.domain.task_types import TaskType
from agency_kernel.exceptions import InconsistentStateWarning


@dataclass(frozen=True)
class TaskRecordInfo:
    """A billable task record as seen outside the kernel."""

    id: UUID
    job_order_id: UUID
    task_type: TaskType
    reference_no: str | None
    service_date: date | None
    charge_id: int
    gl_account_id: int
    quantity: Decimal | None
    unit_price: Decimal | None
    total_amount: Decimal
    tax_id: int | None
    tax_percentage: Decimal
    tax_amount: Decimal
    total_after_tax: Decimal
    remarks: str | None
    attributes: dict[str, Any]
    debit_note_id: UUID | None
    debit_note_no: str | None
    edit_version: int
    created_by_id: UUID
    created_at: datetime | None
    updated_by_id: UUID | None
    updated_at: datetime | None

    @property
    def is_billed(self) -> bool:
        return self.debit_note_id is not None


@dataclass(frozen=True)
class DebitNoteDetailInfo:
    """One line of a debit note."""

    id: UUID
    debit_note_id: UUID
    item_no: int
    task_type: TaskType
    source_task_record_id: UUID | None
    charge_id: int
    gl_account_id: int
    quantity: Decimal
    unit_price: Decimal
    total_amount: Decimal
    tax_id: int | None
    tax_percentage: Decimal
    tax_amount: Decimal
    total_after_tax: Decimal
    remarks: str | None
    is_service_charge: bool
    service_charge_percentage: Decimal
    parent_detail_id: UUID | None
    edit_version: int


@dataclass(frozen=True)
class DebitNoteView:
    """Debit note header plus its detail lines, ordered by item_no."""

    id: UUID
    debit_note_no: str
    debit_note_date: date
    job_order_id: UUID
    task_type: TaskType
    currency_id: int | None
    exchange_rate: Decimal
    total_amount: Decimal
    tax_amount: Decimal
    total_after_tax: Decimal
    taxable_amount: Decimal
    non_taxable_amount: Decimal
    is_locked: bool
    edit_version: int
    details: tuple[DebitNoteDetailInfo, ...] = field(default_factory=tuple)

    @property
    def billed_record_ids(self) -> frozenset[UUID]:
        return frozenset(
            d.source_task_record_id
            for d in self.details
            if d.source_task_record_id is not None
        )


@dataclass(frozen=True)
class DebitNoteHistoryEntry:
    """Snapshot of a debit note header after one mutation."""

    debit_note_id: UUID
    debit_note_no: str
    revision: int
    action: str
    edit_version: int
    total_amount: Decimal
    tax_amount: Decimal
    total_after_tax: Decimal
    is_locked: bool
    detail_count: int
    actor_id: UUID
    recorded_at: datetime


class AggregationOutcome(str, Enum):
    """What generate_or_attach did."""

    CREATED = "created"  # new debit note written
    APPENDED = "appended"  # unbilled records added to an existing note
    EXISTING = "existing"  # everything already billed, note returned as is


@dataclass(frozen=True)
class AggregationResult:
    """Result of GenerateOrAttachDebitNote."""

    outcome: AggregationOutcome
    debit_note: DebitNoteView
    linked_record_ids: tuple[UUID, ...] = ()
    warning: InconsistentStateWarning | None = None

    @property
    def message(self) -> str:
        if self.outcome == AggregationOutcome.CREATED:
            return f"Debit note {self.debit_note.debit_note_no} created"
        if self.outcome == AggregationOutcome.APPENDED:
            return (
                f"{len(self.linked_record_ids)} record(s) added to debit note "
                f"{self.debit_note.debit_note_no}"
            )
        if self.warning is not None:
            return str(self.warning)
        return f"Debit note {self.debit_note.debit_note_no} already covers the selection"


@dataclass(frozen=True)
class UnlinkResult:
    """Result of deleting a debit note or removing some of its lines."""

    debit_note_id: UUID
    debit_note_no: str
    unlinked_record_ids: tuple[UUID, ...]
    debit_note_deleted: bool
    debit_note: DebitNoteView | None = None


@dataclass(frozen=True)
class TaskTypeSummary:
    """Record counts of one task type within a job order."""

    task_type: TaskType
    total: int
    billed: int

    @property
    def unbilled(self) -> int:
        return self.total - self.billed
