from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agency_kernel.domain.dtos import (
    DebitNoteDetailInfo,
    DebitNoteHistoryEntry,
    DebitNoteView,
    TaskRecordInfo,
    TaskTypeSummary,
)
from agency_kernel.domain.task_types import get_task_type_spec


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests


class GenerateDebitNoteRequest(CamelModel):
    task_record_ids: list[UUID]
    debit_note_no: str | None = None


class UpdateDetailRequest(CamelModel):
    remarks: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    service_charge_percentage: Decimal | None = None
    expected_edit_version: int | None = None


class AddChargeLineRequest(CamelModel):
    charge_id: int
    gl_account_id: int
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    tax_id: int | None = None
    tax_percentage: Decimal = Decimal("0")
    remarks: str | None = None
    expected_edit_version: int | None = None


class RemoveDetailsRequest(CamelModel):
    item_nos: list[int] = Field(min_length=1)
    expected_edit_version: int | None = None


class SetLockedRequest(CamelModel):
    is_locked: bool
    expected_edit_version: int | None = None


class TaskRecordFields(CamelModel):
    reference_no: str | None = None
    service_date: date | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    tax_id: int | None = None
    remarks: str | None = None
    attributes: dict[str, Any] | None = None


class CreateTaskRecordRequest(TaskRecordFields):
    charge_id: int
    gl_account_id: int
    total_amount: Decimal
    tax_amount: Decimal = Decimal("0")
    total_after_tax: Decimal | None = None
    tax_percentage: Decimal = Decimal("0")


class UpdateTaskRecordRequest(TaskRecordFields):
    expected_edit_version: int
    charge_id: int | None = None
    gl_account_id: int | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    total_after_tax: Decimal | None = None
    tax_percentage: Decimal | None = None


# Responses


class DebitNoteDetailOut(CamelModel):
    id: UUID
    item_no: int
    task_type: str
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

    @classmethod
    def from_info(cls, info: DebitNoteDetailInfo) -> DebitNoteDetailOut:
        return cls(
            id=info.id,
            item_no=info.item_no,
            task_type=info.task_type.value,
            source_task_record_id=info.source_task_record_id,
            charge_id=info.charge_id,
            gl_account_id=info.gl_account_id,
            quantity=info.quantity,
            unit_price=info.unit_price,
            total_amount=info.total_amount,
            tax_id=info.tax_id,
            tax_percentage=info.tax_percentage,
            tax_amount=info.tax_amount,
            total_after_tax=info.total_after_tax,
            remarks=info.remarks,
            is_service_charge=info.is_service_charge,
            service_charge_percentage=info.service_charge_percentage,
            parent_detail_id=info.parent_detail_id,
            edit_version=info.edit_version,
        )


class DebitNoteOut(CamelModel):
    debit_note_id: UUID
    debit_note_no: str
    debit_note_date: date
    job_order_id: UUID
    task_type_id: str
    currency_id: int | None
    exchange_rate: Decimal
    total_amount: Decimal
    tax_amount: Decimal
    total_after_tax: Decimal
    taxable_amount: Decimal
    non_taxable_amount: Decimal
    is_locked: bool
    edit_version: int
    details: list[DebitNoteDetailOut]

    @classmethod
    def from_view(cls, view: DebitNoteView) -> DebitNoteOut:
        return cls(
            debit_note_id=view.id,
            debit_note_no=view.debit_note_no,
            debit_note_date=view.debit_note_date,
            job_order_id=view.job_order_id,
            task_type_id=view.task_type.value,
            currency_id=view.currency_id,
            exchange_rate=view.exchange_rate,
            total_amount=view.total_amount,
            tax_amount=view.tax_amount,
            total_after_tax=view.total_after_tax,
            taxable_amount=view.taxable_amount,
            non_taxable_amount=view.non_taxable_amount,
            is_locked=view.is_locked,
            edit_version=view.edit_version,
            details=[DebitNoteDetailOut.from_info(d) for d in view.details],
        )


class HistoryEntryOut(CamelModel):
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

    @classmethod
    def from_entry(cls, entry: DebitNoteHistoryEntry) -> HistoryEntryOut:
        return cls(**{name: getattr(entry, name) for name in cls.model_fields})


class TaskRecordOut(CamelModel):
    task_record_id: UUID
    job_order_id: UUID
    task_type_id: str
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

    @classmethod
    def from_info(cls, info: TaskRecordInfo) -> TaskRecordOut:
        return cls(
            task_record_id=info.id,
            job_order_id=info.job_order_id,
            task_type_id=info.task_type.value,
            reference_no=info.reference_no,
            service_date=info.service_date,
            charge_id=info.charge_id,
            gl_account_id=info.gl_account_id,
            quantity=info.quantity,
            unit_price=info.unit_price,
            total_amount=info.total_amount,
            tax_id=info.tax_id,
            tax_percentage=info.tax_percentage,
            tax_amount=info.tax_amount,
            total_after_tax=info.total_after_tax,
            remarks=info.remarks,
            attributes=info.attributes,
            debit_note_id=info.debit_note_id,
            debit_note_no=info.debit_note_no,
            edit_version=info.edit_version,
        )


class TaskSummaryOut(CamelModel):
    task_type_id: str
    display_name: str
    total: int
    billed: int
    unbilled: int

    @classmethod
    def from_summary(cls, summary: TaskTypeSummary) -> TaskSummaryOut:
        return cls(
            task_type_id=summary.task_type.value,
            display_name=get_task_type_spec(summary.task_type).display_name,
            total=summary.total,
            billed=summary.billed,
            unbilled=summary.unbilled,
        )


def dump(model: BaseModel | list[BaseModel]) -> Any:
    """JSON-safe camelCase payload; Decimals are rendered as strings."""
    if isinstance(model, list):
        return [m.model_dump(mode="json", by_alias=True) for m in model]
    return model.model_dump(mode="json", by_alias=True)


def envelope(message: str, data: Any = None, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"result": 1, "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body
