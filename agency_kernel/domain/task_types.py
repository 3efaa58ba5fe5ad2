"""
Task types -- the single polymorphic dimension of billable job-order work.

Responsibility:
    Declares every task type of the job-order checklist and, per type, the
    metadata that decides what a DebitNoteDetail copies from a task record.
    Aggregation and unlink logic is written once and parameterized by this
    registry; there is no per-type module.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Every TaskType has exactly one TaskTypeSpec.
    - build_detail_line() is the only place that maps record fields onto
      detail fields, so every task type bills the same way.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from agency_kernel.exceptions import UnknownTaskTypeError


class TaskType(str, Enum):
    """Categories of billable work attached to a job order."""

    PORT_EXPENSES = "PortExpenses"
    LAUNCH_SERVICES = "LaunchServices"
    EQUIPMENT_USED = "EquipmentUsed"
    CREW_SIGN_ON = "CrewSignOn"
    CREW_SIGN_OFF = "CrewSignOff"
    CREW_MISCELLANEOUS = "CrewMiscellaneous"
    MEDICAL_ASSISTANCE = "MedicalAssistance"
    CONSIGNMENT_IMPORT = "ConsignmentImport"
    CONSIGNMENT_EXPORT = "ConsignmentExport"
    THIRD_PARTY = "ThirdParty"
    FRESH_WATER = "FreshWater"
    TECHNICIAN_SURVEYOR = "TechnicianSurveyor"
    LANDING_ITEMS = "LandingItems"
    OTHER_SERVICE = "OtherService"
    AGENCY_REMUNERATION = "AgencyRemuneration"
    VISA_SERVICE = "VisaService"


@dataclass(frozen=True)
class TaskTypeSpec:
    """
    Billing metadata for one task type.

    Attributes:
        task_type: The type described.
        display_name: Human-readable name used in remarks and listings.
        uses_quantity: True if the detail copies quantity/unit price from the
            record; False bills a flat amount (quantity 1, unit price = total).
        remarks_attributes: Keys of the record's ``attributes`` JSON joined
            into the detail remarks, in order.  Missing keys are skipped.
    """

    task_type: TaskType
    display_name: str
    uses_quantity: bool = False
    remarks_attributes: tuple[str, ...] = ()


@dataclass(frozen=True)
class DetailLine:
    """Values a DebitNoteDetail takes from its source task record."""

    charge_id: int
    gl_account_id: int
    quantity: Decimal
    unit_price: Decimal
    total_amount: Decimal
    tax_id: int | None
    tax_percentage: Decimal
    tax_amount: Decimal
    total_after_tax: Decimal
    remarks: str


_SPECS: dict[TaskType, TaskTypeSpec] = {
    spec.task_type: spec
    for spec in (
        TaskTypeSpec(TaskType.PORT_EXPENSES, "Port Expenses", True, ("supplier_name",)),
        TaskTypeSpec(TaskType.LAUNCH_SERVICES, "Launch Services", True, ("boat_name", "trip_type")),
        TaskTypeSpec(TaskType.EQUIPMENT_USED, "Equipment Used", False, ("equipment", "loading_ref_no")),
        TaskTypeSpec(TaskType.CREW_SIGN_ON, "Crew Sign On", False, ("crew_name", "rank")),
        TaskTypeSpec(TaskType.CREW_SIGN_OFF, "Crew Sign Off", False, ("crew_name", "rank")),
        TaskTypeSpec(TaskType.CREW_MISCELLANEOUS, "Crew Miscellaneous", True, ("description",)),
        TaskTypeSpec(TaskType.MEDICAL_ASSISTANCE, "Medical Assistance", False, ("crew_name", "reason")),
        TaskTypeSpec(TaskType.CONSIGNMENT_IMPORT, "Consignment Import", True, ("awb_no", "description")),
        TaskTypeSpec(TaskType.CONSIGNMENT_EXPORT, "Consignment Export", True, ("awb_no", "description")),
        TaskTypeSpec(TaskType.THIRD_PARTY, "Third Party", True, ("supplier_name", "description")),
        TaskTypeSpec(TaskType.FRESH_WATER, "Fresh Water", True, ("barge_name",)),
        TaskTypeSpec(TaskType.TECHNICIAN_SURVEYOR, "Technician / Surveyor", False, ("name", "company_name")),
        TaskTypeSpec(TaskType.LANDING_ITEMS, "Landing Items", True, ("item_name",)),
        TaskTypeSpec(TaskType.OTHER_SERVICE, "Other Service", True, ("service_name",)),
        TaskTypeSpec(TaskType.AGENCY_REMUNERATION, "Agency Remuneration", False, ()),
        TaskTypeSpec(TaskType.VISA_SERVICE, "Visa Service", False, ("crew_name", "visa_type")),
    )
}


def parse_task_type(value: str | TaskType) -> TaskType:
    """
    Resolve a task type from its wire value.

    Raises:
        UnknownTaskTypeError: If the value names no task type.
    """
    if isinstance(value, TaskType):
        return value
    try:
        return TaskType(value)
    except ValueError:
        raise UnknownTaskTypeError(str(value)) from None


def get_task_type_spec(task_type: str | TaskType) -> TaskTypeSpec:
    """Return the billing metadata for a task type."""
    return _SPECS[parse_task_type(task_type)]


def all_task_type_specs() -> tuple[TaskTypeSpec, ...]:
    """All specs in declaration order."""
    return tuple(_SPECS[t] for t in TaskType)


def build_remarks(spec: TaskTypeSpec, attributes: Mapping[str, Any] | None, fallback: str | None) -> str:
    """Join the task type's remark attributes, falling back to the record remarks."""
    attributes = attributes or {}
    parts = [
        str(attributes[key]).strip()
        for key in spec.remarks_attributes
        if attributes.get(key) not in (None, "")
    ]
    if parts:
        return " - ".join(parts)
    return (fallback or spec.display_name).strip()


def build_detail_line(spec: TaskTypeSpec, record: Any) -> DetailLine:
    """
    Map a task record onto the values of its DebitNoteDetail.

    Charge, GL account and tax fields are copied verbatim.  Quantity and unit
    price follow ``spec.uses_quantity``; a record without a quantity is
    billed flat even for quantity-based types.

    Args:
        spec: Metadata of the record's task type.
        record: Any object exposing the TaskRecord billing fields.
    """
    quantity = record.quantity
    unit_price = record.unit_price
    if not spec.uses_quantity or quantity is None or unit_price is None:
        quantity = Decimal("1")
        unit_price = record.total_amount

    return DetailLine(
        charge_id=record.charge_id,
        gl_account_id=record.gl_account_id,
        quantity=quantity,
        unit_price=unit_price,
        total_amount=record.total_amount,
        tax_id=record.tax_id,
        tax_percentage=record.tax_percentage or Decimal("0"),
        tax_amount=record.tax_amount,
        total_after_tax=record.total_after_tax,
        remarks=build_remarks(spec, record.attributes, record.remarks),
    )
