"""
Module: agency_kernel.selectors.task_record_selector
Responsibility: Read-only task record queries: the records billed on a note
    and the per-task-type counts behind the job-order checklist badges.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import func, select

from agency_kernel.domain.dtos import TaskRecordInfo, TaskTypeSummary
from agency_kernel.domain.task_types import TaskType
from agency_kernel.models.task_record import TaskRecord
from agency_kernel.selectors.base import BaseSelector


def to_task_record_info(record: TaskRecord) -> TaskRecordInfo:
    """Convert ORM TaskRecord to its DTO."""
    return TaskRecordInfo(
        id=record.id,
        job_order_id=record.job_order_id,
        task_type=TaskType(record.task_type),
        reference_no=record.reference_no,
        service_date=record.service_date,
        charge_id=record.charge_id,
        gl_account_id=record.gl_account_id,
        quantity=record.quantity,
        unit_price=record.unit_price,
        total_amount=record.total_amount,
        tax_id=record.tax_id,
        tax_percentage=record.tax_percentage,
        tax_amount=record.tax_amount,
        total_after_tax=record.total_after_tax,
        remarks=record.remarks,
        attributes=dict(record.attributes or {}),
        debit_note_id=record.debit_note_id,
        debit_note_no=record.debit_note_no,
        edit_version=record.edit_version,
        created_by_id=record.created_by_id,
        created_at=record.created_at,
        updated_by_id=record.updated_by_id,
        updated_at=record.updated_at,
    )


class TaskRecordSelector(BaseSelector[TaskRecord]):
    """Read-only queries over task records."""

    def list_by_debit_note(self, debit_note_id: UUID) -> list[TaskRecordInfo]:
        stmt = (
            select(TaskRecord)
            .where(TaskRecord.debit_note_id == debit_note_id)
            .order_by(TaskRecord.created_at, TaskRecord.id)
        )
        return [to_task_record_info(r) for r in self.session.execute(stmt).scalars()]

    def task_summary(self, job_order_id: UUID) -> list[TaskTypeSummary]:
        """
        Total and billed record counts per task type of a job order.

        Every task type is listed, in declaration order, with zero counts
        where the job order has no records of that type.
        """
        rows = self.session.execute(
            select(
                TaskRecord.task_type,
                func.count(TaskRecord.id),
                func.count(TaskRecord.debit_note_id),
            )
            .where(TaskRecord.job_order_id == job_order_id)
            .group_by(TaskRecord.task_type)
        ).all()
        counts = {task_type: (total, billed) for task_type, total, billed in rows}

        return [
            TaskTypeSummary(
                task_type=task_type,
                total=counts.get(task_type.value, (0, 0))[0],
                billed=counts.get(task_type.value, (0, 0))[1],
            )
            for task_type in TaskType
        ]
