"""
Module: agency_services.task_record_service
Responsibility:
    Business-field CRUD on task records for the job-order checklist, scoped
    to a job order and task type.  Wraps TaskRecordStore with a transaction
    boundary; never touches the billing link.

Architecture:
    Services layer -- each mutating method commits on success and rolls
    back on failure.

Failure modes:
    - TaskRecordNotFoundError: unknown id, or a record of another job order
      or task type.
    - TaskRecordBilledError: deleting or repricing a billed record.
    - UnknownTaskTypeError: unknown or disabled task type.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from agency_kernel.domain.dtos import TaskRecordInfo
from agency_kernel.domain.task_types import TaskType
from agency_kernel.exceptions import TaskRecordNotFoundError
from agency_kernel.logging_config import LogContext
from agency_services._billing_helpers import BillingServiceBase


class TaskRecordService(BillingServiceBase):
    """Checklist-facing task record CRUD."""

    def _scoped(self, job_order_id: UUID, task_type: TaskType, record_id: UUID) -> TaskRecordInfo:
        record = self._records.get(record_id)
        if record.job_order_id != job_order_id or record.task_type != task_type:
            raise TaskRecordNotFoundError([str(record_id)])
        return record

    def list_records(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        billed: bool | None = None,
    ) -> list[TaskRecordInfo]:
        return self._records.list_by_job_order(
            job_order_id, self._resolve_task_type(task_type), billed=billed
        )

    def create_record(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        actor_id: UUID,
        **fields: Any,
    ) -> TaskRecordInfo:
        """Create an unbilled record; ``fields`` are TaskRecordStore.create_record kwargs."""
        with LogContext.bind(actor_id=actor_id, job_order_id=job_order_id, task_type=task_type):
            try:
                record = self._records.create_record(
                    job_order_id, self._resolve_task_type(task_type), actor_id, **fields
                )
                self._session.commit()
            except Exception as exc:
                self._rollback("create_record", exc)
                raise
        return record

    def update_record(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        record_id: UUID,
        expected_edit_version: int,
        actor_id: UUID,
        **changes: Any,
    ) -> TaskRecordInfo:
        with LogContext.bind(actor_id=actor_id, job_order_id=job_order_id, task_type=task_type):
            try:
                self._scoped(job_order_id, self._resolve_task_type(task_type), record_id)
                record = self._records.update_record(
                    record_id, expected_edit_version, actor_id, **changes
                )
                self._session.commit()
            except Exception as exc:
                self._rollback("update_record", exc)
                raise
        return record

    def delete_record(
        self,
        job_order_id: UUID,
        task_type: TaskType | str,
        record_id: UUID,
        expected_edit_version: int,
        actor_id: UUID,
    ) -> None:
        with LogContext.bind(actor_id=actor_id, job_order_id=job_order_id, task_type=task_type):
            try:
                self._scoped(job_order_id, self._resolve_task_type(task_type), record_id)
                self._records.delete_record(record_id, expected_edit_version)
                self._session.commit()
            except Exception as exc:
                self._rollback("delete_record", exc)
                raise
