"""
Document numbering collaborator.

Assigning a human-readable debit note number belongs to the ERP's document
numbering subsystem.  The kernel only depends on the
``DocumentNumberAllocator`` protocol; ``SequenceDocumentNumberAllocator`` is
the default, backed by a locked counter row in the same transaction so a
rolled-back billing operation does not burn a number.
"""

from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from agency_kernel.domain.clock import Clock, SystemClock
from agency_kernel.domain.task_types import TaskType
from agency_kernel.logging_config import get_logger
from agency_kernel.services.sequence_service import SequenceService

logger = get_logger("services.document_numbering")

DEFAULT_FORMAT = "DN{seq:06d}"


class DocumentNumberAllocator(Protocol):
    """Allocates the next debit note number for a job order and task type."""

    def allocate_document_number(self, job_order_id: UUID, task_type: TaskType) -> str:
        ...


class SequenceDocumentNumberAllocator:
    """
    Numbers debit notes from a named sequence.

    ``number_format`` is a ``str.format`` template with ``seq`` (int),
    ``year`` (int) and ``task_type`` (wire value) available, e.g.
    ``"DN{year}-{seq:05d}"``.
    """

    def __init__(
        self,
        session: Session,
        number_format: str = DEFAULT_FORMAT,
        sequence_name: str = SequenceService.DEBIT_NOTE,
        clock: Clock | None = None,
    ):
        self._sequences = SequenceService(session)
        self._number_format = number_format
        self._sequence_name = sequence_name
        self._clock = clock or SystemClock()

    def allocate_document_number(self, job_order_id: UUID, task_type: TaskType) -> str:
        seq = self._sequences.next_value(self._sequence_name)
        number = self._number_format.format(
            seq=seq,
            year=self._clock.today().year,
            task_type=TaskType(task_type).value,
        )
        logger.debug(
            "document_number_allocated",
            extra={
                "job_order_id": str(job_order_id),
                "task_type": TaskType(task_type).value,
                "debit_note_no": number,
            },
        )
        return number
