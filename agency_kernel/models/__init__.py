"""ORM models for the agency billing kernel."""

from agency_kernel.models.debit_note import DebitNote, DebitNoteDetail, DebitNoteHistory
from agency_kernel.models.sequence import SequenceCounter
from agency_kernel.models.task_record import TaskRecord

__all__ = [
    "DebitNote",
    "DebitNoteDetail",
    "DebitNoteHistory",
    "SequenceCounter",
    "TaskRecord",
]
