"""Selectors for the agency billing kernel (read side)."""

from agency_kernel.selectors.debit_note_selector import DebitNoteSelector, to_debit_note_view
from agency_kernel.selectors.task_record_selector import TaskRecordSelector, to_task_record_info

__all__ = [
    "DebitNoteSelector",
    "TaskRecordSelector",
    "to_debit_note_view",
    "to_task_record_info",
]
