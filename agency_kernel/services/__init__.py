"""Stores for the agency billing kernel (write side, flush-only)."""

from agency_kernel.services.debit_note_store import DebitNoteStore
from agency_kernel.services.document_numbering import (
    DocumentNumberAllocator,
    SequenceDocumentNumberAllocator,
)
from agency_kernel.services.sequence_service import SequenceService
from agency_kernel.services.task_record_store import TaskRecordStore

__all__ = [
    "DebitNoteStore",
    "DocumentNumberAllocator",
    "SequenceDocumentNumberAllocator",
    "SequenceService",
    "TaskRecordStore",
]
