"""
Translation of database race symptoms into OptimisticLockError by the stores.

Constraint violations and serialization failures are raised through a
patched session so both the SQLite and the PostgreSQL wordings are covered.
"""

from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from agency_kernel.domain.task_types import TaskType
from agency_kernel.exceptions import ConcurrencyError, OptimisticLockError
from agency_kernel.services.debit_note_store import DebitNoteStore
from agency_kernel.services.task_record_store import TaskRecordStore


class DriverError(Exception):
    """Stands in for a DB-API exception; psycopg2 exposes the SQLSTATE as pgcode."""

    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


def _raiser(exc):
    def _raise(*args, **kwargs):
        raise exc

    return _raise


def _integrity(message):
    return IntegrityError("INSERT", {}, DriverError(message))


def _operational(pgcode):
    return OperationalError("SELECT ... FOR UPDATE", {}, DriverError("could not serialize access", pgcode))


@pytest.fixture
def notes(session):
    return DebitNoteStore(session)


class TestConstraintViolationsOnFlush:

    @pytest.mark.parametrize(
        "message",
        [
            "UNIQUE constraint failed: debit_note_details.source_task_record_id",
            'duplicate key value violates unique constraint "uq_debit_note_detail_source"',
            "UNIQUE constraint failed: debit_notes.debit_note_no",
            'duplicate key value violates unique constraint "uq_debit_note_no"',
            "UNIQUE constraint failed: debit_note_history.debit_note_id, debit_note_history.revision",
        ],
    )
    def test_billing_race_becomes_lock_conflict(
        self, session, notes, monkeypatch, job_order_id, actor_id, message
    ):
        monkeypatch.setattr(session, "flush", _raiser(_integrity(message)))

        with pytest.raises(OptimisticLockError) as exc_info:
            notes.create(job_order_id, TaskType.EQUIPMENT_USED, "DN000001", actor_id)

        assert exc_info.value.entity_type == "DebitNote"
        assert isinstance(exc_info.value.__cause__, IntegrityError)

    def test_other_integrity_errors_propagate(self, session, notes, monkeypatch, job_order_id, actor_id):
        error = _integrity("NOT NULL constraint failed: debit_notes.job_order_id")
        monkeypatch.setattr(session, "flush", _raiser(error))

        with pytest.raises(IntegrityError) as exc_info:
            notes.create(job_order_id, TaskType.EQUIPMENT_USED, "DN000001", actor_id)

        assert exc_info.value is error

    def test_serialization_failure_on_flush(self, session, create_record, monkeypatch, actor_id):
        record = create_record()
        monkeypatch.setattr(session, "flush", _raiser(_operational("40001")))

        with pytest.raises(ConcurrencyError) as exc_info:
            TaskRecordStore(session).update_billing_link(record.id, uuid4(), "DN000001", actor_id)

        assert exc_info.value.entity_id == str(record.id)


class TestSerializationFailuresOnLockingReads:

    @pytest.mark.parametrize("pgcode", ["40001", "40P01"])
    def test_load_by_ids(self, session, monkeypatch, pgcode):
        monkeypatch.setattr(session, "execute", _raiser(_operational(pgcode)))

        with pytest.raises(OptimisticLockError) as exc_info:
            TaskRecordStore(session).load_by_ids([uuid4()])

        assert exc_info.value.entity_type == "TaskRecord"
        assert isinstance(exc_info.value.__cause__, OperationalError)

    def test_debit_note_reads(self, session, notes, monkeypatch, job_order_id):
        monkeypatch.setattr(session, "execute", _raiser(_operational("40001")))
        note_id = uuid4()

        with pytest.raises(OptimisticLockError) as exc_info:
            notes.get(job_order_id, TaskType.EQUIPMENT_USED, note_id, for_update=True)
        assert exc_info.value.entity_id == str(note_id)

        with pytest.raises(OptimisticLockError):
            notes.find_by_no("DN000001", job_order_id, TaskType.EQUIPMENT_USED, for_update=True)
        with pytest.raises(OptimisticLockError):
            notes.get_many([note_id], for_update=True)
        with pytest.raises(OptimisticLockError):
            TaskRecordStore(session).list_by_debit_note(note_id, for_update=True)

    def test_other_operational_errors_propagate(self, session, monkeypatch):
        error = _operational(None)
        monkeypatch.setattr(session, "execute", _raiser(error))

        with pytest.raises(OperationalError) as exc_info:
            TaskRecordStore(session).load_by_ids([uuid4()])

        assert exc_info.value is error
