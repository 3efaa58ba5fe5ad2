"""
HTTP façade tests: envelope shape, status codes and camelCase payloads.

The app is wired to the per-test in-memory database through
``session_factory``; every request gets its own session.
"""

from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from agency_api import create_app
from agency_config import BillingConfig, BillingRules, TaskTypeSettings
from agency_kernel.db.engine import build_engine, create_tables
from agency_kernel.domain.task_types import TaskType
from agency_kernel.services import SequenceDocumentNumberAllocator
from agency_services import AggregationService

EQUIPMENT = TaskType.EQUIPMENT_USED.value


@pytest.fixture
def make_client(session_factory, deterministic_clock):
    def _make(
        config: BillingConfig | None = None,
        factory: sessionmaker | None = None,
        raise_server_exceptions: bool = True,
    ) -> TestClient:
        app = create_app(
            config=config or BillingConfig.with_defaults(),
            session_factory=factory or session_factory,
            clock=deterministic_clock,
        )
        return TestClient(app, raise_server_exceptions=raise_server_exceptions)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def file_session_factory(tmp_path):
    """Own connection per session, so two requests can interleave."""
    engine = build_engine(f"sqlite:///{tmp_path / 'api.db'}")
    create_tables(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def headers(actor_id):
    return {"X-Actor-Id": str(actor_id)}


def _notes_url(job_order_id, task_type=EQUIPMENT):
    return f"/jobOrders/{job_order_id}/taskTypes/{task_type}/debitNotes"


def _records_url(job_order_id, task_type=EQUIPMENT):
    return f"/jobOrders/{job_order_id}/taskTypes/{task_type}/taskRecords"


def _post_record(client, headers, job_order_id, total="100.00", **fields):
    body = {"chargeId": 501, "glAccountId": 4100, "totalAmount": total, **fields}
    response = client.post(_records_url(job_order_id), json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _bill(client, headers, job_order_id, record_ids, debit_note_no=None):
    body = {"taskRecordIds": [str(i) for i in record_ids]}
    if debit_note_no is not None:
        body["debitNoteNo"] = debit_note_no
    return client.post(_notes_url(job_order_id), json=body, headers=headers)


class TestHealth:

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-Id": "req-42"})

        assert response.headers["X-Request-Id"] == "req-42"


class TestGenerateDebitNote:

    def test_create(self, client, headers, job_order_id):
        first = _post_record(client, headers, job_order_id, "100.00", attributes={"equipment": "Crane"})
        second = _post_record(client, headers, job_order_id, "50.00")

        response = _bill(client, headers, job_order_id, [first["taskRecordId"], second["taskRecordId"]])

        assert response.status_code == 200
        body = response.json()
        assert body["result"] == 1
        assert body["outcome"] == "created"
        assert body["message"] == "Debit note DN000001 created"
        note = body["data"]
        assert note["debitNoteNo"] == "DN000001"
        assert note["taskTypeId"] == EQUIPMENT
        assert Decimal(note["totalAfterTax"]) == Decimal("150.00")
        assert [d["itemNo"] for d in note["details"]] == [1, 2]
        assert isinstance(note["details"][0]["totalAmount"], str)
        assert "warning" not in body

    def test_append_by_number(self, client, headers, job_order_id):
        first = _post_record(client, headers, job_order_id, "100.00")
        created = _bill(client, headers, job_order_id, [first["taskRecordId"]]).json()["data"]
        late = _post_record(client, headers, job_order_id, "25.00")

        body = _bill(client, headers, job_order_id, [late["taskRecordId"]], created["debitNoteNo"]).json()

        assert body["outcome"] == "appended"
        assert body["data"]["debitNoteId"] == created["debitNoteId"]
        assert Decimal(body["data"]["totalAfterTax"]) == Decimal("125.00")

    def test_rebilling_returns_existing(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        _bill(client, headers, job_order_id, [record["taskRecordId"]])

        body = _bill(client, headers, job_order_id, [record["taskRecordId"]]).json()

        assert body["result"] == 1
        assert body["outcome"] == "existing"
        assert body["data"]["debitNoteNo"] == "DN000001"

    def test_inconsistent_state_carries_warning(self, client, headers, job_order_id):
        a = _post_record(client, headers, job_order_id)
        b = _post_record(client, headers, job_order_id)
        _bill(client, headers, job_order_id, [a["taskRecordId"]])
        _bill(client, headers, job_order_id, [b["taskRecordId"]])

        body = _bill(client, headers, job_order_id, [a["taskRecordId"], b["taskRecordId"]]).json()

        assert body["outcome"] == "existing"
        assert body["warning"] == {
            "code": "INCONSISTENT_STATE",
            "debitNoteNos": ["DN000001", "DN000002"],
        }
        assert body["data"]["debitNoteNo"] == "DN000001"

    def test_strict_mode_rejects_inconsistent_state(self, make_client, headers, job_order_id):
        client = make_client(BillingConfig(billing=BillingRules(strict_inconsistent_billing=True)))
        a = _post_record(client, headers, job_order_id)
        b = _post_record(client, headers, job_order_id)
        _bill(client, headers, job_order_id, [a["taskRecordId"]])
        _bill(client, headers, job_order_id, [b["taskRecordId"]])

        response = _bill(client, headers, job_order_id, [a["taskRecordId"], b["taskRecordId"]])

        assert response.status_code == 400
        assert response.json()["code"] == "INCONSISTENT_BILLING"

    def test_empty_selection(self, client, headers, job_order_id):
        response = _bill(client, headers, job_order_id, [])

        assert response.status_code == 400
        assert response.json() == {
            "result": 0,
            "message": response.json()["message"],
            "code": "EMPTY_SELECTION",
        }

    def test_unknown_record(self, client, headers, job_order_id):
        response = _bill(client, headers, job_order_id, [uuid4()])

        assert response.status_code == 404
        assert response.json()["code"] == "TASK_RECORD_NOT_FOUND"

    def test_record_of_other_job_order(self, client, headers, job_order_id):
        record = _post_record(client, headers, uuid4())

        response = _bill(client, headers, job_order_id, [record["taskRecordId"]])

        assert response.status_code == 400
        assert response.json()["code"] == "CROSS_SCOPE_SELECTION"

    def test_malformed_body(self, client, headers, job_order_id):
        response = client.post(_notes_url(job_order_id), json={"ids": []}, headers=headers)

        assert response.status_code == 400
        body = response.json()
        assert body["result"] == 0
        assert body["code"] == "VALIDATION_ERROR"
        assert "taskRecordIds" in body["message"]


class TestTaskTypePath:

    def test_unknown_task_type(self, client, job_order_id):
        response = client.get(_notes_url(job_order_id, "Teleport"))

        assert response.status_code == 400
        assert response.json()["code"] == "UNKNOWN_TASK_TYPE"

    def test_disabled_task_type(self, make_client, job_order_id):
        client = make_client(BillingConfig(task_types=TaskTypeSettings(disabled=(EQUIPMENT,))))

        response = client.get(_notes_url(job_order_id))

        assert response.status_code == 400
        assert response.json()["code"] == "UNKNOWN_TASK_TYPE"


class TestActorHeader:

    def test_invalid_actor_rejected(self, client, job_order_id):
        response = _bill(client, {"X-Actor-Id": "not-a-uuid"}, job_order_id, [uuid4()])

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_missing_actor_uses_system_actor(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        note = _bill(client, {}, job_order_id, [record["taskRecordId"]]).json()["data"]

        history = client.get(f"{_notes_url(job_order_id)}/{note['debitNoteId']}/history").json()["data"]

        assert history[0]["actorId"] == str(BillingConfig().billing.system_actor_id)


class TestReadDebitNotes:

    def test_get_returns_bare_view(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        note = _bill(client, headers, job_order_id, [record["taskRecordId"]]).json()["data"]

        response = client.get(f"{_notes_url(job_order_id)}/{note['debitNoteId']}")

        assert response.status_code == 200
        body = response.json()
        assert "result" not in body
        assert body["debitNoteNo"] == note["debitNoteNo"]
        assert body["details"][0]["sourceTaskRecordId"] == record["taskRecordId"]

    def test_get_outside_scope_is_404(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        note = _bill(client, headers, job_order_id, [record["taskRecordId"]]).json()["data"]

        response = client.get(f"{_notes_url(uuid4())}/{note['debitNoteId']}")

        assert response.status_code == 404
        assert response.json()["code"] == "DEBIT_NOTE_NOT_FOUND"

    def test_list(self, client, headers, job_order_id):
        for _ in range(2):
            record = _post_record(client, headers, job_order_id)
            _bill(client, headers, job_order_id, [record["taskRecordId"]])

        body = client.get(_notes_url(job_order_id)).json()

        assert body["result"] == 1
        assert sorted(n["debitNoteNo"] for n in body["data"]) == ["DN000001", "DN000002"]

    def test_history(self, client, headers, job_order_id):
        first = _post_record(client, headers, job_order_id)
        note = _bill(client, headers, job_order_id, [first["taskRecordId"]]).json()["data"]
        second = _post_record(client, headers, job_order_id)
        _bill(client, headers, job_order_id, [second["taskRecordId"]], note["debitNoteNo"])

        entries = client.get(f"{_notes_url(job_order_id)}/{note['debitNoteId']}/history").json()["data"]

        assert [(e["revision"], e["action"]) for e in entries] == [(1, "created"), (2, "appended")]
        assert entries[1]["detailCount"] == 2

    def test_task_summary(self, client, headers, job_order_id):
        billed = _post_record(client, headers, job_order_id)
        _post_record(client, headers, job_order_id)
        _bill(client, headers, job_order_id, [billed["taskRecordId"]])

        summary = client.get(f"/jobOrders/{job_order_id}/taskSummary").json()["data"]

        equipment = next(s for s in summary if s["taskTypeId"] == EQUIPMENT)
        assert equipment == {
            "taskTypeId": EQUIPMENT,
            "displayName": "Equipment Used",
            "total": 2,
            "billed": 1,
            "unbilled": 1,
        }
        assert len(summary) == len(TaskType)


class TestDeleteDebitNote:

    def test_delete_unbills_records(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        note = _bill(client, headers, job_order_id, [record["taskRecordId"]]).json()["data"]

        response = client.delete(f"{_notes_url(job_order_id)}/{note['debitNoteId']}", headers=headers)

        assert response.status_code == 200
        assert response.json() == {
            "result": 1,
            "message": "Debit note DN000001 deleted, 1 record(s) unbilled",
        }
        unbilled = client.get(_records_url(job_order_id), params={"billed": "false"}).json()["data"]
        assert [r["taskRecordId"] for r in unbilled] == [record["taskRecordId"]]
        assert unbilled[0]["debitNoteNo"] is None

    def test_stale_version_conflicts(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        note = _bill(client, headers, job_order_id, [record["taskRecordId"]]).json()["data"]

        response = client.delete(
            f"{_notes_url(job_order_id)}/{note['debitNoteId']}",
            params={"expectedEditVersion": note["editVersion"] - 1},
            headers=headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "OPTIMISTIC_LOCK_CONFLICT"

    def test_locked_note_rejected(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        note = _bill(client, headers, job_order_id, [record["taskRecordId"]]).json()["data"]
        url = f"{_notes_url(job_order_id)}/{note['debitNoteId']}"
        client.put(f"{url}/lock", json={"isLocked": True}, headers=headers)

        response = client.delete(url, headers=headers)

        assert response.status_code == 400
        assert response.json()["code"] == "DEBIT_NOTE_LOCKED"


class TestDetailEndpoints:

    @pytest.fixture
    def note_url(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id, "1000.00")
        note = _bill(client, headers, job_order_id, [record["taskRecordId"]]).json()["data"]
        return f"{_notes_url(job_order_id)}/{note['debitNoteId']}"

    def test_service_charge(self, client, headers, note_url):
        body = client.put(
            f"{note_url}/details/1", json={"serviceChargePercentage": "10"}, headers=headers
        ).json()

        assert body["message"] == "Item 1 updated"
        details = body["data"]["details"]
        assert [d["isServiceCharge"] for d in details] == [False, True]
        assert Decimal(details[1]["totalAmount"]) == Decimal("100.00")
        assert Decimal(body["data"]["totalAfterTax"]) == Decimal("1100.00")

    def test_add_charge_line(self, client, headers, note_url):
        body = client.post(
            f"{note_url}/details",
            json={"chargeId": 9, "glAccountId": 4300, "quantity": "2", "unitPrice": "30"},
            headers=headers,
        ).json()

        assert body["data"]["details"][-1]["itemNo"] == 2
        assert body["data"]["details"][-1]["sourceTaskRecordId"] is None
        assert Decimal(body["data"]["totalAfterTax"]) == Decimal("1060.00")

    def test_remove_last_line_deletes_note(self, client, headers, note_url):
        body = client.post(f"{note_url}/details:remove", json={"itemNos": [1]}, headers=headers).json()

        assert body == {
            "result": 1,
            "message": "Debit note DN000001 deleted",
            "debitNoteDeleted": True,
        }
        assert client.get(note_url).status_code == 404

    def test_remove_requires_items(self, client, headers, note_url):
        response = client.post(f"{note_url}/details:remove", json={"itemNos": []}, headers=headers)

        assert response.status_code == 400

    def test_unknown_item(self, client, headers, note_url):
        response = client.put(f"{note_url}/details/7", json={"remarks": "x"}, headers=headers)

        assert response.status_code == 404
        assert response.json()["code"] == "DEBIT_NOTE_DETAIL_NOT_FOUND"

    def test_lock_and_unlock(self, client, headers, note_url):
        locked = client.put(f"{note_url}/lock", json={"isLocked": True}, headers=headers).json()
        rejected = client.put(f"{note_url}/details/1", json={"remarks": "x"}, headers=headers)
        unlocked = client.put(f"{note_url}/lock", json={"isLocked": False}, headers=headers).json()

        assert locked["message"] == "Debit note DN000001 locked"
        assert locked["data"]["isLocked"] is True
        assert rejected.status_code == 400
        assert unlocked["data"]["isLocked"] is False


class TestTaskRecordEndpoints:

    def test_create_and_list(self, client, headers, job_order_id):
        created = _post_record(
            client, headers, job_order_id, "80.00",
            serviceDate="2024-03-01", attributes={"equipment": "Forklift"},
        )

        listed = client.get(_records_url(job_order_id)).json()["data"]

        assert [r["taskRecordId"] for r in listed] == [created["taskRecordId"]]
        assert listed[0]["serviceDate"] == "2024-03-01"
        assert listed[0]["attributes"] == {"equipment": "Forklift"}
        assert listed[0]["editVersion"] == 1

    def test_create_rejects_inconsistent_amounts(self, client, headers, job_order_id):
        response = client.post(
            _records_url(job_order_id),
            json={
                "chargeId": 501, "glAccountId": 4100,
                "totalAmount": "100.00", "taxAmount": "5.00", "totalAfterTax": "99.00",
            },
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"

    def test_update(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)

        body = client.put(
            f"{_records_url(job_order_id)}/{record['taskRecordId']}",
            json={"expectedEditVersion": 1, "remarks": "late night"},
            headers=headers,
        ).json()

        assert body["data"]["remarks"] == "late night"
        assert body["data"]["editVersion"] == 2

    def test_update_stale(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        _bill(client, headers, job_order_id, [record["taskRecordId"]])

        response = client.put(
            f"{_records_url(job_order_id)}/{record['taskRecordId']}",
            json={"expectedEditVersion": 1, "remarks": "too late"},
            headers=headers,
        )

        assert response.status_code == 409

    def test_delete(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)

        response = client.delete(
            f"{_records_url(job_order_id)}/{record['taskRecordId']}",
            params={"expectedEditVersion": 1},
            headers=headers,
        )

        assert response.json() == {"result": 1, "message": "Task record deleted"}
        assert client.get(_records_url(job_order_id)).json()["data"] == []

    def test_delete_billed_rejected(self, client, headers, job_order_id):
        record = _post_record(client, headers, job_order_id)
        _bill(client, headers, job_order_id, [record["taskRecordId"]])

        response = client.delete(
            f"{_records_url(job_order_id)}/{record['taskRecordId']}",
            params={"expectedEditVersion": 2},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "TASK_RECORD_BILLED"


class TestConcurrentBilling:

    def test_interleaved_billing_conflicts(
        self,
        make_client,
        file_session_factory,
        monkeypatch,
        headers,
        deterministic_clock,
        job_order_id,
        actor_id,
    ):
        """Another biller commits after this request read the record as unbilled."""
        client = make_client(factory=file_session_factory)
        record_id = UUID(_post_record(client, headers, job_order_id)["taskRecordId"])
        allocate = SequenceDocumentNumberAllocator.allocate_document_number

        def allocate_after_rival(allocator, job_order, task_type):
            monkeypatch.setattr(SequenceDocumentNumberAllocator, "allocate_document_number", allocate)
            rival = file_session_factory()
            try:
                AggregationService(rival, clock=deterministic_clock).generate_or_attach(
                    job_order, task_type, [record_id], actor_id
                )
            finally:
                rival.close()
            return "DN000099"

        monkeypatch.setattr(
            SequenceDocumentNumberAllocator, "allocate_document_number", allocate_after_rival
        )

        response = _bill(client, headers, job_order_id, [record_id])

        assert response.status_code == 409
        body = response.json()
        assert set(body) == {"result", "message", "code"}
        assert body["result"] == 0
        assert body["code"] == "OPTIMISTIC_LOCK_CONFLICT"
        notes = client.get(_notes_url(job_order_id)).json()["data"]
        assert [n["debitNoteNo"] for n in notes] == ["DN000001"]
        assert [d["sourceTaskRecordId"] for d in notes[0]["details"]] == [str(record_id)]


class TestUnexpectedFailures:

    def test_unhandled_error_uses_envelope(
        self, make_client, monkeypatch, captured_logs, headers, job_order_id
    ):
        client = make_client(raise_server_exceptions=False)
        record = _post_record(client, headers, job_order_id)

        def fail(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(AggregationService, "generate_or_attach", fail)

        response = _bill(client, headers, job_order_id, [record["taskRecordId"]])

        assert response.status_code == 500
        assert response.json() == {
            "result": 0,
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
        }
        failures = [r for r in captured_logs() if r["message"] == "request_failed"]
        assert failures[-1]["error_type"] == "RuntimeError"
        assert failures[-1]["exc_message"] == "disk full"
