"""
Pytest fixtures for the agency billing test suite.

Provides:
- A fresh in-memory SQLite database per test (file-backed engines for the
  concurrency tests live in tests/concurrency)
- Deterministic actor / job-order ids and clock
- Task record factories and service fixtures
- Captured structured logs
"""

import json
import logging
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session, sessionmaker

from agency_kernel.db.engine import build_engine, create_tables
from agency_kernel.domain.clock import DeterministicClock
from agency_kernel.domain.task_types import TaskType
from agency_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from agency_kernel.services.task_record_store import TaskRecordStore
from agency_services import AggregationService, DetailService, TaskRecordService, UnlinkService

TEST_ACTOR_ID = UUID("11111111-1111-1111-1111-111111111111")
JOB_ORDER_ID = UUID("22222222-2222-2222-2222-222222222222")
OTHER_JOB_ORDER_ID = UUID("33333333-3333-3333-3333-333333333333")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture agency_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, aggregation):
            aggregation.generate_or_attach(...)
            assert any(r["message"] == "task_records_linked" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("agency_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# =============================================================================
# Identities and time
# =============================================================================


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def job_order_id() -> UUID:
    return JOB_ORDER_ID


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def aggregation(session, deterministic_clock) -> AggregationService:
    return AggregationService(session, clock=deterministic_clock)


@pytest.fixture
def unlink(session, deterministic_clock) -> UnlinkService:
    return UnlinkService(session, clock=deterministic_clock)


@pytest.fixture
def details(session, deterministic_clock) -> DetailService:
    return DetailService(session, clock=deterministic_clock)


@pytest.fixture
def task_records(session, deterministic_clock) -> TaskRecordService:
    return TaskRecordService(session, clock=deterministic_clock)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def create_record(session, actor_id, job_order_id):
    """
    Create and commit an unbilled task record; returns its TaskRecordInfo.

    ``total`` is the total before tax; ``tax`` defaults to zero so the
    record's total_after_tax equals ``total``.
    """

    def _create(
        total: Decimal | str = "100.00",
        tax: Decimal | str = "0",
        task_type: TaskType = TaskType.EQUIPMENT_USED,
        job_order: UUID | None = None,
        **fields,
    ):
        fields.setdefault("charge_id", 501)
        fields.setdefault("gl_account_id", 4100)
        record = TaskRecordStore(session).create_record(
            job_order or job_order_id,
            task_type,
            actor_id,
            total_amount=Decimal(total),
            tax_amount=Decimal(tax),
            **fields,
        )
        session.commit()
        return record

    return _create


@pytest.fixture
def fresh_record(session):
    """Re-read a task record from the database as a DTO."""

    def _get(record_id: UUID):
        session.expire_all()
        return TaskRecordStore(session).get(record_id)

    return _get


def new_id() -> UUID:
    return uuid4()
