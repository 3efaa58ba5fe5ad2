"""
Tests for engine initialization and the transactional session scope.
"""

import pytest
from sqlalchemy import inspect, select

from agency_kernel.db import engine as db_engine
from agency_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
    reset_engine,
    session_scope,
)
from agency_kernel.models.sequence import SequenceCounter


@pytest.fixture
def module_engine():
    engine = init_engine_from_url("sqlite:///:memory:")
    create_tables()
    yield engine
    reset_engine()


class TestModuleEngine:

    def test_uninitialized(self):
        reset_engine()

        with pytest.raises(RuntimeError, match="not initialized"):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session_factory()
        assert is_postgres() is False

    def test_init_and_reset(self, module_engine):
        assert get_engine() is module_engine
        assert module_engine.dialect.name == "sqlite"
        assert is_postgres() is False
        assert get_session_factory().kw["expire_on_commit"] is False

        reset_engine()

        assert db_engine._engine is None

    def test_tables_created_and_dropped(self, module_engine):
        tables = set(inspect(module_engine).get_table_names())
        assert {"task_records", "debit_notes", "debit_note_details", "debit_note_history"} <= tables

        drop_tables()

        assert inspect(module_engine).get_table_names() == []


class TestSessionScope:

    def test_commits_on_success(self, module_engine):
        with session_scope() as session:
            session.add(SequenceCounter(name="scope_test", current_value=7))

        with session_scope() as session:
            counter = session.execute(
                select(SequenceCounter).where(SequenceCounter.name == "scope_test")
            ).scalar_one()
            assert counter.current_value == 7

    def test_rolls_back_on_error(self, module_engine):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(SequenceCounter(name="scope_test", current_value=7))
                session.flush()
                raise RuntimeError("abort")

        with session_scope() as session:
            assert session.execute(select(SequenceCounter)).scalars().all() == []
