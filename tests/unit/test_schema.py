"""Unit tests for schema DDL and create/drop error handling (no database)."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

import pytest
from result import Err, Ok
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.pool import NullPool

from rowqueue.core.brokers.result_types import BrokerErrorCode
from rowqueue.core.brokers.setup import (
    CREATE_NOTIFY_FUNCTION_SQL,
    CREATE_NOTIFY_TRIGGER_SQL,
    DROP_NOTIFY_FUNCTION_SQL,
    DROP_NOTIFY_TRIGGER_SQL,
    SCHEMA_LOCK_SQL,
    create_schema,
    drop_schema,
    schema_advisory_key,
    schema_statements,
)
from rowqueue.core.models.broker import ConnectionSettings
from rowqueue.core.models.job_pg import JOBS_TABLE, Base, JobModel

pytestmark = pytest.mark.unit

SETTINGS = ConnectionSettings(host='db', dbname='jobs', user='u', password='p')


class _FakeSAConnection:
    def __init__(self, fail_on: Any = None) -> None:
        self.fail_on = fail_on
        self.executed: list[Any] = []
        self.ddl_visitors: list[str] = []

    def execute(self, statement: Any, params: Any = None) -> None:
        if statement is self.fail_on:
            raise ProgrammingError(str(statement), None, Exception('syntax error'))
        self.executed.append((statement, params))

    def _run_ddl_visitor(self, visitor: Any, element: Any, **kwargs: Any) -> None:
        self.ddl_visitors.append(visitor.__name__)


class _FakeEngine:
    def __init__(self, conn: _FakeSAConnection | None = None, begin_error: Exception | None = None) -> None:
        self.conn = conn or _FakeSAConnection()
        self.begin_error = begin_error
        self.disposed = 0

    @contextmanager
    def begin(self) -> Iterator[_FakeSAConnection]:
        if self.begin_error is not None:
            raise self.begin_error
        yield self.conn

    def dispose(self) -> None:
        self.disposed += 1


class _EngineFactory:
    def __init__(self, engine: _FakeEngine) -> None:
        self.engine = engine
        self.calls: list[tuple[Any, dict[str, Any]]] = []

    def __call__(self, url: Any, **kwargs: Any) -> _FakeEngine:
        self.calls.append((url, kwargs))
        return self.engine


class TestJobModel:
    def test_columns(self) -> None:
        table = JobModel.__table__
        assert table.name == JOBS_TABLE
        assert [c.name for c in table.columns] == [
            'id',
            'q_name',
            'method',
            'args',
            'locked_at',
            'locked_by',
            'heartbeat_at',
            'created_at',
        ]
        assert table.c.id.primary_key
        assert not table.c.q_name.nullable
        assert not table.c.method.nullable
        assert table.c.locked_at.nullable
        assert table.c.args.server_default is not None
        assert table.c.created_at.server_default is not None

    def test_partial_indexes(self) -> None:
        indexes = {ix.name: ix for ix in JobModel.__table__.indexes}
        available = indexes['idx_rowqueue_jobs_available']
        assert [c.name for c in available.columns] == ['q_name', 'id']
        assert str(available.dialect_options['postgresql']['where']) == 'locked_at IS NULL'
        heartbeat = indexes['idx_rowqueue_jobs_heartbeat']
        assert [c.name for c in heartbeat.columns] == ['heartbeat_at']

    def test_single_table_in_metadata(self) -> None:
        assert list(Base.metadata.tables) == [JOBS_TABLE]


class TestSchemaStatements:
    def test_rendered_ddl(self) -> None:
        statements = schema_statements()
        assert len(statements) == 5
        assert statements[0].startswith(f'CREATE TABLE {JOBS_TABLE}')
        assert 'args JSONB' in statements[0]
        assert "DEFAULT '[]'::jsonb" in statements[0]
        index_sql = ' '.join(statements[1:3])
        assert 'WHERE locked_at IS NULL' in index_sql
        assert 'WHERE locked_at IS NOT NULL' in index_sql
        assert 'pg_notify(NEW.q_name' in statements[3]
        assert 'AFTER INSERT ON rowqueue_jobs' in statements[4]


class TestAdvisoryKey:
    def test_stable_and_signed_64_bit(self) -> None:
        key = schema_advisory_key(SETTINGS)
        assert key == schema_advisory_key(SETTINGS)
        assert -(2**63) <= key < 2**63

    def test_differs_per_database(self) -> None:
        other = ConnectionSettings(host='db', dbname='other', user='u')
        assert schema_advisory_key(SETTINGS) != schema_advisory_key(other)

    def test_password_does_not_change_key(self) -> None:
        rotated = ConnectionSettings(host='db', dbname='jobs', user='u', password='new')
        assert schema_advisory_key(SETTINGS) == schema_advisory_key(rotated)


class TestCreateSchema:
    def test_success_runs_ddl_in_order(self) -> None:
        engine = _FakeEngine()
        factory = _EngineFactory(engine)
        assert create_schema(SETTINGS, engine_factory=factory) == Ok(None)

        url, kwargs = factory.calls[0]
        assert url.drivername == 'postgresql+psycopg'
        assert url.database == 'jobs'
        assert kwargs == {'poolclass': NullPool}

        statements = [stmt for stmt, _ in engine.conn.executed]
        assert statements == [
            SCHEMA_LOCK_SQL,
            CREATE_NOTIFY_FUNCTION_SQL,
            DROP_NOTIFY_TRIGGER_SQL,
            CREATE_NOTIFY_TRIGGER_SQL,
        ]
        assert engine.conn.executed[0][1] == {'key': schema_advisory_key(SETTINGS)}
        assert engine.conn.ddl_visitors == ['SchemaGenerator']
        assert engine.disposed == 1

    def test_connection_failure_is_retryable_err(self) -> None:
        engine = _FakeEngine(begin_error=OperationalError('connect', None, Exception('down')))
        result = create_schema(SETTINGS, engine_factory=_EngineFactory(engine))
        assert isinstance(result, Err)
        err = result.err_value
        assert err.code == BrokerErrorCode.SCHEMA_INIT_FAILED
        assert err.retryable is True
        assert isinstance(err.exception, OperationalError)
        assert engine.disposed == 1

    def test_statement_failure_is_not_retryable(self) -> None:
        conn = _FakeSAConnection(fail_on=CREATE_NOTIFY_TRIGGER_SQL)
        engine = _FakeEngine(conn)
        result = create_schema(SETTINGS, engine_factory=_EngineFactory(engine))
        assert isinstance(result, Err)
        assert result.err_value.code == BrokerErrorCode.SCHEMA_INIT_FAILED
        assert result.err_value.retryable is False
        assert engine.disposed == 1


class TestDropSchema:
    def test_success(self) -> None:
        engine = _FakeEngine()
        assert drop_schema(SETTINGS, engine_factory=_EngineFactory(engine)) == Ok(None)
        statements = [stmt for stmt, _ in engine.conn.executed]
        assert statements == [SCHEMA_LOCK_SQL, DROP_NOTIFY_FUNCTION_SQL]
        assert engine.conn.ddl_visitors == ['SchemaDropper']
        assert engine.disposed == 1

    def test_failure(self) -> None:
        engine = _FakeEngine(begin_error=OperationalError('connect', None, Exception('down')))
        result = drop_schema(SETTINGS, engine_factory=_EngineFactory(engine))
        assert isinstance(result, Err)
        assert result.err_value.code == BrokerErrorCode.SCHEMA_DROP_FAILED
        assert engine.disposed == 1
