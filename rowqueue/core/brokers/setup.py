# rowqueue/core/brokers/setup.py
"""
Schema management for ``rowqueue_jobs``.

create_schema: table + indexes (SQLAlchemy metadata), notify function, insert
trigger. Idempotent; concurrent callers are serialized by an advisory lock.
drop_schema: table (and with it the trigger), then the notify function.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from typing import Any

from result import Err, Ok
from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.dialects import postgresql
from sqlalchemy.pool import NullPool
from sqlalchemy.schema import CreateIndex, CreateTable

from rowqueue.core.brokers.result_types import BrokerErrorCode, BrokerResult
from rowqueue.core.logging import format_fields, get_logger
from rowqueue.core.models.broker import ConnectionSettings
from rowqueue.core.models.job_pg import JOBS_TABLE, Base
from rowqueue.core.utils.db import broker_error

logger = get_logger('setup')

NOTIFY_FUNCTION = 'rowqueue_notify'
NOTIFY_TRIGGER = 'rowqueue_notify_trigger'

CREATE_NOTIFY_FUNCTION_SQL = text(f"""
CREATE OR REPLACE FUNCTION {NOTIFY_FUNCTION}()
RETURNS trigger AS $$
BEGIN
    -- Wake-up signal only; listeners ignore the payload.
    PERFORM pg_notify(NEW.q_name, '');
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;
""")

DROP_NOTIFY_TRIGGER_SQL = text(f'DROP TRIGGER IF EXISTS {NOTIFY_TRIGGER} ON {JOBS_TABLE}')

CREATE_NOTIFY_TRIGGER_SQL = text(f"""
CREATE TRIGGER {NOTIFY_TRIGGER}
    AFTER INSERT ON {JOBS_TABLE}
    FOR EACH ROW
    EXECUTE FUNCTION {NOTIFY_FUNCTION}()
""")

DROP_NOTIFY_FUNCTION_SQL = text(f'DROP FUNCTION IF EXISTS {NOTIFY_FUNCTION}()')

SCHEMA_LOCK_SQL = text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))')


def schema_advisory_key(settings: ConnectionSettings) -> int:
    """Stable 64-bit advisory lock key, distinct per database target."""
    basis = settings.describe().encode('utf-8', errors='ignore')
    h = hashlib.sha256(b'rowqueue-schema:' + basis).digest()
    return int.from_bytes(h[:8], byteorder='big', signed=True)


def _engine(
    settings: ConnectionSettings,
    engine_factory: Callable[..., Engine],
) -> Engine:
    # One-shot DDL: no pooled connections left behind.
    return engine_factory(settings.to_sqlalchemy_url(), poolclass=NullPool)


def create_schema(
    settings: ConnectionSettings,
    *,
    engine_factory: Callable[..., Engine] = create_engine,
) -> BrokerResult[None]:
    """Create the jobs table, its indexes and the insert notify trigger."""
    engine = _engine(settings, engine_factory)
    try:
        with engine.begin() as conn:
            conn.execute(SCHEMA_LOCK_SQL, {'key': schema_advisory_key(settings)})
            Base.metadata.create_all(conn)
            conn.execute(CREATE_NOTIFY_FUNCTION_SQL)
            conn.execute(DROP_NOTIFY_TRIGGER_SQL)
            conn.execute(CREATE_NOTIFY_TRIGGER_SQL)
    except SQLAlchemyError as exc:
        logger.error(format_fields(at='create_schema', error=repr(exc)))
        return Err(broker_error(exc, 'Failed to create schema', BrokerErrorCode.SCHEMA_INIT_FAILED))
    finally:
        engine.dispose()
    logger.info(format_fields(at='create_schema', table=JOBS_TABLE, db=settings.describe()))
    return Ok(None)


def drop_schema(
    settings: ConnectionSettings,
    *,
    engine_factory: Callable[..., Engine] = create_engine,
) -> BrokerResult[None]:
    """Drop the jobs table and the notify function. Missing objects are ignored."""
    engine = _engine(settings, engine_factory)
    try:
        with engine.begin() as conn:
            conn.execute(SCHEMA_LOCK_SQL, {'key': schema_advisory_key(settings)})
            Base.metadata.drop_all(conn)
            conn.execute(DROP_NOTIFY_FUNCTION_SQL)
    except SQLAlchemyError as exc:
        logger.error(format_fields(at='drop_schema', error=repr(exc)))
        return Err(broker_error(exc, 'Failed to drop schema', BrokerErrorCode.SCHEMA_DROP_FAILED))
    finally:
        engine.dispose()
    logger.info(format_fields(at='drop_schema', table=JOBS_TABLE, db=settings.describe()))
    return Ok(None)


def schema_statements() -> list[str]:
    """DDL emitted by create_schema, rendered for the PostgreSQL dialect."""
    dialect: Any = postgresql.dialect()
    table = Base.metadata.tables[JOBS_TABLE]
    statements = [str(CreateTable(table).compile(dialect=dialect)).strip()]
    indexes = sorted(table.indexes, key=lambda ix: ix.name or '')
    statements += [str(CreateIndex(ix).compile(dialect=dialect)).strip() for ix in indexes]
    statements += [
        CREATE_NOTIFY_FUNCTION_SQL.text.strip(),
        CREATE_NOTIFY_TRIGGER_SQL.text.strip(),
    ]
    return statements
