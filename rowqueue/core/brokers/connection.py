# rowqueue/core/brokers/connection.py
"""
Process-owned PostgreSQL connection with serialized statement execution.

Architecture:
  Worker -> Queue / NotificationWaiter -> ConnectionManager -> psycopg.Connection

Invariants:
  - One physical connection per manager, opened lazily on first use.
  - At most one statement in flight: every driver call happens under the
    manager's lock, held for a single statement.
  - Any driver error discards the connection before the error reaches the
    caller; the next call reconnects. There is no transparent retry.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, Optional

import psycopg
from psycopg import pq, sql
from psycopg.rows import dict_row
from result import Err, Ok, Result

from rowqueue.core.brokers.result_types import BrokerResult
from rowqueue.core.defaults import DEFAULT_APP_NAME
from rowqueue.core.logging import format_fields, get_logger
from rowqueue.core.models.broker import ConnectionSettings, resolve_connection_settings
from rowqueue.core.utils.db import broker_error

logger = get_logger('conn')

type Row = dict[str, Any]
type ExecuteResult = Optional[Row | list[Row]]
type Statement = str | sql.Composable


def render_statement(statement: Statement) -> str:
    """Plain-text form of a statement for logs and tests."""
    if isinstance(statement, sql.Composable):
        return statement.as_string(None)
    return statement


class ConnectionManager:
    """
    Owns one psycopg connection (autocommit) and serializes access to it.

    Usage:
    ------
    conn = ConnectionManager(database_url='postgresql://u:p@localhost/db')
    row = conn.execute('SELECT count(*) AS n FROM rowqueue_jobs')  # {'n': 3}

    def unit() -> Result[int, str]:
        conn.execute('DELETE FROM rowqueue_jobs WHERE id = %s', 7)
        return Ok(7)

    conn.transaction(unit)   # BEGIN ... COMMIT, or ROLLBACK on Err/exception
    conn.close()

    Notes:
    ------
    * autocommit=True: explicit BEGIN/COMMIT/ROLLBACK statements delimit
      transactions and LISTEN/UNLISTEN take effect immediately.
    * ``execute`` returns None (no rows), one row dict, or a list of row dicts.
    * Settings come from ``settings``, else ``database_url``, else the
      environment / framework config (see ``resolve_connection_settings``).
    """

    def __init__(
        self,
        settings: ConnectionSettings | None = None,
        *,
        database_url: str | None = None,
        framework_config: Mapping[str, Any] | None = None,
        app_name: str = DEFAULT_APP_NAME,
        connect: Callable[..., psycopg.Connection[Any]] = psycopg.connect,
    ) -> None:
        self._settings = settings
        self._database_url = database_url
        self._framework_config = framework_config
        self.app_name = app_name
        self._connect = connect

        self._conn: Optional[psycopg.Connection[Any]] = None
        # Serializes every driver call; reentrant so transaction() and the
        # notification helpers can nest execute().
        self._lock = threading.RLock()
        # Notifications the driver delivered while a statement was running.
        self._pending_notifies = 0

    # ----- lifecycle -----

    @property
    def settings(self) -> ConnectionSettings:
        if self._settings is None:
            self._settings = resolve_connection_settings(
                database_url=self._database_url,
                framework_config=self._framework_config,
            )
        return self._settings

    @property
    def connection(self) -> psycopg.Connection[Any]:
        with self._lock:
            if self._conn is None:
                self._conn = self.connect()
            return self._conn

    @connection.setter
    def connection(self, connection: psycopg.Connection[Any]) -> None:
        if not isinstance(connection, psycopg.Connection):
            c = type(connection).__name__
            raise TypeError(
                f'connection must be an instance of psycopg.Connection, but was {c}'
            )
        with self._lock:
            self._conn = connection

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def connect(self) -> psycopg.Connection[Any]:
        """Open a new connection and tag it with the application name.

        Raises ConfigurationError (before any network I/O) when no
        connection source resolves.
        """
        settings = self.settings
        logger.info(
            format_fields(at='establish_conn', source=settings.source, db=settings.describe())
        )
        conn = self._connect(autocommit=True, row_factory=dict_row, **settings.to_conninfo())
        try:
            conn.add_notify_handler(self._on_notify)
            conn.execute(
                sql.SQL('SET application_name = {}').format(sql.Literal(self.app_name))
            )
        except psycopg.Error:
            conn.close()
            raise
        return conn

    def open(self) -> ConnectionManager:
        """Eagerly establish the connection."""
        _ = self.connection
        return self

    def disconnect(self) -> None:
        """Close and forget the current connection (if any)."""
        with self._lock:
            conn = self._conn
            if conn is None:
                return
            try:
                conn.close()
            except psycopg.Error as exc:
                logger.warning(format_fields(at='disconnect', error=exc))
            finally:
                self._conn = None
                self._pending_notifies = 0

    close = disconnect

    def __enter__(self) -> ConnectionManager:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()

    # ----- statements -----

    def execute(self, statement: Statement, *params: Any) -> ExecuteResult:
        """Run one statement with optional positional parameters.

        Returns None, a single row dict, or a list of row dicts. Several
        statements separated by ';' are accepted when no params are passed.
        """
        with self._lock:
            try:
                conn = self.connection
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug(format_fields(at='exec_sql', sql=render_statement(statement)))
                cur = conn.execute(statement, params or None, prepare=False)
                rows: list[Row] = cur.fetchall() if cur.description is not None else []
            except psycopg.Error as exc:
                logger.error(format_fields(at='exec_sql', error=repr(exc)))
                self.disconnect()
                raise
        if len(rows) > 1:
            return rows
        return rows[0] if rows else None

    def transaction[T, E](self, body: Callable[[], Result[T, E]]) -> Result[T, E]:
        """Run ``body`` between BEGIN and COMMIT.

        - ``body`` returns Ok (or a plain value): COMMIT, return it as Ok.
        - ``body`` returns Err: ROLLBACK, return the Err.
        - ``body`` raises anything: ROLLBACK, re-raise.
        """
        self.execute('BEGIN')
        try:
            outcome = body()
            if isinstance(outcome, Err):
                self._rollback()
                return outcome
            self.execute('COMMIT')
        except BaseException:
            self._rollback()
            raise
        if isinstance(outcome, Ok):
            return outcome
        return Ok(outcome)

    def _rollback(self) -> None:
        try:
            self.execute('ROLLBACK')
        except psycopg.Error as exc:
            # Connection already discarded by execute(); the server drops
            # the open transaction with it.
            logger.error(format_fields(at='rollback', error=repr(exc)))

    def transaction_idle(self) -> bool:
        """True when the connection is not inside an open transaction."""
        with self._lock:
            if self._conn is None:
                return True
            return self._conn.info.transaction_status == pq.TransactionStatus.IDLE

    def ping(self) -> BrokerResult[None]:
        """Round-trip ``SELECT 1``; Err on any driver failure."""
        try:
            self.execute('SELECT 1')
            return Ok(None)
        except psycopg.Error as exc:
            return Err(broker_error(exc, 'Database ping failed'))

    # ----- notifications -----

    def _on_notify(self, _notify: psycopg.Notify) -> None:
        self._pending_notifies += 1

    def wait_for_notify(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds for one notification.

        Returns True if one arrived (or was already delivered during an
        earlier statement), False on timeout.
        """
        with self._lock:
            if self._pending_notifies:
                self._pending_notifies -= 1
                return True
            try:
                for _ in self.connection.notifies(timeout=timeout, stop_after=1):
                    return True
            except psycopg.Error as exc:
                logger.error(format_fields(at='wait_for_notify', error=repr(exc)))
                self.disconnect()
                raise
            return False

    def drain_notifies(self) -> int:
        """Discard queued notifications; returns how many were dropped."""
        with self._lock:
            drained = self._pending_notifies
            self._pending_notifies = 0
            if self._conn is None:
                return drained
            try:
                for _ in self._conn.notifies(timeout=0):
                    drained += 1
            except psycopg.Error as exc:
                logger.error(format_fields(at='drain_notifications', error=repr(exc)))
                self.disconnect()
                raise
            if drained:
                logger.debug(format_fields(at='drain_notifications', count=drained))
            return drained
