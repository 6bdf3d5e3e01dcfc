# rowqueue/core/brokers/listener.py
"""
PostgreSQL LISTEN/NOTIFY wake-up signal for idle workers.

Flow:
  1. Job insert: INSERT into rowqueue_jobs -> trigger -> pg_notify(q_name)
  2. Idle worker: LISTEN on every bound queue name, wait (bounded), UNLISTEN
  3. Worker retries its lock regardless of why the wait returned

Notifications carry no payload guarantee; their presence is the only
signal. The bounded wait covers the race where a job is inserted between
a failed lock attempt and the LISTEN.
"""

from __future__ import annotations

from collections.abc import Sequence

from psycopg import sql

from rowqueue.core.brokers.connection import ConnectionManager
from rowqueue.core.defaults import DEFAULT_WAIT_TIME
from rowqueue.core.logging import format_fields, get_logger

logger = get_logger('listener')


def listen_statement(channel_names: Sequence[str]) -> sql.Composed:
    """``LISTEN "a"; LISTEN "b"`` with quoted identifiers."""
    return sql.SQL('; ').join(
        sql.SQL('LISTEN {}').format(sql.Identifier(ch)) for ch in channel_names
    )


def unlisten_statement(channel_names: Sequence[str]) -> sql.Composed:
    """``UNLISTEN "a"; UNLISTEN "b"`` with quoted identifiers."""
    return sql.SQL('; ').join(
        sql.SQL('UNLISTEN {}').format(sql.Identifier(ch)) for ch in channel_names
    )


class NotificationWaiter:
    """
    Blocking, bounded wait for a notification on any of several channels.

    Usage:
    ------
    waiter = NotificationWaiter(conn, wait_time=5.0)
    waiter.wait(['default', 'reports'])   # returns on NOTIFY or after 5s

    Notes:
    ------
    * Subscriptions never outlive a single wait() call: UNLISTEN runs in a
      finally block, so timeouts and wait errors cannot leak channels.
    * Notifications that arrive after the wake-up are drained so the next
      cycle does not return immediately on a stale signal.
    """

    def __init__(
        self,
        conn: ConnectionManager,
        wait_time: float = DEFAULT_WAIT_TIME,
    ) -> None:
        self.conn = conn
        self.wait_time = wait_time

    def wait(self, channel_names: Sequence[str]) -> None:
        """Subscribe, wait up to ``wait_time`` for one notification, unsubscribe, drain."""
        channels = list(dict.fromkeys(channel_names))
        if not channels:
            return

        self.conn.execute(listen_statement(channels))
        try:
            woken = self.conn.wait_for_notify(self.wait_time)
            logger.debug(
                format_fields(at='wait', channels=','.join(channels), woken=woken)
            )
        finally:
            # A discarded connection took its subscriptions with it.
            if self.conn.connected:
                self.conn.execute(unlisten_statement(channels))
        self.conn.drain_notifies()
