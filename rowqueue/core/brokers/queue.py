# rowqueue/core/brokers/queue.py
from __future__ import annotations

import os
import socket
from typing import Any, Optional

from psycopg.types.json import Jsonb

from rowqueue.core.brokers.connection import ConnectionManager, ExecuteResult, Row
from rowqueue.core.brokers.sql import (
    COUNT_SQL,
    DELETE_ALL_SQL,
    DELETE_SQL,
    HEARTBEAT_SQL,
    INSERT_SQL,
    LOCK_SQL,
    RELEASE_STALE_SQL,
)
from rowqueue.core.defaults import DEFAULT_QUEUE, DEFAULT_TOP_BOUND
from rowqueue.core.logging import format_fields, get_logger
from rowqueue.core.models.job import Job

logger = get_logger('queue')


def default_locked_by() -> str:
    """``host:pid`` of the calling process."""
    return f'{socket.gethostname()}:{os.getpid()}'


def as_rows(result: ExecuteResult) -> list[Row]:
    """Normalize ``ConnectionManager.execute`` output to a list of rows."""
    if result is None:
        return []
    if isinstance(result, list):
        return result
    return [result]


class Queue:
    """
    Named partition of ``rowqueue_jobs``.

    Usage:
    ------
    q = Queue('default', conn, top_bound=9)
    q.enqueue('Reporter.run', 42)
    job = q.lock(locked_by=worker_id)   # Job or None
    q.delete(job.id)

    Notes:
    ------
    * ``top_bound`` limits how far ahead ``lock`` looks: only the first
      ``top_bound`` unlocked jobs by id are candidates. None means no bound.
    * Claimed jobs stay in the table (and count towards ``count``) until
      deleted.
    """

    def __init__(
        self,
        name: str = DEFAULT_QUEUE,
        conn: ConnectionManager | None = None,
        top_bound: Optional[int] = DEFAULT_TOP_BOUND,
    ) -> None:
        if not name:
            raise ValueError('queue name must be a non-empty string')
        self.name = name
        self.conn = conn if conn is not None else ConnectionManager()
        self.top_bound = top_bound

    def __repr__(self) -> str:
        return f'Queue(name={self.name!r}, top_bound={self.top_bound!r})'

    def lock(self, locked_by: str | None = None) -> Job | None:
        """Atomically claim the next available job, or None if there is none."""
        row = self.conn.execute(
            LOCK_SQL, self.name, self.top_bound, locked_by or default_locked_by()
        )
        rows = as_rows(row)
        if not rows:
            return None
        return Job.model_validate(rows[0])

    def delete(self, job_id: int) -> None:
        """Remove a job. Deleting a missing job is a no-op."""
        self.conn.execute(DELETE_SQL, job_id)

    def heartbeat(self, worker_id: str, job_id: int) -> bool:
        """Refresh the claim's liveness; False if the row is gone or held by another worker."""
        return bool(as_rows(self.conn.execute(HEARTBEAT_SQL, job_id, worker_id)))

    def enqueue(self, method: str, *args: Any) -> Job:
        """Insert a job; the insert trigger notifies the queue channel."""
        row = self.conn.execute(INSERT_SQL, self.name, method, Jsonb(list(args)))
        job = Job.model_validate(as_rows(row)[0])
        logger.debug(format_fields(at='enqueue', queue=self.name, job=job.id, method=method))
        return job

    def count(self) -> int:
        row = as_rows(self.conn.execute(COUNT_SQL, self.name))
        return int(row[0]['count']) if row else 0

    def delete_all(self) -> None:
        self.conn.execute(DELETE_ALL_SQL, self.name)

    def release_stale(self, stale_after_s: float) -> int:
        """Unlock jobs (on any queue) whose heartbeat is older than ``stale_after_s``.

        Returns the number of released jobs.
        """
        released = len(as_rows(self.conn.execute(RELEASE_STALE_SQL, float(stale_after_s))))
        if released:
            logger.warning(
                format_fields(at='release_stale', count=released, stale_after=stale_after_s)
            )
        return released
