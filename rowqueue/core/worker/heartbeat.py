"""Liveness heartbeat for the job a worker is executing."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Protocol

import psycopg

from rowqueue.core.defaults import DEFAULT_HEARTBEAT_INTERVAL
from rowqueue.core.logging import format_fields, get_logger

logger = get_logger('heartbeat')


class SupportsHeartbeat(Protocol):
    def heartbeat(self, worker_id: str, job_id: int) -> bool: ...


class Heartbeat:
    """
    Daemon thread refreshing one claimed job's ``heartbeat_at``.

    Every ``interval`` seconds it calls ``queue.heartbeat(worker_id, job_id)``.
    A False result (row gone or claimed by someone else) or a database error
    means the claim is lost: the failure is logged and ``on_lost(job_id,
    reason)`` is invoked once, after which the thread exits. ``on_lost`` is
    expected to stop the job body (the worker terminates its process).

    stop() is safe to call any number of times and returns only after any
    in-flight refresh has finished.
    """

    def __init__(
        self,
        queue: SupportsHeartbeat,
        worker_id: str,
        job_id: int,
        on_lost: Callable[[int, str], None],
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self.queue = queue
        self.worker_id = worker_id
        self.job_id = job_id
        self.on_lost = on_lost
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f'heartbeat-{job_id}',
            daemon=True,
        )

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> Heartbeat:
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()

    def beat(self) -> str | None:
        """One refresh. Returns the failure reason, or None while the claim holds."""
        try:
            if self.queue.heartbeat(self.worker_id, self.job_id):
                return None
            return 'claim_lost'
        except psycopg.Error as exc:
            return f'{type(exc).__name__}: {exc}'

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            reason = self.beat()
            if reason is None:
                continue
            if self._stop_event.is_set():
                # Job finished while the refresh was in flight.
                return
            logger.error(
                format_fields(
                    at='heartbeat_failed',
                    job=self.job_id,
                    wid=self.worker_id,
                    error=reason,
                )
            )
            self.on_lost(self.job_id, reason)
            return
