# rowqueue/core/worker/worker.py
"""
Dequeue loop and job execution.

Cycle (``work``):
  lock_job -> (none: wait on every bound queue, retry) -> process
process:
  heartbeat on -> dispatch through the handler registry -> failures go to
  handle_failure -> heartbeat off -> delete the job (always) -> log

In isolate mode (``fork_worker``) every cycle runs in a fresh child process
built from ``app_locator``; the parent only supervises.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Any, NoReturn, Optional

from rowqueue.core.app import RowQueue
from rowqueue.core.brokers.listener import NotificationWaiter
from rowqueue.core.brokers.queue import Queue
from rowqueue.core.defaults import EXIT_LIVENESS_LOST
from rowqueue.core.errors import ConfigurationError, ErrorCode
from rowqueue.core.logging import format_fields, get_logger, log_timed
from rowqueue.core.models.job import Job
from rowqueue.core.worker.child_runner import ChildSupervisor, worker_class_locator
from rowqueue.core.worker.config import WorkerConfig
from rowqueue.core.worker.heartbeat import Heartbeat

logger = get_logger('worker')


class Worker:
    """
    One worker process bound to one or more queues.

    Usage:
    ------
    worker = Worker(app, WorkerConfig(queue='default', queues=['urgent']))
    worker.start()        # until stop() is called (e.g. from a signal handler)

    Notes:
    ------
    * Queues are tried in fixed order on every lock attempt; a busy earlier
      queue can starve later ones.
    * ``running`` is the only cancellation mechanism: it is checked between
      lock attempts and between cycles, never inside a job.
    * Subclasses customize ``handle_failure`` and ``setup_child``. In isolate
      mode children rebuild the subclass from ``cfg.worker_class``, which
      defaults to the subclass's own locator.
    """

    def __init__(
        self,
        app: RowQueue,
        cfg: WorkerConfig | None = None,
        *,
        queues: Sequence[Queue] | None = None,
        waiter: NotificationWaiter | None = None,
        worker_instance_id: str | None = None,
        exit_fn: Callable[[int], Any] = os._exit,
        supervisor: ChildSupervisor | None = None,
    ) -> None:
        self.app = app
        self.cfg = cfg if cfg is not None else WorkerConfig.from_app_config(app.config)
        self.worker_instance_id = worker_instance_id or str(uuid.uuid4())
        self.running = True
        self._exit = exit_fn

        if queues is not None:
            self.queues = list(queues)
        else:
            self.queues = [
                Queue(name, app.connection, top_bound=self.cfg.top_bound)
                for name in self.cfg.queues
            ]
        if not self.queues:
            raise ConfigurationError(
                message='worker has no queues',
                code=ErrorCode.CONFIG_INVALID_WORKER,
                help_text='configure at least one queue name',
            )
        self._queues_by_name = {q.name: q for q in self.queues}
        self.waiter = waiter or NotificationWaiter(app.connection, self.cfg.wait_time)

        self.supervisor: Optional[ChildSupervisor] = supervisor
        if self.cfg.fork_worker and self.supervisor is None:
            if not self.cfg.app_locator:
                raise ConfigurationError(
                    message='isolated workers need an app locator',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    notes=['fork_worker=True but app_locator is empty'],
                    help_text="set app_locator to 'module.path:app' or '/path/to/file.py:app'",
                )
            if not self.cfg.worker_class and type(self) is not Worker:
                # Children rebuild this subclass so its hooks run there too.
                self.cfg = replace(self.cfg, worker_class=worker_class_locator(type(self)))
            self.supervisor = ChildSupervisor(self.cfg, self.worker_instance_id)

    @property
    def queue(self) -> Queue:
        """Highest-priority bound queue."""
        return self.queues[0]

    # ----- loop -----

    def start(self) -> None:
        """Run cycles until stop() is called."""
        logger.info(
            format_fields(
                at='worker_start',
                wid=self.worker_instance_id,
                queues=','.join(q.name for q in self.queues),
                isolate=self.cfg.fork_worker,
                pid=os.getpid(),
            )
        )
        try:
            while self.running:
                if self.cfg.fork_worker:
                    self.fork_and_work()
                else:
                    self.work()
        finally:
            logger.info(format_fields(at='worker_stop', wid=self.worker_instance_id))

    def stop(self) -> None:
        """Cooperative stop; a job in progress finishes first."""
        self.running = False
        if self.supervisor is not None:
            self.supervisor.terminate()

    def fork_and_work(self) -> Optional[int]:
        """One cycle in an isolated child; returns its exit code."""
        if self.supervisor is None:
            raise ConfigurationError(
                message='fork_and_work needs a child supervisor',
                code=ErrorCode.CONFIG_INVALID_WORKER,
                notes=[f'fork_worker={self.cfg.fork_worker}'],
                help_text='construct the worker with fork_worker=True and an app_locator',
            )
        return self.supervisor.run_cycle()

    def setup_child(self) -> None:
        """Hook run inside an isolated child before its cycle. Default: no-op."""

    def work(self) -> None:
        """One cycle: lock a job (waiting as needed) and process it."""
        job = self.lock_job()
        if job is not None:
            self.process(job)

    def lock_job(self) -> Job | None:
        """Claim the first available job across bound queues, in order.

        Between full passes it blocks on the notification waiter. Returns
        None only once ``running`` is false.
        """
        names = [q.name for q in self.queues]
        while self.running:
            for queue in self.queues:
                job = queue.lock(self.worker_instance_id)
                if job is not None:
                    logger.debug(format_fields(at='lock_job', job=job.id, queue=queue.name))
                    return job
            self.waiter.wait(names)
        return None

    # ----- execution -----

    def process(self, job: Job) -> None:
        """Run a claimed job and delete it, whatever the outcome."""
        queue = self._queues_by_name.get(job.q_name, self.queue)
        heartbeat = self.start_heartbeat(queue, job)
        try:
            with log_timed(
                logger,
                at='process',
                job=job.id,
                method=job.method,
                wid=self.worker_instance_id,
            ):
                try:
                    self.call(job)
                except Exception as exc:
                    self.handle_failure(job, exc)
        finally:
            heartbeat.stop()
            queue.delete(job.id)
            logger.info(format_fields(at='delete_job', job=job.id))

    def start_heartbeat(self, queue: Queue, job: Job) -> Heartbeat:
        return Heartbeat(
            queue,
            self.worker_instance_id,
            job.id,
            on_lost=self.on_liveness_lost,
            interval=self.cfg.heartbeat_interval,
        ).start()

    def call(self, job: Job) -> Any:
        """Dispatch through the closed handler registry.

        Raises NotRegistered for an unknown ``Receiver.message``.
        """
        handler = self.app.handlers.resolve(job.method)
        return handler(*job.args)

    def handle_failure(self, job: Job, exc: Exception) -> None:
        """Called with any exception raised by a job. Default: log it."""
        logger.error(
            format_fields(
                at='handle_failure',
                job=job.id,
                method=job.method,
                error=f'{type(exc).__name__}: {exc}',
            )
        )
        logger.debug(format_fields(at='handle_failure', job=job.id), exc_info=exc)

    def on_liveness_lost(self, job_id: int, reason: str) -> NoReturn:
        """Shutdown routine for a lost claim: audit log, flush, exit 70.

        Runs on the heartbeat thread. The job body must not keep running
        once another worker may have taken the job, so the process ends
        without unwinding.
        """
        self.running = False
        logger.critical(
            format_fields(
                at='liveness_lost',
                job=job_id,
                wid=self.worker_instance_id,
                pid=os.getpid(),
                reason=reason,
                exit=EXIT_LIVENESS_LOST,
            )
        )
        logging.shutdown()
        self._exit(EXIT_LIVENESS_LOST)
        raise SystemExit(EXIT_LIVENESS_LOST)
