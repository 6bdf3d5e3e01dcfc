"""Isolated child cycles: app location, child entry point, supervisor."""

from __future__ import annotations

import multiprocessing
import os
import signal
import sys
from collections.abc import Callable
from dataclasses import replace
from importlib import import_module
from types import FrameType
from typing import TYPE_CHECKING, Any, Optional, Protocol

from rowqueue.core.app import RowQueue
from rowqueue.core.defaults import EXIT_LIVENESS_LOST
from rowqueue.core.errors import ConfigurationError, ErrorCode
from rowqueue.core.logging import format_fields, get_logger, set_default_level
from rowqueue.core.utils.imports import (
    LOADED_MODULE_PREFIX,
    import_file_path,
    is_file_path,
)
from rowqueue.core.worker.config import WorkerConfig

if TYPE_CHECKING:
    from rowqueue.core.worker.worker import Worker

logger = get_logger('supervisor')


class ChildProcess(Protocol):
    pid: Optional[int]
    exitcode: Optional[int]

    def start(self) -> None: ...
    def join(self, timeout: float | None = None) -> None: ...
    def is_alive(self) -> bool: ...
    def terminate(self) -> None: ...


def _resolve_locator(locator: str, what: str) -> Any:
    """Import the module half of ``module:attr`` and return the attribute."""
    logger.debug(f'Locating {what} from {locator}')
    mod_path, sep, attr = locator.partition(':')
    if not mod_path or not sep or not attr:
        raise ConfigurationError(
            message=f'invalid {what} locator format',
            code=ErrorCode.WORKER_INVALID_LOCATOR,
            notes=[f'got: {locator!r}'],
            help_text="use 'module.path:attr' or '/path/to/file.py:attr'",
        )
    try:
        if is_file_path(mod_path):
            mod = import_file_path(mod_path)
        else:
            mod = import_module(mod_path)
    except (ImportError, FileNotFoundError) as exc:
        raise ConfigurationError(
            message=f"cannot import '{mod_path}'",
            code=ErrorCode.WORKER_INVALID_LOCATOR,
            notes=[f'{type(exc).__name__}: {exc}'],
            help_text='run from the project root or fix PYTHONPATH',
        ) from exc
    return getattr(mod, attr, None)


def worker_class_locator(cls: type) -> str:
    """``module:Class`` for ``cls``, by file path when the module is not importable by name."""
    module = sys.modules.get(cls.__module__)
    mod_file = getattr(module, '__file__', None)
    by_file = cls.__module__ == '__main__' or cls.__module__.startswith(LOADED_MODULE_PREFIX)
    if by_file and mod_file:
        return f'{os.path.realpath(mod_file)}:{cls.__qualname__}'
    return f'{cls.__module__}:{cls.__qualname__}'


def locate_worker_class(worker_locator: str) -> type[Worker]:
    """Resolve ``'module:Class'`` to a Worker subclass (file paths allowed)."""
    from rowqueue.core.worker.worker import Worker

    obj = _resolve_locator(worker_locator, 'worker class')
    if not (isinstance(obj, type) and issubclass(obj, Worker)):
        raise ConfigurationError(
            message='worker class locator did not resolve to a Worker subclass',
            code=ErrorCode.WORKER_INVALID_LOCATOR,
            notes=[
                f'locator: {worker_locator!r}',
                f'resolved to: {type(obj).__name__}',
            ],
            help_text='point the locator at a subclass of rowqueue.Worker',
        )
    return obj


def locate_app(app_locator: str) -> RowQueue:
    """
    app_locator examples:
      - 'package.module:app'         -> import module, take variable attr
      - '/abs/path/to/file.py:app'   -> load from file path
    """
    obj = _resolve_locator(app_locator, 'app')
    if not isinstance(obj, RowQueue):
        raise ConfigurationError(
            message='app locator did not resolve to a RowQueue instance',
            code=ErrorCode.WORKER_INVALID_LOCATOR,
            notes=[
                f'locator: {app_locator!r}',
                f'resolved to: {type(obj).__name__}',
            ],
            help_text='ensure the locator points to a RowQueue app instance',
        )
    return obj


def run_child_cycle(cfg: WorkerConfig, worker_instance_id: str) -> None:
    """Entry point of an isolated child: rebuild the app, one work() cycle, exit.

    Runs in a fresh interpreter under the spawn start method, so nothing
    (connection included) is inherited from the parent. The worker is an
    instance of ``cfg.worker_class`` when set, so subclass hooks run here.
    """
    from rowqueue.core.worker.worker import Worker

    # The parent owns Ctrl-C handling; SIGTERM from the parent is a cooperative stop.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    set_default_level(cfg.loglevel)

    app = locate_app(cfg.app_locator)
    # After the app: a worker class in the app file resolves to the module just loaded.
    worker_cls = locate_worker_class(cfg.worker_class) if cfg.worker_class else Worker
    worker = worker_cls(
        app,
        replace(cfg, fork_worker=False),
        worker_instance_id=worker_instance_id,
    )

    def _on_sigterm(_signum: int, _frame: Optional[FrameType]) -> None:
        worker.stop()

    signal.signal(signal.SIGTERM, _on_sigterm)
    try:
        worker.setup_child()
        worker.work()
    finally:
        app.close()


class ChildSupervisor:
    """
    Runs one child process per cycle and reports how it ended.

    Exit codes:
      0                    clean cycle
      EXIT_LIVENESS_LOST   child lost the claim on its job (heartbeat failure)
      < 0                  killed by signal -code
      other                crash

    The supervisor keeps going after any of them; deciding to stop is the
    worker's business.
    """

    def __init__(
        self,
        cfg: WorkerConfig,
        worker_instance_id: str,
        *,
        process_factory: Callable[..., ChildProcess] | None = None,
    ) -> None:
        self.cfg = cfg
        self.worker_instance_id = worker_instance_id
        if process_factory is None:
            ctx: Any = multiprocessing.get_context(cfg.start_method)
            process_factory = ctx.Process
        self._process_factory = process_factory
        self._child: Optional[ChildProcess] = None
        self._terminating = False

    @property
    def child(self) -> Optional[ChildProcess]:
        return self._child

    def run_cycle(self) -> Optional[int]:
        """Start a child, block until it exits, log and return its exit code."""
        self._terminating = False
        child = self._process_factory(
            target=run_child_cycle,
            args=(self.cfg, self.worker_instance_id),
            name='rowqueue-child',
        )
        child.start()
        self._child = child
        logger.debug(format_fields(at='fork', pid=child.pid, parent=os.getpid()))
        try:
            child.join()
        finally:
            self._child = None
        code = child.exitcode
        self.report_exit(child.pid, code)
        return code

    def report_exit(self, pid: Optional[int], code: Optional[int]) -> None:
        if code == 0:
            logger.debug(format_fields(at='child_exit', pid=pid, code=code))
        elif code == EXIT_LIVENESS_LOST:
            logger.error(
                format_fields(at='child_liveness_lost', pid=pid, code=code)
            )
        elif code is not None and code < 0 and self._terminating:
            logger.info(format_fields(at='child_stopped', pid=pid, signal=-code))
        elif code is not None and code < 0:
            logger.error(format_fields(at='child_crash', pid=pid, signal=-code))
        else:
            logger.error(format_fields(at='child_crash', pid=pid, code=code))

    def terminate(self) -> None:
        """Forward SIGTERM to a running child."""
        child = self._child
        if child is not None and child.is_alive():
            self._terminating = True
            logger.info(format_fields(at='child_terminate', pid=child.pid))
            child.terminate()
