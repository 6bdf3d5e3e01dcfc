"""Worker configuration dataclass."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from rowqueue.core.defaults import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_QUEUE,
    DEFAULT_TOP_BOUND,
    DEFAULT_WAIT_TIME,
)

if TYPE_CHECKING:
    from rowqueue.core.models.app import AppConfig


def _default_str_list() -> list[str]:
    return []


@dataclass
class WorkerConfig:
    queue: str = DEFAULT_QUEUE  # primary queue
    # Queues to lock from, in priority order; the primary is appended if absent.
    queues: list[str] = field(default_factory=_default_str_list)
    top_bound: Optional[int] = DEFAULT_TOP_BOUND
    # Run each work cycle in an isolated child process.
    fork_worker: bool = False
    app_locator: str = ''  # 'module:attr' or '/path/file.py:attr' (see locate_app)
    # Worker subclass rebuilt in isolated children, 'module:Class'; empty means Worker.
    worker_class: str = ''
    loglevel: int = logging.INFO
    # multiprocessing start method for isolated children
    start_method: str = 'spawn'
    wait_time: float = DEFAULT_WAIT_TIME
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL

    def __post_init__(self) -> None:
        names = list(dict.fromkeys(self.queues))
        if self.queue not in names:
            names.append(self.queue)
        self.queues = names

    @classmethod
    def from_app_config(cls, config: AppConfig, **overrides: Any) -> WorkerConfig:
        """Worker settings from the app's config; keyword overrides win (None is ignored)."""
        values: dict[str, Any] = {
            'queue': config.queue,
            'queues': list(config.queues),
            'top_bound': config.top_bound,
            'fork_worker': config.fork_worker,
            'wait_time': config.wait_time,
            'heartbeat_interval': config.heartbeat_interval,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
