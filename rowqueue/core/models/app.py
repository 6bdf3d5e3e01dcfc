# rowqueue/core/models/app.py
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from rowqueue.core.defaults import (
    DEFAULT_APP_NAME,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_QUEUE,
    DEFAULT_TOP_BOUND,
    DEFAULT_WAIT_TIME,
)
from rowqueue.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from rowqueue.core.utils.url import mask_database_url

_TRUTHY = ('1', 'true', 'yes', 'on')


def parse_queue_list(raw: str | None) -> list[str]:
    """``'a, b,,c'`` -> ``['a', 'b', 'c']``."""
    if not raw:
        return []
    return [name.strip() for name in raw.split(',') if name.strip()]


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Connection sources; both None means resolve from the environment.
    database_url: Optional[str] = None
    framework_config: Optional[dict[str, Any]] = None
    # Primary queue and the extra queues a worker listens on, in priority order.
    queue: str = DEFAULT_QUEUE
    queues: list[str] = Field(default_factory=list)
    # Lock candidates per queue; None disables the bound.
    top_bound: Optional[int] = DEFAULT_TOP_BOUND
    # Run every work cycle in an isolated child process.
    fork_worker: bool = False
    wait_time: float = DEFAULT_WAIT_TIME
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    app_name: str = DEFAULT_APP_NAME

    @model_validator(mode='after')
    def validate_worker_settings(self) -> AppConfig:
        """Collect every invalid setting and raise them together."""
        report = ValidationReport('config')

        if not self.queue:
            report.add(
                ConfigurationError(
                    message='queue must be a non-empty name',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    help_text="omit it to use 'default'",
                )
            )
        if self.top_bound is not None and self.top_bound <= 0:
            report.add(
                ConfigurationError(
                    message='top_bound must be positive',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    notes=[f'got top_bound={self.top_bound}'],
                    help_text='use a positive integer or None for no bound',
                )
            )
        if self.wait_time <= 0:
            report.add(
                ConfigurationError(
                    message='wait_time must be positive',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    notes=[f'got wait_time={self.wait_time}'],
                )
            )
        if self.heartbeat_interval <= 0:
            report.add(
                ConfigurationError(
                    message='heartbeat_interval must be positive',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    notes=[f'got heartbeat_interval={self.heartbeat_interval}'],
                )
            )

        raise_collected(report)
        return self

    @property
    def all_queues(self) -> list[str]:
        """Worker queue order: configured queues, primary appended if absent."""
        names = list(dict.fromkeys(self.queues))
        if self.queue not in names:
            names.append(self.queue)
        return names

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> AppConfig:
        """Build a config from ``ROWQUEUE_*`` variables; keyword overrides win.

        Malformed numbers are reported through the same error display as
        invalid values.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        if env.get('ROWQUEUE_QUEUE'):
            values['queue'] = env['ROWQUEUE_QUEUE']
        if env.get('ROWQUEUE_QUEUES'):
            values['queues'] = parse_queue_list(env['ROWQUEUE_QUEUES'])
        if env.get('ROWQUEUE_TOP_BOUND'):
            values['top_bound'] = env['ROWQUEUE_TOP_BOUND']
        if env.get('ROWQUEUE_FORK_WORKER'):
            values['fork_worker'] = env['ROWQUEUE_FORK_WORKER'].lower() in _TRUTHY
        if env.get('ROWQUEUE_LISTEN_TIME'):
            values['wait_time'] = env['ROWQUEUE_LISTEN_TIME']
        if env.get('ROWQUEUE_APP_NAME'):
            values['app_name'] = env['ROWQUEUE_APP_NAME']

        values.update(overrides)
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(
                message='invalid rowqueue configuration',
                code=ErrorCode.CONFIG_INVALID_WORKER,
                notes=[
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in exc.errors()
                ],
                help_text='check the ROWQUEUE_* environment variables',
            ) from exc

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """Log the config in a human-readable form, with the password masked."""
        if logger is None:
            logger = logging.getLogger()
        logger.info('AppConfig:\n%s', self._format_for_logging())

    def _format_for_logging(self) -> str:
        lines: list[str] = []
        if self.database_url:
            lines.append(f'  database_url: {mask_database_url(self.database_url)}')
        elif self.framework_config:
            lines.append('  database: framework config')
        else:
            lines.append('  database: from environment')
        lines.append(f'  queues: {", ".join(self.all_queues)}')
        lines.append(f'  top_bound: {self.top_bound}')
        lines.append(f'  fork_worker: {self.fork_worker}')
        lines.append(f'  wait_time: {self.wait_time}s')
        lines.append(f'  heartbeat_interval: {self.heartbeat_interval}s')
        lines.append(f'  app_name: {self.app_name}')
        return '\n'.join(lines)
