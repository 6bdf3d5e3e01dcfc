# rowqueue/core/app.py
from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, Optional, TypeVar

from rowqueue.core.brokers.connection import ConnectionManager
from rowqueue.core.brokers.queue import Queue
from rowqueue.core.brokers.result_types import BrokerResult
from rowqueue.core.brokers.setup import create_schema, drop_schema
from rowqueue.core.errors import SourceLocation
from rowqueue.core.logging import format_fields, get_logger
from rowqueue.core.models.app import AppConfig
from rowqueue.core.models.job import Job
from rowqueue.core.registry.handlers import HandlerRegistry

_F = TypeVar('_F', bound=Callable[..., Any])


class RowQueue:
    """
    Application object: configuration, one connection manager, handler registry.

    Usage:
    ------
    app = RowQueue(AppConfig(database_url='postgresql://localhost/jobs'))

    @app.handler('Reporter.run')
    def run_report(report_id: int) -> None: ...

    app.enqueue('Reporter.run', 42)              # -> Job on 'default'
    app.enqueue('Reporter.run', 7, queue='low')

    Workers locate this object by ``module:attr`` and rebuild it in every
    isolated child, so the handler registrations must happen at import time.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        connection: ConnectionManager | None = None,
    ) -> None:
        self.config = config if config is not None else AppConfig.from_env()
        self.handlers = HandlerRegistry()
        self.logger = get_logger('app')
        self._connection: Optional[ConnectionManager] = connection

    @property
    def connection(self) -> ConnectionManager:
        """This process's connection manager (created on first access, connects lazily)."""
        if self._connection is None:
            self._connection = ConnectionManager(
                database_url=self.config.database_url,
                framework_config=self.config.framework_config,
                app_name=self.config.app_name,
            )
        return self._connection

    def handler(
        self,
        name: str,
        *,
        messages: Iterable[str] | None = None,
    ) -> Callable[[_F], _F]:
        """Register the decorated callable as a job handler.

        On a function, ``name`` is the full key (``'Reporter.run'``). On a
        class or other receiver, pass ``messages`` to register
        ``name.message`` for each listed method.
        """

        def decorator(fn: _F) -> _F:
            if messages is not None:
                self.handlers.register_receiver(fn, name=name, messages=messages)
                return fn
            location = SourceLocation.from_function(fn)
            self.handlers.register(
                fn,
                name=name,
                source=location.format_short() if location else None,
            )
            return fn

        return decorator

    def list_handlers(self) -> list[str]:
        return self.handlers.keys_list()

    def queue(self, name: str | None = None) -> Queue:
        """Queue bound to this app's connection; defaults to the primary queue."""
        return Queue(
            name or self.config.queue,
            self.connection,
            top_bound=self.config.top_bound,
        )

    def enqueue(self, method: str, *args: Any, queue: str | None = None) -> Job:
        """Insert a job calling ``method(*args)``; args must be JSON-serializable."""
        job = self.queue(queue).enqueue(method, *args)
        self.logger.info(
            format_fields(at='enqueue', queue=job.q_name, job=job.id, method=method)
        )
        return job

    def setup(self) -> BrokerResult[None]:
        """Create the jobs table and notify trigger."""
        return create_schema(self.connection.settings)

    def drop(self) -> BrokerResult[None]:
        return drop_schema(self.connection.settings)

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
