"""rowqueue - a PostgreSQL-backed job queue"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import RowQueue
from .core.brokers.connection import ConnectionManager
from .core.brokers.listener import NotificationWaiter
from .core.brokers.queue import Queue
from .core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
)
from .core.errors import (
    ConfigurationError,
    ErrorCode,
    RegistryError,
    RowQueueError,
)
from .core.models.app import AppConfig
from .core.models.broker import ConnectionSettings
from .core.models.job import Job
from .core.registry.handlers import (
    DuplicateHandlerError,
    HandlerRegistry,
    NotRegistered,
)
from .core.worker.config import WorkerConfig
from .core.worker.worker import Worker

__all__ = [
    'RowQueue',
    'AppConfig',
    'ConnectionSettings',
    'ConnectionManager',
    'NotificationWaiter',
    'Queue',
    'Job',
    'Worker',
    'WorkerConfig',
    'HandlerRegistry',
    'NotRegistered',
    'DuplicateHandlerError',
    'BrokerErrorCode',
    'BrokerOperationError',
    'BrokerResult',
    'RowQueueError',
    'ConfigurationError',
    'RegistryError',
    'ErrorCode',
]
