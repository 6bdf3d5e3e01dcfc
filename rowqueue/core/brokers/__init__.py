from rowqueue.core.brokers.connection import ConnectionManager
from rowqueue.core.brokers.listener import NotificationWaiter
from rowqueue.core.brokers.queue import Queue
from rowqueue.core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
)

__all__ = [
    'ConnectionManager',
    'NotificationWaiter',
    'Queue',
    'BrokerErrorCode',
    'BrokerOperationError',
    'BrokerResult',
]
