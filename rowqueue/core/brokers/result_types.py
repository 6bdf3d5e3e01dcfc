"""Typed error types for connection and schema operations.

Result propagation policy
-------------------------
``BrokerResult[T]`` carries infrastructure outcomes that callers are
expected to branch on (``ping``, schema create/drop).  ``Err`` holds a
``BrokerOperationError`` with a ``retryable`` flag and ``BrokerErrorCode``.

Where Result stops and exceptions take over:

* **Statement execution** (``ConnectionManager.execute``) raises.  The
  connection is discarded first, so the next caller starts fresh.

* **Transactions** accept a unit of work returning ``Result``.  An ``Err``
  rolls the transaction back and is returned to the caller unchanged; an
  exception rolls back and is re-raised.

* **Process boundaries** (CLI) convert ``Err`` into a logged failure and a
  non-zero exit status.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from result import Result


class BrokerErrorCode(str, Enum):
    """What kind of operation failed."""

    CONNECT_FAILED = 'CONNECT_FAILED'
    QUERY_FAILED = 'QUERY_FAILED'
    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    SCHEMA_DROP_FAILED = 'SCHEMA_DROP_FAILED'


@dataclass(slots=True, frozen=True)
class BrokerOperationError:
    """Payload of an ``Err`` from ping or schema management.

    ``retryable`` is set for connection-level failures (refused, dropped);
    ``exception`` keeps the driver error for logging.
    """

    code: BrokerErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type BrokerResult[T] = Result[T, BrokerOperationError]
