# rowqueue/core/utils/db.py
"""Turning driver exceptions into ``BrokerOperationError`` payloads."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

from rowqueue.core.brokers.result_types import BrokerErrorCode, BrokerOperationError


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """True when SQLAlchemy flagged the DBAPI error as a lost connection."""
    return bool(getattr(exc, 'connection_invalidated', False)) or bool(
        getattr(exc, 'is_disconnect', False)
    )


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Connection-level failures (refused, dropped, reset) are worth retrying."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def broker_error(
    exc: BaseException,
    message: str,
    code: BrokerErrorCode | None = None,
) -> BrokerOperationError:
    """Wrap ``exc`` for an ``Err``.

    Without an explicit ``code``, connection failures map to CONNECT_FAILED
    and everything else to QUERY_FAILED.
    """
    retryable = is_retryable_connection_error(exc)
    if code is None:
        code = BrokerErrorCode.CONNECT_FAILED if retryable else BrokerErrorCode.QUERY_FAILED
    return BrokerOperationError(
        code=code,
        message=f'{message}: {exc}',
        retryable=retryable,
        exception=exc,
    )
