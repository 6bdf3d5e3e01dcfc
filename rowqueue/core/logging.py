# rowqueue/core/logging.py
"""
Per-component loggers (``rowqueue.<component>``) writing to stdout.

Lines look like ``[12:00:01] [worker]    [INFO]    at=lock_job job=7``:
the message body is built with format_fields so it stays greppable.
"""

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

# Applied to loggers created after the call; the CLI sets it from --loglevel.
_default_level: int = logging.INFO

_RESET = '\033[0m'
_TIME = '\033[94m'
_TEXT = '\033[97m'


class ColoredFormatter(logging.Formatter):
    """``[time] [component] [LEVEL] message`` with the level colored."""

    level_colors = {
        logging.DEBUG: '\033[90m',
        logging.INFO: '\033[92m',
        logging.WARNING: '\033[93m',
        logging.ERROR: '\033[91m',
        logging.CRITICAL: '\033[1;91m',
    }

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        component = record.name.rpartition('.')[2]
        color = self.level_colors.get(record.levelno, _TEXT)
        line = (
            f'{_TIME}[{stamp}]{_RESET} '
            f'{_TEXT}{f"[{component}]":<12}{_RESET}'
            f'{color}{f"[{record.levelname}]":<10}{_RESET}'
            f'{_TEXT}{record.getMessage()}{_RESET}'
        )
        if record.exc_info:
            line = f'{line}\n{self.formatException(record.exc_info)}'
        return line


def set_default_level(level: int) -> None:
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Logger ``rowqueue.<component_name>``; the handler is attached once."""
    logger = logging.getLogger(f'rowqueue.{component_name}')
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter())
    handler.setLevel(_default_level)
    logger.addHandler(handler)
    logger.setLevel(_default_level)
    # Own handler already prints; the root logger must not print again.
    logger.propagate = False
    return logger


def format_fields(**data: Any) -> str:
    """Render structured context as ``key=value`` pairs, ``at`` first.

    >>> format_fields(job=7, at='delete_job')
    'at=delete_job job=7'
    """
    items = sorted(data.items(), key=lambda kv: kv[0] != 'at')
    parts: list[str] = []
    for key, value in items:
        if value is None:
            continue
        rendered = str(value)
        if not rendered or any(ch.isspace() for ch in rendered):
            rendered = repr(rendered)
        parts.append(f'{key}={rendered}')
    return ' '.join(parts)


@contextmanager
def log_timed(
    logger: logging.Logger,
    level: int = logging.INFO,
    **data: Any,
) -> Iterator[None]:
    """Log a block with its elapsed time in ms.

    When the block raises, the failure is logged with ``error=`` and the
    exception propagates unchanged.
    """
    t0 = time.monotonic()
    try:
        yield
    except BaseException as exc:
        elapsed = int((time.monotonic() - t0) * 1000)
        logger.error(
            format_fields(**data, elapsed=elapsed, error=f'{type(exc).__name__}: {exc}')
        )
        raise
    elapsed = int((time.monotonic() - t0) * 1000)
    logger.log(level, format_fields(**data, elapsed=elapsed))
