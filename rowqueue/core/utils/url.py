# rowqueue/core/utils/url.py
"""Connection-string helpers: password masking for logs, driver suffix removal."""

from __future__ import annotations

import re
from urllib.parse import urlparse, urlunparse

_PG_SCHEMES = frozenset({'postgres', 'postgresql'})
_DRIVER_SUFFIXES = frozenset({'psycopg', 'psycopg2', 'asyncpg'})

# password=secret / password = 'quoted secret' in a libpq key/value DSN
_DSN_PASSWORD = re.compile(r"(password\s*=\s*)('(?:[^'\\]|\\.)*'|\S+)", re.IGNORECASE)


def _mask_by_split(url: str) -> str:
    if '@' not in url:
        return url
    credentials, host = url.rsplit('@', 1)
    user = credentials.rsplit(':', 1)[0]
    return f'{user}:***@{host}'


def mask_database_url(url: str) -> str:
    """Replace the password with ``***`` in a URL or key/value DSN.

    >>> mask_database_url('postgresql://app:s3cret@db/jobs')
    'postgresql://app:***@db/jobs'
    >>> mask_database_url('host=db password=s3cret')
    'host=db password=***'
    """
    if '://' not in url:
        return _DSN_PASSWORD.sub(r'\1***', url)
    try:
        parsed = urlparse(url)
        password = parsed.password
    except ValueError:
        # Unparseable netloc (e.g. a bad port); mask on the last '@'.
        return _mask_by_split(url)
    if not password:
        return url
    userinfo, _, hostinfo = parsed.netloc.rpartition('@')
    user = userinfo.split(':', 1)[0]
    return urlunparse(parsed._replace(netloc=f'{user}:***@{hostinfo}'))


def to_psycopg_url(url: str) -> str:
    """Drop a SQLAlchemy driver suffix: ``postgresql+psycopg://`` -> ``postgresql://``.

    Non-PostgreSQL URLs and unknown drivers are returned unchanged.
    """
    scheme, sep, rest = url.partition('://')
    base, plus, driver = scheme.partition('+')
    if sep and plus and base in _PG_SCHEMES and driver in _DRIVER_SUFFIXES:
        return f'{base}://{rest}'
    return url
