"""Shared default constants for the rowqueue library."""

# Queue a worker binds to when none is configured.
DEFAULT_QUEUE: str = 'default'

# Only the first N unlocked jobs of a queue are lock candidates.
DEFAULT_TOP_BOUND: int = 9

# Upper bound (seconds) a worker blocks waiting for a NOTIFY before re-polling.
DEFAULT_WAIT_TIME: float = 5.0

# Seconds between heartbeat refreshes of an in-flight job.
DEFAULT_HEARTBEAT_INTERVAL: float = 2.0

# application_name reported to PostgreSQL for every connection.
DEFAULT_APP_NAME: str = 'rowqueue'

DEFAULT_PORT: int = 5432

# Process exit status used when a worker loses the claim on its job.
EXIT_LIVENESS_LOST: int = 70

# Environment variables, in resolution order where several apply.
DATABASE_URL_ENV_VARS: tuple[str, ...] = ('ROWQUEUE_DATABASE_URL', 'DATABASE_URL')
FRAMEWORK_CONFIG_ENV_VAR: str = 'ROWQUEUE_DATABASE_CONFIG'
FRAMEWORK_ENV_NAME_ENV_VAR: str = 'ROWQUEUE_ENV'
