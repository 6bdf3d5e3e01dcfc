"""SQL constants for the Queue.

Placeholders are psycopg positional (``%s``); every statement runs through
``ConnectionManager.execute`` in autocommit mode, so each is atomic on its own.
"""

from __future__ import annotations

JOB_COLUMNS = 'id, q_name, method, args, locked_at, locked_by, created_at'


# ---------- Lock-and-claim ----------
# Candidates are the first top_bound unlocked rows of the queue by id
# (LIMIT NULL means no bound). Rows locked by a concurrent claimer are skipped,
# so two workers never receive the same job.
# Params: q_name, top_bound, locked_by

LOCK_SQL = """
WITH candidates AS (
  SELECT id
  FROM rowqueue_jobs
  WHERE q_name = %s
    AND locked_at IS NULL
  ORDER BY id ASC
  LIMIT %s
),
next AS (
  SELECT id
  FROM rowqueue_jobs
  WHERE id IN (SELECT id FROM candidates)
    AND locked_at IS NULL
  ORDER BY id ASC
  LIMIT 1
  FOR UPDATE SKIP LOCKED
)
UPDATE rowqueue_jobs j
SET locked_at = now(),
    locked_by = %s,
    heartbeat_at = now()
FROM next
WHERE j.id = next.id
RETURNING j.id, j.q_name, j.method, j.args, j.locked_at, j.locked_by, j.created_at
"""


# ---------- Liveness ----------
# Only the claim holder may refresh; a missing row or a foreign locked_by
# returns no row.
# Params: job_id, locked_by

HEARTBEAT_SQL = """
UPDATE rowqueue_jobs
SET heartbeat_at = now()
WHERE id = %s
  AND locked_by = %s
RETURNING id
"""

# Unlock claims whose holder stopped heartbeating. Rows claimed before the
# heartbeat column existed fall back to locked_at.
# Params: stale_after_s

RELEASE_STALE_SQL = """
UPDATE rowqueue_jobs
SET locked_at = NULL,
    locked_by = NULL,
    heartbeat_at = NULL
WHERE locked_at IS NOT NULL
  AND COALESCE(heartbeat_at, locked_at) < now() - make_interval(secs => %s)
RETURNING id
"""


# ---------- Producer / maintenance ----------

# Params: q_name, method, args (Jsonb)
INSERT_SQL = f"""
INSERT INTO rowqueue_jobs (q_name, method, args)
VALUES (%s, %s, %s)
RETURNING {JOB_COLUMNS}
"""

# Params: job_id
DELETE_SQL = 'DELETE FROM rowqueue_jobs WHERE id = %s'

# Params: q_name
DELETE_ALL_SQL = 'DELETE FROM rowqueue_jobs WHERE q_name = %s'

# Params: q_name
COUNT_SQL = 'SELECT COUNT(*) AS count FROM rowqueue_jobs WHERE q_name = %s'
