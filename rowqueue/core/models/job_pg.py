from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import BigInteger, DateTime, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JOBS_TABLE = 'rowqueue_jobs'


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class JobModel(Base):
    """
    SQLAlchemy model for the jobs table.

    - id: int # bigserial
    - q_name: str # queue name, also the NOTIFY channel
    - method: str # handler key, 'Receiver.message'
    - args: list # positional arguments (JSONB array)
    - locked_at: datetime # claim time, NULL while the job is available
    - locked_by: str # worker-instance id holding the claim
    - heartbeat_at: datetime # last liveness refresh by the claim holder
    - created_at: datetime # insert time
    """

    __tablename__ = JOBS_TABLE

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    q_name: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str] = mapped_column(Text, nullable=False)
    args: Mapped[list[Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    locked_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )

    __table_args__ = (
        # Lock candidates: unlocked rows of one queue in id order
        Index(
            'idx_rowqueue_jobs_available',
            'q_name',
            'id',
            postgresql_where=text('locked_at IS NULL'),
        ),
        Index(
            'idx_rowqueue_jobs_heartbeat',
            'heartbeat_at',
            postgresql_where=text('locked_at IS NOT NULL'),
        ),
    )
