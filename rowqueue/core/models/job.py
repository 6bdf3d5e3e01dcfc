from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Job(BaseModel):
    """
    Worker-side view of one claimed row of ``rowqueue_jobs``.

    - id: int # assigned by storage
    - q_name: str # queue the job was enqueued on
    - method: str # handler key, 'Receiver.message'
    - args: list # positional arguments, stored as JSONB
    - locked_at: datetime # when the current claim was taken
    - locked_by: str # worker-instance id holding the claim
    """

    model_config = ConfigDict(frozen=True)

    id: int
    q_name: str
    method: str
    args: list[Any] = Field(default_factory=list)
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def receiver(self) -> str:
        return split_action(self.method)[0]

    @property
    def message(self) -> str:
        return split_action(self.method)[1]


def split_action(method: str) -> tuple[str, str]:
    """Split an action reference into (receiver, message).

    ``'Reporter.run'`` -> ``('Reporter', 'run')``; a reference without a dot
    has an empty receiver.
    """
    receiver, _, message = method.rpartition('.')
    return receiver, message
