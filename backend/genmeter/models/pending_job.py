from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class PendingExternalJob(BaseModel):
    """
    A job accepted by an external provider whose result has not been
    reconciled yet. ``charged`` flips to True exactly once.
    """

    job_id: str
    user_id: str
    display_name: str
    command_name: str
    platform: str | None = None
    credit_cost: int = Field(..., gt=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    charged: bool = False
    charged_at: datetime | None = None


PendingJobTable = dict[str, PendingExternalJob]
