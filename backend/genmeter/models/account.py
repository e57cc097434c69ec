from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(BaseModel):
    """
    One row of the accounts table. Created lazily on first reference and
    mutated only while the accounts lock is held.
    """

    user_id: str
    display_name: str
    total_usage_count: int = 0
    daily_usage_count: int = 0
    last_daily_reset: datetime = Field(default_factory=_utcnow)
    purchased_count: int = 0
    remaining_purchased_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    last_used_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def new(cls, user_id: str, display_name: str | None = None, *, now: datetime | None = None) -> Account:
        ts = now or _utcnow()
        return cls(
            user_id=user_id,
            display_name=(display_name or "").strip() or user_id,
            last_daily_reset=ts,
            created_at=ts,
            last_used_at=ts,
        )

    def is_reset_due(self, now: datetime) -> bool:
        # Calendar days are compared in local time.
        return self.last_daily_reset.astimezone().date() != now.astimezone().date()

    def effective_daily_usage(self, now: datetime) -> int:
        return 0 if self.is_reset_due(now) else self.daily_usage_count

    def apply_daily_reset(self, now: datetime) -> bool:
        if not self.is_reset_due(now):
            return False
        self.daily_usage_count = 0
        self.last_daily_reset = now
        return True


AccountTable = dict[str, Account]
