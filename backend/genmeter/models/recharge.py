from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RechargeType = Literal["single", "batch", "all"]


class RechargeOperator(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str


class RechargeTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str
    amount: int
    before_balance: int
    after_balance: int


class RechargeRecord(BaseModel):
    """Audit entry for one recharge operation. Never rewritten once appended."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    type: RechargeType
    operator: RechargeOperator
    targets: list[RechargeTarget]
    total_amount: int
    note: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def generate_id(now: datetime | None = None) -> str:
        ts = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
        return f"recharge_{ts}_{secrets.token_hex(2)}"


class RechargeHistory(BaseModel):
    version: str = "1.0.0"
    last_update: datetime | None = None
    records: list[RechargeRecord] = Field(default_factory=list)
