from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from genmeter.models.recharge import RechargeType


class RechargeRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list)
    amount: int = Field(..., gt=0)
    note: str | None = Field(default=None, max_length=500)
    all_users: bool = False

    @field_validator("user_ids")
    @staticmethod
    def _normalize_user_ids(value: list[str]) -> list[str]:
        return [v.strip() for v in value if v and v.strip()]


class RechargeTargetOut(BaseModel):
    user_id: str
    display_name: str
    amount: int
    before_balance: int
    after_balance: int


class RechargeRecordOut(BaseModel):
    id: str
    timestamp: datetime
    type: RechargeType
    operator_id: str
    operator_name: str
    targets: list[RechargeTargetOut]
    total_amount: int
    note: str


class RechargeHistoryOut(BaseModel):
    page: int
    page_size: int
    total_pages: int
    total_records: int
    records: list[RechargeRecordOut]
