from __future__ import annotations

from pydantic import BaseModel


class QuotaSummaryOut(BaseModel):
    user_id: str
    display_name: str
    is_new: bool
    unlimited: bool = False
    daily_free_limit: int
    remaining_today: int
    remaining_purchased: int
    total_available: int
    total_usage_count: int
    purchased_count: int
