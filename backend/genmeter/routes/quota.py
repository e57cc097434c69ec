from __future__ import annotations

from fastapi import APIRouter, Depends

from genmeter.auth.identity import Identity
from genmeter.dependencies.admin import require_admin_user
from genmeter.dependencies.identity import get_identity
from genmeter.dependencies.usage import get_usage_manager
from genmeter.schemas.quota import QuotaSummaryOut
from genmeter.services.usage_manager import UsageManager

router = APIRouter(prefix="/quota", tags=["quota"])


async def _summary(manager: UsageManager, user_id: str, platform: str | None = None) -> QuotaSummaryOut:
    summary = await manager.quota.get_quota_summary(user_id, manager.policy)
    return QuotaSummaryOut(
        user_id=summary.user_id,
        display_name=summary.display_name,
        is_new=summary.is_new,
        unlimited=manager.policy.is_exempt(user_id, platform),
        daily_free_limit=manager.policy.daily_free_limit,
        remaining_today=summary.remaining_today,
        remaining_purchased=summary.remaining_purchased,
        total_available=summary.total_available,
        total_usage_count=summary.total_usage_count,
        purchased_count=summary.purchased_count,
    )


@router.get("/me", response_model=QuotaSummaryOut)
async def get_my_quota(
    identity: Identity = Depends(get_identity),
    manager: UsageManager = Depends(get_usage_manager),
) -> QuotaSummaryOut:
    return await _summary(manager, identity.user_id, identity.platform)


@router.get("/{user_id}", response_model=QuotaSummaryOut)
async def get_user_quota(
    user_id: str,
    _admin: Identity = Depends(require_admin_user),
    manager: UsageManager = Depends(get_usage_manager),
) -> QuotaSummaryOut:
    return await _summary(manager, user_id)
