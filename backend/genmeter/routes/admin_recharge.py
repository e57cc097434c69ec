from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, status

from genmeter.auth.identity import Identity
from genmeter.dependencies.admin import require_admin_user
from genmeter.dependencies.usage import get_usage_manager
from genmeter.models.recharge import RechargeOperator, RechargeRecord
from genmeter.schemas.recharge import (
    RechargeHistoryOut,
    RechargeRecordOut,
    RechargeRequest,
    RechargeTargetOut,
)
from genmeter.services.usage_manager import UsageManager

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/recharge",
    response_model=RechargeRecordOut,
    status_code=status.HTTP_201_CREATED,
)
async def recharge_users(
    payload: RechargeRequest,
    admin: Identity = Depends(require_admin_user),
    manager: UsageManager = Depends(get_usage_manager),
) -> RechargeRecordOut:
    record = await manager.recharges.recharge(
        RechargeOperator(user_id=admin.user_id, display_name=admin.display_name),
        payload.user_ids,
        payload.amount,
        payload.note,
        all_users=payload.all_users,
    )
    logger.info(
        "Admin recharge applied",
        extra={"operator_id": admin.user_id, "record_id": record.id, "total_amount": record.total_amount},
    )
    return _record_to_schema(record)


@router.get("/recharge-history", response_model=RechargeHistoryOut)
async def recharge_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    _admin: Identity = Depends(require_admin_user),
    manager: UsageManager = Depends(get_usage_manager),
) -> RechargeHistoryOut:
    history = await manager.recharges.list_recharge_history(page, page_size)
    return RechargeHistoryOut(
        page=history.page,
        page_size=history.page_size,
        total_pages=history.total_pages,
        total_records=history.total_records,
        records=[_record_to_schema(r) for r in history.records],
    )


def _record_to_schema(record: RechargeRecord) -> RechargeRecordOut:
    return RechargeRecordOut(
        id=record.id,
        timestamp=record.timestamp,
        type=record.type,
        operator_id=record.operator.user_id,
        operator_name=record.operator.display_name,
        targets=[RechargeTargetOut(**t.model_dump()) for t in record.targets],
        total_amount=record.total_amount,
        note=record.note,
    )
