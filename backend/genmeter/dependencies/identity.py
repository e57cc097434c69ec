from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status

from genmeter.auth.identity import Identity
from genmeter.dependencies.usage import get_usage_manager
from genmeter.services.usage_manager import UsageManager


def get_identity(
    x_user_id: str | None = Header(None),
    x_user_name: str | None = Header(None),
    x_platform: str | None = Header(None),
    manager: UsageManager = Depends(get_usage_manager),
) -> Identity:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return Identity.from_headers(
        x_user_id,
        x_user_name,
        x_platform,
        admin_users=manager.policy.admin_users,
    )
