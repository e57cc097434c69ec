from __future__ import annotations

from fastapi import Depends, HTTPException, status

from genmeter.auth.identity import Identity
from genmeter.dependencies.identity import get_identity


def require_admin_user(identity: Identity = Depends(get_identity)) -> Identity:
    """
    Ensure the caller is listed in ADMIN_USERS.
    """
    if not identity.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity
