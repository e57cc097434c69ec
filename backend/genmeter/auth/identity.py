# genmeter/auth/identity.py
"""
Canonical caller identity.

The chat gateway in front of this service authenticates users and forwards
who they are in request headers. Downstream code only ever sees this
object, never the raw headers.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """
    Attributes:
        user_id: Stable platform user id; the ledger key.
        display_name: Human-readable name, used for new accounts and audit records.
        platform: Originating chat platform, lowercased. Some platforms are exempt from quota.
        is_admin: True when ``user_id`` is listed in ``ADMIN_USERS``.
    """

    user_id: str
    display_name: str
    platform: str | None = None
    is_admin: bool = False

    @classmethod
    def from_headers(
        cls,
        user_id: str,
        display_name: str | None = None,
        platform: str | None = None,
        *,
        admin_users: frozenset[str] | set[str] = frozenset(),
    ) -> Identity:
        uid = user_id.strip()
        return cls(
            user_id=uid,
            display_name=(display_name or "").strip() or uid,
            platform=platform.strip().lower() if platform and platform.strip() else None,
            is_admin=uid in admin_users,
        )

    def to_debug_dict(self) -> dict[str, str | bool | None]:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "platform": self.platform,
            "is_admin": self.is_admin,
        }
