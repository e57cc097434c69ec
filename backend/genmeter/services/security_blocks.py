from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable

from genmeter.services.ledger_store import StorageError
from genmeter.services.quota import QuotaExceededError, QuotaManager, QuotaPolicy
from genmeter.services.transport import ChatTransport, safe_send

logger = logging.getLogger(__name__)

PENALTY_COMMAND = "security-block-penalty"


@dataclass(frozen=True)
class SecurityBlockResult:
    should_warn: bool = False
    should_deduct: bool = False
    block_count: int = 0


class SecurityBlockTracker:
    """
    Sliding window of content-policy rejections per user. Crossing the
    threshold latches a warning once; every rejection after that is flagged
    for deduction for as long as the process lives.
    """

    def __init__(
        self,
        *,
        window_seconds: int,
        warning_threshold: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.window_seconds = window_seconds
        self.warning_threshold = warning_threshold
        self._clock = clock or time.time
        self._rejections: defaultdict[str, deque[float]] = defaultdict(deque)
        self._warned: set[str] = set()

    def record_security_block(self, user_id: str, *, is_admin: bool = False) -> SecurityBlockResult:
        if not user_id or is_admin:
            return SecurityBlockResult()

        now = self._clock()
        window = self._rejections[user_id]
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        window.append(now)
        count = len(window)

        if user_id in self._warned:
            logger.warning(
                "security_block.deduct",
                extra={"user_id": user_id, "block_count": count},
            )
            return SecurityBlockResult(should_deduct=True, block_count=count)

        if count >= self.warning_threshold:
            self._warned.add(user_id)
            logger.warning(
                "security_block.warn",
                extra={"user_id": user_id, "block_count": count, "threshold": self.warning_threshold},
            )
            return SecurityBlockResult(should_warn=True, block_count=count)

        logger.info("security_block.recorded", extra={"user_id": user_id, "block_count": count})
        return SecurityBlockResult(block_count=count)

    def is_warned(self, user_id: str) -> bool:
        return user_id in self._warned

    def block_count(self, user_id: str) -> int:
        return len(self._rejections.get(user_id, ()))


class SecurityBlockEnforcer:
    """
    Feeds content-policy rejections from any command into one tracker and
    applies the consequences: a one-time warning, then a penalty charge per
    rejection. Shared by the generation and job orchestrators.
    """

    def __init__(self, *, tracker: SecurityBlockTracker, quota: QuotaManager, penalty_units: int = 1) -> None:
        self.tracker = tracker
        self.quota = quota
        self.penalty_units = penalty_units

    async def handle(
        self,
        transport: ChatTransport,
        user_id: str,
        display_name: str | None,
        policy: QuotaPolicy,
    ) -> SecurityBlockResult:
        verdict = self.tracker.record_security_block(user_id, is_admin=policy.is_admin(user_id))
        if verdict.should_warn:
            await safe_send(
                transport,
                "Warning: your requests were blocked by the content filter several times. "
                "Further blocked requests will be charged.",
            )
        elif verdict.should_deduct and await self.apply_penalty(user_id, display_name, policy):
            await safe_send(
                transport,
                f"This blocked request was charged {self.penalty_units} credit(s) after a previous warning.",
            )
        return verdict

    async def apply_penalty(self, user_id: str, display_name: str | None, policy: QuotaPolicy) -> bool:
        """
        Charge the penalty, or record it as usage when the balance can't
        cover it. Returns False when the ledger could not be written.
        """
        try:
            try:
                await self.quota.reserve_and_consume(user_id, display_name, PENALTY_COMMAND, self.penalty_units, policy)
            except QuotaExceededError:
                await self.quota.record_usage_only(user_id, display_name, PENALTY_COMMAND, self.penalty_units)
        except StorageError:
            logger.error(
                "security_block.penalty_failed",
                extra={"user_id": user_id, "units": self.penalty_units},
                exc_info=True,
            )
            return False
        return True
