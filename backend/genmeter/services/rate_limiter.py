from __future__ import annotations

import json
import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    limit: int
    remaining: int
    count: int
    window_reset_epoch: int
    limiter_key: str
    window_seconds: int

    @property
    def message(self) -> str | None:
        if self.allowed:
            return None
        return f"Too many requests, please try again in {self.retry_after_seconds} seconds"


class RateLimiter(Protocol):
    def check(
        self,
        *,
        identifier: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
    ) -> RateLimitResult:
        ...

    def record(self, *, identifier: str, now: float | None = None) -> None:
        ...


class NoopRateLimiter:
    """
    Disabled limiter that always allows requests. Used when rate limiting is turned off.
    """

    def check(
        self,
        *,
        identifier: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            limit=limit,
            remaining=max(0, limit),
            count=0,
            window_reset_epoch=now_ts + window_seconds,
            limiter_key=f"noop:user:{identifier}:window:{window_seconds}",
            window_seconds=window_seconds,
        )

    def record(self, *, identifier: str, now: float | None = None) -> None:
        return None


class SlidingWindowRateLimiter:
    """
    Per-identifier sliding window of admission timestamps, kept in process
    memory only. ``check`` prunes and counts; ``record`` appends and is only
    called once a request has actually been admitted, so rejected attempts
    never consume window capacity.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._windows: defaultdict[str, deque[float]] = defaultdict(deque)

    def check(
        self,
        *,
        identifier: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
    ) -> RateLimitResult:
        now_ts = self._clock() if now is None else now
        window = self._prune(identifier, now_ts, window_seconds)
        count = len(window)
        limiter_key = f"user:{identifier}:window:{window_seconds}"

        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(
                allowed=True,
                retry_after_seconds=0,
                limit=limit,
                remaining=0,
                count=count,
                window_reset_epoch=int(now_ts),
                limiter_key=limiter_key,
                window_seconds=window_seconds,
            )

        reset_epoch = int(math.ceil(window[0] + window_seconds)) if window else int(now_ts) + window_seconds
        if count >= limit:
            retry_after = max(1, math.ceil(window[0] + window_seconds - now_ts))
            return RateLimitResult(
                allowed=False,
                retry_after_seconds=retry_after,
                limit=limit,
                remaining=0,
                count=count,
                window_reset_epoch=reset_epoch,
                limiter_key=limiter_key,
                window_seconds=window_seconds,
            )

        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
            window_reset_epoch=reset_epoch,
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )

    def record(self, *, identifier: str, now: float | None = None) -> None:
        now_ts = self._clock() if now is None else now
        self._windows[identifier].append(now_ts)

    def _prune(self, identifier: str, now_ts: float, window_seconds: int) -> deque[float]:
        window = self._windows[identifier]
        cutoff = now_ts - window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        if not window:
            del self._windows[identifier]
            return deque()
        return window


def build_rate_limiter(*, enabled: bool, clock: Callable[[], float] | None = None) -> RateLimiter:
    if not enabled:
        logger.info("Rate limiting disabled via RATE_LIMIT_ENABLED=false; using NoopRateLimiter")
        return NoopRateLimiter()
    return SlidingWindowRateLimiter(clock=clock)


def log_decision(*, user_id: str, result: RateLimitResult) -> None:
    payload = {
        "user_id": user_id,
        "limiter_key": result.limiter_key,
        "window_seconds": result.window_seconds,
        "limit": result.limit,
        "current_count": result.count,
        "remaining": result.remaining,
        "reset_epoch": result.window_reset_epoch,
        "decision": "allow" if result.allowed else "block",
    }
    logger.info(json.dumps(payload, separators=(",", ":")))
