from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal

from genmeter.models.account import Account, AccountTable
from genmeter.services.ledger_store import LedgerStore, LedgerTable
from genmeter.services.rate_limiter import RateLimiter, log_decision

logger = logging.getLogger(__name__)

ConsumptionType = Literal["free", "purchased", "mixed"]

EXEMPT_TOKEN = "exempt"


class QuotaExceededError(Exception):
    def __init__(self, *, requested: int, remaining_today: int, remaining_purchased: int) -> None:
        self.requested = requested
        self.remaining_today = remaining_today
        self.remaining_purchased = remaining_purchased
        self.total_available = remaining_today + remaining_purchased
        super().__init__(
            insufficient_quota_message(
                requested=requested,
                remaining_today=remaining_today,
                remaining_purchased=remaining_purchased,
            )
        )


class RateLimitedError(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(f"Too many requests, please try again in {retry_after_seconds} seconds")
        self.retry_after_seconds = retry_after_seconds


def insufficient_quota_message(*, requested: int, remaining_today: int, remaining_purchased: int) -> str:
    total = remaining_today + remaining_purchased
    return (
        f"This request needs {requested} credits but only {total} are available "
        f"(free today: {remaining_today}, purchased: {remaining_purchased}, total: {total})"
    )


@dataclass(frozen=True)
class QuotaPolicy:
    daily_free_limit: int
    rate_limit_window_seconds: int
    rate_limit_max: int
    admin_users: frozenset[str] = frozenset()
    unlimited_platforms: frozenset[str] = frozenset()

    @classmethod
    def from_settings(cls, settings) -> QuotaPolicy:
        return cls(
            daily_free_limit=settings.DAILY_FREE_LIMIT,
            rate_limit_window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            rate_limit_max=settings.RATE_LIMIT_MAX,
            admin_users=frozenset(settings.ADMIN_USERS),
            unlimited_platforms=frozenset(settings.UNLIMITED_PLATFORMS),
        )

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_users

    def is_exempt(self, user_id: str, platform: str | None = None) -> bool:
        if self.is_admin(user_id):
            return True
        return bool(platform) and platform.strip().lower() in self.unlimited_platforms


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    message: str | None = None
    token: str | None = None
    is_exempt: bool = False
    remaining_today: int = 0
    remaining_purchased: int = 0
    retry_after_seconds: int | None = None

    @property
    def total_available(self) -> int:
        return self.remaining_today + self.remaining_purchased


@dataclass(frozen=True)
class Consumption:
    account: Account
    consumption_type: ConsumptionType
    free_used: int
    purchased_used: int


@dataclass(frozen=True)
class QuotaSummary:
    user_id: str
    display_name: str
    is_new: bool
    remaining_today: int
    remaining_purchased: int
    total_usage_count: int
    purchased_count: int

    @property
    def total_available(self) -> int:
        return self.remaining_today + self.remaining_purchased


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_units(units: int) -> int:
    if not isinstance(units, int) or isinstance(units, bool) or units <= 0:
        raise ValueError("units must be a positive integer")
    return units


def ensure_account(accounts: AccountTable, user_id: str, display_name: str | None, now: datetime) -> Account:
    account = accounts.get(user_id)
    if account is None:
        account = Account.new(user_id, display_name, now=now)
        accounts[user_id] = account
        logger.info("Created account", extra={"user_id": user_id, "display_name": account.display_name})
    return account


def available_balance(account: Account, policy: QuotaPolicy, now: datetime) -> tuple[int, int]:
    remaining_today = max(0, policy.daily_free_limit - account.effective_daily_usage(now))
    return remaining_today, account.remaining_purchased_count


def apply_consumption(
    accounts: AccountTable,
    *,
    user_id: str,
    display_name: str | None,
    units: int,
    policy: QuotaPolicy,
    now: datetime,
) -> Consumption:
    """
    Deduct ``units`` from one account inside an already-locked accounts table:
    daily free allowance first, then purchased balance. Lifetime usage always
    grows by ``units``; sufficiency is the caller's responsibility.
    """
    account = ensure_account(accounts, user_id, display_name, now)
    account.apply_daily_reset(now)

    account.total_usage_count += units
    account.last_used_at = now

    remaining = units
    free_used = min(remaining, max(0, policy.daily_free_limit - account.daily_usage_count))
    account.daily_usage_count += free_used
    remaining -= free_used

    purchased_used = min(remaining, account.remaining_purchased_count)
    account.remaining_purchased_count -= purchased_used

    consumption_type: ConsumptionType
    if free_used > 0 and purchased_used > 0:
        consumption_type = "mixed"
    elif free_used > 0:
        consumption_type = "free"
    else:
        consumption_type = "purchased"

    return Consumption(
        account=account.model_copy(),
        consumption_type=consumption_type,
        free_used=free_used,
        purchased_used=purchased_used,
    )


class QuotaManager:
    """
    Business rules over the accounts table: optimistic checks, deductions and
    usage-only records. Every mutation goes through the ledger store lock.
    """

    def __init__(
        self,
        store: LedgerStore,
        rate_limiter: RateLimiter,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    async def get_or_create_account(self, user_id: str, display_name: str | None = None) -> Account:
        accounts: AccountTable = await self.store.read(LedgerTable.ACCOUNTS)
        account = accounts.get(user_id)
        if account is not None:
            return account

        def _create(table: AccountTable) -> Account:
            return ensure_account(table, user_id, display_name, self.now()).model_copy()

        return await self.store.with_lock(LedgerTable.ACCOUNTS, _create)

    async def check_and_reserve_quota(
        self,
        user_id: str,
        display_name: str | None,
        units: int,
        policy: QuotaPolicy,
        platform: str | None = None,
    ) -> QuotaCheck:
        _require_units(units)
        if policy.is_exempt(user_id, platform):
            return QuotaCheck(allowed=True, token=EXEMPT_TOKEN, is_exempt=True)

        rate = self.rate_limiter.check(
            identifier=user_id,
            limit=policy.rate_limit_max,
            window_seconds=policy.rate_limit_window_seconds,
        )
        log_decision(user_id=user_id, result=rate)
        if not rate.allowed:
            return QuotaCheck(
                allowed=False,
                message=rate.message,
                retry_after_seconds=rate.retry_after_seconds,
            )

        account = await self.get_or_create_account(user_id, display_name)
        remaining_today, remaining_purchased = available_balance(account, policy, self.now())
        if remaining_today + remaining_purchased < units:
            return QuotaCheck(
                allowed=False,
                message=insufficient_quota_message(
                    requested=units,
                    remaining_today=remaining_today,
                    remaining_purchased=remaining_purchased,
                ),
                remaining_today=remaining_today,
                remaining_purchased=remaining_purchased,
            )

        self.rate_limiter.record(identifier=user_id)
        return QuotaCheck(
            allowed=True,
            token=uuid.uuid4().hex,
            remaining_today=remaining_today,
            remaining_purchased=remaining_purchased,
        )

    async def consume_quota(
        self,
        user_id: str,
        display_name: str | None,
        command_name: str,
        units: int,
        policy: QuotaPolicy,
    ) -> Consumption:
        _require_units(units)

        def _consume(accounts: AccountTable) -> Consumption:
            return apply_consumption(
                accounts,
                user_id=user_id,
                display_name=display_name,
                units=units,
                policy=policy,
                now=self.now(),
            )

        consumption = await self.store.with_lock(LedgerTable.ACCOUNTS, _consume)
        self._log_consumption(command_name, units, consumption)
        return consumption

    async def reserve_and_consume(
        self,
        user_id: str,
        display_name: str | None,
        command_name: str,
        units: int,
        policy: QuotaPolicy,
    ) -> Consumption:
        """Check sufficiency and deduct in a single critical section."""
        _require_units(units)

        def _reserve(accounts: AccountTable) -> Consumption:
            now = self.now()
            account = ensure_account(accounts, user_id, display_name, now)
            remaining_today, remaining_purchased = available_balance(account, policy, now)
            if remaining_today + remaining_purchased < units:
                raise QuotaExceededError(
                    requested=units,
                    remaining_today=remaining_today,
                    remaining_purchased=remaining_purchased,
                )
            return apply_consumption(
                accounts,
                user_id=user_id,
                display_name=display_name,
                units=units,
                policy=policy,
                now=now,
            )

        consumption = await self.store.with_lock(LedgerTable.ACCOUNTS, _reserve)
        self._log_consumption(command_name, units, consumption)
        return consumption

    async def record_usage_only(
        self,
        user_id: str,
        display_name: str | None,
        command_name: str,
        units: int,
    ) -> Account:
        _require_units(units)

        def _record(accounts: AccountTable) -> Account:
            now = self.now()
            account = ensure_account(accounts, user_id, display_name, now)
            account.total_usage_count += units
            account.last_used_at = now
            return account.model_copy()

        account = await self.store.with_lock(LedgerTable.ACCOUNTS, _record)
        logger.info(
            "quota.usage_recorded",
            extra={
                "user_id": user_id,
                "command_name": command_name,
                "units": units,
                "total_usage_count": account.total_usage_count,
            },
        )
        return account

    async def get_quota_summary(self, user_id: str, policy: QuotaPolicy) -> QuotaSummary:
        accounts: AccountTable = await self.store.read(LedgerTable.ACCOUNTS)
        account = accounts.get(user_id)
        if account is None:
            return QuotaSummary(
                user_id=user_id,
                display_name=user_id,
                is_new=True,
                remaining_today=max(0, policy.daily_free_limit),
                remaining_purchased=0,
                total_usage_count=0,
                purchased_count=0,
            )
        remaining_today, remaining_purchased = available_balance(account, policy, self.now())
        return QuotaSummary(
            user_id=user_id,
            display_name=account.display_name,
            is_new=False,
            remaining_today=remaining_today,
            remaining_purchased=remaining_purchased,
            total_usage_count=account.total_usage_count,
            purchased_count=account.purchased_count,
        )

    @staticmethod
    def _log_consumption(command_name: str, units: int, consumption: Consumption) -> None:
        account = consumption.account
        logger.info(
            "quota.consumed",
            extra={
                "user_id": account.user_id,
                "command_name": command_name,
                "units": units,
                "consumption_type": consumption.consumption_type,
                "free_used": consumption.free_used,
                "purchased_used": consumption.purchased_used,
                "total_usage_count": account.total_usage_count,
                "daily_usage_count": account.daily_usage_count,
                "remaining_purchased_count": account.remaining_purchased_count,
            },
        )
