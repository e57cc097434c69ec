from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence, TypeVar

from genmeter.core.errors import InvalidRequestError
from genmeter.models.account import AccountTable
from genmeter.models.recharge import (
    RechargeHistory,
    RechargeOperator,
    RechargeRecord,
    RechargeTarget,
    RechargeType,
)
from genmeter.services.ledger_store import LedgerStore, LedgerTable
from genmeter.services.quota import ensure_account

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_NOTE = "admin recharge"


@dataclass(frozen=True)
class RechargeHistoryPage:
    records: list[RechargeRecord]
    page: int
    page_size: int
    total_records: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_records / self.page_size))


class RechargeLedger:
    """
    Credits purchased balance and keeps the append-only recharge audit trail.
    A recharge mutates the accounts table and appends its record in one
    critical section, so either both land on disk or neither does.
    """

    MAX_PAGE_SIZE = 50

    def __init__(self, store: LedgerStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def update_users_batch(self, mutator: Callable[[AccountTable], T]) -> T:
        return await self.store.with_lock(LedgerTable.ACCOUNTS, mutator)

    async def add_recharge_record(self, record: RechargeRecord) -> RechargeRecord:
        def _append(history: RechargeHistory) -> RechargeRecord:
            _append_record(history, record)
            return record

        return await self.store.with_lock(LedgerTable.RECHARGE_HISTORY, _append)

    async def list_recharge_history(self, page: int = 1, page_size: int = 10) -> RechargeHistoryPage:
        normalized_size = max(1, min(int(page_size or 10), self.MAX_PAGE_SIZE))
        history: RechargeHistory = await self.store.read(LedgerTable.RECHARGE_HISTORY)
        ordered = sorted(history.records, key=lambda r: r.timestamp, reverse=True)
        total = len(ordered)
        total_pages = max(1, math.ceil(total / normalized_size))
        normalized_page = max(1, min(int(page or 1), total_pages))
        start = (normalized_page - 1) * normalized_size
        return RechargeHistoryPage(
            records=ordered[start : start + normalized_size],
            page=normalized_page,
            page_size=normalized_size,
            total_records=total,
        )

    async def recharge(
        self,
        operator: RechargeOperator,
        user_ids: Sequence[str],
        amount: int,
        note: str | None = None,
        *,
        all_users: bool = False,
        display_names: dict[str, str] | None = None,
    ) -> RechargeRecord:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidRequestError("Recharge amount must be a positive integer")

        requested = _dedupe([uid.strip() for uid in user_ids if uid and uid.strip()])
        if not all_users and not requested:
            raise InvalidRequestError("At least one target user is required")

        names = display_names or {}
        clean_note = (note or "").strip() or DEFAULT_NOTE

        def _apply(tables: dict[LedgerTable, Any]) -> RechargeRecord:
            accounts: AccountTable = tables[LedgerTable.ACCOUNTS]
            history: RechargeHistory = tables[LedgerTable.RECHARGE_HISTORY]
            now = self._clock()

            targets_ids = list(accounts.keys()) if all_users else requested
            if not targets_ids:
                raise InvalidRequestError("There are no users to recharge")

            targets: list[RechargeTarget] = []
            for user_id in targets_ids:
                account = ensure_account(accounts, user_id, names.get(user_id), now)
                before = account.remaining_purchased_count
                account.purchased_count += amount
                account.remaining_purchased_count += amount
                targets.append(
                    RechargeTarget(
                        user_id=user_id,
                        display_name=account.display_name,
                        amount=amount,
                        before_balance=before,
                        after_balance=account.remaining_purchased_count,
                    )
                )

            recharge_type: RechargeType
            if all_users:
                recharge_type = "all"
            elif len(targets) == 1:
                recharge_type = "single"
            else:
                recharge_type = "batch"

            record = RechargeRecord(
                id=RechargeRecord.generate_id(now),
                timestamp=now,
                type=recharge_type,
                operator=operator,
                targets=targets,
                total_amount=amount * len(targets),
                note=clean_note,
                metadata={"target_count": len(targets)},
            )
            _append_record(history, record, now=now)
            return record

        record = await self.store.with_locks([LedgerTable.ACCOUNTS, LedgerTable.RECHARGE_HISTORY], _apply)
        logger.info(
            "recharge.applied",
            extra={
                "record_id": record.id,
                "type": record.type,
                "operator_id": operator.user_id,
                "target_count": len(record.targets),
                "total_amount": record.total_amount,
            },
        )
        return record


def _append_record(history: RechargeHistory, record: RechargeRecord, *, now: datetime | None = None) -> None:
    history.records.append(record)
    history.last_update = now or record.timestamp


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out
