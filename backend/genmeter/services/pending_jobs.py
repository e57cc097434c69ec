from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from genmeter.models.account import AccountTable
from genmeter.models.pending_job import PendingExternalJob, PendingJobTable
from genmeter.services.ledger_store import LedgerStore, LedgerTable
from genmeter.services.quota import Consumption, QuotaPolicy, apply_consumption, ensure_account

logger = logging.getLogger(__name__)


class PendingJobLimitError(Exception):
    def __init__(self, *, user_id: str, count: int, max_jobs: int) -> None:
        super().__init__(
            f"You already have {count} unfinished job(s) (max {max_jobs}). "
            "Query the existing job before submitting a new one."
        )
        self.user_id = user_id
        self.count = count
        self.max_jobs = max_jobs


@dataclass(frozen=True)
class PendingJobCharge:
    job: PendingExternalJob
    consumption: Consumption | None
    usage_only: bool = False


def _uncharged_for(table: PendingJobTable, user_id: str) -> list[PendingExternalJob]:
    return [job for job in table.values() if job.user_id == user_id and not job.charged]


class PendingJobLedger:
    """
    Durable record of submitted-but-unreconciled provider jobs. Charging a job
    takes the accounts and pending-jobs locks together so that only one of
    several racing reconcilers ever bills it.
    """

    def __init__(self, store: LedgerStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def add_pending_job_with_limit(self, job: PendingExternalJob, max_jobs: int = 1) -> PendingExternalJob:
        def _add(table: PendingJobTable) -> PendingExternalJob:
            count = len(_uncharged_for(table, job.user_id))
            if count >= max_jobs:
                raise PendingJobLimitError(user_id=job.user_id, count=count, max_jobs=max_jobs)
            table[job.job_id] = job
            return job

        added = await self.store.with_lock(LedgerTable.PENDING_JOBS, _add)
        logger.info(
            "pending_job.added",
            extra={"job_id": job.job_id, "user_id": job.user_id, "credit_cost": job.credit_cost},
        )
        return added

    async def count_uncharged(self, user_id: str) -> int:
        table: PendingJobTable = await self.store.read(LedgerTable.PENDING_JOBS)
        return len(_uncharged_for(table, user_id))

    async def get(self, job_id: str) -> PendingExternalJob | None:
        table: PendingJobTable = await self.store.read(LedgerTable.PENDING_JOBS)
        return table.get(job_id)

    async def list_for_user(self, user_id: str) -> list[PendingExternalJob]:
        table: PendingJobTable = await self.store.read(LedgerTable.PENDING_JOBS)
        jobs = [job for job in table.values() if job.user_id == user_id]
        return sorted(jobs, key=lambda j: j.created_at)

    async def list_all(self) -> list[PendingExternalJob]:
        table: PendingJobTable = await self.store.read(LedgerTable.PENDING_JOBS)
        return sorted(table.values(), key=lambda j: j.created_at)

    async def mark_pending_job_charged(self, job_id: str) -> bool:
        def _mark(table: PendingJobTable) -> bool:
            job = table.get(job_id)
            if job is None or job.charged:
                return False
            job.charged = True
            job.charged_at = self._clock()
            return True

        return await self.store.with_lock(LedgerTable.PENDING_JOBS, _mark)

    async def delete_pending_job(self, job_id: str) -> bool:
        def _delete(table: PendingJobTable) -> bool:
            return table.pop(job_id, None) is not None

        deleted = await self.store.with_lock(LedgerTable.PENDING_JOBS, _delete)
        if deleted:
            logger.info("pending_job.deleted", extra={"job_id": job_id})
        return deleted

    async def charge_pending_job(
        self,
        job_id: str,
        policy: QuotaPolicy,
        *,
        is_exempt: bool = False,
    ) -> PendingJobCharge | None:
        """
        Bill a completed job exactly once. Returns None when the job is gone
        or another reconciler has already charged it.
        """

        def _charge(tables: dict[LedgerTable, Any]) -> PendingJobCharge | None:
            accounts: AccountTable = tables[LedgerTable.ACCOUNTS]
            jobs: PendingJobTable = tables[LedgerTable.PENDING_JOBS]
            job = jobs.get(job_id)
            if job is None or job.charged:
                return None

            now = self._clock()
            consumption: Consumption | None = None
            if is_exempt or policy.is_exempt(job.user_id, job.platform):
                account = ensure_account(accounts, job.user_id, job.display_name, now)
                account.total_usage_count += job.credit_cost
                account.last_used_at = now
            else:
                consumption = apply_consumption(
                    accounts,
                    user_id=job.user_id,
                    display_name=job.display_name,
                    units=job.credit_cost,
                    policy=policy,
                    now=now,
                )
            job.charged = True
            job.charged_at = now
            return PendingJobCharge(job=job.model_copy(), consumption=consumption, usage_only=consumption is None)

        charge = await self.store.with_locks([LedgerTable.ACCOUNTS, LedgerTable.PENDING_JOBS], _charge)
        if charge is None:
            logger.info("pending_job.already_charged", extra={"job_id": job_id})
        else:
            logger.info(
                "pending_job.charged",
                extra={
                    "job_id": job_id,
                    "user_id": charge.job.user_id,
                    "credit_cost": charge.job.credit_cost,
                    "usage_only": charge.usage_only,
                },
            )
        return charge

    async def list_expired(self, ttl: timedelta) -> list[PendingExternalJob]:
        cutoff = self._clock() - ttl
        return [job for job in await self.list_all() if job.created_at <= cutoff]
