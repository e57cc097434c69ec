from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from genmeter.models.pending_job import PendingExternalJob
from genmeter.services.ledger_store import StorageError
from genmeter.services.pending_jobs import PendingJobLedger
from genmeter.services.transport import ChatTransport
from genmeter.services.video_jobs import ReconcileOutcome, VideoJobOrchestrator

logger = logging.getLogger(__name__)

TransportFactory = Callable[[PendingExternalJob], "ChatTransport | None"]


@dataclass
class SweepReport:
    examined: int = 0
    reconciled: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    purged_charged: list[str] = field(default_factory=list)


class PendingJobSweeper:
    """
    Periodically garbage-collects pending jobs older than the TTL. Each
    expired job gets one last provider query; anything that still is not
    settled is dropped without charge.
    """

    def __init__(
        self,
        *,
        pending: PendingJobLedger,
        jobs: VideoJobOrchestrator,
        ttl: timedelta,
        interval_seconds: float,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.pending = pending
        self.jobs = jobs
        self.ttl = ttl
        self.interval_seconds = max(0.1, float(interval_seconds))
        self.transport_factory = transport_factory
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except StorageError as e:
                logger.warning("PendingJobSweeper could not persist a sweep: %s", e)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        for job in await self.pending.list_expired(self.ttl):
            report.examined += 1

            if job.charged:
                await self.pending.delete_pending_job(job.job_id)
                report.purged_charged.append(job.job_id)
                continue

            transport = self.transport_factory(job) if self.transport_factory else None
            result = await self.jobs.reconcile_job(transport, job.job_id)
            if result.outcome in {
                ReconcileOutcome.DELIVERED,
                ReconcileOutcome.FAILED,
                ReconcileOutcome.ALREADY_CHARGED,
                ReconcileOutcome.MISSING,
            }:
                report.reconciled.append(job.job_id)
                continue
            if result.outcome is ReconcileOutcome.BILLING_FAILED:
                # Delivered but not yet billed; the next pass charges it.
                continue

            if await self.pending.delete_pending_job(job.job_id):
                report.dropped.append(job.job_id)
                logger.warning(
                    "Dropped expired pending job without charge",
                    extra={
                        "job_id": job.job_id,
                        "user_id": job.user_id,
                        "credit_cost": job.credit_cost,
                        "last_outcome": result.outcome.value,
                        "created_at": job.created_at.isoformat(),
                    },
                )

        if report.examined:
            logger.info(
                "pending_job.sweep",
                extra={
                    "examined": report.examined,
                    "reconciled": len(report.reconciled),
                    "dropped": len(report.dropped),
                    "purged_charged": len(report.purged_charged),
                },
            )
        return report
