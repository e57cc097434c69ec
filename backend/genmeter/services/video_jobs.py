from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from genmeter.core.errors import InvalidRequestError
from genmeter.core.redaction import sanitize_error, sanitize_string
from genmeter.models.pending_job import PendingExternalJob
from genmeter.services.generation import format_usage_summary
from genmeter.services.ledger_store import StorageError
from genmeter.services.limits import TaskGate, TaskInProgressError, TaskKind
from genmeter.services.pending_jobs import PendingJobCharge, PendingJobLedger, PendingJobLimitError
from genmeter.services.providers import JobOptions, JobProvider, JobStatus, ProviderError, SecurityBlockError
from genmeter.services.quota import QuotaExceededError, QuotaManager, QuotaPolicy, RateLimitedError
from genmeter.services.security_blocks import SecurityBlockEnforcer
from genmeter.services.transport import ChatTransport, safe_send, safe_send_media

logger = logging.getLogger(__name__)

QUERY_HINT = 'use the "query jobs" command later to fetch the result'


class ReconcileOutcome(str, Enum):
    DELIVERED = "delivered"
    ALREADY_CHARGED = "already_charged"
    FAILED = "failed"
    PENDING = "pending"
    MISSING = "missing"
    UNDELIVERABLE = "undeliverable"
    BILLING_FAILED = "billing_failed"
    ERROR = "error"


class JobRunOutcome(str, Enum):
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"
    STILL_PENDING = "still_pending"


@dataclass
class JobRequest:
    user_id: str
    input_url: str
    prompt: str = ""
    display_name: str | None = None
    units: int = 1
    command_name: str = "video"
    duration: int | None = None
    aspect_ratio: str | None = None
    platform: str | None = None
    correlation_id: str | None = None


@dataclass
class ReconcileResult:
    job_id: str
    outcome: ReconcileOutcome
    status: JobStatus | None = None
    charge: PendingJobCharge | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome not in {
            ReconcileOutcome.PENDING,
            ReconcileOutcome.ERROR,
            ReconcileOutcome.UNDELIVERABLE,
            ReconcileOutcome.BILLING_FAILED,
        }

    @property
    def delivered(self) -> bool:
        return self.outcome in {ReconcileOutcome.DELIVERED, ReconcileOutcome.BILLING_FAILED}


@dataclass
class JobRunResult:
    outcome: JobRunOutcome
    job_id: str | None = None
    credit_cost: int = 0
    reconcile: ReconcileResult | None = None
    error: Exception | None = None


class VideoJobOrchestrator:
    """
    Submits long-running provider jobs and reconciles their results. A job
    is billed only through ``PendingJobLedger.charge_pending_job`` so the
    poll loop, the manual query command and the expiry sweep can race
    without double charging.
    """

    def __init__(
        self,
        *,
        quota: QuotaManager,
        gate: TaskGate,
        pending: PendingJobLedger,
        security: SecurityBlockEnforcer,
        provider: JobProvider,
        policy: QuotaPolicy,
        max_units: int = 4,
        credit_multiplier: int = 10,
        max_uncharged_jobs: int = 1,
        first_poll_delay_seconds: float = 10.0,
        max_wait_seconds: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.quota = quota
        self.gate = gate
        self.pending = pending
        self.security = security
        self.provider = provider
        self.policy = policy
        self.max_units = max_units
        self.credit_multiplier = credit_multiplier
        self.max_uncharged_jobs = max_uncharged_jobs
        self.first_poll_delay_seconds = first_poll_delay_seconds
        self.max_wait_seconds = max_wait_seconds
        self._sleep = sleep

    async def run(self, transport: ChatTransport, request: JobRequest) -> JobRunResult:
        units = request.units
        if isinstance(units, bool) or not isinstance(units, int) or not 1 <= units <= self.max_units:
            exc = InvalidRequestError(f"The number of items must be between 1 and {self.max_units}")
            await safe_send(transport, str(exc))
            return JobRunResult(outcome=JobRunOutcome.REJECTED, error=exc)
        if not request.input_url:
            exc = InvalidRequestError("An input image is required")
            await safe_send(transport, str(exc))
            return JobRunResult(outcome=JobRunOutcome.REJECTED, error=exc)

        if not self.gate.start_task(request.user_id, TaskKind.JOB):
            exc = TaskInProgressError(request.user_id, TaskKind.JOB)
            await safe_send(transport, "You already have a job being submitted, please wait for it to finish.")
            return JobRunResult(outcome=JobRunOutcome.REJECTED, error=exc)

        try:
            return await self._run_locked(transport, request, units * self.credit_multiplier)
        finally:
            self.gate.end_task(request.user_id, TaskKind.JOB)

    async def _run_locked(self, transport: ChatTransport, request: JobRequest, credit_cost: int) -> JobRunResult:
        check = await self.quota.check_and_reserve_quota(
            request.user_id, request.display_name, credit_cost, self.policy, request.platform
        )
        if not check.allowed:
            await safe_send(transport, check.message or "Request denied")
            if check.retry_after_seconds is not None:
                error: Exception = RateLimitedError(check.retry_after_seconds)
            else:
                error = QuotaExceededError(
                    requested=credit_cost,
                    remaining_today=check.remaining_today,
                    remaining_purchased=check.remaining_purchased,
                )
            return JobRunResult(outcome=JobRunOutcome.REJECTED, credit_cost=credit_cost, error=error)

        outstanding = await self.pending.count_uncharged(request.user_id)
        if outstanding >= self.max_uncharged_jobs:
            exc = PendingJobLimitError(user_id=request.user_id, count=outstanding, max_jobs=self.max_uncharged_jobs)
            await safe_send(transport, str(exc))
            return JobRunResult(outcome=JobRunOutcome.REJECTED, credit_cost=credit_cost, error=exc)

        job_id: str | None = None
        try:
            job_id = await self.provider.submit_job(
                request.prompt,
                request.input_url,
                JobOptions(duration=request.duration, aspect_ratio=request.aspect_ratio),
            )
            await self.pending.add_pending_job_with_limit(
                PendingExternalJob(
                    job_id=job_id,
                    user_id=request.user_id,
                    display_name=(request.display_name or "").strip() or request.user_id,
                    command_name=request.command_name,
                    platform=request.platform,
                    credit_cost=credit_cost,
                ),
                self.max_uncharged_jobs,
            )
        except PendingJobLimitError as exc:
            await self.pending.delete_pending_job(job_id or "")
            await safe_send(transport, str(exc))
            return JobRunResult(outcome=JobRunOutcome.REJECTED, job_id=job_id, credit_cost=credit_cost, error=exc)
        except SecurityBlockError as exc:
            logger.warning(
                "job.submit_blocked",
                extra={
                    "user_id": request.user_id,
                    "command_name": request.command_name,
                    "error": sanitize_error(exc),
                    "correlation_id": request.correlation_id,
                },
            )
            if job_id:
                await self.pending.delete_pending_job(job_id)
            await safe_send(transport, f"Job submission failed: {sanitize_string(str(exc))}")
            await self.security.handle(transport, request.user_id, request.display_name, self.policy)
            return JobRunResult(outcome=JobRunOutcome.FAILED, job_id=job_id, credit_cost=credit_cost, error=exc)
        except Exception as exc:
            logger.error(
                "job.submit_failed",
                extra={
                    "user_id": request.user_id,
                    "command_name": request.command_name,
                    "error": sanitize_error(exc),
                    "correlation_id": request.correlation_id,
                },
            )
            if job_id:
                await self.pending.delete_pending_job(job_id)
            await safe_send(transport, f"Job submission failed: {sanitize_string(str(exc))}")
            return JobRunResult(outcome=JobRunOutcome.FAILED, job_id=job_id, credit_cost=credit_cost, error=exc)

        logger.info(
            "job.submitted",
            extra={
                "job_id": job_id,
                "user_id": request.user_id,
                "credit_cost": credit_cost,
                "correlation_id": request.correlation_id,
            },
        )
        await safe_send(transport, f"Job {job_id} started ({credit_cost} credits on completion). This may take a few minutes.")

        await self._sleep(self.first_poll_delay_seconds)
        first = await self.reconcile_job(transport, job_id)
        if first.is_terminal or first.delivered:
            return self._finished(first, credit_cost)
        if first.outcome == ReconcileOutcome.PENDING:
            await safe_send(transport, "Your job is still processing, please wait...")

        await self._sleep(self.max_wait_seconds)
        second = await self.reconcile_job(transport, job_id)
        if second.is_terminal or second.delivered:
            return self._finished(second, credit_cost)

        await safe_send(transport, f"Job {job_id} is still processing; {QUERY_HINT}.")
        return JobRunResult(
            outcome=JobRunOutcome.STILL_PENDING,
            job_id=job_id,
            credit_cost=credit_cost,
            reconcile=second,
        )

    @staticmethod
    def _finished(result: ReconcileResult, credit_cost: int) -> JobRunResult:
        outcome = JobRunOutcome.FAILED if result.outcome == ReconcileOutcome.FAILED else JobRunOutcome.COMPLETED
        return JobRunResult(outcome=outcome, job_id=result.job_id, credit_cost=credit_cost, reconcile=result)

    async def reconcile_job(self, transport: ChatTransport | None, job_id: str) -> ReconcileResult:
        """
        Query one job and settle it: deliver and charge once when completed,
        drop it uncharged when failed, leave it alone while still running.
        Without a transport a completed job is reported as undeliverable and
        left for the caller to decide.
        """
        job = await self.pending.get(job_id)
        if job is None:
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.MISSING)

        try:
            status = await self.provider.query_job(job_id)
        except ProviderError as exc:
            logger.error("job.query_failed", extra={"job_id": job_id, "error": sanitize_error(exc)})
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.ERROR)

        if job.charged:
            await self.pending.delete_pending_job(job_id)
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.ALREADY_CHARGED, status=status)

        if status.status == "failed":
            await self.pending.delete_pending_job(job_id)
            if transport is not None:
                reason = sanitize_string(status.error or "unknown error")
                await safe_send(transport, f"Job {job_id} failed: {reason}")
            logger.info("job.failed", extra={"job_id": job_id, "user_id": job.user_id})
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.FAILED, status=status)

        if not status.succeeded:
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.PENDING, status=status)

        if transport is None:
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.UNDELIVERABLE, status=status)

        await safe_send_media(transport, status.url or "", "video")
        try:
            charge = await self.pending.charge_pending_job(job_id, self.policy)
        except StorageError:
            logger.error(
                "job.billing_failed",
                extra={"job_id": job_id, "user_id": job.user_id, "credit_cost": job.credit_cost},
                exc_info=True,
            )
            await safe_send(transport, f"Job {job_id} is complete!")
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.BILLING_FAILED, status=status)
        await self.pending.delete_pending_job(job_id)
        if charge is None:
            return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.ALREADY_CHARGED, status=status)

        await safe_send(transport, f"Job {job_id} is complete!")
        await safe_send(
            transport,
            format_usage_summary(charge.consumption, job.credit_cost, self.policy, exempt=charge.usage_only),
        )
        return ReconcileResult(job_id=job_id, outcome=ReconcileOutcome.DELIVERED, status=status, charge=charge)

    async def query_jobs(self, transport: ChatTransport, user_id: str) -> list[ReconcileResult]:
        jobs = await self.pending.list_for_user(user_id)
        if not jobs:
            await safe_send(transport, "You have no pending jobs.")
            return []

        results: list[ReconcileResult] = []
        for job in jobs:
            result = await self.reconcile_job(transport, job.job_id)
            results.append(result)
            if result.outcome == ReconcileOutcome.PENDING and result.status is not None:
                progress = f" ({result.status.progress}%)" if result.status.progress is not None else ""
                await safe_send(transport, f"Job {job.job_id} is {result.status.status}{progress}.")
            elif result.outcome == ReconcileOutcome.ERROR:
                await safe_send(transport, f"Could not check job {job.job_id} right now, please try again later.")
        return results
