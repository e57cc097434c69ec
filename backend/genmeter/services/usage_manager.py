from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from genmeter.core.config import Settings, settings as default_settings
from genmeter.services.generation import GenerationOrchestrator
from genmeter.services.job_sweeper import PendingJobSweeper
from genmeter.services.ledger_store import LedgerStore
from genmeter.services.limits import TaskGate
from genmeter.services.pending_jobs import PendingJobLedger
from genmeter.services.provider_client import HttpGenerationProvider
from genmeter.services.providers import ImageProvider, JobProvider
from genmeter.services.quota import QuotaManager, QuotaPolicy
from genmeter.services.rate_limiter import RateLimiter, build_rate_limiter
from genmeter.services.recharge import RechargeLedger
from genmeter.services.security_blocks import SecurityBlockEnforcer, SecurityBlockTracker
from genmeter.services.video_jobs import VideoJobOrchestrator

logger = logging.getLogger(__name__)


class UsageManager:
    """
    Owns every piece of process-scoped state: ledger caches and locks, the
    rate and security windows, the task gate and both orchestrators. One
    instance per process.
    """

    def __init__(
        self,
        *,
        config: Settings | None = None,
        data_dir: str | Path | None = None,
        provider: ImageProvider | None = None,
        job_provider: JobProvider | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        cfg = config or default_settings
        self.settings = cfg
        self.policy = QuotaPolicy.from_settings(cfg)

        self.store = LedgerStore(data_dir or cfg.DATA_DIR)
        self.rate_limiter = rate_limiter or build_rate_limiter(enabled=cfg.RATE_LIMIT_ENABLED)
        self.quota = QuotaManager(self.store, self.rate_limiter)
        self.recharges = RechargeLedger(self.store)
        self.pending = PendingJobLedger(self.store)
        self.gate = TaskGate()
        self.security = SecurityBlockTracker(
            window_seconds=cfg.SECURITY_BLOCK_WINDOW_SECONDS,
            warning_threshold=cfg.SECURITY_BLOCK_WARNING_THRESHOLD,
        )
        self.enforcer = SecurityBlockEnforcer(
            tracker=self.security,
            quota=self.quota,
            penalty_units=cfg.SECURITY_BLOCK_PENALTY_UNITS,
        )

        self._owned_provider: HttpGenerationProvider | None = None
        if provider is None or job_provider is None:
            self._owned_provider = HttpGenerationProvider()
        self.provider: ImageProvider = provider or self._owned_provider
        self.job_provider: JobProvider = job_provider or self._owned_provider

        self.generation = GenerationOrchestrator(
            quota=self.quota,
            gate=self.gate,
            security=self.enforcer,
            provider=self.provider,
            policy=self.policy,
            default_units=cfg.DEFAULT_UNITS,
            max_units=cfg.MAX_UNITS_PER_REQUEST,
            command_timeout_seconds=cfg.COMMAND_TIMEOUT_SECONDS,
            input_timeout_seconds=cfg.INPUT_TIMEOUT_SECONDS,
        )

        self.jobs = VideoJobOrchestrator(
            quota=self.quota,
            gate=self.gate,
            pending=self.pending,
            security=self.enforcer,
            provider=self.job_provider,
            policy=self.policy,
            max_units=cfg.MAX_UNITS_PER_REQUEST,
            credit_multiplier=cfg.JOB_CREDIT_MULTIPLIER,
            max_uncharged_jobs=cfg.MAX_UNCHARGED_JOBS_PER_USER,
            first_poll_delay_seconds=cfg.JOB_FIRST_POLL_DELAY_SECONDS,
            max_wait_seconds=cfg.JOB_MAX_WAIT_SECONDS,
        )
        self.sweeper = PendingJobSweeper(
            pending=self.pending,
            jobs=self.jobs,
            ttl=timedelta(hours=cfg.PENDING_JOB_TTL_HOURS),
            interval_seconds=cfg.PENDING_JOB_SWEEP_INTERVAL_SECONDS,
        )

    def is_admin(self, user_id: str) -> bool:
        return self.policy.is_admin(user_id)

    async def start(self) -> None:
        if self.settings.PENDING_JOB_SWEEP_ENABLED:
            await self.sweeper.start()
            logger.info("Pending-job sweeper started", extra={"ttl_hours": self.settings.PENDING_JOB_TTL_HOURS})

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.generation.aclose()
        if self._owned_provider is not None:
            await self._owned_provider.aclose()
