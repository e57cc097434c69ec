import asyncio
import os

# Settings are read at import time; pin a deterministic test configuration first.
os.environ.setdefault("ENV", "test")
os.environ.setdefault("ADMIN_USERS", "admin-1")
os.environ.setdefault("UNLIMITED_PLATFORMS", "console")
os.environ.setdefault("PENDING_JOB_SWEEP_ENABLED", "false")
os.environ.setdefault("DAILY_FREE_LIMIT", "5")
os.environ.setdefault("PROVIDER_API_BASE", "https://provider.invalid")
os.environ.setdefault("PROVIDER_API_KEY", "test-provider-key")

from contextlib import contextmanager
from typing import Sequence

import pytest
from fastapi.testclient import TestClient

from genmeter.core.config import Settings
from genmeter.dependencies.usage import get_usage_manager
from genmeter.services.ledger_store import LedgerStore
from genmeter.services.providers import JobOptions, JobStatus, OnItem
from genmeter.services.quota import QuotaManager, QuotaPolicy
from genmeter.services.rate_limiter import NoopRateLimiter
from genmeter.services.usage_manager import UsageManager


class FakeImageProvider:
    """
    Scriptable image provider. Yields ``items`` one by one through ``on_item``,
    optionally failing after ``fail_after`` items or stalling forever.
    """

    def __init__(
        self,
        items: Sequence[str] = ("https://cdn.invalid/out-1.png",),
        *,
        fail_after: int | None = None,
        error: Exception | None = None,
        stall_after: int | None = None,
    ) -> None:
        self.items = list(items)
        self.fail_after = fail_after
        self.error = error
        self.stall_after = stall_after
        self.calls: list[dict] = []

    async def generate(self, prompt: str, inputs: Sequence[str], count: int, on_item: OnItem | None = None) -> list[str]:
        self.calls.append({"prompt": prompt, "inputs": list(inputs), "count": count})
        produced: list[str] = []
        for index, url in enumerate(self.items[:count]):
            if self.fail_after is not None and index >= self.fail_after:
                break
            if self.stall_after is not None and index >= self.stall_after:
                await asyncio.sleep(3600)
            produced.append(url)
            if on_item is not None:
                await on_item(url, index, count)
        if self.fail_after is not None:
            raise self.error or RuntimeError("provider exploded")
        return produced


class FakeJobProvider:
    def __init__(self, statuses: Sequence[JobStatus] | None = None, *, job_id: str = "job-1") -> None:
        self.job_id = job_id
        self.statuses = list(statuses or [])
        self.submitted: list[dict] = []
        self.queries: list[str] = []
        self.submit_error: Exception | None = None
        self.query_error: Exception | None = None

    async def submit_job(self, prompt: str, input_url: str, options: JobOptions | None = None) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append({"prompt": prompt, "input_url": input_url, "options": options})
        return self.job_id

    async def query_job(self, job_id: str) -> JobStatus:
        self.queries.append(job_id)
        if self.query_error is not None:
            raise self.query_error
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        if self.statuses:
            return self.statuses[0]
        return JobStatus(job_id=job_id, status="processing")


@pytest.fixture()
def make_settings():
    def _make(**overrides) -> Settings:
        cfg = Settings()
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return cfg

    return _make


@pytest.fixture()
def store(tmp_path):
    return LedgerStore(tmp_path / "ledger")


@pytest.fixture()
def policy():
    return QuotaPolicy(
        daily_free_limit=5,
        rate_limit_window_seconds=300,
        rate_limit_max=1000,
        admin_users=frozenset({"admin-1"}),
        unlimited_platforms=frozenset({"console"}),
    )


@pytest.fixture()
def quota(store):
    return QuotaManager(store, NoopRateLimiter())


@pytest.fixture()
def image_provider():
    return FakeImageProvider(items=["https://cdn.invalid/a.png", "https://cdn.invalid/b.png"])


@pytest.fixture()
def job_provider():
    return FakeJobProvider()


@pytest.fixture()
def manager(tmp_path, make_settings, image_provider, job_provider):
    cfg = make_settings(
        RATE_LIMIT_ENABLED=False,
        DAILY_FREE_LIMIT=5,
        JOB_CREDIT_MULTIPLIER=2,
        JOB_FIRST_POLL_DELAY_SECONDS=0.0,
        JOB_MAX_WAIT_SECONDS=0.0,
        PENDING_JOB_SWEEP_ENABLED=False,
    )
    return UsageManager(
        config=cfg,
        data_dir=tmp_path / "data",
        provider=image_provider,
        job_provider=job_provider,
    )


@pytest.fixture()
def app(manager):
    from genmeter import main

    fastapi_app = main.app
    fastapi_app.dependency_overrides[get_usage_manager] = lambda: manager
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    """
    Client acting as a regular user (``user-1``).
    """
    with TestClient(app, headers={"X-User-Id": "user-1", "X-User-Name": "Alice"}) as c:
        yield c


@pytest.fixture()
def client_for(app):
    """
    Context manager to create a client acting as an arbitrary user.

    Usage:
        with client_for("admin-1") as c:
            ...
    """

    @contextmanager
    def _client_for(user_id: str, *, name: str | None = None, platform: str | None = None):
        headers = {"X-User-Id": user_id}
        if name:
            headers["X-User-Name"] = name
        if platform:
            headers["X-Platform"] = platform
        with TestClient(app, headers=headers) as c:
            yield c

    return _client_for
