from __future__ import annotations

import asyncio

import pytest

from conftest import FakeJobProvider
from genmeter.models.pending_job import PendingExternalJob
from genmeter.services.ledger_store import StorageError
from genmeter.services.limits import TaskGate, TaskKind
from genmeter.services.security_blocks import SecurityBlockEnforcer, SecurityBlockTracker
from genmeter.services.pending_jobs import PendingJobLedger, PendingJobLimitError
from genmeter.services.providers import JobStatus, ProviderError, SecurityBlockError
from genmeter.services.transport import BufferedTransport
from genmeter.services.video_jobs import (
    JobRequest,
    JobRunOutcome,
    ReconcileOutcome,
    VideoJobOrchestrator,
)

VIDEO = "https://cdn.invalid/clip.mp4"


def _completed(job_id="job-1"):
    return JobStatus(job_id=job_id, status="completed", url=VIDEO, progress=100)


@pytest.fixture()
def pending(store):
    return PendingJobLedger(store)


@pytest.fixture()
def provider():
    return FakeJobProvider()


@pytest.fixture()
def tracker():
    return SecurityBlockTracker(window_seconds=3600, warning_threshold=2)


@pytest.fixture()
def jobs(quota, pending, provider, policy, tracker):
    return VideoJobOrchestrator(
        quota=quota,
        gate=TaskGate(),
        pending=pending,
        security=SecurityBlockEnforcer(tracker=tracker, quota=quota),
        provider=provider,
        policy=policy,
        credit_multiplier=2,
        first_poll_delay_seconds=0,
        max_wait_seconds=0,
    )


def _request(**kwargs):
    return JobRequest(user_id="u1", display_name="Alice", input_url="https://img.invalid/in.png", prompt="waves", **kwargs)


@pytest.mark.asyncio
async def test_job_completed_on_first_poll_is_delivered_and_charged(jobs, provider, pending, quota, policy):
    provider.statuses = [_completed()]
    transport = BufferedTransport()

    result = await jobs.run(transport, _request(duration=20, aspect_ratio="9:16"))

    assert result.outcome is JobRunOutcome.COMPLETED
    assert result.credit_cost == 2
    assert result.reconcile.outcome is ReconcileOutcome.DELIVERED
    assert transport.media == [VIDEO]
    assert "Job job-1 is complete!" in transport.texts
    assert transport.texts[0].startswith("Job job-1 started (2 credits on completion)")

    options = provider.submitted[0]["options"]
    assert (options.duration, options.aspect_ratio) == (20, "9:16")

    assert await pending.get("job-1") is None
    summary = await quota.get_quota_summary("u1", policy)
    assert summary.total_usage_count == 2


@pytest.mark.asyncio
async def test_failed_job_is_dropped_without_charge(jobs, provider, pending, quota, policy):
    provider.statuses = [JobStatus(job_id="job-1", status="failed", error="moderation")]
    transport = BufferedTransport()

    result = await jobs.run(transport, _request())

    assert result.outcome is JobRunOutcome.FAILED
    assert "Job job-1 failed: moderation" in transport.texts
    assert await pending.get("job-1") is None
    assert (await quota.get_quota_summary("u1", policy)).total_usage_count == 0


@pytest.mark.asyncio
async def test_unfinished_job_stays_pending_with_hint(jobs, pending, quota, policy):
    transport = BufferedTransport()

    result = await jobs.run(transport, _request())

    assert result.outcome is JobRunOutcome.STILL_PENDING
    assert "Your job is still processing, please wait..." in transport.texts
    assert transport.texts[-1].startswith("Job job-1 is still processing; use the \"query jobs\" command")
    stored = await pending.get("job-1")
    assert stored is not None and stored.charged is False
    assert stored.credit_cost == 2
    assert (await quota.get_quota_summary("u1", policy)).total_usage_count == 0


@pytest.mark.asyncio
async def test_submit_failure_leaves_no_pending_job(jobs, provider, pending):
    provider.submit_error = ProviderError("upstream down")
    transport = BufferedTransport()

    result = await jobs.run(transport, _request())

    assert result.outcome is JobRunOutcome.FAILED
    assert transport.texts == ["Job submission failed: upstream down"]
    assert await pending.list_all() == []


@pytest.mark.asyncio
async def test_outstanding_job_blocks_a_new_submission(jobs, provider, pending):
    await jobs.run(BufferedTransport(), _request())
    provider.job_id = "job-2"
    transport = BufferedTransport()

    result = await jobs.run(transport, _request())

    assert result.outcome is JobRunOutcome.REJECTED
    assert isinstance(result.error, PendingJobLimitError)
    assert transport.texts[-1].startswith("You already have 1 unfinished job(s) (max 1).")
    assert len(provider.submitted) == 1


@pytest.mark.asyncio
async def test_quota_is_checked_against_credit_cost(quota, pending, provider, policy, tracker):
    expensive = VideoJobOrchestrator(
        quota=quota,
        gate=TaskGate(),
        pending=pending,
        security=SecurityBlockEnforcer(tracker=tracker, quota=quota),
        provider=provider,
        policy=policy,
        credit_multiplier=10,
        first_poll_delay_seconds=0,
        max_wait_seconds=0,
    )
    transport = BufferedTransport()

    result = await expensive.run(transport, _request())

    assert result.outcome is JobRunOutcome.REJECTED
    assert result.credit_cost == 10
    assert transport.texts[-1].startswith("This request needs 10 credits but only 5 are available")
    assert provider.submitted == []


@pytest.mark.asyncio
async def test_concurrent_reconcilers_charge_once(jobs, provider, quota, policy):
    await jobs.run(BufferedTransport(), _request())
    provider.statuses = [_completed()]

    results = await asyncio.gather(
        jobs.reconcile_job(BufferedTransport(), "job-1"),
        jobs.reconcile_job(BufferedTransport(), "job-1"),
        jobs.reconcile_job(BufferedTransport(), "job-1"),
    )

    outcomes = [r.outcome for r in results]
    assert outcomes.count(ReconcileOutcome.DELIVERED) == 1
    assert (await quota.get_quota_summary("u1", policy)).total_usage_count == 2


@pytest.mark.asyncio
async def test_reconcile_without_transport_leaves_completed_job_uncharged(jobs, provider, pending):
    await pending.add_pending_job_with_limit(
        PendingExternalJob(job_id="job-9", user_id="u1", display_name="Alice", command_name="video", credit_cost=2)
    )
    provider.statuses = [_completed("job-9")]

    result = await jobs.reconcile_job(None, "job-9")

    assert result.outcome is ReconcileOutcome.UNDELIVERABLE
    stored = await pending.get("job-9")
    assert stored is not None and not stored.charged


@pytest.mark.asyncio
async def test_reconcile_query_error_keeps_job(jobs, provider, pending):
    await jobs.run(BufferedTransport(), _request())
    provider.query_error = ProviderError("timeout")

    result = await jobs.reconcile_job(BufferedTransport(), "job-1")

    assert result.outcome is ReconcileOutcome.ERROR
    assert await pending.get("job-1") is not None


@pytest.mark.asyncio
async def test_reconcile_unknown_job_is_missing(jobs):
    result = await jobs.reconcile_job(BufferedTransport(), "nope")
    assert result.outcome is ReconcileOutcome.MISSING


@pytest.mark.asyncio
async def test_query_jobs_reports_progress_and_empty_state(jobs, provider):
    empty = BufferedTransport()
    assert await jobs.query_jobs(empty, "u1") == []
    assert empty.texts == ["You have no pending jobs."]

    await jobs.run(BufferedTransport(), _request())
    provider.statuses = [JobStatus(job_id="job-1", status="processing", progress=40)]
    transport = BufferedTransport()

    results = await jobs.query_jobs(transport, "u1")

    assert [r.outcome for r in results] == [ReconcileOutcome.PENDING]
    assert transport.texts == ["Job job-1 is processing (40%)."]


@pytest.mark.asyncio
async def test_invalid_units_and_missing_input_are_rejected(jobs):
    transport = BufferedTransport()

    bad_units = await jobs.run(transport, _request(units=9))
    no_input = await jobs.run(transport, JobRequest(user_id="u1", input_url=""))

    assert bad_units.outcome is JobRunOutcome.REJECTED
    assert no_input.outcome is JobRunOutcome.REJECTED
    assert transport.texts == [
        "The number of items must be between 1 and 4",
        "An input image is required",
    ]


@pytest.mark.asyncio
async def test_blocked_submissions_escalate_to_warning_then_charge(jobs, provider, pending, quota, policy, tracker):
    provider.submit_error = SecurityBlockError("PROHIBITED_CONTENT")

    first = BufferedTransport()
    result = await jobs.run(first, _request())
    assert result.outcome is JobRunOutcome.FAILED
    assert first.texts == ["Job submission failed: PROHIBITED_CONTENT"]
    assert tracker.block_count("u1") == 1

    second = BufferedTransport()
    await jobs.run(second, _request())
    assert second.texts[-1].startswith("Warning: your requests were blocked")
    assert (await quota.get_quota_summary("u1", policy)).total_usage_count == 0

    third = BufferedTransport()
    await jobs.run(third, _request())
    assert third.texts[-1] == "This blocked request was charged 1 credit(s) after a previous warning."
    assert (await quota.get_quota_summary("u1", policy)).total_usage_count == 1
    assert await pending.list_all() == []
    assert not jobs.gate.is_task_active("u1", TaskKind.JOB)


@pytest.mark.asyncio
async def test_billing_failure_keeps_job_uncharged_for_a_later_query(jobs, provider, pending, quota, policy, monkeypatch):
    await jobs.run(BufferedTransport(), _request())
    provider.statuses = [_completed()]

    async def _disk_full(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(pending, "charge_pending_job", _disk_full)
    transport = BufferedTransport()

    results = await jobs.query_jobs(transport, "u1")

    assert [r.outcome for r in results] == [ReconcileOutcome.BILLING_FAILED]
    assert transport.media == [VIDEO]
    stored = await pending.get("job-1")
    assert stored is not None and not stored.charged
    assert (await quota.get_quota_summary("u1", policy)).total_usage_count == 0

    monkeypatch.undo()
    retried = await jobs.reconcile_job(BufferedTransport(), "job-1")

    assert retried.outcome is ReconcileOutcome.DELIVERED
    assert await pending.get("job-1") is None
    assert (await quota.get_quota_summary("u1", policy)).total_usage_count == 2
