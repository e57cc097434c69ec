from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from genmeter.auth.identity import Identity
from genmeter.dependencies.identity import get_identity
from genmeter.dependencies.request_id import get_correlation_id
from genmeter.dependencies.usage import get_usage_manager
from genmeter.routes.generation import messages_out
from genmeter.schemas.generation import (
    JobQueryResponse,
    JobReconcileOut,
    JobSubmitRequest,
    JobSubmitResponse,
    PendingJobOut,
)
from genmeter.services.transport import BufferedTransport
from genmeter.services.usage_manager import UsageManager
from genmeter.services.video_jobs import JobRequest, JobRunOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobSubmitResponse, status_code=status.HTTP_200_OK)
async def submit_job(
    payload: JobSubmitRequest,
    identity: Identity = Depends(get_identity),
    manager: UsageManager = Depends(get_usage_manager),
    correlation_id: str = Depends(get_correlation_id),
) -> JobSubmitResponse:
    logger.info(
        "Job submission requested",
        extra={"user_id": identity.user_id, "units": payload.units, "correlation_id": correlation_id},
    )
    transport = BufferedTransport()
    result = await manager.jobs.run(
        transport,
        JobRequest(
            user_id=identity.user_id,
            display_name=identity.display_name,
            input_url=payload.input_url,
            prompt=payload.prompt,
            units=payload.units,
            command_name=payload.command_name,
            duration=payload.duration,
            aspect_ratio=payload.aspect_ratio,
            platform=identity.platform,
            correlation_id=correlation_id,
        ),
    )
    if result.outcome == JobRunOutcome.REJECTED and result.error is not None:
        raise result.error

    return JobSubmitResponse(
        outcome=result.outcome.value,
        job_id=result.job_id,
        credit_cost=result.credit_cost,
        messages=messages_out(transport),
    )


@router.post("/query", response_model=JobQueryResponse)
async def query_jobs(
    identity: Identity = Depends(get_identity),
    manager: UsageManager = Depends(get_usage_manager),
) -> JobQueryResponse:
    transport = BufferedTransport()
    results = await manager.jobs.query_jobs(transport, identity.user_id)
    return JobQueryResponse(
        results=[
            JobReconcileOut(
                job_id=r.job_id,
                outcome=r.outcome.value,
                status=r.status.status if r.status else None,
                progress=r.status.progress if r.status else None,
            )
            for r in results
        ],
        messages=messages_out(transport),
    )


@router.get("/pending", response_model=list[PendingJobOut])
async def list_pending_jobs(
    identity: Identity = Depends(get_identity),
    manager: UsageManager = Depends(get_usage_manager),
) -> list[PendingJobOut]:
    jobs = await manager.pending.list_for_user(identity.user_id)
    return [
        PendingJobOut(
            job_id=j.job_id,
            command_name=j.command_name,
            credit_cost=j.credit_cost,
            created_at=j.created_at,
            charged=j.charged,
        )
        for j in jobs
    ]
