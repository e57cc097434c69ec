from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from genmeter.auth.identity import Identity
from genmeter.dependencies.identity import get_identity
from genmeter.dependencies.request_id import get_correlation_id
from genmeter.dependencies.usage import get_usage_manager
from genmeter.schemas.generation import GenerateRequest, GenerateResponse, TransportMessageOut
from genmeter.services.generation import GenerationOutcome, GenerationRequest
from genmeter.services.transport import BufferedTransport
from genmeter.services.usage_manager import UsageManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generation"])


def messages_out(transport: BufferedTransport) -> list[TransportMessageOut]:
    return [TransportMessageOut(kind=m.kind, content=m.content) for m in transport.messages]


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    payload: GenerateRequest,
    identity: Identity = Depends(get_identity),
    manager: UsageManager = Depends(get_usage_manager),
    correlation_id: str = Depends(get_correlation_id),
) -> GenerateResponse:
    logger.info(
        "Generation requested",
        extra={"user_id": identity.user_id, "units": payload.units, "correlation_id": correlation_id},
    )
    transport = BufferedTransport()
    result = await manager.generation.run(
        transport,
        GenerationRequest(
            user_id=identity.user_id,
            display_name=identity.display_name,
            prompt=payload.prompt,
            inputs=payload.inputs,
            units=payload.units,
            command_name=payload.command_name,
            mode=payload.mode,
            platform=identity.platform,
            correlation_id=correlation_id,
        ),
    )
    # Rejections never reached the provider; surface them as HTTP errors.
    if result.outcome == GenerationOutcome.REJECTED and result.error is not None:
        raise result.error

    return GenerateResponse(
        outcome=result.outcome.value,
        requested=result.requested,
        delivered=result.delivered,
        charged_units=result.charged_units,
        messages=messages_out(transport),
    )
