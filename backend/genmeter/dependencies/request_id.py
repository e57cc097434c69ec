from __future__ import annotations

from fastapi import Header, Response

from genmeter.services.limits import generate_correlation_id

REQUEST_ID_HEADER = "X-Request-Id"


def get_correlation_id(
    response: Response,
    x_request_id: str | None = Header(None, alias=REQUEST_ID_HEADER),
) -> str:
    """
    Reuse the caller's request id (or mint one) and echo it back so a client
    can match its request against the orchestrator logs.
    """
    correlation_id = generate_correlation_id(x_request_id)
    response.headers[REQUEST_ID_HEADER] = correlation_id
    return correlation_id
