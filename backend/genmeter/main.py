import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from genmeter.core.config import settings
from genmeter.core.errors import InvalidRequestError
from genmeter.dependencies.usage import get_usage_manager
from genmeter.routes.admin_recharge import router as admin_recharge_router
from genmeter.routes.generation import router as generation_router
from genmeter.routes.jobs import router as jobs_router
from genmeter.routes.quota import router as quota_router
from genmeter.services.ledger_store import StorageError
from genmeter.services.limits import TaskInProgressError
from genmeter.services.pending_jobs import PendingJobLimitError
from genmeter.services.providers import ProviderError
from genmeter.services.quota import QuotaExceededError, RateLimitedError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    manager = app.dependency_overrides.get(get_usage_manager, get_usage_manager)()
    await manager.start()
    try:
        yield
    finally:
        await manager.stop()


app = FastAPI(title="genmeter", lifespan=lifespan)
logger.info(
    "Startup config: ENV=%s DATA_DIR=%s RATE_LIMIT_ENABLED=%s PENDING_JOB_SWEEP_ENABLED=%s",
    settings.ENV,
    settings.DATA_DIR,
    settings.RATE_LIMIT_ENABLED,
    settings.PENDING_JOB_SWEEP_ENABLED,
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "PROVIDER_ERROR",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


def _error_response(
    status_code: int,
    message: str,
    *,
    details: dict | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload: dict = {"error": _error_code(status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    return _error_response(exc.status_code, message, details=details, headers=exc.headers)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(InvalidRequestError)
def invalid_request_handler(request: Request, exc: InvalidRequestError):  # noqa: ARG001
    return _error_response(400, str(exc))


@app.exception_handler(QuotaExceededError)
def quota_exceeded_handler(request: Request, exc: QuotaExceededError):  # noqa: ARG001
    return _error_response(
        402,
        str(exc),
        details={
            "requested": exc.requested,
            "remaining_today": exc.remaining_today,
            "remaining_purchased": exc.remaining_purchased,
            "total_available": exc.total_available,
        },
    )


@app.exception_handler(RateLimitedError)
def rate_limited_handler(request: Request, exc: RateLimitedError):  # noqa: ARG001
    retry_after = max(1, exc.retry_after_seconds)
    return _error_response(
        429,
        str(exc),
        details={"retry_after_seconds": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(TaskInProgressError)
def task_in_progress_handler(request: Request, exc: TaskInProgressError):  # noqa: ARG001
    return _error_response(409, str(exc), details={"kind": exc.kind.value})


@app.exception_handler(PendingJobLimitError)
def pending_job_limit_handler(request: Request, exc: PendingJobLimitError):  # noqa: ARG001
    return _error_response(409, str(exc), details={"count": exc.count, "max": exc.max_jobs})


@app.exception_handler(ProviderError)
def provider_error_handler(request: Request, exc: ProviderError):  # noqa: ARG001
    return _error_response(502, str(exc))


@app.exception_handler(StorageError)
def storage_error_handler(request: Request, exc: StorageError):  # noqa: ARG001
    logger.error("Ledger storage failure: %s", exc)
    return _error_response(500, "Failed to persist usage data")


app.include_router(quota_router)
app.include_router(admin_recharge_router)
app.include_router(generation_router)
app.include_router(jobs_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
