from __future__ import annotations

import asyncio
import base64
import logging
import random
from typing import Any, Awaitable, Callable, Sequence

import httpx

from genmeter.core.config import settings
from genmeter.core.redaction import sanitize_error
from genmeter.services.providers import (
    BLOCKING_FINISH_REASONS,
    JobOptions,
    JobStatus,
    OnItem,
    ProviderError,
    SecurityBlockError,
    classify_provider_error,
)

logger = logging.getLogger(__name__)

_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}
_JOB_STATES = {"pending", "processing", "completed", "failed"}


def guess_mime_type(url: str) -> str:
    lowered = url.lower().split("?", 1)[0]
    for suffix, mime in _MIME_BY_SUFFIX.items():
        if lowered.endswith(suffix):
            return mime
    return "image/jpeg"


def normalize_job_duration(duration: int | None) -> int:
    # Upstream accepts only 15 or 25 second clips.
    value = duration or 15
    return 15 if value <= 20 else 25


def orientation_for(aspect_ratio: str | None) -> str:
    return "portrait" if aspect_ratio in {"9:16", "1:1"} else "landscape"


def extract_images(payload: dict[str, Any]) -> list[str]:
    images: list[str] = []
    for candidate in payload.get("candidates") or []:
        parts = ((candidate or {}).get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime = inline.get("mimeType") or inline.get("mime_type") or "image/jpeg"
                images.append(f"data:{mime};base64,{inline['data']}")
                continue
            file_data = part.get("fileData") or {}
            if file_data.get("fileUri"):
                images.append(file_data["fileUri"])
    return images


def blocking_reason(payload: dict[str, Any]) -> str | None:
    feedback = payload.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        return f"Prompt blocked: {feedback['blockReason']}"
    for candidate in payload.get("candidates") or []:
        reason = (candidate or {}).get("finishReason")
        if reason in BLOCKING_FINISH_REASONS:
            return f"Generation stopped by content filter: {reason}"
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"Provider responded with {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or response.status_code)
    if error:
        return str(error)
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"Provider responded with {response.status_code}"


class HttpGenerationProvider:
    """
    Image and async-job provider over one pooled httpx client. Transient
    failures are retried with capped exponential backoff; every error that
    leaves this class carries a sanitized message.
    """

    def __init__(
        self,
        *,
        api_base: str | None = None,
        api_key: str | None = None,
        model_id: str | None = None,
        job_model_id: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_base = (api_base if api_base is not None else settings.PROVIDER_API_BASE).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.PROVIDER_API_KEY
        self.model_id = model_id or settings.PROVIDER_MODEL_ID
        self.job_model_id = job_model_id or settings.PROVIDER_JOB_MODEL_ID
        self.max_retries = max(1, max_retries if max_retries is not None else settings.PROVIDER_MAX_RETRIES)
        timeout = timeout_seconds if timeout_seconds is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate(
        self,
        prompt: str,
        inputs: Sequence[str],
        count: int,
        on_item: OnItem | None = None,
    ) -> list[str]:
        input_parts = [await self._inline_part(url) for url in inputs]
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}, *input_parts]}],
            "generationConfig": {"responseModalities": ["IMAGE"]},
        }
        path = f"/v1beta/models/{self.model_id}:generateContent"

        results: list[str] = []
        # One image per upstream call.
        for index in range(count):
            payload = (await self._request("POST", path, json=body)).json()
            reason = blocking_reason(payload)
            if reason:
                raise SecurityBlockError(reason)
            images = extract_images(payload)
            if not images:
                raise ProviderError("Provider returned no image")
            url = images[0]
            results.append(url)
            if on_item is not None:
                await on_item(url, index, count)
        return results

    async def submit_job(self, prompt: str, input_url: str, options: JobOptions | None = None) -> str:
        opts = options or JobOptions()
        part = await self._inline_part(input_url)
        inline = part["inline_data"]

        def _body(watermark: bool) -> dict[str, Any]:
            return {
                "images": [f"data:{inline['mime_type']};base64,{inline['data']}"],
                "model": self.job_model_id,
                "orientation": orientation_for(opts.aspect_ratio),
                "prompt": prompt,
                "size": "large",
                "duration": normalize_job_duration(opts.duration),
                "watermark": watermark,
                "private": False,
                **opts.extra,
            }

        try:
            response = await self._request("POST", "/v1/video/create", json=_body(False))
        except SecurityBlockError:
            raise
        except ProviderError as exc:
            logger.warning("Job submission without watermark failed; retrying with watermark: %s", exc)
            response = await self._request("POST", "/v1/video/create", json=_body(True))

        job_id = (response.json() or {}).get("id")
        if not job_id:
            raise ProviderError("Provider response did not include a job id")
        logger.info("provider.job_submitted", extra={"job_id": job_id, "model": self.job_model_id})
        return str(job_id)

    async def query_job(self, job_id: str) -> JobStatus:
        payload = (await self._request("GET", "/v1/video/query", params={"id": job_id})).json() or {}
        status = str(payload.get("status") or "pending").lower()
        if status not in _JOB_STATES:
            status = "processing"
        error = payload.get("error")
        if isinstance(error, dict):
            error = error.get("message") or error.get("type")
        progress = payload.get("progress")
        return JobStatus(
            job_id=str(payload.get("id") or job_id),
            status=status,  # type: ignore[arg-type]
            url=payload.get("video_url") or None,
            error=str(error) if error else None,
            progress=int(progress) if isinstance(progress, (int, float)) else None,
        )

    async def _inline_part(self, url: str) -> dict[str, Any]:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to download input %s: %s", url, sanitize_error(exc))
            raise ProviderError("Failed to download the input image; check that the link is valid") from exc
        return {
            "inline_data": {
                "mime_type": guess_mime_type(url),
                "data": base64.b64encode(response.content).decode("ascii"),
            }
        }

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self.api_base:
            raise ProviderError("PROVIDER_API_BASE is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        url = f"{self.api_base}{path}"

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                if attempt == self.max_retries:
                    logger.error("Provider request failed: %s", sanitize_error(exc))
                    raise ProviderError(f"Provider request failed: {exc}") from exc
                await self._backoff(attempt)
                continue

            if response.status_code < 400:
                return response

            message = _error_message(response)
            if attempt == self.max_retries or not self._is_retryable(response.status_code):
                logger.error(
                    "Provider responded with an error",
                    extra={"status": response.status_code, "error": sanitize_error(message)},
                )
                raise classify_provider_error(message, status_code=response.status_code)
            await self._backoff(attempt)

        raise ProviderError("Provider request failed")  # pragma: no cover

    async def _backoff(self, attempt: int) -> None:
        backoff = min(0.5 * (2 ** (attempt - 1)), 5.0)
        await self._sleep(backoff + random.uniform(0, 0.25))

    @staticmethod
    def _is_retryable(status: int) -> bool:
        return status >= 500 or status in {408, 429}
