from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from genmeter.core.errors import CommandTimeoutError, InvalidRequestError
from genmeter.core.redaction import sanitize_error
from genmeter.services.ledger_store import StorageError
from genmeter.services.limits import TaskGate, TaskInProgressError, TaskKind
from genmeter.services.providers import ImageProvider, ProviderError, SecurityBlockError
from genmeter.services.quota import (
    Consumption,
    QuotaCheck,
    QuotaExceededError,
    QuotaManager,
    QuotaPolicy,
    RateLimitedError,
)
from genmeter.services.security_blocks import SecurityBlockEnforcer
from genmeter.services.transport import ChatTransport, IncomingMessage, safe_send, safe_send_media

logger = logging.getLogger(__name__)

InputMode = Literal["single", "multiple"]


class GenerationOutcome(str, Enum):
    REJECTED = "rejected"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class GenerationRequest:
    user_id: str
    prompt: str = ""
    display_name: str | None = None
    inputs: list[str] = field(default_factory=list)
    units: int | None = None
    command_name: str = "generate"
    mode: InputMode = "single"
    platform: str | None = None
    correlation_id: str | None = None


@dataclass
class GenerationResult:
    outcome: GenerationOutcome
    requested: int = 0
    delivered: int = 0
    charged_units: int = 0
    consumption: Consumption | None = None
    error: Exception | None = None


@dataclass
class _RunState:
    """Mutable bookkeeping shared between the orchestrator and the provider's item callback."""

    user_id: str
    requested: int
    forwarded: int = 0
    delivered: int = 0
    cancelled: bool = False
    billed: bool = False
    billing_failed: bool = False
    delivery_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def charged_units(self) -> int:
        if not self.billed or self.billing_failed:
            return 0
        return self.delivered


def format_usage_summary(consumption: Consumption | None, units: int, policy: QuotaPolicy, *, exempt: bool) -> str:
    if exempt:
        return f"Recorded {units} credit(s) of usage (unlimited)."
    if consumption is None:
        return f"Recorded {units} credit(s) of usage."
    account = consumption.account
    remaining_today = max(0, policy.daily_free_limit - account.daily_usage_count)
    return (
        f"Used {units} credit(s) (free: {consumption.free_used}, purchased: {consumption.purchased_used}). "
        f"Remaining today: {remaining_today}, purchased balance: {account.remaining_purchased_count}."
    )


class GenerationOrchestrator:
    """
    Runs one synchronous generation command end to end: task gate, input
    collection, reservation, the deadline-bounded provider call, streamed
    delivery and a single usage commit sized to what the user actually got.
    """

    def __init__(
        self,
        *,
        quota: QuotaManager,
        gate: TaskGate,
        security: SecurityBlockEnforcer,
        provider: ImageProvider,
        policy: QuotaPolicy,
        default_units: int = 1,
        max_units: int = 4,
        command_timeout_seconds: float = 180.0,
        input_timeout_seconds: float = 30.0,
    ) -> None:
        self.quota = quota
        self.gate = gate
        self.security = security
        self.provider = provider
        self.policy = policy
        self.default_units = default_units
        self.max_units = max_units
        self.command_timeout_seconds = command_timeout_seconds
        self.input_timeout_seconds = input_timeout_seconds
        self._background: set[asyncio.Task] = set()

    async def run(self, transport: ChatTransport, request: GenerationRequest) -> GenerationResult:
        units = request.units if request.units is not None else self.default_units
        try:
            self._validate_units(units)
        except InvalidRequestError as exc:
            await safe_send(transport, str(exc))
            return GenerationResult(outcome=GenerationOutcome.REJECTED, requested=units, error=exc)

        if not self.gate.start_task(request.user_id, TaskKind.GENERATION):
            exc = TaskInProgressError(request.user_id, TaskKind.GENERATION)
            await safe_send(transport, "You already have a generation task running, please wait for it to finish.")
            return GenerationResult(outcome=GenerationOutcome.REJECTED, requested=units, error=exc)

        try:
            return await self._run_locked(transport, request, units)
        finally:
            self.gate.end_task(request.user_id, TaskKind.GENERATION)

    def _validate_units(self, units: int) -> None:
        if isinstance(units, bool) or not isinstance(units, int) or not 1 <= units <= self.max_units:
            raise InvalidRequestError(f"The number of items must be between 1 and {self.max_units}")

    async def _run_locked(self, transport: ChatTransport, request: GenerationRequest, units: int) -> GenerationResult:
        try:
            inputs, prompt = await self._collect_inputs(transport, request)
        except InvalidRequestError as exc:
            await safe_send(transport, str(exc))
            return GenerationResult(outcome=GenerationOutcome.REJECTED, requested=units, error=exc)

        check = await self.quota.check_and_reserve_quota(
            request.user_id, request.display_name, units, self.policy, request.platform
        )
        if not check.allowed:
            await safe_send(transport, check.message or "Request denied")
            return GenerationResult(
                outcome=GenerationOutcome.REJECTED,
                requested=units,
                error=self._denial_error(check, units),
            )

        logger.info(
            "generation.started",
            extra={
                "user_id": request.user_id,
                "command_name": request.command_name,
                "units": units,
                "input_count": len(inputs),
                "reservation": check.token,
                "correlation_id": request.correlation_id,
            },
        )
        await safe_send(transport, f"Processing your request ({units} item(s))...")

        state = _RunState(user_id=request.user_id, requested=units)

        async def on_item(url: str, index: int, total: int) -> None:
            await self._deliver(transport, state, url)

        task = asyncio.create_task(self.provider.generate(prompt, inputs, units, on_item))
        try:
            results = await asyncio.wait_for(asyncio.shield(task), timeout=self.command_timeout_seconds)
        except asyncio.TimeoutError:
            return await self._on_timeout(transport, request, check, state, task)
        except SecurityBlockError as exc:
            return await self._on_security_block(transport, request, check, state, exc)
        except Exception as exc:
            return await self._on_failure(transport, request, check, state, exc)

        for url in results[state.forwarded :]:
            await self._deliver(transport, state, url)

        if state.delivered == 0:
            exc = ProviderError("No images were produced")
            await safe_send(transport, "Generation failed: no images were produced.")
            return GenerationResult(outcome=GenerationOutcome.FAILED, requested=units, error=exc)

        consumption = await self._commit(request, check, state)
        await safe_send(transport, "Done!")
        await self._report_usage(transport, check, state, consumption)
        return GenerationResult(
            outcome=GenerationOutcome.COMPLETED,
            requested=units,
            delivered=state.delivered,
            charged_units=state.charged_units,
            consumption=consumption,
        )

    async def _collect_inputs(self, transport: ChatTransport, request: GenerationRequest) -> tuple[list[str], str]:
        prompt = request.prompt.strip()
        if request.inputs:
            if request.mode == "single" and len(request.inputs) > 1:
                raise InvalidRequestError("This command accepts a single image only")
            return list(request.inputs), prompt

        if request.mode == "single":
            await safe_send(transport, "Please send an image with an optional description.")
        else:
            await safe_send(transport, "Please send the images, then a description to start.")

        collected: list[str] = []
        while True:
            reply: IncomingMessage | None = await transport.prompt(self.input_timeout_seconds)
            if reply is None:
                raise InvalidRequestError("Timed out waiting for input, please try again")
            text = reply.text.strip()

            if reply.media_urls:
                collected.extend(reply.media_urls)
                if request.mode == "single":
                    if len(collected) > 1:
                        raise InvalidRequestError("This command accepts a single image only")
                    break
                if text:
                    break
                await safe_send(transport, f"Received {len(collected)} image(s); send more or a description to start.")
                continue

            if text:
                if not collected:
                    await safe_send(transport, "No image detected, please send an image first.")
                    continue
                break

            raise InvalidRequestError("No usable content received, please try again")

        if text:
            prompt = f"{prompt} {text}".strip()
        return collected, prompt

    async def _deliver(self, transport: ChatTransport, state: _RunState, url: str) -> None:
        async with state.delivery_lock:
            state.forwarded += 1
            if state.cancelled:
                logger.info("generation.delivery_suppressed", extra={"user_id": state.user_id})
                return
            if await safe_send_media(transport, url, "image"):
                state.delivered += 1

    async def _commit(self, request: GenerationRequest, check: QuotaCheck, state: _RunState) -> Consumption | None:
        if state.billed or state.delivered == 0:
            return None
        state.billed = True
        try:
            if check.is_exempt:
                await self.quota.record_usage_only(
                    request.user_id, request.display_name, request.command_name, state.delivered
                )
                return None
            return await self.quota.consume_quota(
                request.user_id, request.display_name, request.command_name, state.delivered, self.policy
            )
        except StorageError:
            state.billing_failed = True
            logger.error(
                "generation.billing_failed",
                extra={"user_id": request.user_id, "units": state.delivered, "correlation_id": request.correlation_id},
                exc_info=True,
            )
            return None

    async def _report_usage(
        self,
        transport: ChatTransport,
        check: QuotaCheck,
        state: _RunState,
        consumption: Consumption | None,
    ) -> None:
        if not state.billed or state.billing_failed:
            return
        await safe_send(
            transport,
            format_usage_summary(consumption, state.delivered, self.policy, exempt=check.is_exempt),
        )

    async def _on_timeout(
        self,
        transport: ChatTransport,
        request: GenerationRequest,
        check: QuotaCheck,
        state: _RunState,
        task: asyncio.Task,
    ) -> GenerationResult:
        async with state.delivery_lock:
            state.cancelled = True
        self._detach(task, request.user_id)
        exc = CommandTimeoutError(self.command_timeout_seconds)
        logger.warning(
            "generation.timed_out",
            extra={
                "user_id": request.user_id,
                "delivered": state.delivered,
                "requested": state.requested,
                "correlation_id": request.correlation_id,
            },
        )

        consumption = await self._commit(request, check, state)
        await safe_send(transport, "The request timed out, please try again.")
        await self._report_usage(transport, check, state, consumption)
        return GenerationResult(
            outcome=GenerationOutcome.TIMED_OUT,
            requested=state.requested,
            delivered=state.delivered,
            charged_units=state.charged_units,
            consumption=consumption,
            error=exc,
        )

    async def _on_failure(
        self,
        transport: ChatTransport,
        request: GenerationRequest,
        check: QuotaCheck,
        state: _RunState,
        exc: Exception,
    ) -> GenerationResult:
        logger.error(
            "generation.failed",
            extra={
                "user_id": request.user_id,
                "delivered": state.delivered,
                "error": sanitize_error(exc),
                "correlation_id": request.correlation_id,
            },
        )
        consumption = await self._commit(request, check, state)
        await safe_send(transport, f"Generation failed: {sanitize_error(str(exc))}")
        await self._report_usage(transport, check, state, consumption)
        return GenerationResult(
            outcome=GenerationOutcome.FAILED,
            requested=state.requested,
            delivered=state.delivered,
            charged_units=state.charged_units,
            consumption=consumption,
            error=exc,
        )

    async def _on_security_block(
        self,
        transport: ChatTransport,
        request: GenerationRequest,
        check: QuotaCheck,
        state: _RunState,
        exc: SecurityBlockError,
    ) -> GenerationResult:
        result = await self._on_failure(transport, request, check, state, exc)
        await self.security.handle(transport, request.user_id, request.display_name, self.policy)
        return result

    def _detach(self, task: asyncio.Task, user_id: str) -> None:
        self._background.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.info(
                    "generation.late_failure",
                    extra={"user_id": user_id, "error": sanitize_error(error)},
                )

        task.add_done_callback(_done)

    @staticmethod
    def _denial_error(check: QuotaCheck, units: int) -> Exception:
        if check.retry_after_seconds is not None:
            return RateLimitedError(check.retry_after_seconds)
        return QuotaExceededError(
            requested=units,
            remaining_today=check.remaining_today,
            remaining_purchased=check.remaining_purchased,
        )

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
