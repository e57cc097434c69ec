from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Protocol, Sequence

from genmeter.core.redaction import sanitize_string

JobState = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATES: frozenset[str] = frozenset({"completed", "failed"})

# Substrings providers use when refusing a prompt on content-policy grounds.
CONTENT_POLICY_MARKERS: tuple[str, ...] = (
    "PROHIBITED_CONTENT",
    "blocked by Google Gemini",
    "prohibited under official usage policies",
    "content is prohibited",
)
BLOCKING_FINISH_REASONS: frozenset[str] = frozenset({"SAFETY", "RECITATION"})

OnItem = Callable[[str, int, int], Awaitable[None]]


class ProviderError(RuntimeError):
    """Upstream failure. The message is already sanitized."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(sanitize_string(message))
        self.status_code = status_code


class SecurityBlockError(ProviderError):
    pass


def is_content_policy_message(message: str | None) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker.lower() in lowered for marker in CONTENT_POLICY_MARKERS)


def classify_provider_error(message: str, *, status_code: int | None = None) -> ProviderError:
    if is_content_policy_message(message):
        return SecurityBlockError(message, status_code=status_code)
    return ProviderError(message, status_code=status_code)


@dataclass(frozen=True)
class JobOptions:
    duration: int | None = None
    aspect_ratio: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    status: JobState
    url: str | None = None
    error: str | None = None
    progress: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and bool(self.url)


class ImageProvider(Protocol):
    async def generate(
        self,
        prompt: str,
        inputs: Sequence[str],
        count: int,
        on_item: OnItem | None = None,
    ) -> list[str]:
        ...


class JobProvider(Protocol):
    async def submit_job(self, prompt: str, input_url: str, options: JobOptions | None = None) -> str:
        ...

    async def query_job(self, job_id: str) -> JobStatus:
        ...
