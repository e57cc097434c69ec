from __future__ import annotations


class InvalidRequestError(ValueError):
    """Malformed user input. The message is safe to show verbatim."""


class CommandTimeoutError(TimeoutError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Request timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds
