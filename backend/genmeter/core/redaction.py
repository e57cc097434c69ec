from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

_SENSITIVE_KEY_FRAGMENTS = ("apikey", "api_key", "api-key")
_SENSITIVE_KEYS = frozenset({"key", "authorization", "token", "secret", "password"})

_STRING_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"x-api-key[\"'\s:=]+[a-zA-Z0-9_-]{10,}", re.IGNORECASE), 'x-api-key="[REDACTED]"'),
    (re.compile(r"api[_-]?key[\"'\s:=]+[a-zA-Z0-9_-]{10,}", re.IGNORECASE), 'api_key="[REDACTED]"'),
    (re.compile(r"(?<![?&\w-])key[\"'\s:=]+[a-zA-Z0-9_-]{10,}", re.IGNORECASE), 'key="[REDACTED]"'),
    (
        re.compile(r"authorization[\"'\s:=]+(?:Bearer\s+)?[a-zA-Z0-9_-]{10,}", re.IGNORECASE),
        'authorization="[REDACTED]"',
    ),
    (re.compile(r"Bearer\s+[a-zA-Z0-9_.-]{10,}", re.IGNORECASE), "Bearer [REDACTED]"),
    (
        re.compile(r"([?&])(key|apikey|api_key|token|access_token)=[a-zA-Z0-9_-]{10,}", re.IGNORECASE),
        r"\1\2=[REDACTED]",
    ),
    (re.compile(r"sk-[a-zA-Z0-9]{20,}"), "[REDACTED-SK]"),
    (re.compile(r"AIza[a-zA-Z0-9_-]{30,}"), "[REDACTED-GAPI]"),
    (re.compile(r"secret[\"'\s:=]+[a-zA-Z0-9_-]{10,}", re.IGNORECASE), 'secret="[REDACTED]"'),
    (re.compile(r"password[\"'\s:=]+[^\s\"']{4,}", re.IGNORECASE), 'password="[REDACTED]"'),
]


def sanitize_string(value: str) -> str:
    """Replace API keys, bearer tokens and passwords embedded in free text."""
    if not isinstance(value, str):
        return value
    for pattern, replacement in _STRING_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in _SENSITIVE_KEYS:
        return True
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def sanitize_error(error: Any) -> Any:
    """
    Return a log-safe copy of an error payload. Exceptions collapse to their
    sanitized message; dicts have sensitive keys masked recursively.
    """
    if error is None:
        return None
    if isinstance(error, BaseException):
        return sanitize_string(f"{type(error).__name__}: {error}")
    if isinstance(error, str):
        return sanitize_string(error)
    if isinstance(error, (list, tuple)):
        return [sanitize_error(item) for item in error]
    if isinstance(error, dict):
        sanitized: dict[Any, Any] = {}
        for key, value in error.items():
            if isinstance(key, str) and _is_sensitive_key(key):
                sanitized[key] = REDACTED
                continue
            sanitized[key] = sanitize_error(value)
        return sanitized
    return error
