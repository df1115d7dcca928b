"""Retryable-error classification.

Errors are classified by message text against a small set of patterns. Errors
that carry a boolean ``retryable`` attribute (database and payment gateway
errors do) are classified by that flag instead, and ``httpx`` errors are
described with their status code so the same patterns apply to them.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

import httpx

from resilience_core.errors import TransientError

_FLAGS = re.IGNORECASE

CONNECTION_REFUSED = re.compile(r"ECONNREFUSED|connection refused", _FLAGS)
TIMEOUT = re.compile(r"ETIMEDOUT|timed out|timeout", _FLAGS)
DNS_NOT_FOUND = re.compile(
    r"ENOTFOUND|getaddrinfo|name or service not known|nodename nor servname",
    _FLAGS,
)
BAD_GATEWAY = re.compile(r"\b502\b")
SERVICE_UNAVAILABLE = re.compile(r"\b503\b")
GATEWAY_TIMEOUT = re.compile(r"\b504\b")
TOO_MANY_REQUESTS = re.compile(r"\b429\b")

DEFAULT_RETRYABLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    CONNECTION_REFUSED,
    TIMEOUT,
    DNS_NOT_FOUND,
    BAD_GATEWAY,
    SERVICE_UNAVAILABLE,
    GATEWAY_TIMEOUT,
    TOO_MANY_REQUESTS,
)

RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    TOO_MANY_REQUESTS,
    re.compile(r"rate limit", _FLAGS),
    re.compile(r"too many requests", _FLAGS),
)


def compile_patterns(
    patterns: Iterable[str | re.Pattern[str]],
) -> tuple[re.Pattern[str], ...]:
    """Compile plain strings case-insensitively; keep compiled patterns as is."""
    return tuple(
        pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, _FLAGS)
        for pattern in patterns
    )


def describe_error(error: BaseException) -> str:
    """Return the text the retryable patterns are matched against."""
    message = str(error)
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return f"HTTP {response.status_code} {response.reason_phrase}: {message}"
    if isinstance(error, httpx.TimeoutException):
        return f"timeout: {message}"
    return message


def matches_patterns(error: BaseException, patterns: Sequence[re.Pattern[str]]) -> bool:
    text = describe_error(error)
    return any(pattern.search(text) for pattern in patterns)


def is_retryable_error(
    error: BaseException,
    patterns: Sequence[re.Pattern[str]] = DEFAULT_RETRYABLE_PATTERNS,
) -> bool:
    """Return whether ``error`` is worth another attempt.

    Cancellation and other non-``Exception`` errors are never retryable.
    """
    if not isinstance(error, Exception):
        return False
    flag = getattr(error, "retryable", None)
    if isinstance(flag, bool):
        return flag
    if isinstance(error, TransientError):
        return True
    return matches_patterns(error, patterns)
