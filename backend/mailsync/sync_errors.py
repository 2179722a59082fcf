"""Sync error taxonomy, classification of arbitrary exceptions, and retry backoff."""
from __future__ import annotations

import random
import re
import socket
from dataclasses import dataclass
from typing import Optional

CATEGORY_TRANSIENT = "transient"
CATEGORY_AUTH = "auth"
CATEGORY_INVALID_DATA = "invalid_data"
CATEGORY_MALFORMED_WEBHOOK = "malformed_webhook"
CATEGORY_CONFLICT = "conflict"


class SyncError(Exception):
    """Base for errors the sync engine knows how to attribute."""

    category = CATEGORY_TRANSIENT
    retryable = True
    user_message = "Sync failed"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message or self.user_message)
        self.retry_after = retry_after


class TransientProviderError(SyncError):
    """Timeouts, 5xx and connection failures talking to a provider."""

    user_message = "Email provider temporarily unavailable"


class RateLimitedError(TransientProviderError):
    """Provider answered 429; retry_after carries the provider's hint in seconds."""

    user_message = "Rate limit exceeded"


class AuthenticationError(SyncError):
    """Credential revoked or expired. Needs re-authorization, never retried."""

    category = CATEGORY_AUTH
    retryable = False
    user_message = "Authentication failed - reconnect account"


class SyncDataError(SyncError):
    """Provider returned data the engine cannot store."""

    category = CATEGORY_INVALID_DATA
    retryable = False
    user_message = "Invalid data received"


class MalformedWebhookError(SyncError):
    category = CATEGORY_MALFORMED_WEBHOOK
    retryable = False
    user_message = "Malformed webhook payload"


class SyncAlreadyInProgressError(SyncError):
    category = CATEGORY_CONFLICT
    retryable = False
    user_message = "Sync already in progress"


class SyncPausedError(SyncError):
    category = CATEGORY_CONFLICT
    retryable = False
    user_message = "Sync is paused"


@dataclass
class ErrorInfo:
    category: str
    message: str
    retryable: bool
    retry_after: Optional[float] = None


_AUTH_MARKERS = ("unauthorized", "forbidden", "invalid_grant", "token expired", "token has been expired or revoked")
_RATE_MARKERS = ("rate limit", "too many requests")
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "econnrefused",
    "etimedout",
    "enotfound",
    "connection reset",
    "service unavailable",
    "bad gateway",
)

# A status code in message text only counts next to an HTTP/status word, so ids,
# timestamps and page numbers that happen to contain "401" are ignored.
_TEXT_STATUS_RE = re.compile(r"\b(?:http|status(?:\s+code)?|response|error\s+code)\W{0,3}(\d{3})\b")


def _status_code(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status from client exceptions (httpx/requests/googleapiclient style)."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    resp = getattr(exc, "response", None)
    if resp is None:
        resp = getattr(exc, "resp", None)
    if resp is not None:
        for attr in ("status_code", "status"):
            value = getattr(resp, attr, None)
            if isinstance(value, int):
                return value
    return None


def classify_error(exc: BaseException) -> ErrorInfo:
    """
    Attribute an exception to one category of the taxonomy.

    Known SyncError subclasses map directly. Everything else is inspected for an
    HTTP status, then its message text. Unknown errors are treated as transient.
    """
    if isinstance(exc, SyncError):
        return ErrorInfo(exc.category, exc.user_message, exc.retryable, exc.retry_after)

    if isinstance(exc, (TimeoutError, socket.timeout, ConnectionError)):
        return ErrorInfo(CATEGORY_TRANSIENT, TransientProviderError.user_message, True)

    status = _status_code(exc)
    if status in (401, 403):
        return ErrorInfo(CATEGORY_AUTH, AuthenticationError.user_message, False)
    if status == 429:
        return ErrorInfo(CATEGORY_TRANSIENT, RateLimitedError.user_message, True, 60.0)
    if status is not None and status >= 500:
        return ErrorInfo(CATEGORY_TRANSIENT, TransientProviderError.user_message, True)

    text = str(exc).lower()
    match = _TEXT_STATUS_RE.search(text)
    status = int(match.group(1)) if match else None
    if status in (401, 403):
        return ErrorInfo(CATEGORY_AUTH, AuthenticationError.user_message, False)
    if status == 429:
        return ErrorInfo(CATEGORY_TRANSIENT, RateLimitedError.user_message, True, 60.0)
    if any(marker in text for marker in _AUTH_MARKERS):
        return ErrorInfo(CATEGORY_AUTH, AuthenticationError.user_message, False)
    if any(marker in text for marker in _RATE_MARKERS):
        return ErrorInfo(CATEGORY_TRANSIENT, RateLimitedError.user_message, True, 60.0)
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return ErrorInfo(CATEGORY_TRANSIENT, TransientProviderError.user_message, True)

    return ErrorInfo(CATEGORY_TRANSIENT, "Unexpected sync error", True)


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 5.0,
    max_delay: float = 3600.0,
    jitter: float = 0.2,
) -> float:
    """
    Exponential backoff in seconds for the given attempt (starting at 1):
    base_delay * 2^(attempt-1), +/- jitter/2 of the delay, capped at max_delay.
    """
    attempt = max(1, int(attempt))
    delay = base_delay * (2 ** (attempt - 1))
    if jitter:
        delay += delay * jitter * (random.random() - 0.5)
    return max(0.0, min(delay, max_delay))
