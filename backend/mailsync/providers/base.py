"""Provider adapter contract. Wire formats stay inside adapters; the engine sees these types only."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional

MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"


@dataclass
class ProviderAttachment:
    provider_attachment_id: str
    filename: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None


@dataclass
class ProviderMessage:
    """One message as normalized by an adapter."""

    provider_message_id: str
    folder: str = "inbox"
    subject: Optional[str] = None
    sender: Optional[str] = None
    message_id: Optional[str] = None  # RFC 5322 Message-ID
    in_reply_to: Optional[str] = None
    references: Optional[str] = None  # raw References header
    provider_thread_id: Optional[str] = None  # e.g. a provider conversation id
    is_read: bool = False
    is_starred: bool = False
    is_trashed: bool = False
    received_at: Optional[datetime] = None
    attachments: list[ProviderAttachment] = field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


@dataclass
class RateLimitHeaders:
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[float] = None

    @classmethod
    def from_mapping(cls, headers: Optional[Mapping[str, str]]) -> Optional["RateLimitHeaders"]:
        """Read X-RateLimit-* / RateLimit-* style headers (case-insensitive)."""
        if not headers:
            return None
        lowered = {str(k).lower(): v for k, v in headers.items()}

        def _num(*names: str) -> Optional[float]:
            for name in names:
                value = lowered.get(name)
                if value is None:
                    continue
                try:
                    return float(value)
                except (TypeError, ValueError):
                    return None
            return None

        limit = _num("x-ratelimit-limit", "ratelimit-limit")
        remaining = _num("x-ratelimit-remaining", "ratelimit-remaining")
        reset = _num("x-ratelimit-reset", "ratelimit-reset")
        if limit is None and remaining is None and reset is None:
            return None
        return cls(
            limit=int(limit) if limit is not None else None,
            remaining=int(remaining) if remaining is not None else None,
            reset=reset,
        )


@dataclass
class FetchResult:
    """
    One page of a provider delta.

    messages are fully populated; message_ids are bare ids the engine hydrates
    through get_messages. next_cursor is where the following call resumes, and
    once has_more is False it is persisted as the account's incremental cursor.
    """

    messages: list[ProviderMessage] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    estimated_total: Optional[int] = None
    message_ids: list[str] = field(default_factory=list)
    deleted_message_ids: list[str] = field(default_factory=list)
    rate_limit: Optional[RateLimitHeaders] = None


class ProviderAdapter(ABC):
    """Fetches message deltas for one provider. Raise sync_errors types on failure."""

    provider: str = ""

    @abstractmethod
    def fetch(self, account_id: int, mode: str, cursor: Optional[str] = None) -> FetchResult:
        ...

    def get_messages(self, account_id: int, message_ids: list[str]) -> list[ProviderMessage]:
        raise NotImplementedError(f"{type(self).__name__} does not hydrate message ids")
