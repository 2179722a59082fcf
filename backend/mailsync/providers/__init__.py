"""Provider adapter registry."""
import threading
from typing import Optional

from ..sync_errors import SyncDataError
from .base import (
    MODE_FULL,
    MODE_INCREMENTAL,
    FetchResult,
    ProviderAdapter,
    ProviderAttachment,
    ProviderMessage,
    RateLimitHeaders,
)

_adapters: dict[str, ProviderAdapter] = {}
_lock = threading.Lock()


class UnknownProviderError(SyncDataError):
    user_message = "Unsupported provider"


def register_adapter(provider: str, adapter: ProviderAdapter) -> None:
    with _lock:
        _adapters[provider.lower()] = adapter


def unregister_adapter(provider: str) -> Optional[ProviderAdapter]:
    with _lock:
        return _adapters.pop(provider.lower(), None)


def get_adapter(provider: str) -> ProviderAdapter:
    with _lock:
        adapter = _adapters.get((provider or "").lower())
    if adapter is None:
        raise UnknownProviderError(f"Unsupported provider: {provider}")
    return adapter


__all__ = [
    "MODE_FULL",
    "MODE_INCREMENTAL",
    "FetchResult",
    "ProviderAdapter",
    "ProviderAttachment",
    "ProviderMessage",
    "RateLimitHeaders",
    "UnknownProviderError",
    "get_adapter",
    "register_adapter",
    "unregister_adapter",
]
