from __future__ import annotations

from typing import Optional

from posledger.app.integrations.base import (
    PageResult,
    PosAdapter,
    ProviderCredentials,
    ProviderName,
    RequestSpec,
    SyncWindow,
    TokenGrant,
    WebhookEvent,
    WebhookVerificationResult,
)
from posledger.app.integrations.clover import CloverAdapter
from posledger.app.integrations.shift4 import Shift4Adapter
from posledger.app.integrations.square import SquareAdapter
from posledger.app.integrations.toast import ToastAdapter


ADAPTERS: dict[str, PosAdapter] = {
    "clover": CloverAdapter(),
    "toast": ToastAdapter(),
    "square": SquareAdapter(),
    "shift4": Shift4Adapter(),
}

# Lighthouse is how Shift4 data is reached; accept either name.
ALIASES = {"lighthouse": "shift4"}


def normalize_provider(provider: ProviderName) -> str:
    key = (provider or "").strip().lower()
    return ALIASES.get(key, key)


def get_adapter(provider: ProviderName, *, page_size: Optional[int] = None) -> PosAdapter:
    adapter = ADAPTERS.get(normalize_provider(provider))
    if not adapter:
        raise ValueError(f"unsupported provider: {provider}")
    # unpaginated providers (page_size 0) keep their shared instance
    if page_size and adapter.page_size and page_size != adapter.page_size:
        return type(adapter)(page_size=page_size)
    return adapter


__all__ = [
    "ADAPTERS",
    "PageResult",
    "PosAdapter",
    "ProviderCredentials",
    "ProviderName",
    "RequestSpec",
    "SyncWindow",
    "TokenGrant",
    "WebhookEvent",
    "WebhookVerificationResult",
    "get_adapter",
    "normalize_provider",
]
