from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from posledger.app.config import DEFAULT_TIMEZONE
from posledger.app.norma.orders import OrderDraft


ProviderName = str


@dataclass(frozen=True)
class WebhookVerificationResult:
    ok: bool
    reason: str


@dataclass(frozen=True)
class WebhookEvent:
    event_type: str
    account_id: Optional[str]
    order_id: Optional[str]
    raw: dict


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime
    mode: str  # backfill | incremental | range


@dataclass(frozen=True)
class ProviderCredentials:
    """Decrypted credential bundle, alive only for one connection run."""

    refresh_token: Optional[str]
    secrets: dict[str, Any]
    external_account_id: Optional[str]
    region: Optional[str]
    environment: Optional[str]
    config: dict[str, Any] = field(default_factory=dict)
    timezone: str = DEFAULT_TIMEZONE


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    config_updates: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class RequestSpec:
    method: str
    url: str
    params: Optional[dict[str, Any]] = None
    json: Optional[dict[str, Any]] = None
    headers: Optional[dict[str, str]] = None


@dataclass(frozen=True)
class PageResult:
    records: list[dict]
    has_more: bool
    next_page: Any = None


class PosAdapter(Protocol):
    provider: ProviderName
    refresh_margin: timedelta
    page_size: int

    def build_refresh_request(self, creds: ProviderCredentials) -> RequestSpec:
        ...

    def parse_refresh_response(self, payload: dict, *, now: datetime) -> TokenGrant:
        ...

    def auth_headers(self, token: str) -> dict[str, str]:
        ...

    def first_page(self) -> Any:
        ...

    def build_orders_request(self, creds: ProviderCredentials, window: SyncWindow, page: Any) -> RequestSpec:
        ...

    def parse_orders_page(self, payload: Any, page: Any) -> PageResult:
        ...

    def payments_request(self, creds: ProviderCredentials, raw_order: dict) -> Optional[RequestSpec]:
        ...

    def parse_payments(self, payload: Any) -> list[dict]:
        ...

    def embedded_payments(self, raw_order: dict) -> list[dict]:
        ...

    def to_draft(self, raw_order: dict, raw_payments: Sequence[dict], tz: ZoneInfo) -> OrderDraft:
        ...

    def order_request(self, creds: ProviderCredentials, order_id: str) -> RequestSpec:
        ...

    def parse_order(self, payload: Any) -> Optional[dict]:
        ...

    def verify_webhook(self, headers: dict[str, str], body: bytes) -> WebhookVerificationResult:
        ...

    def parse_webhook(self, body: bytes) -> list[WebhookEvent]:
        ...


class WebhooksUnsupported:
    """Mixin for providers whose webhooks we acknowledge but do not act on."""

    def verify_webhook(self, headers: dict[str, str], body: bytes) -> WebhookVerificationResult:
        _ = headers
        _ = body
        return WebhookVerificationResult(ok=True, reason="webhooks_not_supported")

    def parse_webhook(self, body: bytes) -> list[WebhookEvent]:
        _ = body
        return []
