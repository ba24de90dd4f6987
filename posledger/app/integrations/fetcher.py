from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from posledger.app.errors import (
    ProviderAuthError,
    ProviderDataError,
    ProviderRequestError,
    TransientNetworkError,
)
from posledger.app.integrations.base import PageResult, PosAdapter, ProviderCredentials, RequestSpec, SyncWindow
from posledger.app.integrations.pacing import BackoffPolicy, Pacer, parse_retry_after


logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def build_http_client(timeout: float = 30.0) -> httpx.Client:
    return httpx.Client(timeout=httpx.Timeout(timeout))


@dataclass
class AuthContext:
    """Token for one connection run. A 401 may force exactly one refresh."""

    token: str
    refresh: Callable[[], str]
    refreshed: bool = False

    def force_refresh(self) -> str:
        self.token = self.refresh()
        self.refreshed = True
        return self.token


class PageFetcher:
    def __init__(
        self,
        adapter: PosAdapter,
        *,
        client: httpx.Client,
        policy: Optional[BackoffPolicy] = None,
        pacer: Optional[Pacer] = None,
        rng: Callable[[], float] = random.random,
    ):
        self.adapter = adapter
        self.client = client
        self.policy = policy or BackoffPolicy()
        self.pacer = pacer or Pacer(self.policy.min_interval)
        self._rng = rng

    def send(self, spec: RequestSpec, auth: AuthContext) -> Any:
        provider = self.adapter.provider
        attempt = 0
        while True:
            attempt += 1
            self.pacer.wait()
            headers = {**self.adapter.auth_headers(auth.token), **(spec.headers or {})}
            try:
                response = self.client.request(
                    spec.method,
                    spec.url,
                    params=spec.params,
                    json=spec.json,
                    headers=headers,
                )
            except httpx.TransportError as exc:
                # timeouts are TransportErrors too
                if attempt >= self.policy.max_attempts:
                    raise TransientNetworkError(
                        f"{provider} {spec.method} {spec.url} failed after {attempt} attempts: {exc}",
                        attempts=attempt,
                    ) from exc
                delay = self.policy.delay_for(attempt, rng=self._rng)
                logger.warning("%s request error (%s); retrying in %.2fs", provider, exc.__class__.__name__, delay)
                self.pacer.pause(delay)
                continue

            status = response.status_code
            if status == 401:
                if auth.refreshed:
                    raise ProviderAuthError(
                        f"{provider} rejected the refreshed token",
                        status_code=status,
                        body=response.text[:500],
                    )
                logger.info("%s returned 401; forcing token refresh", provider)
                auth.force_refresh()
                attempt -= 1
                continue

            if status in RETRYABLE_STATUS:
                if attempt >= self.policy.max_attempts:
                    raise TransientNetworkError(
                        f"{provider} {spec.method} {spec.url} returned {status} after {attempt} attempts",
                        status_code=status,
                        attempts=attempt,
                    )
                delay = self.policy.delay_for(
                    attempt,
                    retry_after=parse_retry_after(response.headers.get("Retry-After")),
                    rng=self._rng,
                )
                logger.warning("%s returned %s; retrying in %.2fs", provider, status, delay)
                self.pacer.pause(delay)
                continue

            if status < 200 or status >= 300:
                raise ProviderRequestError(
                    f"{provider} {spec.method} {spec.url} returned {status}",
                    status_code=status,
                    body=response.text[:500],
                )

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise ProviderDataError(f"{provider} returned a non-JSON body") from exc

    def fetch_page(
        self,
        creds: ProviderCredentials,
        auth: AuthContext,
        window: SyncWindow,
        page: Any,
    ) -> PageResult:
        spec = self.adapter.build_orders_request(creds, window, page)
        return self.adapter.parse_orders_page(self.send(spec, auth), page)

    def fetch_payments(self, creds: ProviderCredentials, auth: AuthContext, raw_order: dict) -> list[dict]:
        spec = self.adapter.payments_request(creds, raw_order)
        if spec is None:
            return self.adapter.embedded_payments(raw_order)
        return self.adapter.parse_payments(self.send(spec, auth))

    def fetch_order(self, creds: ProviderCredentials, auth: AuthContext, order_id: str) -> Optional[dict]:
        spec = self.adapter.order_request(creds, order_id)
        return self.adapter.parse_order(self.send(spec, auth))
