from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional, Protocol

import httpx

from posledger.app.config import downstream_rpc_key, downstream_rpc_url


logger = logging.getLogger(__name__)


class DownstreamClient(Protocol):
    def sync_to_unified_sales(
        self,
        provider: str,
        restaurant_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> None:
        ...

    def calculate_daily_pnl(self, provider: str, restaurant_id: str, service_date: date) -> None:
        ...


def _build_httpx_client(base_url: str, api_key: Optional[str]) -> httpx.Client:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["apikey"] = api_key
        headers["Authorization"] = f"Bearer {api_key}"
    return httpx.Client(base_url=base_url, headers=headers, timeout=30.0)


class RpcDownstreamClient:
    """Calls the aggregation procedures over a PostgREST-style `/rpc/<name>` surface."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, client: Optional[httpx.Client] = None):
        self._client = client or _build_httpx_client(base_url, api_key)

    def _call(self, name: str, params: dict) -> None:
        response = self._client.post(f"/rpc/{name}", json=params)
        response.raise_for_status()

    def sync_to_unified_sales(
        self,
        provider: str,
        restaurant_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> None:
        params: dict = {"p_restaurant_id": restaurant_id}
        if start_date is not None:
            params["p_start_date"] = start_date.isoformat()
        if end_date is not None:
            params["p_end_date"] = end_date.isoformat()
        self._call(f"sync_{provider}_to_unified_sales", params)

    def calculate_daily_pnl(self, provider: str, restaurant_id: str, service_date: date) -> None:
        self._call(
            f"calculate_{provider}_daily_pnl",
            {"p_restaurant_id": restaurant_id, "p_service_date": service_date.isoformat()},
        )


class LoggingDownstreamClient:
    """Used when no RPC endpoint is configured; records what would have run."""

    def sync_to_unified_sales(
        self,
        provider: str,
        restaurant_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> None:
        logger.info(
            "downstream not configured; skip unified sales %s restaurant=%s %s..%s",
            provider,
            restaurant_id,
            start_date,
            end_date,
        )

    def calculate_daily_pnl(self, provider: str, restaurant_id: str, service_date: date) -> None:
        logger.info(
            "downstream not configured; skip daily pnl %s restaurant=%s date=%s",
            provider,
            restaurant_id,
            service_date,
        )


def get_downstream_client() -> DownstreamClient:
    url = downstream_rpc_url()
    if not url:
        return LoggingDownstreamClient()
    return RpcDownstreamClient(url, downstream_rpc_key())


@dataclass
class DownstreamOutcome:
    unified_sales_ok: bool = True
    pnl_dates: list[date] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def trigger_downstream(
    client: DownstreamClient,
    *,
    provider: str,
    restaurant_id: str,
    service_dates: Iterable[date],
    max_workers: int = 4,
) -> DownstreamOutcome:
    """
    Unified sales for the affected date range, then P&L per service date.
    Best effort: failures are logged and returned, never raised.
    """
    outcome = DownstreamOutcome()
    dates = sorted(set(service_dates))
    if not dates:
        return outcome

    try:
        client.sync_to_unified_sales(provider, restaurant_id, dates[0], dates[-1])
    except Exception as exc:  # noqa: BLE001 - aggregation must not fail the sync
        outcome.unified_sales_ok = False
        outcome.errors.append(f"unified sales: {exc}")
        logger.warning("unified sales failed for %s restaurant=%s: %s", provider, restaurant_id, exc)

    def _pnl(day: date) -> Optional[str]:
        try:
            client.calculate_daily_pnl(provider, restaurant_id, day)
        except Exception as exc:  # noqa: BLE001 - one bad day must not block the rest
            return f"pnl {day.isoformat()}: {exc}"
        return None

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        for day, error in zip(dates, pool.map(_pnl, dates)):
            if error:
                outcome.errors.append(error)
                logger.warning("daily pnl failed for %s restaurant=%s: %s", provider, restaurant_id, error)
            else:
                outcome.pnl_dates.append(day)
    return outcome
