from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


DEFAULT_TIMEZONE = "America/Chicago"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class SyncSettings:
    # backfill state machine
    batch_days: int = 3
    target_days: int = 90
    incremental_lookback_hours: int = 24
    incremental_buffer_hours: int = 1

    # per connection run budget
    max_orders_per_run: int = 100
    max_pages_per_run: int = 50
    page_size: int = 100

    # scheduler
    bulk_connection_limit: int = 5
    inter_connection_delay: float = 2.0

    # http
    request_timeout: float = 30.0
    retry_attempts: int = 3
    retry_base_delay: float = 0.75
    retry_max_delay: float = 8.0
    retry_jitter: float = 0.25
    page_interval: float = 0.2

    # reconciliation, in minor currency units
    reconciliation_tolerance_minor: int = 0

    # downstream aggregation
    downstream_mode: str = "per_connection"
    downstream_max_workers: int = 4

    default_timezone: str = DEFAULT_TIMEZONE

    def with_overrides(self, **changes) -> "SyncSettings":
        return replace(self, **changes)


def load_settings() -> SyncSettings:
    downstream_mode = (os.getenv("SYNC_DOWNSTREAM_MODE") or "per_connection").strip().lower()
    if downstream_mode not in {"per_connection", "per_batch"}:
        raise RuntimeError("SYNC_DOWNSTREAM_MODE must be per_connection or per_batch")
    return SyncSettings(
        batch_days=_int_env("SYNC_BATCH_DAYS", 3),
        target_days=_int_env("SYNC_TARGET_DAYS", 90),
        incremental_lookback_hours=_int_env("SYNC_INCREMENTAL_LOOKBACK_HOURS", 24),
        incremental_buffer_hours=_int_env("SYNC_INCREMENTAL_BUFFER_HOURS", 1),
        max_orders_per_run=_int_env("SYNC_MAX_ORDERS_PER_RUN", 100),
        max_pages_per_run=_int_env("SYNC_MAX_PAGES_PER_RUN", 50),
        page_size=_int_env("SYNC_PAGE_SIZE", 100),
        bulk_connection_limit=_int_env("SYNC_BULK_CONNECTION_LIMIT", 5),
        inter_connection_delay=_float_env("SYNC_INTER_CONNECTION_DELAY", 2.0),
        request_timeout=_float_env("SYNC_REQUEST_TIMEOUT", 30.0),
        retry_attempts=_int_env("SYNC_RETRY_ATTEMPTS", 3),
        retry_base_delay=_float_env("SYNC_RETRY_BASE_DELAY", 0.75),
        retry_max_delay=_float_env("SYNC_RETRY_MAX_DELAY", 8.0),
        retry_jitter=_float_env("SYNC_RETRY_JITTER", 0.25),
        page_interval=_float_env("SYNC_PAGE_INTERVAL", 0.2),
        reconciliation_tolerance_minor=_int_env("SYNC_RECONCILIATION_TOLERANCE_MINOR", 0),
        downstream_mode=downstream_mode,
        downstream_max_workers=_int_env("SYNC_DOWNSTREAM_MAX_WORKERS", 4),
        default_timezone=os.getenv("SYNC_DEFAULT_TIMEZONE") or DEFAULT_TIMEZONE,
    )


def sync_api_token() -> Optional[str]:
    token = os.getenv("SYNC_API_TOKEN")
    return token.strip() if token and token.strip() else None


def downstream_rpc_url() -> Optional[str]:
    url = os.getenv("DOWNSTREAM_RPC_URL")
    return url.rstrip("/") if url else None


def downstream_rpc_key() -> Optional[str]:
    return os.getenv("DOWNSTREAM_RPC_KEY") or None


def configure_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # request URLs carry merchant ids; keep httpx at warning unless debugging
    if level != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
