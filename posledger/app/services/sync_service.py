from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy.orm import Session

from posledger.app.config import SyncSettings, load_settings
from posledger.app.errors import (
    ConnectionNotFound,
    ProviderAuthError,
    ProviderDataError,
    ProviderRequestError,
    TokenRefreshError,
    TransientNetworkError,
)
from posledger.app.integrations import get_adapter, normalize_provider
from posledger.app.integrations.base import PosAdapter, ProviderCredentials, SyncWindow, WebhookEvent
from posledger.app.integrations.fetcher import AuthContext, PageFetcher, build_http_client
from posledger.app.integrations.pacing import BackoffPolicy, Pacer
from posledger.app.integrations.utils import first_present
from posledger.app.models import PosConnection, Restaurant, SyncRun
from posledger.app.norma.orders import normalize
from posledger.app.norma.service_date import resolve_timezone
from posledger.app.services.connection_service import (
    advance_cursor,
    find_connections_by_account,
    list_active_connections,
    load_credentials,
    mark_sync_error,
    mark_sync_success,
    restart_backfill,
    select_due_connections,
    sync_phase,
)
from posledger.app.services.downstream_service import DownstreamClient, get_downstream_client, trigger_downstream
from posledger.app.services.encryption_service import EncryptionService, get_encryption_service
from posledger.app.services.order_writer import write_normalized_order
from posledger.app.services.security_event_service import log_security_event
from posledger.app.services.sync_run_service import finish_run, start_run
from posledger.app.services.sync_window import plan_window
from posledger.app.services.token_service import ensure_valid_token


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# -------------------------
# Results
# -------------------------

@dataclass
class ConnectionSyncResult:
    restaurant_id: str
    provider: str
    mode: str
    success: bool = False
    orders_synced: int = 0
    orders_failed: int = 0
    pages: int = 0
    warnings: int = 0
    truncated: bool = False
    aborted: bool = False
    sync_complete: bool = False
    cursor: int = 0
    target_days: int = 0
    phase: str = "new"
    errors: list[str] = field(default_factory=list)
    downstream_errors: list[str] = field(default_factory=list)
    service_dates: set[date] = field(default_factory=set)

    def counts(self) -> dict[str, Any]:
        return {
            "orders_synced": self.orders_synced,
            "orders_failed": self.orders_failed,
            "pages": self.pages,
            "warnings": self.warnings,
            "truncated": self.truncated,
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "mode": self.mode,
            "success": self.success,
            "results": {
                "ordersSynced": self.orders_synced,
                "errors": list(self.errors),
            },
            "syncComplete": self.sync_complete,
            "progress": {
                "cursor": self.cursor,
                "targetDays": self.target_days,
                "phase": self.phase,
                "truncated": self.truncated,
            },
        }


@dataclass
class BulkSyncResult:
    total_connections: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    total_orders_synced: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    connections: list[ConnectionSyncResult] = field(default_factory=list)

    def add(self, result: ConnectionSyncResult) -> None:
        self.connections.append(result)
        self.total_orders_synced += result.orders_synced
        if result.success:
            self.successful_syncs += 1
        else:
            self.failed_syncs += 1
            self.errors.append(
                {
                    "restaurantId": result.restaurant_id,
                    "provider": result.provider,
                    "error": "; ".join(result.errors) or "sync failed",
                }
            )

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalConnections": self.total_connections,
            "successfulSyncs": self.successful_syncs,
            "failedSyncs": self.failed_syncs,
            "totalOrdersSynced": self.total_orders_synced,
            "errors": list(self.errors),
        }


@dataclass
class _RunContext:
    adapter: PosAdapter
    creds: ProviderCredentials
    auth: AuthContext
    fetcher: PageFetcher
    tz: ZoneInfo


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _order_label(raw: Any) -> str:
    if isinstance(raw, dict):
        label = first_present(raw, "id", "guid", "orderNumber")
        if label is not None:
            return str(label)
    return "?"


# -------------------------
# Engine
# -------------------------

class SyncEngine:
    """
    Per-connection pipeline plus the bulk scheduler.

    Each connection run: token -> pages -> payments -> normalize -> upsert,
    committing after every page. Order-level problems are recorded and
    skipped; connection-level problems mark the connection and stop there.
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        http: Optional[httpx.Client] = None,
        encryption: Optional[EncryptionService] = None,
        downstream: Optional[DownstreamClient] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _now,
        rng: Callable[[], float] = random.random,
    ):
        self.settings = settings or load_settings()
        self._owns_http = http is None
        self.http = http or build_http_client(self.settings.request_timeout)
        self.encryption = encryption or get_encryption_service()
        self.downstream = downstream or get_downstream_client()
        self.policy = BackoffPolicy.from_settings(self.settings)
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    # ---- plumbing ----

    def _timezone(self, db: Session, restaurant_id: str) -> ZoneInfo:
        restaurant = db.get(Restaurant, restaurant_id)
        return resolve_timezone(restaurant.timezone if restaurant else None, self.settings.default_timezone)

    def _context(self, db: Session, conn: PosConnection, tz: ZoneInfo) -> _RunContext:
        adapter = get_adapter(conn.provider, page_size=self.settings.page_size)

        def _token(force: bool) -> str:
            return ensure_valid_token(
                db,
                conn,
                http=self.http,
                encryption=self.encryption,
                force=force,
                now=self._clock(),
                timezone_name=tz.key,
            )

        auth = AuthContext(token=_token(False), refresh=lambda: _token(True))
        # loaded after the token so provider config written by a refresh is visible
        creds = load_credentials(conn, self.encryption, timezone_name=tz.key)
        fetcher = PageFetcher(
            adapter,
            client=self.http,
            policy=self.policy,
            pacer=Pacer(self.policy.min_interval, sleep=self._sleep),
            rng=self._rng,
        )
        return _RunContext(adapter=adapter, creds=creds, auth=auth, fetcher=fetcher, tz=tz)

    def _start(self, db: Session, conn: PosConnection, *, trigger: str, window: Optional[SyncWindow]) -> SyncRun:
        run = start_run(
            db,
            restaurant_id=conn.restaurant_id,
            provider=conn.provider,
            trigger=trigger,
            window=window,
        )
        db.commit()
        return run

    def _fail(
        self,
        db: Session,
        conn: PosConnection,
        run: SyncRun,
        result: ConnectionSyncResult,
        exc: BaseException,
    ) -> None:
        db.rollback()
        message = _error_text(exc)
        result.success = False
        result.errors.append(message)
        mark_sync_error(conn, message, at=self._clock())
        finish_run(db, run, status="error", counts=result.counts(), errors=result.errors)
        log_security_event(
            db,
            event_type="SYNC_FAILED",
            restaurant_id=conn.restaurant_id,
            metadata={"provider": conn.provider, "trigger": run.trigger, "error": message[:500]},
        )
        db.commit()
        logger.warning("sync failed for %s restaurant=%s: %s", conn.provider, conn.restaurant_id, message)

    def _snapshot(self, conn: PosConnection, result: ConnectionSyncResult) -> ConnectionSyncResult:
        result.cursor = conn.sync_cursor or 0
        result.target_days = self.settings.target_days
        result.sync_complete = bool(conn.initial_sync_done)
        result.phase = sync_phase(conn)
        return result

    def _downstream(self, provider: str, restaurant_id: str, dates: Iterable[date]) -> list[str]:
        outcome = trigger_downstream(
            self.downstream,
            provider=provider,
            restaurant_id=restaurant_id,
            service_dates=dates,
            max_workers=self.settings.downstream_max_workers,
        )
        return outcome.errors

    # ---- orders ----

    def _sync_order(
        self,
        db: Session,
        conn: PosConnection,
        ctx: _RunContext,
        raw: Any,
        result: ConnectionSyncResult,
    ) -> None:
        label = _order_label(raw)
        try:
            if not isinstance(raw, dict):
                raise ProviderDataError(f"{conn.provider} order payload must be an object")
            payments = ctx.fetcher.fetch_payments(ctx.creds, ctx.auth, raw)
            # savepoint: a failed order leaves the rest of the page intact
            with db.begin_nested():
                normalized = normalize(
                    ctx.adapter,
                    raw,
                    payments,
                    ctx.tz,
                    tolerance_minor=self.settings.reconciliation_tolerance_minor,
                )
                write_normalized_order(db, conn.restaurant_id, normalized)
        except (ProviderAuthError, TokenRefreshError, TransientNetworkError):
            raise
        except Exception as exc:  # noqa: BLE001 - malformed orders are skipped, never escalated
            result.orders_failed += 1
            result.errors.append(f"order {label}: {_error_text(exc)}")
            logger.warning("skipping %s order %s: %s", conn.provider, label, exc)
            return

        result.orders_synced += 1
        result.warnings += len(normalized.warnings)
        result.service_dates.add(normalized.order.service_date)

    def _pull_orders(
        self,
        db: Session,
        conn: PosConnection,
        ctx: _RunContext,
        window: SyncWindow,
        result: ConnectionSyncResult,
    ) -> None:
        page = ctx.adapter.first_page()
        processed = 0
        while True:
            if result.pages >= self.settings.max_pages_per_run:
                result.truncated = True
                break
            try:
                batch = ctx.fetcher.fetch_page(ctx.creds, ctx.auth, window, page)
            except ProviderAuthError:
                raise
            except (ProviderDataError, ProviderRequestError) as exc:
                result.aborted = True
                result.errors.append(f"page {result.pages + 1}: {_error_text(exc)}")
                logger.warning("aborting %s page loop for restaurant=%s: %s", conn.provider, conn.restaurant_id, exc)
                return
            result.pages += 1

            for raw in batch.records:
                if processed >= self.settings.max_orders_per_run:
                    result.truncated = True
                    break
                processed += 1
                self._sync_order(db, conn, ctx, raw, result)
            db.commit()

            if result.truncated or not batch.has_more:
                break
            page = batch.next_page

        if result.truncated:
            logger.warning(
                "%s run for restaurant=%s hit its budget after %s pages / %s orders",
                conn.provider,
                conn.restaurant_id,
                result.pages,
                processed,
            )

    # ---- connection runs ----

    def sync_connection(
        self,
        db: Session,
        conn: PosConnection,
        *,
        trigger: str = "bulk",
        action: Optional[str] = None,
        date_range: Optional[tuple[date, date]] = None,
        run_downstream: bool = True,
    ) -> ConnectionSyncResult:
        now = self._clock()
        tz = self._timezone(db, conn.restaurant_id)
        plan = plan_window(conn, self.settings, now, action=action, date_range=date_range, tz=tz)
        result = ConnectionSyncResult(
            restaurant_id=conn.restaurant_id,
            provider=conn.provider,
            mode=plan.window.mode,
        )
        run = self._start(db, conn, trigger=trigger, window=plan.window)
        logger.info(
            "sync %s restaurant=%s mode=%s window=%s..%s",
            conn.provider,
            conn.restaurant_id,
            plan.window.mode,
            plan.window.start.isoformat(),
            plan.window.end.isoformat(),
        )

        try:
            ctx = self._context(db, conn, tz)
            self._pull_orders(db, conn, ctx, plan.window, result)
            if result.aborted:
                mark_sync_error(conn, "; ".join(result.errors), at=self._clock())
                finish_run(db, run, status="partial", counts=result.counts(), errors=result.errors)
            else:
                if plan.advances_cursor:
                    advance_cursor(conn, plan.next_cursor, self.settings.target_days)
                mark_sync_success(conn, at=self._clock())
                finish_run(db, run, status="ok", counts=result.counts(), errors=result.errors)
                log_security_event(
                    db,
                    event_type="SYNC_SUCCESS",
                    restaurant_id=conn.restaurant_id,
                    metadata={"provider": conn.provider, "trigger": trigger, "orders": result.orders_synced},
                )
            result.success = not result.aborted
            db.commit()
        except Exception as exc:  # noqa: BLE001 - a connection failure must not reach the batch
            self._fail(db, conn, run, result, exc)

        if run_downstream and result.service_dates:
            result.downstream_errors = self._downstream(conn.provider, conn.restaurant_id, result.service_dates)
        return self._snapshot(conn, result)

    def sync_single_order(self, db: Session, conn: PosConnection, order_id: str) -> ConnectionSyncResult:
        result = ConnectionSyncResult(restaurant_id=conn.restaurant_id, provider=conn.provider, mode="single_order")
        run = self._start(db, conn, trigger="webhook", window=None)
        try:
            ctx = self._context(db, conn, self._timezone(db, conn.restaurant_id))
            raw = ctx.fetcher.fetch_order(ctx.creds, ctx.auth, order_id)
            if raw is None:
                result.errors.append(f"order {order_id}: not found")
            else:
                self._sync_order(db, conn, ctx, raw, result)
            result.success = result.orders_failed == 0
            finish_run(db, run, status="ok" if result.success else "partial", counts=result.counts(), errors=result.errors)
            db.commit()
        except Exception as exc:  # noqa: BLE001 - webhook deliveries always acknowledge
            self._fail(db, conn, run, result, exc)

        if result.service_dates:
            result.downstream_errors = self._downstream(conn.provider, conn.restaurant_id, result.service_dates)
        return self._snapshot(conn, result)

    # ---- entry points ----

    def _spaced(self, connections: list[PosConnection]) -> Iterator[PosConnection]:
        for index, conn in enumerate(connections):
            if index and self.settings.inter_connection_delay > 0:
                self._sleep(self.settings.inter_connection_delay)
            yield conn

    def run_bulk_sync(self, db: Session) -> BulkSyncResult:
        connections = select_due_connections(db, self.settings.bulk_connection_limit)
        bulk = BulkSyncResult(total_connections=len(connections))
        per_batch = self.settings.downstream_mode == "per_batch"
        pending: dict[tuple[str, str], set[date]] = {}
        logger.info("bulk sync picked %s connections", len(connections))

        for conn in self._spaced(connections):
            restaurant_id, provider = conn.restaurant_id, conn.provider
            try:
                result = self.sync_connection(db, conn, trigger="bulk", run_downstream=not per_batch)
            except Exception as exc:  # noqa: BLE001 - one connection must never stop the batch
                db.rollback()
                logger.exception("unexpected failure syncing %s restaurant=%s", provider, restaurant_id)
                result = ConnectionSyncResult(
                    restaurant_id=restaurant_id,
                    provider=provider,
                    mode="unknown",
                    errors=[_error_text(exc)],
                )
            bulk.add(result)
            if per_batch and result.service_dates:
                pending.setdefault((restaurant_id, provider), set()).update(result.service_dates)

        for (restaurant_id, provider), dates in pending.items():
            self._downstream(provider, restaurant_id, dates)
        return bulk

    def run_manual_sync(
        self,
        db: Session,
        *,
        restaurant_id: str,
        action: Optional[str] = None,
        date_range: Optional[tuple[date, date]] = None,
        provider: Optional[str] = None,
    ) -> dict[str, Any]:
        provider_key = normalize_provider(provider) if provider else None
        connections = list_active_connections(db, restaurant_id, provider_key)
        if not connections:
            raise ConnectionNotFound(f"no active POS connection for restaurant {restaurant_id}")

        results: list[ConnectionSyncResult] = []
        for conn in self._spaced(connections):
            if action == "initial_sync" and date_range is None and conn.initial_sync_done:
                restart_backfill(conn)
                db.commit()
            results.append(
                self.sync_connection(db, conn, trigger="manual", action=action, date_range=date_range)
            )

        return {
            "success": all(r.success for r in results),
            "results": {
                "ordersSynced": sum(r.orders_synced for r in results),
                "errors": [err for r in results for err in r.errors],
            },
            "syncComplete": all(r.sync_complete for r in results),
            "connections": [r.as_dict() for r in results],
        }

    def process_webhook_events(self, db: Session, provider: str, events: list[WebhookEvent]) -> dict[str, int]:
        counts = {"received": len(events), "processed": 0, "failed": 0, "ignored": 0}
        for event in events:
            if not event.order_id:
                counts["ignored"] += 1
                continue
            connections = find_connections_by_account(db, provider, event.account_id)
            if not connections:
                logger.info("no %s connection for account %s; ignoring webhook", provider, event.account_id)
                counts["ignored"] += 1
                continue
            for conn in connections:
                conn.last_webhook_at = self._clock()
                try:
                    result = self.sync_single_order(db, conn, event.order_id)
                except Exception:  # noqa: BLE001 - webhook deliveries always acknowledge
                    db.rollback()
                    logger.exception("webhook sync failed for %s order %s", provider, event.order_id)
                    counts["failed"] += 1
                    continue
                if result.success:
                    counts["processed"] += 1
                else:
                    counts["failed"] += 1
        return counts


def get_sync_engine() -> Iterator[SyncEngine]:
    engine = SyncEngine()
    try:
        yield engine
    finally:
        engine.close()
