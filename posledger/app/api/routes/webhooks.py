from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from posledger.app.db import get_db
from posledger.app.errors import ProviderDataError
from posledger.app.integrations import ADAPTERS, normalize_provider
from posledger.app.services.sync_service import SyncEngine, get_sync_engine


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    body = await request.body()
    provider_key = normalize_provider(provider)
    adapter = ADAPTERS.get(provider_key)
    if adapter is None:
        return {"ok": True, "provider": provider, "ignored": True}

    verification = adapter.verify_webhook(dict(request.headers), body)
    if not verification.ok:
        raise HTTPException(status_code=401, detail=f"webhook verification failed: {verification.reason}")
    if verification.reason == "webhooks_not_supported":
        return {"ok": True, "provider": provider_key, "ignored": True}

    try:
        events = adapter.parse_webhook(body)
    except ProviderDataError as exc:
        logger.warning("unreadable %s webhook: %s", provider_key, exc)
        return {"ok": True, "provider": provider_key, "ignored": True, "reason": str(exc)}

    counts = engine.process_webhook_events(db, provider_key, events)
    return {"ok": True, "provider": provider_key, **counts}
