from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from posledger.app.api.deps import require_api_token
from posledger.app.config import DEFAULT_TIMEZONE
from posledger.app.db import get_db
from posledger.app.integrations import ADAPTERS, normalize_provider
from posledger.app.models import Restaurant
from posledger.app.norma.service_date import resolve_timezone
from posledger.app.services import connection_service
from posledger.app.services.encryption_service import get_encryption_service
from posledger.app.services.security_event_service import log_security_event


router = APIRouter(tags=["connections"], dependencies=[Depends(require_api_token)])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _provider_key(provider: str) -> str:
    key = normalize_provider(provider)
    if key not in ADAPTERS:
        raise HTTPException(status_code=400, detail=f"unsupported provider: {provider}")
    return key


class RestaurantIn(BaseModel):
    name: str
    timezone: str = DEFAULT_TIMEZONE
    id: Optional[str] = None


class RestaurantOut(BaseModel):
    id: str
    name: str
    timezone: str

    class Config:
        from_attributes = True


class ConnectIn(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None
    credentials: Optional[dict[str, Any]] = None
    external_account_id: Optional[str] = None
    region: Optional[str] = None
    environment: Optional[str] = None
    config: Optional[dict[str, Any]] = None


class ConnectionOut(BaseModel):
    id: str
    restaurant_id: str
    provider: str
    external_account_id: Optional[str]
    region: Optional[str]
    environment: Optional[str]
    connection_status: str
    sync_cursor: int
    initial_sync_done: bool
    is_active: bool
    token_expires_at: Optional[datetime]
    last_sync_time: Optional[datetime]
    last_error: Optional[str]
    last_error_at: Optional[datetime]
    connected_at: Optional[datetime]

    class Config:
        from_attributes = True


class DisconnectOut(BaseModel):
    ok: bool
    provider: str
    deleted: dict[str, int]


@router.post("/restaurants", response_model=RestaurantOut)
def create_restaurant(req: RestaurantIn, db: Session = Depends(get_db)):
    tz = resolve_timezone(req.timezone)
    if tz.key != req.timezone:
        raise HTTPException(status_code=400, detail=f"unknown timezone: {req.timezone}")
    restaurant = Restaurant(name=req.name, timezone=req.timezone)
    if req.id:
        if db.get(Restaurant, req.id):
            raise HTTPException(status_code=409, detail="restaurant already exists")
        restaurant.id = req.id
    db.add(restaurant)
    db.commit()
    db.refresh(restaurant)
    return restaurant


@router.get("/connections/{restaurant_id}", response_model=list[ConnectionOut])
def list_connections(restaurant_id: str, db: Session = Depends(get_db)):
    return connection_service.list_connections(db, restaurant_id)


@router.post("/connections/{restaurant_id}/{provider}", response_model=ConnectionOut)
def connect(restaurant_id: str, provider: str, req: ConnectIn, db: Session = Depends(get_db)):
    connection_service.require_restaurant(db, restaurant_id)
    provider_key = _provider_key(provider)

    expires_at = req.expires_at
    if expires_at is None and req.expires_in is not None:
        expires_at = utcnow() + timedelta(seconds=req.expires_in)

    conn = connection_service.upsert_connection(
        db,
        get_encryption_service(),
        restaurant_id=restaurant_id,
        provider=provider_key,
        access_token=req.access_token,
        refresh_token=req.refresh_token,
        token_expires_at=expires_at,
        credentials=req.credentials,
        external_account_id=req.external_account_id,
        region=req.region,
        environment=req.environment,
        config=req.config,
    )
    log_security_event(
        db,
        event_type="CONNECTION_CREATED",
        restaurant_id=restaurant_id,
        metadata={"provider": provider_key, "external_account_id": req.external_account_id},
    )
    db.commit()
    db.refresh(conn)
    return conn


@router.delete("/connections/{restaurant_id}/{provider}", response_model=DisconnectOut)
def disconnect(restaurant_id: str, provider: str, db: Session = Depends(get_db)):
    connection_service.require_restaurant(db, restaurant_id)
    provider_key = _provider_key(provider)
    conn = connection_service.get_connection(db, restaurant_id, provider_key)
    if not conn:
        raise HTTPException(status_code=404, detail="connection not found")

    deleted = connection_service.disconnect(db, conn)
    log_security_event(
        db,
        event_type="CONNECTION_DELETED",
        restaurant_id=restaurant_id,
        metadata={"provider": provider_key, **deleted},
    )
    db.commit()
    return {"ok": True, "provider": provider_key, "deleted": deleted}
