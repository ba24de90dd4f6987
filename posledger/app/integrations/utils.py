from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from posledger.app.errors import ProviderDataError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def first_present(payload: dict, *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def require_field(payload: dict, key: str, *, provider: str, what: str = "order") -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise ProviderDataError(f"{provider} {what} missing required field '{key}'")
    return value


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise ProviderDataError(f"expected a list, got {type(value).__name__}")


def elements(value: Any) -> list:
    """Clover nests collections as {"elements": [...]}."""
    if value is None:
        return []
    if isinstance(value, dict):
        return as_list(value.get("elements"))
    return as_list(value)


def stable_hash_id(base: str, payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{base}|{encoded}".encode()).hexdigest()
    return f"{base}-{digest[:12]}"


def hmac_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def hmac_base64(secret: str, body: bytes) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.strip(), received.strip())


def header_value(headers: dict[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def parse_json_body(body: bytes, *, provider: str) -> dict:
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise ProviderDataError(f"{provider} webhook body is not JSON") from exc
    if not isinstance(payload, dict):
        raise ProviderDataError(f"{provider} webhook body must be an object")
    return payload


def distinct(values: Iterable[Any]) -> list[Any]:
    seen = set()
    out = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out
