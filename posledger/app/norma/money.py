from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from posledger.app.errors import ProviderDataError


CENT = Decimal("0.01")
_CURRENCY_NOISE = re.compile(r"[^0-9.\-]")


def to_decimal(minor: int) -> Decimal:
    """Minor units (cents) to a 2dp Decimal."""
    return (Decimal(int(minor)) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def round_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def coerce_minor(value: Any, *, field: str) -> int:
    """Provider amount already expressed in minor units."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ProviderDataError(f"{field} must be numeric, got bool")
    if isinstance(value, int):
        return value
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as exc:
        raise ProviderDataError(f"{field} is not numeric: {value!r}") from exc
    if not parsed.is_finite():
        raise ProviderDataError(f"{field} is not finite: {value!r}")
    return round_minor(parsed)


def major_to_minor(value: Any) -> int:
    """
    Dollar amounts as Lighthouse reports them: numbers or strings like "$1,204.50".
    Unparseable values count as zero, matching the report's own blank cells.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        parsed = Decimal(str(value))
    else:
        cleaned = _CURRENCY_NOISE.sub("", str(value))
        if cleaned in {"", "-", ".", "-."}:
            return 0
        try:
            parsed = Decimal(cleaned)
        except InvalidOperation:
            return 0
    if not parsed.is_finite():
        return 0
    return round_minor(parsed * 100)


def coerce_quantity(value: Any, *, default: Decimal = Decimal("1")) -> Decimal:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as exc:
        raise ProviderDataError(f"quantity is not numeric: {value!r}") from exc
    if not parsed.is_finite():
        raise ProviderDataError(f"quantity is not finite: {value!r}")
    return parsed
