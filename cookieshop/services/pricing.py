from __future__ import annotations

import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def parse_price(value: Any) -> Decimal:
    """"$1,234.50" 같은 문자열/숫자를 Decimal로 변환. 해석할 수 없으면 0."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("0")
    if isinstance(value, (int, float)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return Decimal("0")
        return parsed if parsed.is_finite() else Decimal("0")
    if not isinstance(value, str):
        logger.warning(f"Invalid price type: {type(value).__name__} {value!r}")
        return Decimal("0")

    cleaned = _NON_NUMERIC.sub("", value)
    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        logger.warning(f'Invalid price format: "{value}"')
        return Decimal("0")
    return parsed if parsed.is_finite() else Decimal("0")


def to_minor_units(amount: Any) -> int:
    """달러 금액 → 센트 (round half up). 3.005 → 301"""
    return int((parse_price(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None) -> Decimal:
    return (Decimal(int(amount or 0)) / 100).quantize(_CENT)


def format_price(value: Any) -> str:
    return f"${parse_price(value).quantize(_CENT, rounding=ROUND_HALF_UP)}"


def calculate_item_total(price: Any, quantity: int) -> Decimal:
    return (parse_price(price) * int(quantity)).quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_cart_total(items: Iterable[dict]) -> Decimal:
    total = Decimal("0")
    for item in items:
        total += parse_price(item.get("price")) * int(item.get("quantity") or 0)
    return total.quantize(_CENT, rounding=ROUND_HALF_UP)
