from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP"})

MONEY_QUANT = Decimal("0.01")


def normalize_currency(code: str) -> str:
    return (code or "").strip().upper()


def quantize(amount: Decimal, currency: str) -> Decimal:
    """Round ``amount`` to the minor unit of ``currency``."""
    if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES:
        return amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


def to_minor_units(amount: Decimal, currency: str) -> int:
    quantized = quantize(amount, currency)
    if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES:
        return int(quantized)
    return int((quantized * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return (Decimal(amount) / Decimal("100")).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal, currency: str) -> str:
    """Render ``amount`` the way JSON gateway APIs expect it ("250.00")."""
    return format(quantize(amount, currency), "f")
