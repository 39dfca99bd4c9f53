from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, Overflow, localcontext
from typing import Mapping

DEFAULT_PRECISION = 2
CURRENCY_PRECISION: Mapping[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "CLP": 0,
    "VND": 0,
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
}

_AMOUNT_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")


class InvalidAmount(ValueError):
    """Raised when user-entered amount text is not a number."""


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def currency_precision(currency: str) -> int:
    return CURRENCY_PRECISION.get(normalize_currency(currency), DEFAULT_PRECISION)


def minor_units_per_major(currency: str) -> int:
    return 10 ** currency_precision(currency)


def to_minor(amount: str | int | Decimal, currency: str) -> int:
    """Parse a major-unit amount into integer minor units.

    Both ``.`` and ``,`` are accepted as the decimal separator. Values are
    rounded half away from zero to the currency precision.
    """
    precision = currency_precision(currency)
    value = parse_major(amount)
    _, digits, exponent = value.as_tuple()
    with localcontext() as ctx:
        # Room for every integer digit plus the fraction, so nothing rounds early.
        ctx.prec = len(digits) + max(exponent, 0) + precision + 2
        try:
            rounded = value.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)
            return int(rounded.scaleb(precision))
        except (InvalidOperation, Overflow) as exc:
            raise InvalidAmount(f"Amount out of range: {amount!r}") from exc


def to_major(minor: int, currency: str) -> str:
    precision = currency_precision(currency)
    minor = _coerce_minor(minor)
    if precision == 0:
        return str(minor)
    sign = "-" if minor < 0 else ""
    whole, fraction = divmod(abs(minor), 10 ** precision)
    return f"{sign}{whole}.{fraction:0{precision}d}"


def to_major_decimal(minor: int, currency: str) -> Decimal:
    return Decimal(to_major(minor, currency))


def parse_major(amount: str | int | Decimal) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmount("Amount must be a number.")
    if isinstance(amount, int):
        return Decimal(amount)
    if isinstance(amount, Decimal):
        if not amount.is_finite():
            raise InvalidAmount("Amount must be a finite number.")
        return amount
    if not isinstance(amount, str):
        raise InvalidAmount("Amount must be a number.")
    text = amount.strip().replace(",", ".", 1)
    if not _AMOUNT_PATTERN.match(text):
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    return Decimal(text)


def _coerce_minor(minor: int) -> int:
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise TypeError("Minor amounts must be integers.")
    return minor
