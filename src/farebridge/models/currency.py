from __future__ import annotations

import re

from farebridge.errors import InvalidAmountFormat

DEFAULT_EXPONENT = 2

EXPONENT_MAP: dict[str, int] = {
    # zero-decimal
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "XOF": 0,
    "XAF": 0,
    "XPF": 0,
    "CLP": 0,
    "MGA": 1,
    # three-decimal
    "BHD": 3,
    "JOD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "IQD": 3,
}

_AMOUNT_PATTERN = re.compile(r"^\d+(\.\d+)?$")


def exponent_for(currency: str) -> int:
    return EXPONENT_MAP.get(currency.strip().upper(), DEFAULT_EXPONENT)


def to_minor_units(amount: str, currency: str) -> int:
    """Convert a decimal string to integer minor units.

    Fractional digits beyond the currency exponent are truncated, never rounded.
    """
    if not isinstance(amount, str) or not _AMOUNT_PATTERN.match(amount):
        raise InvalidAmountFormat(str(amount))
    exponent = exponent_for(currency)
    integer_part, _, fraction_raw = amount.partition(".")
    fraction = (fraction_raw + "0" * exponent)[:exponent]
    return int(f"{integer_part}{fraction}")


def from_minor_units(minor: int, currency: str) -> str:
    exponent = exponent_for(currency)
    if minor < 0:
        raise InvalidAmountFormat(str(minor))
    if exponent == 0:
        return str(minor)
    digits = str(minor).rjust(exponent + 1, "0")
    return f"{int(digits[:-exponent])}.{digits[-exponent:]}"


def amounts_equal(amount_a: str, currency_a: str, amount_b: str, currency_b: str) -> bool:
    if currency_a.strip().upper() != currency_b.strip().upper():
        return False
    return to_minor_units(amount_a, currency_a) == to_minor_units(amount_b, currency_b)
