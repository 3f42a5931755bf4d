"""Token amount helpers. Amounts travel as decimal digit strings of base units."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any


DEFAULT_TOKEN_DECIMALS = 6
_AMOUNT_RE = re.compile(r"^[0-9]+$")


def is_amount_string(value: Any) -> bool:
    """True for a non-empty string of ASCII digits."""
    return isinstance(value, str) and _AMOUNT_RE.match(value) is not None


def parse_amount(value: Any, field_name: str = "amount") -> int:
    """Parse a digit-string amount into an arbitrary-precision integer."""
    if not is_amount_string(value):
        raise ValueError(f"Invalid {field_name} format")
    return int(value)


def base_units_to_decimal(amount: int, decimals: int = DEFAULT_TOKEN_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal token amount."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def format_token_amount(amount: int | str, decimals: int = DEFAULT_TOKEN_DECIMALS) -> str:
    """Format base units for logs and CLI output, e.g. 285000000 -> '285.00'."""
    if isinstance(amount, str):
        amount = parse_amount(amount)
    value = base_units_to_decimal(amount, decimals)
    if value == value.to_integral_value():
        return f"{value:.2f}"
    return f"{value.normalize():f}"
