"""
Price parsing and token unit conversion
Prices travel as "$X.XX" strings; payments travel as integer base units
"""

import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from agentmarket.errors import InputValidationError

# USDC has 6 decimals
USDC_DECIMALS = 6

LIMIT_PATTERN = re.compile(r"^\$\d+(\.\d{1,2})?$")
PRICE_PATTERN = re.compile(r"^\$?\d+(\.\d{1,6})?$")

CENT = Decimal("0.01")


def parse_price(value: Any, field: str = "price") -> Decimal:
    """
    Parse a price given as "$0.02", "0.02", a number or a Decimal.

    Raises:
        InputValidationError: naming ``field`` when the value is not a price
    """
    if isinstance(value, bool):
        raise InputValidationError(f"Invalid {field}: {value!r}", field=field)

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not PRICE_PATTERN.match(text):
            raise InputValidationError(
                f"Invalid {field} format: {value!r}. Expected format: $X.XX",
                field=field,
            )
        amount = Decimal(text.lstrip("$"))
    else:
        raise InputValidationError(f"Invalid {field}: {value!r}", field=field)

    if not amount.is_finite() or amount < 0:
        raise InputValidationError(f"Invalid {field}: {value!r}", field=field)
    return amount


def parse_limit(value: str, field: str) -> Decimal:
    """Spending limits are strict "$X.XX" strings"""
    if not isinstance(value, str) or not LIMIT_PATTERN.match(value.strip()):
        raise InputValidationError(
            f"Invalid {field} format: {value!r}. Expected format: $X.XX",
            field=field,
        )
    return Decimal(value.strip().lstrip("$"))


def format_price(amount: Decimal) -> str:
    """Render a decimal price as "$X.XX", keeping sub-cent precision"""
    if amount == amount.quantize(CENT):
        return f"${amount.quantize(CENT)}"
    return f"${amount.normalize()}"


def to_base_units(amount: Decimal, decimals: int = USDC_DECIMALS) -> int:
    """Convert a decimal token amount to integer base units"""
    scaled = amount * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_HALF_UP))


def from_base_units(units: int, decimals: int = USDC_DECIMALS) -> Decimal:
    """Convert integer base units to a decimal token amount"""
    return Decimal(units) / (Decimal(10) ** decimals)
