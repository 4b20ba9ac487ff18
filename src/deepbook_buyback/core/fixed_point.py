"""
Fixed-point helpers for prices and costs.

All prices and costs inside the bot are integers on a 6-decimal scale
(1.00 settlement unit == 1_000_000). DeepBook reports prices and base
quantities with 9 decimals, so everything coming off the chain is
converted here before it reaches the registry or the engine.
"""
from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union

PRICE_DECIMALS = 6
PRICE_SCALE = 10 ** PRICE_DECIMALS

CHAIN_DECIMALS = 9
CHAIN_SCALE = 10 ** CHAIN_DECIMALS

# Floor used when a registration does not supply one (1.0 settlement unit)
DEFAULT_FLOOR_PRICE = PRICE_SCALE

Numeric = Union[int, float, str, Decimal]


def to_fixed(value: Numeric) -> int:
    """
    Convert a human-readable amount to 6-decimal fixed point.

    Truncates toward zero, matching how the settlement asset is stored.

    Raises:
        ValueError: If the value is not numeric
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a numeric amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return int((amount * PRICE_SCALE).to_integral_value(rounding=ROUND_DOWN))


def from_fixed(value: int) -> Decimal:
    """Convert a 6-decimal fixed-point integer to a Decimal amount."""
    return Decimal(value) / PRICE_SCALE


def chain_price_to_fixed(raw_price: Numeric) -> int:
    """Convert a 9-decimal on-chain price to the 6-decimal scale (floor)."""
    return int(Decimal(str(raw_price))) // (CHAIN_SCALE // PRICE_SCALE)


def chain_quantity_to_units(raw_quantity: Numeric) -> Decimal:
    """Convert a 9-decimal on-chain base quantity to token units."""
    return Decimal(str(raw_quantity)) / CHAIN_SCALE


def format_price(value: int) -> str:
    """Render a fixed-point price for log lines."""
    return f"{from_fixed(value):.6f}"


def normalize_market_id(market_id: str) -> str:
    """
    Normalize a Sui object id.

    Sui addresses may be reported with or without leading zeros after
    the 0x prefix; both forms must resolve to the same market.
    """
    market_id = market_id.strip()
    if market_id.lower().startswith("0x"):
        body = market_id[2:].lstrip("0")
        return "0x" + (body or "0")
    return market_id
