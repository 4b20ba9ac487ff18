"""
Buyback trigger context and outcome types.

A TriggerContext is built by the poller when an event arms the buyback
for a market. The engine answers every context with exactly one Outcome:
Executed, Skipped (with a reason) or Failed. Outcomes are immutable and
only describe what happened; registry state is updated by the engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class TriggerContext:
    """
    Everything the engine needs to attempt one buyback.

    Attributes:
        market_id: Market whose floor was crossed
        vault_id: Vault bound to the market (None when monitor only)
        observed_price: Price of the triggering trade (6-decimal fixed point)
        floor_price: Market floor at trigger time (6-decimal fixed point)
        event_quantity: Size of the triggering trade, if known
        event_id: Idempotency key of the triggering event
    """
    market_id: str
    vault_id: Optional[str]
    observed_price: int
    floor_price: int
    event_quantity: Optional[Decimal] = None
    event_id: Optional[str] = None

    @property
    def deviation(self) -> Decimal:
        """Relative distance below the floor, (floor - observed) / floor."""
        if self.floor_price <= 0:
            return Decimal("0")
        return Decimal(self.floor_price - self.observed_price) / Decimal(self.floor_price)


class OutcomeType(Enum):
    """Result of a buyback attempt."""

    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(Enum):
    """Why a triggered buyback was not attempted."""

    NO_VAULT_BOUND = "no_vault_bound"
    BUYBACK_DISABLED = "buyback_disabled"
    NO_FUNDING_SOURCE = "no_funding_source"
    BELOW_MINIMUM = "below_minimum"
    NOT_TRIGGERED = "not_triggered"
    DUPLICATE_EVENT = "duplicate_event"
    MARKET_NOT_FOUND = "market_not_found"


@dataclass(frozen=True)
class Outcome:
    """Base outcome returned by the engine."""

    type: OutcomeType


@dataclass(frozen=True)
class Executed(Outcome):
    """
    A buyback was submitted and succeeded.

    cost is the amount recorded against the market (6-decimal fixed point).
    """

    type: OutcomeType = field(default=OutcomeType.EXECUTED, init=False)
    cost: int = 0
    quantity: Decimal = Decimal("0")
    tx_reference: Optional[str] = None


@dataclass(frozen=True)
class Skipped(Outcome):
    """A buyback was triggered but intentionally not attempted."""

    type: OutcomeType = field(default=OutcomeType.SKIPPED, init=False)
    reason: SkipReason = SkipReason.NOT_TRIGGERED
    detail: str = ""


@dataclass(frozen=True)
class Failed(Outcome):
    """
    The executor was called and the purchase did not succeed.

    Registry counters are untouched; the next qualifying event retries.
    """

    type: OutcomeType = field(default=OutcomeType.FAILED, init=False)
    error: str = ""
