"""
Data models for the ingestion layer.

These models represent data structures for:
- Trade events observed on a DeepBook pool
- A batch of events returned by one data-source query

Prices are 6-decimal fixed-point integers (see core.fixed_point).
Quantities are token units as Decimal and may be missing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class TradeSide(str, Enum):
    """Side of a trade."""
    BUY = "BUY"
    SELL = "SELL"


class EventKind(str, Enum):
    """Where a trade event came from."""
    ORDER_FILLED = "OrderFilled"
    ORDER_PLACED = "OrderPlaced"
    ORDER_REPORTED = "OrderReported"  # Reported by a client, not yet on chain


@dataclass(frozen=True)
class TradeEvent:
    """
    A single trade event for a market.

    Ephemeral: produced by a market data source and consumed once by
    the poller.

    Attributes:
        market_id: The pool the event belongs to (normalized id)
        price: Trade price, 6-decimal fixed point
        side: BUY or SELL (for fills, the taker side)
        quantity: Trade size in token units, if the event carries one
        source_cursor: Opaque resumption position of this event
        event_id: Idempotency key (tx digest + sequence, or order id)
        kind: Event type
        timestamp_ms: Chain timestamp in milliseconds, if known
    """
    market_id: str
    price: int
    side: TradeSide
    quantity: Optional[Decimal] = None
    source_cursor: Any = None
    event_id: Optional[str] = None
    kind: EventKind = EventKind.ORDER_FILLED
    timestamp_ms: Optional[int] = None

    def __post_init__(self):
        if self.price < 0:
            raise ValueError(f"Price must be non-negative, got {self.price}")
        if self.quantity is not None and self.quantity < 0:
            raise ValueError(f"Quantity must be non-negative, got {self.quantity}")


@dataclass(frozen=True)
class EventBatch:
    """
    Result of one market data query.

    An empty batch means "nothing new" (including "not found");
    transient failures are raised, never returned as an empty batch.

    `skipped` counts events the source received but could not parse.
    They still move the cursor, otherwise a malformed event would be
    fetched again on every tick.
    """
    events: list[TradeEvent] = field(default_factory=list)
    next_cursor: Any = None
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.skipped

    def __len__(self) -> int:
        return len(self.events)
