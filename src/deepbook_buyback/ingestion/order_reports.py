"""
Cache of orders reported directly by clients.

A client that has just placed an order can report it before the chain
event is indexed, so a low sell order triggers the buyback without
waiting for the next poll. Reported orders are converted to TradeEvents
and routed through the same pipeline as polled events.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from deepbook_buyback.core.fixed_point import (
    chain_price_to_fixed,
    format_price,
    normalize_market_id,
)

from .models import EventKind, TradeEvent, TradeSide

logger = logging.getLogger(__name__)


class InvalidOrderReport(ValueError):
    """Reported order is missing required fields or has bad values."""
    pass


@dataclass(frozen=True)
class OrderReport:
    """
    An order as reported by a client.

    Attributes:
        order_id: DeepBook order id
        market_id: Pool the order was placed in
        price: Order price with 9 decimals, as DeepBook reports it
        quantity: Order quantity in token units (optional)
        is_bid: True for buy orders
    """
    order_id: str
    market_id: str
    price: str
    quantity: Optional[Decimal] = None
    is_bid: bool = False


@dataclass
class CachedOrder:
    """A reported order with the time it was received."""

    event: TradeEvent
    received_at: float


class OrderReportCache:
    """
    Keeps recently reported orders, keyed by order id.

    Usage:
        cache = OrderReportCache()
        event = cache.record(OrderReport(order_id="42", market_id="0xpool", price="900000000"))
        await poller.process_event(event)

        # Periodically
        cache.clean_old(max_age_seconds=86400)
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._orders: dict[str, CachedOrder] = {}

    def record(self, report: OrderReport) -> TradeEvent:
        """
        Validate and cache a reported order.

        Returns:
            TradeEvent to feed into the poller pipeline

        Raises:
            InvalidOrderReport: If required fields are missing or invalid
        """
        if not report.order_id or not report.market_id or not report.price:
            raise InvalidOrderReport("order_id, market_id and price are required")

        try:
            price = chain_price_to_fixed(report.price)
            quantity = Decimal(str(report.quantity)) if report.quantity is not None else None
        except (InvalidOperation, ValueError, TypeError) as e:
            raise InvalidOrderReport(f"Invalid order values: {e}") from e

        if price < 0 or (quantity is not None and quantity < 0):
            raise InvalidOrderReport("price and quantity must be non-negative")

        event = TradeEvent(
            market_id=normalize_market_id(report.market_id),
            price=price,
            side=TradeSide.BUY if report.is_bid else TradeSide.SELL,
            quantity=quantity,
            event_id=f"order:{report.order_id}",
            kind=EventKind.ORDER_REPORTED,
            timestamp_ms=int(self._clock() * 1000),
        )
        self._orders[report.order_id] = CachedOrder(event=event, received_at=self._clock())

        logger.info(
            f"Order reported: {report.order_id} on {event.market_id[:16]}... "
            f"{event.side.value} {quantity or 'unknown'} @ {format_price(price)}"
        )
        return event

    def get(self, order_id: str) -> Optional[TradeEvent]:
        cached = self._orders.get(order_id)
        return cached.event if cached else None

    def clean_old(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        """
        Drop reported orders older than max_age_seconds.

        Returns:
            Number of orders removed
        """
        now = self._clock()
        stale = [
            order_id
            for order_id, cached in self._orders.items()
            if now - cached.received_at > max_age_seconds
        ]
        for order_id in stale:
            del self._orders[order_id]

        if stale:
            logger.info(f"Cleaned {len(stale)} old order(s) from cache")
        return len(stale)

    def __len__(self) -> int:
        return len(self._orders)
