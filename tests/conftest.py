"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/deepbook_buyback/{component}/tests/conftest.py
"""

import asyncio
from decimal import Decimal
from typing import Any, Optional

import pytest

from deepbook_buyback.core import PollerConfig
from deepbook_buyback.core.service import BuybackService
from deepbook_buyback.execution import DryRunExecutor, EngineConfig
from deepbook_buyback.ingestion import EventBatch, TradeEvent, TradeSide
from deepbook_buyback.storage import SnapshotStore


# =============================================================================
# Source Fixtures
# =============================================================================


class FakeChain:
    """
    In-memory market data source.

    Events are appended with `emit()` and handed out in order. The cursor
    is the number of events already delivered. `fail_next` makes the next
    queries raise the given exceptions.
    """

    def __init__(self) -> None:
        self.events: list[TradeEvent] = []
        self.fail_next: list[Exception] = []
        self.queries: list[Any] = []

    def emit(
        self,
        market_id: str,
        price: int,
        quantity: Optional[Decimal] = Decimal("200"),
        side: TradeSide = TradeSide.SELL,
    ) -> TradeEvent:
        seq = len(self.events)
        event = TradeEvent(
            market_id=market_id,
            price=price,
            side=side,
            quantity=quantity,
            event_id=f"0xtx{seq}:0",
            source_cursor=seq + 1,
        )
        self.events.append(event)
        return event

    def redeliver(self, event: TradeEvent) -> None:
        """Deliver an already delivered event again (at-least-once delivery)."""
        self.events.append(event)

    async def query_trade_events(self, cursor: Any, limit: int) -> EventBatch:
        self.queries.append(cursor)
        await asyncio.sleep(0)
        if self.fail_next:
            raise self.fail_next.pop(0)

        start = cursor or 0
        batch = self.events[start:start + limit]
        if not batch:
            return EventBatch(events=[], next_cursor=cursor)
        return EventBatch(events=batch, next_cursor=start + len(batch))


@pytest.fixture
def chain():
    """Fresh in-memory chain."""
    return FakeChain()


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def executor():
    return DryRunExecutor()


@pytest.fixture
def make_service(chain, executor):
    """Factory for services polled manually via poller.tick_now()."""
    def _make(
        store: Optional[SnapshotStore] = None,
        deduplicate_events: bool = True,
        enabled: bool = True,
        sell_side_only: bool = True,
        auto_start_listener: bool = False,
    ) -> BuybackService:
        return BuybackService(
            source=chain,
            executor=executor,
            poller_config=PollerConfig(
                poll_interval_seconds=0.05,
                batch_limit=50,
                sell_side_only=sell_side_only,
                error_backoff_seconds=0.05,
            ),
            engine_config=EngineConfig(
                enabled=enabled,
                deduplicate_events=deduplicate_events,
            ),
            store=store,
            auto_start_listener=auto_start_listener,
        )
    return _make
