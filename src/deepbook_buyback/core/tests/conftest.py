"""
Core layer test fixtures.

Core tests verify the registry and the polling loop, so the market
data source and the trade executor are replaced with scripted fakes.
"""
import asyncio
from decimal import Decimal
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from deepbook_buyback.core import (
    EventPoller,
    MarketRegistry,
    PollerConfig,
    RegistrationConfig,
)
from deepbook_buyback.execution import (
    BuybackEngine,
    EngineConfig,
    PurchaseResult,
)
from deepbook_buyback.ingestion import EventBatch, TradeEvent, TradeSide


MARKET_ID = "0xabc"
VAULT_ID = "0xvault1"
BALANCE_MANAGER_ID = "0xbm1"


# =============================================================================
# Event Fixtures
# =============================================================================


@pytest.fixture
def make_event():
    """Factory for trade events on the test market."""
    counter = {"n": 0}

    def _make(
        price: int,
        market_id: str = MARKET_ID,
        quantity: Optional[Decimal] = Decimal("200"),
        side: TradeSide = TradeSide.SELL,
        event_id: Optional[str] = None,
    ) -> TradeEvent:
        counter["n"] += 1
        return TradeEvent(
            market_id=market_id,
            price=price,
            side=side,
            quantity=quantity,
            event_id=event_id or f"tx{counter['n']}:0",
            source_cursor={"eventSeq": str(counter["n"])},
        )

    return _make


class ScriptedSource:
    """
    Market data source returning pre-scripted results.

    Each item in `script` is either an EventBatch or an exception to raise.
    When the script runs out an empty batch is returned.
    """

    def __init__(self, script: Optional[list] = None, delay: float = 0.0):
        self.script = list(script or [])
        self.delay = delay
        self.calls: list[tuple[Any, int]] = []

    async def query_trade_events(self, cursor: Any, limit: int) -> EventBatch:
        self.calls.append((cursor, limit))
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.script:
            return EventBatch(events=[], next_cursor=cursor)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def scripted_source():
    """Factory for scripted sources."""
    def _make(script: Optional[list] = None, delay: float = 0.0) -> ScriptedSource:
        return ScriptedSource(script, delay)
    return _make


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def registry():
    """Empty registry."""
    return MarketRegistry()


@pytest.fixture
def registered_registry(registry):
    """Registry with one buyback-enabled market (floor 1.00)."""
    registry.register(
        MARKET_ID,
        RegistrationConfig(
            vault_id=VAULT_ID,
            balance_manager_id=BALANCE_MANAGER_ID,
            floor_price=1_000_000,
        ),
    )
    return registry


@pytest.fixture
def mock_executor():
    """Executor that succeeds and reports no actual cost."""
    executor = AsyncMock()
    executor.submit_purchase = AsyncMock(
        return_value=PurchaseResult(success=True, tx_reference="0xtx")
    )
    return executor


@pytest.fixture
def engine(registered_registry, mock_executor):
    """Engine over the registered registry."""
    return BuybackEngine(registered_registry, mock_executor, EngineConfig())


@pytest.fixture
def poller_config():
    """Fast poller configuration for tests."""
    return PollerConfig(poll_interval_seconds=0.05, batch_limit=50)


@pytest.fixture
def make_poller(registered_registry, engine, poller_config):
    """Factory for pollers over a given source."""
    def _make(source, config: Optional[PollerConfig] = None, engine_override=None) -> EventPoller:
        return EventPoller(
            registry=registered_registry,
            source=source,
            engine=engine_override or engine,
            config=config or poller_config,
        )
    return _make
