"""
Execution layer test fixtures.

Engine tests use a real registry and a mocked trade executor.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from deepbook_buyback.core import MarketRegistry, RegistrationConfig
from deepbook_buyback.execution import (
    BuybackEngine,
    EngineConfig,
    PurchaseResult,
    TriggerContext,
)


# =============================================================================
# Registry Fixtures
# =============================================================================


@pytest.fixture
def registry():
    """Registry with a funded market, an unfunded market and a monitor-only market."""
    registry = MarketRegistry()
    registry.register(
        "0xabc",
        RegistrationConfig(vault_id="0xv1", balance_manager_id="0xbm1", floor_price=1_000_000),
    )
    registry.register(
        "0xdef",
        RegistrationConfig(vault_id="0xv2", floor_price=1_000_000),
    )
    registry.register("0x123", RegistrationConfig(floor_price=1_000_000))
    return registry


# =============================================================================
# Executor Fixtures
# =============================================================================


@pytest.fixture
def mock_executor():
    """Executor that succeeds without reporting the actual cost."""
    executor = AsyncMock()
    executor.submit_purchase = AsyncMock(
        return_value=PurchaseResult(success=True, tx_reference="0xtx")
    )
    return executor


@pytest.fixture
def engine(registry, mock_executor):
    """Engine with default configuration."""
    return BuybackEngine(registry, mock_executor, EngineConfig())


# =============================================================================
# Context Fixtures
# =============================================================================


@pytest.fixture
def make_context():
    """Factory for trigger contexts on the funded market."""
    def _make(
        observed_price: int = 900_000,
        market_id: str = "0xabc",
        vault_id="0xv1",
        floor_price: int = 1_000_000,
        event_quantity=Decimal("200"),
        event_id="tx1:0",
    ) -> TriggerContext:
        return TriggerContext(
            market_id=market_id,
            vault_id=vault_id,
            observed_price=observed_price,
            floor_price=floor_price,
            event_quantity=event_quantity,
            event_id=event_id,
        )
    return _make
