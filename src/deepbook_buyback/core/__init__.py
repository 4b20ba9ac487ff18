"""
Core Layer - Market registry and event polling.

This module provides:
    - MarketRegistry: Tracked markets, floors and buyback counters
    - MarketRegistration: A tracked market
    - RegistrationConfig: Caller-supplied market configuration
    - RegistryStats: Aggregate registry counters
    - EventDeduplicator: Idempotency keys of executed events
    - EventPoller: Periodic source polling that drives the engine
    - PollerConfig / PollerState / PollerStats / TickResult
    - Fixed-point helpers (to_fixed, from_fixed, format_price, ...)

Data Flow:
    1. EventPoller queries the market data source from its cursor
    2. Each event updates the market's last trade price
    3. A price below the floor becomes a TriggerContext
    4. BuybackEngine decides and submits; the registry records success
    5. The cursor advances once the batch is done

The service orchestrator lives in deepbook_buyback.core.service and is
not imported here.
"""

# Fixed point (imported first: other layers depend on it)
from .fixed_point import (
    CHAIN_DECIMALS,
    DEFAULT_FLOOR_PRICE,
    PRICE_DECIMALS,
    PRICE_SCALE,
    chain_price_to_fixed,
    chain_quantity_to_units,
    format_price,
    from_fixed,
    normalize_market_id,
    to_fixed,
)

# Registry
from .registry import (
    InvalidConfig,
    MarketRegistration,
    MarketRegistry,
    RegistrationConfig,
    RegistryError,
    RegistryStats,
)

# Deduplication
from .dedup import EventDeduplicator

# Polling
from .poller import (
    EventPoller,
    PollerConfig,
    PollerState,
    PollerStats,
    TickResult,
)

__all__ = [
    # Fixed point
    "CHAIN_DECIMALS",
    "DEFAULT_FLOOR_PRICE",
    "PRICE_DECIMALS",
    "PRICE_SCALE",
    "chain_price_to_fixed",
    "chain_quantity_to_units",
    "format_price",
    "from_fixed",
    "normalize_market_id",
    "to_fixed",
    # Registry
    "InvalidConfig",
    "MarketRegistration",
    "MarketRegistry",
    "RegistrationConfig",
    "RegistryError",
    "RegistryStats",
    # Deduplication
    "EventDeduplicator",
    # Polling
    "EventPoller",
    "PollerConfig",
    "PollerState",
    "PollerStats",
    "TickResult",
]
