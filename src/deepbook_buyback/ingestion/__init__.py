"""
Ingestion Layer - Trade event sources.

This module provides:
    - TradeEvent / EventBatch: Trade events as the poller consumes them
    - MarketDataSource: Contract every event source implements
    - SuiEventSource: DeepBook v3 events via Sui JSON-RPC
    - OrderReportCache: Orders reported by clients ahead of the chain

DeepBook Quirks Handled:
    - 9-decimal prices converted to the bot's 6-decimal fixed point
    - Pool ids with and without leading zeros resolve to the same market
    - One cursor per Move event type, bundled into one opaque cursor

Usage:
    from deepbook_buyback.ingestion import SuiEventSource

    async with SuiEventSource(network="testnet") as source:
        batch = await source.query_trade_events(cursor=None, limit=50)
"""

# Models
from .models import (
    EventBatch,
    EventKind,
    TradeEvent,
    TradeSide,
)

# Source contract
from .source import (
    MarketDataError,
    MarketDataSource,
    TransientSourceError,
)

# Sui JSON-RPC source
from .sui_source import (
    DEFAULT_DEEPBOOK_PACKAGE_ID,
    RpcNotFoundError,
    SuiEventSource,
    fullnode_url,
)

# Client-reported orders
from .order_reports import (
    InvalidOrderReport,
    OrderReport,
    OrderReportCache,
)

__all__ = [
    # Models
    "EventBatch",
    "EventKind",
    "TradeEvent",
    "TradeSide",
    # Source contract
    "MarketDataError",
    "MarketDataSource",
    "TransientSourceError",
    # Sui source
    "DEFAULT_DEEPBOOK_PACKAGE_ID",
    "RpcNotFoundError",
    "SuiEventSource",
    "fullnode_url",
    # Reported orders
    "InvalidOrderReport",
    "OrderReport",
    "OrderReportCache",
]
