"""
Market data source contract.

The poller only needs one call from a data source: fetch the trade
events recorded after a resumption cursor. Any transport (JSON-RPC,
GraphQL, an indexer) can implement it.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from .models import EventBatch


class MarketDataError(Exception):
    """Base exception for market data source errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientSourceError(MarketDataError):
    """
    The query failed for a reason that may go away (network, 5xx, timeout).

    The poller keeps its cursor and retries on the next tick.
    """
    pass


@runtime_checkable
class MarketDataSource(Protocol):
    """
    Source of trade events for the poller.

    Implementations must deliver events in ascending order and report
    "not found" / "nothing new" as an empty batch rather than an error.
    """

    async def query_trade_events(self, cursor: Any, limit: int) -> EventBatch:
        """
        Fetch events recorded after `cursor`.

        Args:
            cursor: Opaque resumption token (None = from the beginning)
            limit: Maximum events per event type to fetch

        Returns:
            EventBatch with the events and the cursor to resume from

        Raises:
            TransientSourceError: When the query failed and should be retried
        """
        ...
