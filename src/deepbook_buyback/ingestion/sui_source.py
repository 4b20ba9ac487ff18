"""
Sui JSON-RPC market data source for DeepBook v3.

Polls `suix_queryEvents` for the DeepBook order events of interest and
converts them to TradeEvents.

DeepBook quirks handled here:
    - Prices are reported with 9 decimals; the bot works with 6.
    - Pool ids appear both with and without leading zeros.
    - Each Move event type has its own event stream and cursor, so the
      cursor handed to the poller is a composite of one cursor per type.
"""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import InvalidOperation
from typing import Any, Optional

import aiohttp

from deepbook_buyback.core.fixed_point import (
    chain_price_to_fixed,
    chain_quantity_to_units,
    normalize_market_id,
)

from .models import EventBatch, EventKind, TradeEvent, TradeSide
from .source import MarketDataError, TransientSourceError

logger = logging.getLogger(__name__)

# DeepBook v3 package on testnet
DEFAULT_DEEPBOOK_PACKAGE_ID = (
    "0xfb28c4cbc6865bd1c897d26aecbe1f8792d1509a20ffec692c800660cbec6982"
)

FULLNODE_URLS = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
    "localnet": "http://127.0.0.1:9000",
}


def fullnode_url(network: str) -> str:
    """Get the public full node URL for a network name."""
    try:
        return FULLNODE_URLS[network]
    except KeyError:
        raise ValueError(
            f"Unknown network {network!r}, expected one of {sorted(FULLNODE_URLS)}"
        ) from None


class RpcNotFoundError(MarketDataError):
    """The node reported the queried object or cursor as not found."""
    pass


class SuiEventSource:
    """
    Async Sui JSON-RPC client implementing MarketDataSource.

    Features:
        - Rate limiting to avoid node throttling
        - Retries with exponential backoff on 5xx, timeouts and connection errors
        - One cursor per event type, bundled into an opaque composite cursor
        - "Not found" answers are returned as empty results

    Usage:
        async with SuiEventSource(network="testnet") as source:
            batch = await source.query_trade_events(cursor=None, limit=50)
            for event in batch.events:
                ...
            cursor = batch.next_cursor
    """

    def __init__(
        self,
        network: str = "testnet",
        rpc_url: Optional[str] = None,
        package_id: str = DEFAULT_DEEPBOOK_PACKAGE_ID,
        event_kinds: tuple[EventKind, ...] = (EventKind.ORDER_PLACED, EventKind.ORDER_FILLED),
        session: Optional[aiohttp.ClientSession] = None,
        rate_limit: float = 10.0,  # requests per second
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """
        Initialize the event source.

        Args:
            network: Sui network name, used when rpc_url is not given
            rpc_url: Explicit JSON-RPC endpoint
            package_id: DeepBook package id emitting the events
            event_kinds: Which order events to poll
            session: Optional aiohttp session (created if not provided)
            rate_limit: Maximum requests per second
            timeout: Request timeout in seconds
            max_retries: Number of attempts for failed requests
            retry_delay: Base delay between retries (exponential backoff)
        """
        self._rpc_url = rpc_url or fullnode_url(network)
        self._package_id = package_id if package_id.startswith("0x") else f"0x{package_id}"
        self._event_kinds = event_kinds
        self._session = session
        self._owns_session = session is None
        self._rate_limit = rate_limit
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._request_id = 0

        self._request_times: list[float] = []
        self._rate_lock = asyncio.Lock()

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    def event_type(self, kind: EventKind) -> str:
        """Full Move event type for an event kind."""
        return f"{self._package_id}::order_info::{kind.value}"

    async def __aenter__(self) -> "SuiEventSource":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def _rate_limit_wait(self) -> None:
        """Wait if necessary to respect rate limits."""
        async with self._rate_lock:
            now = time.time()
            self._request_times = [t for t in self._request_times if now - t < 1.0]

            if len(self._request_times) >= self._rate_limit:
                wait_time = 1.0 - (now - self._request_times[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)

            self._request_times.append(time.time())

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """
        Make a JSON-RPC call with rate limiting and retries.

        Returns:
            The `result` member of the response

        Raises:
            RpcNotFoundError: Node says the object/cursor does not exist
            MarketDataError: Non-retryable client error
            TransientSourceError: Retries exhausted
            asyncio.CancelledError: When task is cancelled (re-raised)
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                await self._rate_limit_wait()

                async with self._session.post(self._rpc_url, json=payload) as response:
                    if response.status == 429 or response.status >= 500:
                        text = await response.text()
                        raise TransientSourceError(
                            f"Node error: {response.status} - {text}",
                            status_code=response.status,
                        )

                    if 400 <= response.status < 500:
                        text = await response.text()
                        raise MarketDataError(
                            f"RPC error: {response.status} - {text}",
                            status_code=response.status,
                        )

                    body = await response.json()

                error = body.get("error")
                if error:
                    message = str(error.get("message", error))
                    if "not found" in message.lower():
                        raise RpcNotFoundError(message)
                    raise MarketDataError(f"RPC error: {message}")

                return body.get("result")

            except TransientSourceError as e:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"Node error {e.status_code}, retry {attempt + 1}/{self._max_retries}"
                )
                await asyncio.sleep(delay)
                last_error = e

            except asyncio.TimeoutError:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"RPC timeout, retry {attempt + 1}/{self._max_retries}"
                )
                await asyncio.sleep(delay)
                last_error = TransientSourceError("Request timed out")

            except asyncio.CancelledError:
                logger.debug("RPC request cancelled")
                raise

            except aiohttp.ClientError as e:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(f"RPC request failed: {e}, retry {attempt + 1}/{self._max_retries}")
                await asyncio.sleep(delay)
                last_error = TransientSourceError(str(e))

        raise TransientSourceError(
            f"RPC {method} failed after {self._max_retries} attempts: {last_error}"
        )

    # =========================================================================
    # MarketDataSource
    # =========================================================================

    async def query_trade_events(self, cursor: Any, limit: int) -> EventBatch:
        """
        Fetch new DeepBook order events for every configured event type.

        Args:
            cursor: Composite cursor from a previous batch (or None)
            limit: Page size per event type

        Returns:
            EventBatch with events ordered by chain timestamp

        Raises:
            TransientSourceError: When any event stream could not be read
        """
        cursor = self._check_cursor(cursor)
        cursors: dict[str, Any] = dict(cursor or {})
        next_cursors = dict(cursors)
        events: list[TradeEvent] = []
        skipped = 0

        for kind in self._event_kinds:
            page = await self._query_events(kind, cursors.get(kind.value), limit)
            data = page.get("data") or []
            if not data:
                continue

            # Only move this stream's cursor when it returned something
            next_cursors[kind.value] = page.get("nextCursor") or data[-1].get("id")

            for raw in data:
                event = self.parse_event(kind, raw)
                if event is None:
                    skipped += 1
                else:
                    events.append(event)

        if len(events) > 1:
            events.sort(key=lambda e: e.timestamp_ms or 0)

        if not events and not skipped:
            return EventBatch(events=[], next_cursor=cursor)

        return EventBatch(events=events, next_cursor=next_cursors, skipped=skipped)

    def _check_cursor(self, cursor: Any) -> Optional[dict]:
        """
        Drop cursors this source did not produce.

        A composite cursor maps event type names to Sui event ids. Anything
        else (e.g. from a hand-edited snapshot) restarts from the beginning
        instead of failing every poll.
        """
        if cursor is None:
            return None
        if not isinstance(cursor, dict):
            logger.warning(f"Ignoring unrecognized event cursor {cursor!r}, restarting from the beginning")
            return None

        checked = {}
        for name, event_ref in cursor.items():
            if event_ref is None or isinstance(event_ref, dict):
                checked[name] = event_ref
            else:
                logger.warning(f"Ignoring unrecognized {name} cursor {event_ref!r}")
        return checked

    async def _query_events(
        self,
        kind: EventKind,
        cursor: Optional[dict],
        limit: int,
    ) -> dict:
        """Query one event stream, treating "not found" as an empty page."""
        params = [
            {"MoveEventType": self.event_type(kind)},
            cursor,
            limit,
            False,  # ascending
        ]
        try:
            result = await self._rpc("suix_queryEvents", params)
        except RpcNotFoundError as e:
            logger.debug(f"No {kind.value} events: {e}")
            return {}
        except TransientSourceError:
            raise
        except MarketDataError as e:
            # A rejected query will not succeed on retry either
            logger.warning(f"{kind.value} query rejected: {e}")
            return {}
        return result or {}

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse_event(self, kind: EventKind, raw: dict) -> Optional[TradeEvent]:
        """
        Convert a raw Sui event to a TradeEvent.

        Returns None (with a warning) for events that cannot be parsed,
        so one malformed event never blocks the stream.
        """
        data = raw.get("parsedJson") or {}
        pool_id = data.get("pool_id")
        if not pool_id:
            logger.warning(f"Skipping {kind.value} event without pool_id: {raw.get('id')}")
            return None

        try:
            if kind == EventKind.ORDER_FILLED:
                raw_price = data.get("execution_price", data.get("price"))
                raw_quantity = data.get("base_quantity")
                taker_is_bid = data.get("taker_is_bid")
                side = TradeSide.BUY if taker_is_bid else TradeSide.SELL
            else:
                raw_price = data.get("price")
                raw_quantity = data.get("placed_quantity")
                side = TradeSide.BUY if data.get("is_bid") else TradeSide.SELL

            if raw_price is None:
                logger.warning(f"Skipping {kind.value} event without price: {raw.get('id')}")
                return None

            price = chain_price_to_fixed(raw_price)
            quantity = (
                chain_quantity_to_units(raw_quantity)
                if raw_quantity not in (None, "")
                else None
            )

            event_ref = raw.get("id") or {}
            event_id = None
            if event_ref.get("txDigest") is not None:
                event_id = f"{event_ref['txDigest']}:{event_ref.get('eventSeq', '0')}"

            timestamp = raw.get("timestampMs")

            return TradeEvent(
                market_id=normalize_market_id(pool_id),
                price=price,
                side=side,
                quantity=quantity,
                source_cursor=event_ref or None,
                event_id=event_id,
                kind=kind,
                timestamp_ms=int(timestamp) if timestamp is not None else None,
            )

        except (InvalidOperation, ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed {kind.value} event {raw.get('id')}: {e}")
            return None
