"""
Event Poller - Periodically pulls trade events and routes triggers.

Each cycle:
1. Skips entirely when no market is registered
2. Queries the market data source from the last cursor
3. For every event, in order: updates the last trade price, checks the
   floor and hands triggered events to the buyback engine
4. Advances the cursor only after the whole batch was processed

A transient source failure leaves the cursor where it was, so the same
events are fetched again on the next tick. One failing event never
aborts the rest of its batch.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from deepbook_buyback.execution.outcomes import TriggerContext
from deepbook_buyback.ingestion.models import TradeSide
from deepbook_buyback.ingestion.source import TransientSourceError

from .fixed_point import format_price
from .registry import MarketRegistry

if TYPE_CHECKING:
    from deepbook_buyback.execution.engine import BuybackEngine
    from deepbook_buyback.execution.outcomes import Outcome
    from deepbook_buyback.ingestion.models import TradeEvent
    from deepbook_buyback.ingestion.source import MarketDataSource

logger = logging.getLogger(__name__)


@dataclass
class PollerConfig:
    """Configuration for the event poller."""

    # Seconds between ticks (no default: must be chosen per deployment)
    poll_interval_seconds: float

    # Page size passed to the source
    batch_limit: int = 50

    # Only SELL events arm the buyback; BUY events (including our own fills)
    # only update the last price
    sell_side_only: bool = True

    # Pause after an unexpected error in the loop
    error_backoff_seconds: float = 5.0

    def __post_init__(self):
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )
        if self.batch_limit <= 0:
            raise ValueError(f"batch_limit must be positive, got {self.batch_limit}")


class PollerState(Enum):
    """Lifecycle state of the poller."""

    IDLE = "idle"  # Waiting for the next tick
    POLLING = "polling"  # A cycle is in flight
    STOPPED = "stopped"


@dataclass
class PollerStats:
    """Runtime statistics for the poller."""

    ticks: int = 0
    empty_ticks: int = 0
    overlapping_ticks: int = 0
    source_errors: int = 0
    events_processed: int = 0
    triggers: int = 0
    event_errors: int = 0
    last_event_time: Optional[datetime] = None


@dataclass
class TickResult:
    """What one polling cycle did."""

    events: int = 0
    triggers: int = 0
    outcomes: list["Outcome"] = field(default_factory=list)
    cursor_advanced: bool = False
    source_error: Optional[str] = None
    skipped_overlap: bool = False


class EventPoller:
    """
    Polls a market data source and drives the buyback engine.

    Usage:
        poller = EventPoller(
            registry=registry,
            source=source,
            engine=engine,
            config=PollerConfig(poll_interval_seconds=10),
        )
        await poller.start()
        # ... runs in the background ...
        await poller.stop()

        # Or drive it by hand (tests)
        result = await poller.tick_now()
    """

    def __init__(
        self,
        registry: MarketRegistry,
        source: "MarketDataSource",
        engine: "BuybackEngine",
        config: PollerConfig,
    ) -> None:
        self._registry = registry
        self._source = source
        self._engine = engine
        self._config = config

        self._cursor: Any = None
        self._state = PollerState.IDLE
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._stats = PollerStats()

    @property
    def config(self) -> PollerConfig:
        return self._config

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the background loop is running."""
        return self._running

    @property
    def stats(self) -> PollerStats:
        return self._stats

    @property
    def cursor(self) -> Any:
        """Opaque source position; the next query resumes from here."""
        return self._cursor

    def restore_cursor(self, cursor: Any) -> None:
        """Resume from a persisted cursor. Only valid while stopped."""
        if self._running:
            raise RuntimeError("Cannot restore cursor while the poller is running")
        self._cursor = cursor
        logger.info(f"Restored event cursor: {cursor}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start polling in the background. Runs one tick immediately."""
        if self._running:
            logger.warning("EventPoller already running")
            return

        logger.info(
            f"Starting event poller (interval={self._config.poll_interval_seconds}s, "
            f"limit={self._config.batch_limit})"
        )
        self._running = True
        self._state = PollerState.IDLE
        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="event_poller")

    async def stop(self) -> None:
        """
        Stop polling.

        An in-flight tick is allowed to finish, so a submitted purchase
        is always followed by its registry update.
        """
        if not self._running:
            self._state = PollerState.STOPPED
            return

        logger.info("Stopping event poller...")
        self._running = False
        self._stop_event.set()

        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        self._state = PollerState.STOPPED
        logger.info("Event poller stopped")

    async def _poll_loop(self) -> None:
        interval = self._config.poll_interval_seconds

        while self._running:
            try:
                await self.tick_now()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in poll loop: {e}")
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self._config.error_backoff_seconds,
                    )
                    break
                except asyncio.TimeoutError:
                    continue

            # Wait for interval or stop
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break  # Stop requested
            except asyncio.TimeoutError:
                pass

    # =========================================================================
    # Polling
    # =========================================================================

    async def tick_now(self) -> TickResult:
        """
        Run one polling cycle now.

        Returns immediately with skipped_overlap=True when a cycle is
        already in flight.
        """
        if self._tick_lock.locked():
            self._stats.overlapping_ticks += 1
            logger.debug("Previous poll still running, skipping tick")
            return TickResult(skipped_overlap=True)

        async with self._tick_lock:
            previous = self._state
            self._state = PollerState.POLLING
            try:
                return await self._poll_once()
            finally:
                self._state = PollerState.IDLE if previous != PollerState.STOPPED else previous

    async def _poll_once(self) -> TickResult:
        self._stats.ticks += 1
        result = TickResult()

        if not self._registry.list_monitored_market_ids():
            self._stats.empty_ticks += 1
            return result

        try:
            batch = await self._source.query_trade_events(self._cursor, self._config.batch_limit)
        except TransientSourceError as e:
            self._stats.source_errors += 1
            logger.warning(f"Market data source unavailable, will retry next tick: {e}")
            result.source_error = str(e)
            return result

        if batch.is_empty:
            self._stats.empty_ticks += 1
            return result

        if batch.events:
            logger.debug(f"Processing {len(batch.events)} event(s)")

        for event in batch.events:
            result.events += 1
            outcome = await self.process_event(event)
            if outcome is not None:
                result.triggers += 1
                result.outcomes.append(outcome)

        if batch.next_cursor is not None:
            self._cursor = batch.next_cursor
            result.cursor_advanced = True

        return result

    async def process_event(self, event: "TradeEvent") -> Optional["Outcome"]:
        """
        Route one event: record its price and trigger the engine if needed.

        Errors are logged and counted, never raised, so the rest of the
        batch still runs.

        Returns:
            The engine outcome, or None when the event did not trigger
        """
        self._stats.events_processed += 1
        self._stats.last_event_time = datetime.now(timezone.utc)

        try:
            self._registry.update_last_price(event.market_id, event.price)

            if not self._registry.should_trigger(event.market_id, event.price):
                return None

            if self._config.sell_side_only and event.side != TradeSide.SELL:
                logger.debug(f"Ignoring {event.side.value} below floor on {event.market_id[:16]}...")
                return None

            registration = self._registry.get(event.market_id)
            if registration is None:
                return None

            self._stats.triggers += 1
            logger.info(
                f"Price {format_price(event.price)} below floor "
                f"{format_price(registration.floor_price)} on {event.market_id[:16]}..."
            )

            context = TriggerContext(
                market_id=registration.market_id,
                vault_id=registration.vault_id,
                observed_price=event.price,
                floor_price=registration.floor_price,
                event_quantity=event.quantity,
                event_id=event.event_id,
            )
            return await self._engine.execute(context)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.event_errors += 1
            logger.error(f"Error processing event {event.event_id} on {event.market_id[:16]}...: {e}")
            return None

    def status(self) -> dict[str, Any]:
        """Poller state for status reporting."""
        last = self._stats.last_event_time
        return {
            "running": self._running,
            "state": self._state.value,
            "poll_interval_seconds": self._config.poll_interval_seconds,
            "monitored_markets": len(self._registry.list_monitored_market_ids()),
            "cursor": self._cursor,
            "ticks": self._stats.ticks,
            "events_processed": self._stats.events_processed,
            "triggers": self._stats.triggers,
            "source_errors": self._stats.source_errors,
            "event_errors": self._stats.event_errors,
            "overlapping_ticks": self._stats.overlapping_ticks,
            "last_event_time": last.isoformat() if last else None,
        }
