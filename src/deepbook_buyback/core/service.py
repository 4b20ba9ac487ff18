"""
BuybackService - Wires the bot together.

Owns the registry, the event source, the engine, the poller and the
optional snapshot store, and exposes the operations an operator or a
front end needs: register a market, report an order, trigger a manual
buyback, inspect prices and status.

Usage:
    service = BuybackService.from_settings(BuybackSettings())
    await service.start()

    service.register_market("0xpool", vault_id="0xvault", floor_price="1.0")
    ...
    await service.stop()
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from deepbook_buyback.execution.engine import BuybackEngine, EngineConfig
from deepbook_buyback.execution.executor import DryRunExecutor, TradeExecutor
from deepbook_buyback.execution.outcomes import Outcome
from deepbook_buyback.ingestion.order_reports import OrderReport, OrderReportCache
from deepbook_buyback.ingestion.source import MarketDataSource
from deepbook_buyback.ingestion.sui_source import SuiEventSource
from deepbook_buyback.storage.snapshot import RegistrySnapshot, SnapshotStore

from .fixed_point import Numeric, from_fixed, to_fixed
from .poller import EventPoller, PollerConfig
from .registry import InvalidConfig, MarketRegistration, MarketRegistry, RegistrationConfig

if TYPE_CHECKING:
    from deepbook_buyback.config import BuybackSettings

logger = logging.getLogger(__name__)

# Reported orders older than this are dropped
ORDER_CACHE_MAX_AGE_SECONDS = 24 * 60 * 60
ORDER_CACHE_CLEAN_INTERVAL_SECONDS = 60 * 60


class BuybackService:
    """
    Lifecycle and operator surface of the buyback bot.

    start() restores the last snapshot and starts polling; stop() lets
    the in-flight tick finish, then saves a snapshot.
    """

    def __init__(
        self,
        source: MarketDataSource,
        executor: TradeExecutor,
        poller_config: PollerConfig,
        engine_config: Optional[EngineConfig] = None,
        registry: Optional[MarketRegistry] = None,
        store: Optional[SnapshotStore] = None,
        auto_start_listener: bool = True,
        owns_source: bool = False,
    ) -> None:
        """
        Initialize the service.

        Args:
            source: Market data source the poller queries
            executor: Trade executor the engine submits to
            poller_config: Poller configuration
            engine_config: Engine configuration
            registry: Registry to use (a new one if omitted)
            store: Snapshot store for restart recovery (optional)
            auto_start_listener: Start polling when the service starts
            owns_source: Close the source on stop
        """
        self.registry = registry or MarketRegistry()
        self.engine = BuybackEngine(self.registry, executor, engine_config)
        self.poller = EventPoller(self.registry, source, self.engine, poller_config)
        self.order_cache = OrderReportCache()

        self._source = source
        self._store = store
        self._auto_start_listener = auto_start_listener
        self._owns_source = owns_source

        self._running = False
        self._started_at: Optional[datetime] = None
        self._stop_event = asyncio.Event()
        self._housekeeping_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: "BuybackSettings",
        executor: Optional[TradeExecutor] = None,
    ) -> "BuybackService":
        """Build the service with a Sui event source (dry-run executor by default)."""
        source = SuiEventSource(
            network=settings.network,
            rpc_url=settings.sui_rpc_url,
            package_id=settings.deepbook_package_id,
        )
        store = SnapshotStore(settings.state_path) if settings.state_path else None

        return cls(
            source=source,
            executor=executor or DryRunExecutor(),
            poller_config=settings.poller_config(),
            engine_config=settings.engine_config(),
            store=store,
            auto_start_listener=settings.auto_start_listener,
            owns_source=True,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Restore state and start the background work.

        Raises:
            SnapshotError: If a snapshot exists but is unreadable
        """
        if self._running:
            logger.warning("BuybackService already running")
            return

        self.restore_state()

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._stop_event.clear()

        if self._auto_start_listener:
            await self.poller.start()
        else:
            logger.info("Auto-start disabled, event poller not started")

        self._housekeeping_task = asyncio.create_task(
            self._housekeeping_loop(),
            name="order_cache_cleanup",
        )

        logger.info(
            f"Buyback service started: {len(self.registry)} market(s), "
            f"buybacks {'ENABLED' if self.engine.config.enabled else 'DISABLED'}"
        )

    async def stop(self) -> None:
        """Stop polling, save a snapshot and release the source."""
        if not self._running:
            return

        logger.info("Stopping buyback service...")
        self._running = False
        self._stop_event.set()

        await self.poller.stop()

        if self._housekeeping_task is not None:
            await asyncio.gather(self._housekeeping_task, return_exceptions=True)
            self._housekeeping_task = None

        try:
            self.save_state()
        except OSError as e:
            logger.error(f"Failed to save snapshot: {e}")

        if self._owns_source and isinstance(self._source, SuiEventSource):
            await self._source.close()

        logger.info("Buyback service stopped")

    async def _housekeeping_loop(self) -> None:
        """Periodically drop old reported orders."""
        while self._running:
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=ORDER_CACHE_CLEAN_INTERVAL_SECONDS,
                )
                break  # Stop requested
            except asyncio.TimeoutError:
                pass

            self.order_cache.clean_old(ORDER_CACHE_MAX_AGE_SECONDS)

    # =========================================================================
    # Persistence
    # =========================================================================

    def restore_state(self) -> bool:
        """
        Load registrations and cursor from the snapshot store.

        Returns:
            True if a snapshot was restored
        """
        if self._store is None:
            return False

        snapshot = self._store.load()
        if snapshot is None:
            return False

        self.registry.load_records(snapshot.registrations())
        self.poller.restore_cursor(snapshot.cursor)
        return True

    def save_state(self) -> bool:
        """
        Write registrations and cursor to the snapshot store.

        Returns:
            True if a snapshot was written
        """
        if self._store is None:
            return False

        snapshot = RegistrySnapshot.capture(self.registry.export_records(), self.poller.cursor)
        self._store.save(snapshot)
        return True

    # =========================================================================
    # Operator surface
    # =========================================================================

    def register_market(
        self,
        market_id: str,
        vault_id: Optional[str] = None,
        balance_manager_id: Optional[str] = None,
        settlement_asset_id: Optional[str] = None,
        traded_asset_type: Optional[str] = None,
        floor_price: Optional[Numeric] = None,
        min_buyback_cost: Optional[Numeric] = None,
        owner: Optional[str] = None,
    ) -> MarketRegistration:
        """
        Register a market using settlement units for amounts.

        Args:
            market_id: Pool id
            vault_id: Vault to buy back for (None = monitor only)
            balance_manager_id: Balance manager funding this market's buybacks
            settlement_asset_id: Settlement asset of the pool
            traded_asset_type: Move type of the vault token
            floor_price: Floor in settlement units (default 1)
            min_buyback_cost: Minimum cost in settlement units
            owner: Vault owner address

        Raises:
            InvalidConfig: Bad id or amounts
        """
        try:
            floor = to_fixed(Decimal("1") if floor_price is None else floor_price)
            min_cost = to_fixed(min_buyback_cost) if min_buyback_cost is not None else None
        except ValueError as e:
            raise InvalidConfig(str(e)) from e

        return self.registry.register(
            market_id,
            RegistrationConfig(
                vault_id=vault_id,
                balance_manager_id=balance_manager_id,
                settlement_asset_id=settlement_asset_id,
                traded_asset_type=traded_asset_type,
                floor_price=floor,
                min_buyback_cost=min_cost,
                owner=owner,
            ),
        )

    async def report_order(
        self,
        order_id: str,
        market_id: str,
        price: str,
        quantity: Optional[Numeric] = None,
        is_bid: bool = False,
    ) -> Optional[Outcome]:
        """
        Route an order reported by a client through the trigger pipeline.

        Args:
            price: Order price with 9 decimals, as DeepBook reports it

        Returns:
            Engine outcome, or None when the order did not trigger

        Raises:
            InvalidOrderReport: Missing or invalid fields
        """
        event = self.order_cache.record(
            OrderReport(
                order_id=order_id,
                market_id=market_id,
                price=str(price),
                quantity=quantity,
                is_bid=is_bid,
            )
        )
        return await self.poller.process_event(event)

    async def trigger_manual_buyback(self, market_id: str) -> Outcome:
        """Buy back at the market's last observed price."""
        return await self.engine.execute_manual(market_id)

    def check_market_price(self, market_id: str) -> Optional[dict[str, Any]]:
        """Current floor and last price of a market, or None if unknown."""
        registration = self.registry.get(market_id)
        if registration is None:
            return None

        deviation = None
        if registration.floor_price > 0 and registration.last_trade_price > 0:
            deviation = (
                Decimal(registration.floor_price - registration.last_trade_price)
                / Decimal(registration.floor_price)
            )

        return {
            "market_id": registration.market_id,
            "floor_price": str(from_fixed(registration.floor_price)),
            "last_trade_price": str(from_fixed(registration.last_trade_price)),
            "needs_buyback": registration.needs_buyback,
            "deviation": str(deviation) if deviation is not None else None,
        }

    def market_status(self, market_id: str) -> Optional[dict[str, Any]]:
        """Registration and counters of a market in settlement units."""
        registration = self.registry.get(market_id)
        if registration is None:
            return None

        return {
            "market_id": registration.market_id,
            "vault_id": registration.vault_id,
            "balance_manager_id": registration.balance_manager_id,
            "settlement_asset_id": registration.settlement_asset_id,
            "traded_asset_type": registration.traded_asset_type,
            "owner": registration.owner,
            "buyback_enabled": registration.buyback_enabled,
            "floor_price": str(from_fixed(registration.floor_price)),
            "min_buyback_cost": (
                str(from_fixed(registration.min_buyback_cost))
                if registration.min_buyback_cost is not None
                else None
            ),
            "last_trade_price": str(from_fixed(registration.last_trade_price)),
            "buyback_count": registration.buyback_count,
            "total_buyback_cost": str(from_fixed(registration.total_buyback_cost)),
            "needs_buyback": registration.needs_buyback,
            "registered_at": registration.registered_at.isoformat(),
        }

    def status(self) -> dict[str, Any]:
        """Aggregate status of the service."""
        stats = self.registry.stats()
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "registry": {
                "total_markets": stats.total_markets,
                "buyback_enabled_markets": stats.buyback_enabled_markets,
                "total_buybacks": stats.total_buybacks,
                "total_buyback_cost": str(from_fixed(stats.total_buyback_cost)),
            },
            "poller": self.poller.status(),
            "engine": self.engine.status(),
            "reported_orders": len(self.order_cache),
        }
