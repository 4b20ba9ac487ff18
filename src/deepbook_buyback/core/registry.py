"""
Market registry.

Maps each tracked DeepBook pool to its owning vault, its trigger
configuration (floor price, minimum buyback cost, funding source) and
its running state (last trade price, buyback counters).

The registry is a plain injectable object. All mutation goes through
its methods, which hold a coarse lock so a registration arriving from
another thread cannot interleave with a poll tick.

Counters policy:
    Re-registering a market replaces its configuration AND resets
    last_trade_price, buyback_count and total_buyback_cost to zero.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable, Optional

from .fixed_point import DEFAULT_FLOOR_PRICE, format_price, normalize_market_id

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base exception for registry errors."""
    pass


class InvalidConfig(RegistryError, ValueError):
    """Registration input was rejected. Never retried."""
    pass


@dataclass
class RegistrationConfig:
    """
    Caller-supplied configuration for a market.

    Prices and costs are 6-decimal fixed-point integers.
    A config without vault_id registers the market in monitor-only mode.
    """

    vault_id: Optional[str] = None
    balance_manager_id: Optional[str] = None  # Per-market funding source
    settlement_asset_id: Optional[str] = None
    traded_asset_type: Optional[str] = None
    floor_price: Optional[int] = None  # None -> DEFAULT_FLOOR_PRICE
    min_buyback_cost: Optional[int] = None
    owner: Optional[str] = None


@dataclass
class MarketRegistration:
    """A tracked market and its buyback state."""

    market_id: str
    vault_id: Optional[str] = None
    balance_manager_id: Optional[str] = None
    settlement_asset_id: Optional[str] = None
    traded_asset_type: Optional[str] = None
    floor_price: int = DEFAULT_FLOOR_PRICE
    min_buyback_cost: Optional[int] = None
    owner: Optional[str] = None

    # Running state
    last_trade_price: int = 0
    buyback_count: int = 0
    total_buyback_cost: int = 0
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def buyback_enabled(self) -> bool:
        """Whether a vault is bound (otherwise monitor only)."""
        return bool(self.vault_id)

    @property
    def needs_buyback(self) -> bool:
        """Last observed price is below the floor. Observability only."""
        return (
            self.floor_price > 0
            and self.last_trade_price > 0
            and self.last_trade_price < self.floor_price
        )


@dataclass
class RegistryStats:
    """Aggregate registry statistics."""

    total_markets: int = 0
    buyback_enabled_markets: int = 0
    total_buybacks: int = 0
    total_buyback_cost: int = 0


class MarketRegistry:
    """
    In-memory registry of tracked markets.

    Unknown markets are never an error: lookups return None and updates
    are silent no-ops, so an event racing a removal is harmless.

    Usage:
        registry = MarketRegistry()
        registry.register("0xpool", RegistrationConfig(vault_id="0xvault", floor_price=1_000_000))

        registry.update_last_price("0xpool", 900_000)
        if registry.should_trigger("0xpool", 900_000):
            ...
        registry.record_outcome("0xpool", cost=180_000_000)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._markets: dict[str, MarketRegistration] = {}

    def register(
        self,
        market_id: str,
        config: Optional[RegistrationConfig] = None,
    ) -> MarketRegistration:
        """
        Add or replace a market registration.

        Args:
            market_id: Pool id
            config: Registration configuration (defaults to monitor only)

        Returns:
            Copy of the stored registration

        Raises:
            InvalidConfig: Empty market id, negative floor or minimum cost
        """
        if not market_id or not market_id.strip():
            raise InvalidConfig("market_id is required")

        config = config or RegistrationConfig()
        floor_price = DEFAULT_FLOOR_PRICE if config.floor_price is None else config.floor_price

        if floor_price < 0:
            raise InvalidConfig(f"floor_price must not be negative, got {floor_price}")
        if config.min_buyback_cost is not None and config.min_buyback_cost < 0:
            raise InvalidConfig(
                f"min_buyback_cost must not be negative, got {config.min_buyback_cost}"
            )

        key = normalize_market_id(market_id)
        entry = MarketRegistration(
            market_id=key,
            vault_id=config.vault_id or None,
            balance_manager_id=config.balance_manager_id or None,
            settlement_asset_id=config.settlement_asset_id,
            traded_asset_type=config.traded_asset_type,
            floor_price=floor_price,
            min_buyback_cost=config.min_buyback_cost,
            owner=config.owner,
        )

        with self._lock:
            replaced = key in self._markets
            self._markets[key] = entry

        mode = "buyback" if entry.buyback_enabled else "monitor only"
        logger.info(
            f"{'Re-registered' if replaced else 'Registered'} market {key[:16]}... "
            f"({mode}), floor {format_price(floor_price)}"
        )
        return replace(entry)

    def get(self, market_id: str) -> Optional[MarketRegistration]:
        """Get a copy of a registration, or None if not tracked."""
        with self._lock:
            entry = self._markets.get(normalize_market_id(market_id))
            return replace(entry) if entry else None

    def get_by_vault(self, vault_id: str) -> Optional[MarketRegistration]:
        """Get the registration bound to a vault, or None."""
        with self._lock:
            for entry in self._markets.values():
                if entry.vault_id == vault_id:
                    return replace(entry)
        return None

    def all(self) -> list[MarketRegistration]:
        """Copies of every registration."""
        with self._lock:
            return [replace(entry) for entry in self._markets.values()]

    def remove(self, market_id: str) -> bool:
        """
        Administrative removal. Not used by the poller or the engine.

        Returns:
            True if a registration was removed
        """
        with self._lock:
            removed = self._markets.pop(normalize_market_id(market_id), None)
        if removed:
            logger.info(f"Removed market {removed.market_id[:16]}...")
        return removed is not None

    def update_last_price(self, market_id: str, price: int) -> None:
        """Overwrite the last observed trade price (no-op if unknown)."""
        with self._lock:
            entry = self._markets.get(normalize_market_id(market_id))
            if entry is None:
                return
            entry.last_trade_price = price
        logger.debug(f"Last trade price for {entry.market_id[:16]}...: {format_price(price)}")

    def should_trigger(self, market_id: str, observed_price: int) -> bool:
        """
        Check whether a price arms the buyback for a market.

        True iff the market is registered, has a positive floor and the
        price is below it. Whether a vault is bound is checked by the
        engine, not here.
        """
        with self._lock:
            entry = self._markets.get(normalize_market_id(market_id))
            if entry is None or entry.floor_price <= 0:
                return False
            return observed_price < entry.floor_price

    def record_outcome(self, market_id: str, cost: int) -> None:
        """
        Record a successful buyback (no-op if unknown).

        Raises:
            ValueError: If cost is negative (counters never decrease)
        """
        if cost < 0:
            raise ValueError(f"Buyback cost must not be negative, got {cost}")

        with self._lock:
            entry = self._markets.get(normalize_market_id(market_id))
            if entry is None:
                return
            entry.buyback_count += 1
            entry.total_buyback_cost += cost
            count = entry.buyback_count

        logger.info(
            f"Recorded buyback for {entry.market_id[:16]}...: "
            f"{format_price(cost)} (total buybacks: {count})"
        )

    def list_monitored_market_ids(self) -> list[str]:
        """Ids of every tracked market (order irrelevant)."""
        with self._lock:
            return list(self._markets.keys())

    def stats(self) -> RegistryStats:
        """Aggregate counters across all markets."""
        with self._lock:
            entries = list(self._markets.values())
            return RegistryStats(
                total_markets=len(entries),
                buyback_enabled_markets=sum(1 for e in entries if e.buyback_enabled),
                total_buybacks=sum(e.buyback_count for e in entries),
                total_buyback_cost=sum(e.total_buyback_cost for e in entries),
            )

    # =========================================================================
    # Snapshot support
    # =========================================================================

    def export_records(self) -> list[MarketRegistration]:
        """Copies of every registration, including counters, for persistence."""
        return self.all()

    def load_records(self, records: Iterable[MarketRegistration]) -> int:
        """
        Restore registrations from persisted records.

        Unlike register(), counters are kept as persisted.

        Returns:
            Number of records loaded
        """
        loaded = 0
        with self._lock:
            for record in records:
                if not record.market_id:
                    logger.warning("Skipping persisted record without market_id")
                    continue
                key = normalize_market_id(record.market_id)
                self._markets[key] = replace(record, market_id=key)
                loaded += 1
        logger.info(f"Loaded {loaded} market(s) from storage")
        return loaded

    def __len__(self) -> int:
        with self._lock:
            return len(self._markets)

    def __contains__(self, market_id: object) -> bool:
        if not isinstance(market_id, str):
            return False
        with self._lock:
            return normalize_market_id(market_id) in self._markets
