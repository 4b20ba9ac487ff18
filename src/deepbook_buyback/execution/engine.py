"""
Buyback Engine - Turns a triggered floor crossing into a purchase.

For each TriggerContext the engine:
1. Refuses markets without a bound vault
2. Honors the global enable switch
3. Resolves the funding source (per-market, then global default)
4. Drops events that already produced a buyback
5. Sizes the purchase (event quantity, else deviation tiers)
6. Estimates the cost and applies the minimum-cost gate
7. Submits to the Trade Executor
8. Records the outcome in the registry on success only

Attempts for one market are serialized by a per-market lock, so the
registry never sees two concurrent buybacks for the same market.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from deepbook_buyback.core.dedup import EventDeduplicator
from deepbook_buyback.core.fixed_point import format_price, normalize_market_id
from deepbook_buyback.core.registry import MarketRegistration, MarketRegistry

from .executor import PurchaseRequest, TradeExecutor
from .outcomes import (
    Executed,
    Failed,
    Outcome,
    OutcomeType,
    SkipReason,
    Skipped,
    TriggerContext,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Configuration for the buyback engine."""

    # Global switch
    enabled: bool = True

    # Fallbacks when the market has no value of its own
    default_balance_manager_id: Optional[str] = None
    default_min_buyback_cost: Optional[int] = None  # 6-decimal fixed point

    # Tiered sizing when the event carries no quantity
    small_tier_quantity: Decimal = Decimal("100")
    medium_tier_quantity: Decimal = Decimal("500")
    large_tier_quantity: Decimal = Decimal("1000")
    small_tier_max_deviation: Decimal = Decimal("0.05")  # below 5% -> small
    medium_tier_max_deviation: Decimal = Decimal("0.10")  # below 10% -> medium

    # Redelivered events
    deduplicate_events: bool = True
    dedup_ttl_seconds: float = 24 * 60 * 60
    dedup_max_entries: int = 10_000

    # Execution history kept in memory
    max_history: int = 500


@dataclass
class EngineStats:
    """Runtime statistics for the engine."""

    attempts: int = 0
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    total_cost: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)


@dataclass
class ExecutionRecord:
    """One executed or failed buyback, kept for status reporting."""

    market_id: str
    vault_id: Optional[str]
    observed_price: int
    floor_price: int
    quantity: Decimal
    cost: int
    success: bool
    tx_reference: Optional[str] = None
    error: Optional[str] = None
    event_id: Optional[str] = None
    manual: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BuybackEngine:
    """
    Executes buybacks for triggered markets.

    Usage:
        engine = BuybackEngine(registry, executor, EngineConfig())

        outcome = await engine.execute(context)
        if isinstance(outcome, Executed):
            ...
    """

    def __init__(
        self,
        registry: MarketRegistry,
        executor: TradeExecutor,
        config: Optional[EngineConfig] = None,
        deduplicator: Optional[EventDeduplicator] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            registry: Registry holding market configuration and counters
            executor: Trade executor that submits purchases
            config: Engine configuration
            deduplicator: Shared deduplicator (built from config if omitted)
        """
        self.config = config or EngineConfig()
        self._registry = registry
        self._executor = executor

        self._dedup: Optional[EventDeduplicator] = None
        if self.config.deduplicate_events:
            self._dedup = deduplicator or EventDeduplicator(
                ttl_seconds=self.config.dedup_ttl_seconds,
                max_entries=self.config.dedup_max_entries,
            )

        self._market_locks: dict[str, asyncio.Lock] = {}
        self._history: deque[ExecutionRecord] = deque(maxlen=self.config.max_history)
        self._stats = EngineStats()

    @property
    def stats(self) -> EngineStats:
        """Current engine statistics."""
        return self._stats

    @property
    def deduplicator(self) -> Optional[EventDeduplicator]:
        return self._dedup

    def market_lock(self, market_id: str) -> asyncio.Lock:
        """Lock serializing buyback attempts for one market."""
        key = normalize_market_id(market_id)
        lock = self._market_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._market_locks[key] = lock
        return lock

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, context: TriggerContext) -> Outcome:
        """
        Attempt a buyback for a triggered market.

        Never raises for executor problems: those become Failed outcomes.

        Args:
            context: Trigger built by the poller

        Returns:
            Executed, Skipped or Failed
        """
        async with self.market_lock(context.market_id):
            outcome = await self._execute_locked(context, manual=False)

        self._count(outcome)
        return outcome

    async def execute_manual(self, market_id: str) -> Outcome:
        """
        Run a buyback for a market using its last observed price.

        Returns:
            Skipped(MARKET_NOT_FOUND) for unknown markets,
            Skipped(NOT_TRIGGERED) when the last price is not below the floor,
            otherwise the outcome of the attempt
        """
        registration = self._registry.get(market_id)
        if registration is None:
            outcome: Outcome = Skipped(
                reason=SkipReason.MARKET_NOT_FOUND,
                detail=f"market {market_id} is not registered",
            )
            self._count(outcome)
            return outcome

        if not self._registry.should_trigger(market_id, registration.last_trade_price) or \
                registration.last_trade_price <= 0:
            outcome = Skipped(
                reason=SkipReason.NOT_TRIGGERED,
                detail=(
                    f"last price {format_price(registration.last_trade_price)} is not "
                    f"below floor {format_price(registration.floor_price)}"
                ),
            )
            self._count(outcome)
            return outcome

        context = TriggerContext(
            market_id=registration.market_id,
            vault_id=registration.vault_id,
            observed_price=registration.last_trade_price,
            floor_price=registration.floor_price,
        )

        logger.info(f"Manual buyback requested for {registration.market_id[:16]}...")

        async with self.market_lock(context.market_id):
            outcome = await self._execute_locked(context, manual=True)

        self._count(outcome)
        return outcome

    async def _execute_locked(self, context: TriggerContext, manual: bool) -> Outcome:
        """Run the buyback steps. Caller holds the market lock."""
        registration = self._registry.get(context.market_id)
        market = context.market_id[:16]

        # 1. Vault binding
        if not context.vault_id:
            return self._skip(SkipReason.NO_VAULT_BOUND, f"{market}... is monitor only")

        # 2. Global switch
        if not self.config.enabled:
            return self._skip(SkipReason.BUYBACK_DISABLED, "buyback execution is disabled")

        # 3. Funding source
        funding_source = self.resolve_funding_source(registration)
        if not funding_source:
            return self._skip(
                SkipReason.NO_FUNDING_SOURCE,
                f"no balance manager configured for {market}...",
            )

        # 4. Redelivered event
        if self._dedup is not None and self._dedup.seen(context.event_id):
            return self._skip(
                SkipReason.DUPLICATE_EVENT,
                f"event {context.event_id} already executed",
            )

        # 5. Sizing
        quantity = self.calculate_quantity(
            context.observed_price,
            context.floor_price,
            context.event_quantity,
        )

        # 6. Cost and minimum gate
        estimated_cost = self.estimate_cost(quantity, context.observed_price)
        min_cost = self.resolve_min_cost(registration)
        if estimated_cost < min_cost:
            return self._skip(
                SkipReason.BELOW_MINIMUM,
                f"cost {format_price(estimated_cost)} below minimum {format_price(min_cost)}",
            )

        # 7. Submit
        request = PurchaseRequest(
            market_id=context.market_id,
            vault_id=context.vault_id,
            funding_source=funding_source,
            quantity=quantity,
            max_cost=estimated_cost,
            observed_price=context.observed_price,
        )

        logger.info(
            f"Executing buyback on {market}...: {quantity} @ "
            f"{format_price(context.observed_price)} (floor "
            f"{format_price(context.floor_price)}, est. cost {format_price(estimated_cost)})"
        )

        try:
            result = await self._executor.submit_purchase(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Buyback execution failed for {market}...: {e}")
            self._remember(context, quantity, 0, success=False, error=str(e), manual=manual)
            return Failed(error=str(e))

        if not result.success:
            error = result.error or "executor reported failure"
            logger.error(f"Buyback execution failed for {market}...: {error}")
            self._remember(context, quantity, 0, success=False, error=error, manual=manual)
            return Failed(error=error)

        # 8. Record
        cost = estimated_cost
        if result.actual_cost is not None:
            if result.actual_cost < 0:
                logger.warning(
                    f"Executor reported negative cost {result.actual_cost} for {market}..., "
                    f"recording estimate {format_price(estimated_cost)}"
                )
            else:
                cost = result.actual_cost
        self._registry.record_outcome(context.market_id, cost)
        if self._dedup is not None:
            self._dedup.mark(context.event_id)
        self._remember(
            context, quantity, cost,
            success=True, tx_reference=result.tx_reference, manual=manual,
        )

        logger.info(
            f"Buyback executed on {market}...: {quantity} for {format_price(cost)} "
            f"(tx: {result.tx_reference})"
        )
        return Executed(cost=cost, quantity=quantity, tx_reference=result.tx_reference)

    def _skip(self, reason: SkipReason, detail: str) -> Skipped:
        logger.info(f"Buyback skipped ({reason.value}): {detail}")
        return Skipped(reason=reason, detail=detail)

    def _count(self, outcome: Outcome) -> None:
        self._stats.attempts += 1
        if outcome.type == OutcomeType.EXECUTED:
            self._stats.executed += 1
            self._stats.total_cost += outcome.cost
        elif outcome.type == OutcomeType.SKIPPED:
            self._stats.skipped += 1
            key = outcome.reason.value
            self._stats.skip_reasons[key] = self._stats.skip_reasons.get(key, 0) + 1
        else:
            self._stats.failed += 1

    def _remember(
        self,
        context: TriggerContext,
        quantity: Decimal,
        cost: int,
        success: bool,
        tx_reference: Optional[str] = None,
        error: Optional[str] = None,
        manual: bool = False,
    ) -> None:
        self._history.append(
            ExecutionRecord(
                market_id=context.market_id,
                vault_id=context.vault_id,
                observed_price=context.observed_price,
                floor_price=context.floor_price,
                quantity=quantity,
                cost=cost,
                success=success,
                tx_reference=tx_reference,
                error=error,
                event_id=context.event_id,
                manual=manual,
            )
        )

    # =========================================================================
    # Sizing and gates
    # =========================================================================

    def calculate_quantity(
        self,
        observed_price: int,
        floor_price: int,
        event_quantity: Optional[Decimal] = None,
    ) -> Decimal:
        """
        Quantity to buy back.

        The triggering trade's quantity when known and positive, otherwise
        a tier chosen by how far the price sits below the floor.
        """
        if event_quantity is not None and Decimal(event_quantity) > 0:
            return Decimal(event_quantity)

        if floor_price <= 0:
            return self.config.large_tier_quantity

        deviation = Decimal(floor_price - observed_price) / Decimal(floor_price)
        if deviation < self.config.small_tier_max_deviation:
            return self.config.small_tier_quantity
        if deviation < self.config.medium_tier_max_deviation:
            return self.config.medium_tier_quantity
        return self.config.large_tier_quantity

    @staticmethod
    def estimate_cost(quantity: Decimal, observed_price: int) -> int:
        """Estimated cost in 6-decimal fixed point (quantity * price, truncated)."""
        return int(Decimal(quantity) * observed_price)

    def resolve_min_cost(self, registration: Optional[MarketRegistration]) -> int:
        """Minimum cost gate: per-market, then global default, then zero."""
        if registration is not None and registration.min_buyback_cost is not None:
            return registration.min_buyback_cost
        if self.config.default_min_buyback_cost is not None:
            return self.config.default_min_buyback_cost
        return 0

    def resolve_funding_source(self, registration: Optional[MarketRegistration]) -> Optional[str]:
        """Balance manager paying for the buyback: per-market, then global default."""
        if registration is not None and registration.balance_manager_id:
            return registration.balance_manager_id
        return self.config.default_balance_manager_id or None

    # =========================================================================
    # Reporting
    # =========================================================================

    def executions(self, limit: Optional[int] = None) -> list[ExecutionRecord]:
        """Recent executions, newest first."""
        records = list(reversed(self._history))
        return records[:limit] if limit is not None else records

    def status(self) -> dict[str, Any]:
        """Engine state for status reporting."""
        return {
            "enabled": self.config.enabled,
            "default_balance_manager_id": self.config.default_balance_manager_id,
            "deduplicate_events": self._dedup is not None,
            "tracked_event_ids": len(self._dedup) if self._dedup is not None else 0,
            "attempts": self._stats.attempts,
            "executed": self._stats.executed,
            "skipped": self._stats.skipped,
            "failed": self._stats.failed,
            "total_cost": format_price(self._stats.total_cost),
            "skip_reasons": dict(self._stats.skip_reasons),
            "recent_executions": len(self._history),
        }
