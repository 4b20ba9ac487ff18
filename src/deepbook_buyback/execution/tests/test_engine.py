"""
Tests for BuybackEngine.

The engine turns a TriggerContext into exactly one outcome. These tests verify:
- Vault gate, enable switch, funding source resolution
- Tiered sizing and cost estimation
- Minimum-cost precedence (market, global, zero)
- Failures leave the registry untouched
- Event deduplication and the per-market lock
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from deepbook_buyback.core import RegistrationConfig
from deepbook_buyback.execution import (
    BuybackEngine,
    EngineConfig,
    ExecutionError,
    Executed,
    Failed,
    OutcomeType,
    PurchaseResult,
    SkipReason,
    Skipped,
)


# =============================================================================
# Happy Path
# =============================================================================


class TestExecute:
    """Tests for a successful buyback."""

    @pytest.mark.asyncio
    async def test_executes_and_records(self, engine, registry, mock_executor, make_context):
        """0.90 x 200 = 180.00, recorded once."""
        outcome = await engine.execute(make_context())

        assert isinstance(outcome, Executed)
        assert outcome.type == OutcomeType.EXECUTED
        assert outcome.cost == 180_000_000
        assert outcome.quantity == Decimal("200")
        assert outcome.tx_reference == "0xtx"

        entry = registry.get("0xabc")
        assert entry.buyback_count == 1
        assert entry.total_buyback_cost == 180_000_000

    @pytest.mark.asyncio
    async def test_purchase_request_fields(self, engine, mock_executor, make_context):
        await engine.execute(make_context())

        request = mock_executor.submit_purchase.await_args.args[0]
        assert request.market_id == "0xabc"
        assert request.vault_id == "0xv1"
        assert request.funding_source == "0xbm1"
        assert request.quantity == Decimal("200")
        assert request.max_cost == 180_000_000
        assert request.observed_price == 900_000

    @pytest.mark.asyncio
    async def test_actual_cost_preferred_over_estimate(
        self, engine, registry, mock_executor, make_context
    ):
        mock_executor.submit_purchase.return_value = PurchaseResult(
            success=True, actual_cost=170_000_000, tx_reference="0xtx",
        )

        outcome = await engine.execute(make_context())

        assert outcome.cost == 170_000_000
        assert registry.get("0xabc").total_buyback_cost == 170_000_000

    @pytest.mark.asyncio
    async def test_negative_actual_cost_records_estimate(
        self, engine, registry, mock_executor, make_context
    ):
        mock_executor.submit_purchase.return_value = PurchaseResult(
            success=True, actual_cost=-5, tx_reference="0xtx",
        )

        outcome = await engine.execute(make_context(event_id="tx9:0"))

        assert isinstance(outcome, Executed)
        assert outcome.cost == 180_000_000
        market = registry.get("0xabc")
        assert market.total_buyback_cost == 180_000_000
        assert market.buyback_count == 1

        redelivered = await engine.execute(make_context(event_id="tx9:0"))

        assert redelivered.reason == SkipReason.DUPLICATE_EVENT
        assert mock_executor.submit_purchase.await_count == 1


# =============================================================================
# Gates
# =============================================================================


class TestGates:
    """Tests for the skip conditions, in order."""

    @pytest.mark.asyncio
    async def test_no_vault_always_skips(self, registry, mock_executor, make_context):
        """Vault check wins over every other condition."""
        engine = BuybackEngine(registry, mock_executor, EngineConfig(enabled=False))

        outcome = await engine.execute(make_context(market_id="0x123", vault_id=None))

        assert isinstance(outcome, Skipped)
        assert outcome.reason == SkipReason.NO_VAULT_BOUND
        mock_executor.submit_purchase.assert_not_awaited()
        assert registry.get("0x123").buyback_count == 0

    @pytest.mark.asyncio
    async def test_disabled_skips(self, registry, mock_executor, make_context):
        engine = BuybackEngine(registry, mock_executor, EngineConfig(enabled=False))

        outcome = await engine.execute(make_context())

        assert outcome.reason == SkipReason.BUYBACK_DISABLED
        mock_executor.submit_purchase.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_funding_source_skips(self, engine, mock_executor, make_context):
        outcome = await engine.execute(make_context(market_id="0xdef", vault_id="0xv2"))

        assert outcome.reason == SkipReason.NO_FUNDING_SOURCE
        mock_executor.submit_purchase.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_global_funding_source_used_as_fallback(
        self, registry, mock_executor, make_context
    ):
        engine = BuybackEngine(
            registry, mock_executor, EngineConfig(default_balance_manager_id="0xglobal"),
        )

        await engine.execute(make_context(market_id="0xdef", vault_id="0xv2"))

        request = mock_executor.submit_purchase.await_args.args[0]
        assert request.funding_source == "0xglobal"

    @pytest.mark.asyncio
    async def test_market_funding_source_wins(self, registry, mock_executor, make_context):
        engine = BuybackEngine(
            registry, mock_executor, EngineConfig(default_balance_manager_id="0xglobal"),
        )

        await engine.execute(make_context())

        request = mock_executor.submit_purchase.await_args.args[0]
        assert request.funding_source == "0xbm1"


# =============================================================================
# Minimum Cost
# =============================================================================


class TestMinimumCost:
    """Tests for the minimum-cost gate."""

    @pytest.mark.asyncio
    async def test_market_minimum_skips(self, registry, mock_executor, make_context):
        registry.register(
            "0xabc",
            RegistrationConfig(
                vault_id="0xv1", balance_manager_id="0xbm1",
                floor_price=1_000_000, min_buyback_cost=200_000_000,
            ),
        )
        engine = BuybackEngine(registry, mock_executor, EngineConfig())

        outcome = await engine.execute(make_context())

        assert outcome.reason == SkipReason.BELOW_MINIMUM
        mock_executor.submit_purchase.assert_not_awaited()
        assert registry.get("0xabc").buyback_count == 0

    @pytest.mark.asyncio
    async def test_global_minimum_used_when_market_has_none(
        self, registry, mock_executor, make_context
    ):
        engine = BuybackEngine(
            registry, mock_executor, EngineConfig(default_min_buyback_cost=200_000_000),
        )

        outcome = await engine.execute(make_context())

        assert outcome.reason == SkipReason.BELOW_MINIMUM

    @pytest.mark.asyncio
    async def test_market_minimum_overrides_global(self, registry, mock_executor, make_context):
        """A market minimum of zero disables a stricter global minimum."""
        registry.register(
            "0xabc",
            RegistrationConfig(
                vault_id="0xv1", balance_manager_id="0xbm1",
                floor_price=1_000_000, min_buyback_cost=0,
            ),
        )
        engine = BuybackEngine(
            registry, mock_executor, EngineConfig(default_min_buyback_cost=10**12),
        )

        outcome = await engine.execute(make_context())

        assert isinstance(outcome, Executed)

    @pytest.mark.asyncio
    async def test_cost_equal_to_minimum_executes(self, registry, mock_executor, make_context):
        engine = BuybackEngine(
            registry, mock_executor, EngineConfig(default_min_buyback_cost=180_000_000),
        )

        outcome = await engine.execute(make_context())

        assert isinstance(outcome, Executed)

    def test_resolve_min_cost_defaults_to_zero(self, engine):
        assert engine.resolve_min_cost(None) == 0


# =============================================================================
# Sizing
# =============================================================================


class TestSizing:
    """Tests for calculate_quantity() and estimate_cost()."""

    @pytest.mark.parametrize("observed,expected", [
        (970_000, Decimal("100")),   # 3% below
        (950_001, Decimal("100")),   # just under 5%
        (950_000, Decimal("500")),   # exactly 5%
        (930_000, Decimal("500")),   # 7% below
        (900_000, Decimal("1000")),  # exactly 10%
        (500_000, Decimal("1000")),  # 50% below
    ])
    def test_tiers(self, engine, observed, expected):
        assert engine.calculate_quantity(observed, 1_000_000) == expected

    def test_event_quantity_wins(self, engine):
        assert engine.calculate_quantity(500_000, 1_000_000, Decimal("7.5")) == Decimal("7.5")

    @pytest.mark.parametrize("event_quantity", [Decimal("0"), Decimal("-3")])
    def test_non_positive_event_quantity_uses_tier(self, engine, event_quantity):
        assert engine.calculate_quantity(900_000, 1_000_000, event_quantity) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_zero_event_quantity_buys_tier(self, engine, mock_executor, make_context):
        outcome = await engine.execute(make_context(event_quantity=Decimal("0")))

        request = mock_executor.submit_purchase.await_args.args[0]
        assert request.quantity == Decimal("1000")
        assert outcome.quantity == Decimal("1000")
        assert outcome.cost == 900_000_000

    def test_custom_tiers(self, registry, mock_executor):
        engine = BuybackEngine(
            registry,
            mock_executor,
            EngineConfig(
                small_tier_quantity=Decimal("1"),
                medium_tier_quantity=Decimal("2"),
                large_tier_quantity=Decimal("3"),
            ),
        )

        assert engine.calculate_quantity(990_000, 1_000_000) == Decimal("1")
        assert engine.calculate_quantity(920_000, 1_000_000) == Decimal("2")
        assert engine.calculate_quantity(100_000, 1_000_000) == Decimal("3")

    def test_estimate_cost_truncates(self, engine):
        assert engine.estimate_cost(Decimal("200"), 900_000) == 180_000_000
        assert engine.estimate_cost(Decimal("0.0000015"), 1_000_000) == 1

    @pytest.mark.asyncio
    async def test_tier_used_without_event_quantity(self, engine, mock_executor, make_context):
        outcome = await engine.execute(make_context(observed_price=970_000, event_quantity=None))

        assert outcome.quantity == Decimal("100")
        assert outcome.cost == 97_000_000


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Executor problems become Failed outcomes and change nothing."""

    @pytest.mark.asyncio
    async def test_unsuccessful_result(self, engine, registry, mock_executor, make_context):
        mock_executor.submit_purchase.return_value = PurchaseResult(
            success=False, error="insufficient balance",
        )

        outcome = await engine.execute(make_context())

        assert isinstance(outcome, Failed)
        assert outcome.error == "insufficient balance"
        assert registry.get("0xabc").buyback_count == 0
        assert registry.get("0xabc").total_buyback_cost == 0

    @pytest.mark.asyncio
    async def test_executor_exception(self, engine, registry, mock_executor, make_context):
        mock_executor.submit_purchase.side_effect = ExecutionError("rpc rejected")

        outcome = await engine.execute(make_context())

        assert isinstance(outcome, Failed)
        assert "rpc rejected" in outcome.error
        assert registry.get("0xabc").buyback_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, engine, mock_executor, make_context):
        mock_executor.submit_purchase.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await engine.execute(make_context())

    @pytest.mark.asyncio
    async def test_failed_attempt_can_be_retried(
        self, engine, registry, mock_executor, make_context
    ):
        """A failure does not mark the event as executed."""
        mock_executor.submit_purchase.side_effect = [
            ExecutionError("transient"),
            PurchaseResult(success=True, tx_reference="0xtx"),
        ]

        first = await engine.execute(make_context(event_id="tx9:0"))
        second = await engine.execute(make_context(event_id="tx9:0"))

        assert isinstance(first, Failed)
        assert isinstance(second, Executed)
        assert registry.get("0xabc").buyback_count == 1


# =============================================================================
# Deduplication
# =============================================================================


class TestDeduplication:
    """Tests for redelivered events."""

    @pytest.mark.asyncio
    async def test_redelivered_event_skipped(self, engine, registry, mock_executor, make_context):
        await engine.execute(make_context(event_id="tx1:0"))
        outcome = await engine.execute(make_context(event_id="tx1:0"))

        assert outcome.reason == SkipReason.DUPLICATE_EVENT
        assert registry.get("0xabc").buyback_count == 1
        assert mock_executor.submit_purchase.await_count == 1

    @pytest.mark.asyncio
    async def test_dedup_disabled_double_counts(self, registry, mock_executor, make_context):
        engine = BuybackEngine(registry, mock_executor, EngineConfig(deduplicate_events=False))

        await engine.execute(make_context(event_id="tx1:0"))
        await engine.execute(make_context(event_id="tx1:0"))

        assert registry.get("0xabc").buyback_count == 2
        assert engine.deduplicator is None

    @pytest.mark.asyncio
    async def test_events_without_id_never_deduplicated(self, engine, registry, make_context):
        await engine.execute(make_context(event_id=None))
        await engine.execute(make_context(event_id=None))

        assert registry.get("0xabc").buyback_count == 2


# =============================================================================
# Per-Market Lock
# =============================================================================


class TestMarketLock:
    """At most one attempt per market is in flight."""

    @pytest.fixture
    def slow_executor(self):
        state = {"active": {}, "max": {}}

        async def submit(request):
            active = state["active"].get(request.market_id, 0) + 1
            state["active"][request.market_id] = active
            state["max"][request.market_id] = max(state["max"].get(request.market_id, 0), active)
            await asyncio.sleep(0.05)
            state["active"][request.market_id] -= 1
            return PurchaseResult(success=True, tx_reference="0xtx")

        executor = AsyncMock()
        executor.submit_purchase = AsyncMock(side_effect=submit)
        executor.state = state
        return executor

    @pytest.mark.asyncio
    async def test_same_market_serialized(self, registry, slow_executor, make_context):
        engine = BuybackEngine(registry, slow_executor, EngineConfig())

        outcomes = await asyncio.gather(*[
            engine.execute(make_context(event_id=f"tx{i}:0")) for i in range(3)
        ])

        assert all(isinstance(o, Executed) for o in outcomes)
        assert slow_executor.state["max"]["0xabc"] == 1
        assert registry.get("0xabc").buyback_count == 3

    @pytest.mark.asyncio
    async def test_different_markets_run_concurrently(
        self, registry, slow_executor, make_context
    ):
        engine = BuybackEngine(
            registry, slow_executor, EngineConfig(default_balance_manager_id="0xbm"),
        )

        started = asyncio.get_running_loop().time()
        await asyncio.gather(
            engine.execute(make_context(market_id="0xabc", vault_id="0xv1")),
            engine.execute(make_context(market_id="0xdef", vault_id="0xv2")),
        )
        elapsed = asyncio.get_running_loop().time() - started

        assert elapsed < 0.09

    def test_lock_shared_across_id_forms(self, engine):
        assert engine.market_lock("0x000abc") is engine.market_lock("0xabc")


# =============================================================================
# Manual Buyback and Reporting
# =============================================================================


class TestManualAndReporting:
    """Tests for execute_manual(), executions() and status()."""

    @pytest.mark.asyncio
    async def test_manual_unknown_market(self, engine):
        outcome = await engine.execute_manual("0xnope")

        assert outcome.reason == SkipReason.MARKET_NOT_FOUND

    @pytest.mark.asyncio
    async def test_manual_without_price(self, engine):
        outcome = await engine.execute_manual("0xabc")

        assert outcome.reason == SkipReason.NOT_TRIGGERED

    @pytest.mark.asyncio
    async def test_manual_above_floor(self, engine, registry):
        registry.update_last_price("0xabc", 1_200_000)

        outcome = await engine.execute_manual("0xabc")

        assert outcome.reason == SkipReason.NOT_TRIGGERED

    @pytest.mark.asyncio
    async def test_manual_below_floor_executes(self, engine, registry):
        registry.update_last_price("0xabc", 850_000)

        outcome = await engine.execute_manual("0xabc")

        assert isinstance(outcome, Executed)
        assert outcome.quantity == Decimal("1000")
        assert engine.executions()[0].manual is True
        assert registry.get("0xabc").buyback_count == 1

    @pytest.mark.asyncio
    async def test_history_newest_first_and_bounded(self, registry, mock_executor, make_context):
        engine = BuybackEngine(registry, mock_executor, EngineConfig(max_history=2))

        for i in range(3):
            await engine.execute(make_context(event_id=f"tx{i}:0"))

        history = engine.executions()
        assert len(history) == 2
        assert history[0].event_id == "tx2:0"
        assert history[1].event_id == "tx1:0"
        assert engine.executions(limit=1)[0].event_id == "tx2:0"

    @pytest.mark.asyncio
    async def test_failed_attempts_in_history(self, engine, mock_executor, make_context):
        mock_executor.submit_purchase.return_value = PurchaseResult(success=False, error="nope")

        await engine.execute(make_context())

        record = engine.executions()[0]
        assert record.success is False
        assert record.error == "nope"
        assert record.cost == 0

    @pytest.mark.asyncio
    async def test_stats_and_status(self, engine, mock_executor, make_context):
        await engine.execute(make_context(event_id="a"))
        await engine.execute(make_context(event_id="a"))
        await engine.execute(make_context(market_id="0xdef", vault_id="0xv2"))

        assert engine.stats.attempts == 3
        assert engine.stats.executed == 1
        assert engine.stats.skipped == 2
        assert engine.stats.total_cost == 180_000_000

        status = engine.status()
        assert status["skip_reasons"] == {"duplicate_event": 1, "no_funding_source": 1}
        assert status["total_cost"] == "180.000000"
        assert status["tracked_event_ids"] == 1
