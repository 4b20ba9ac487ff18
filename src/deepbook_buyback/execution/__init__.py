"""
Execution Layer - Buyback decisions and purchase submission.

This module provides:
    - BuybackEngine: Decides, sizes and submits buybacks (use this!)
    - EngineConfig: Configuration for the engine
    - EngineStats: Runtime statistics
    - ExecutionRecord: Entry in the execution history
    - TriggerContext: Input to the engine, built by the poller
    - Executed / Skipped / Failed: Outcomes of a buyback attempt
    - SkipReason: Why a buyback was not attempted
    - TradeExecutor: Contract for submitting purchases
    - DryRunExecutor: Executor that logs instead of trading
    - PurchaseRequest / PurchaseResult: Executor input and output

Guarantees:
    - A market without a vault never reaches the executor
    - Registry counters change only after a successful purchase
    - At most one attempt per market is in flight at a time

Usage:
    from deepbook_buyback.execution import BuybackEngine, DryRunExecutor, EngineConfig

    engine = BuybackEngine(registry, DryRunExecutor(), EngineConfig())
    outcome = await engine.execute(context)
"""

# Outcomes
from .outcomes import (
    Executed,
    Failed,
    Outcome,
    OutcomeType,
    SkipReason,
    Skipped,
    TriggerContext,
)

# Executor contract
from .executor import (
    DryRunExecutor,
    ExecutionError,
    PurchaseRequest,
    PurchaseResult,
    TradeExecutor,
)

# Engine
from .engine import (
    BuybackEngine,
    EngineConfig,
    EngineStats,
    ExecutionRecord,
)

__all__ = [
    # Outcomes
    "Executed",
    "Failed",
    "Outcome",
    "OutcomeType",
    "SkipReason",
    "Skipped",
    "TriggerContext",
    # Executor
    "DryRunExecutor",
    "ExecutionError",
    "PurchaseRequest",
    "PurchaseResult",
    "TradeExecutor",
    # Engine
    "BuybackEngine",
    "EngineConfig",
    "EngineStats",
    "ExecutionRecord",
]
