"""
Trade executor contract.

The engine hands a PurchaseRequest to a TradeExecutor and receives a
PurchaseResult. Building and signing the DeepBook transaction happens
behind this interface; the bot ships only a dry-run implementation.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from deepbook_buyback.core.fixed_point import format_price

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Raised by an executor when a purchase cannot be submitted."""
    pass


@dataclass(frozen=True)
class PurchaseRequest:
    """
    A buyback purchase to submit.

    Attributes:
        market_id: Pool to buy from
        vault_id: Vault the purchase is made for
        funding_source: Balance manager paying for the purchase
        quantity: Token units to buy
        max_cost: Estimated cost, 6-decimal fixed point
        observed_price: Price that triggered the buyback, 6-decimal fixed point
    """
    market_id: str
    vault_id: str
    funding_source: str
    quantity: Decimal
    max_cost: int
    observed_price: int


@dataclass(frozen=True)
class PurchaseResult:
    """
    What the executor reports back.

    actual_cost is None when the executor cannot tell what was spent;
    the engine then records its own estimate.
    """
    success: bool
    actual_cost: Optional[int] = None
    tx_reference: Optional[str] = None
    error: Optional[str] = None


@runtime_checkable
class TradeExecutor(Protocol):
    """Submits buyback purchases."""

    async def submit_purchase(self, request: PurchaseRequest) -> PurchaseResult:
        ...


class DryRunExecutor:
    """
    Executor that only logs purchases and reports them as successful.

    Used when no signing executor is wired in (the default for the CLI).
    Only the most recent `max_requests` purchases are kept for inspection.
    """

    def __init__(self, max_requests: int = 100) -> None:
        self._counter = 0
        self.requests: deque[PurchaseRequest] = deque(maxlen=max_requests)

    async def submit_purchase(self, request: PurchaseRequest) -> PurchaseResult:
        self._counter += 1
        self.requests.append(request)

        logger.info(
            f"[DRY RUN] Buy {request.quantity} on {request.market_id[:16]}... "
            f"for vault {request.vault_id[:16]}... via {request.funding_source[:16]}... "
            f"@ {format_price(request.observed_price)} "
            f"(max cost {format_price(request.max_cost)})"
        )

        return PurchaseResult(
            success=True,
            actual_cost=request.max_cost,
            tx_reference=f"dry-run-{self._counter}",
        )
