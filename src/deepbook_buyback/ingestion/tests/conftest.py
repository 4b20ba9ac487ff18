"""
Ingestion layer test fixtures.

Raw event payloads mirror what `suix_queryEvents` returns for the
DeepBook v3 order_info events.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from deepbook_buyback.ingestion import SuiEventSource

PACKAGE_ID = "0xdeepbook"
POOL_ID = "0x000000abc"


# =============================================================================
# Raw Event Fixtures
# =============================================================================


@pytest.fixture
def raw_order_placed():
    """Factory for raw OrderPlaced events."""
    def _make(
        price="900000000",
        quantity="200000000000",
        is_bid=False,
        digest="0xdigest1",
        seq="0",
        timestamp="1700000000000",
        pool_id=POOL_ID,
    ) -> dict:
        return {
            "id": {"txDigest": digest, "eventSeq": seq},
            "type": f"{PACKAGE_ID}::order_info::OrderPlaced",
            "timestampMs": timestamp,
            "parsedJson": {
                "pool_id": pool_id,
                "order_id": "170141183460469231731687303715884105728",
                "price": price,
                "placed_quantity": quantity,
                "is_bid": is_bid,
            },
        }
    return _make


@pytest.fixture
def raw_order_filled():
    """Factory for raw OrderFilled events."""
    def _make(
        price="950000000",
        quantity="10000000000",
        taker_is_bid=False,
        digest="0xdigest2",
        seq="1",
        timestamp="1700000001000",
        pool_id=POOL_ID,
    ) -> dict:
        return {
            "id": {"txDigest": digest, "eventSeq": seq},
            "type": f"{PACKAGE_ID}::order_info::OrderFilled",
            "timestampMs": timestamp,
            "parsedJson": {
                "pool_id": pool_id,
                "price": price,
                "base_quantity": quantity,
                "taker_is_bid": taker_is_bid,
            },
        }
    return _make


# =============================================================================
# Source Fixtures
# =============================================================================


@pytest.fixture
def source():
    """Source with retries that do not sleep."""
    return SuiEventSource(
        network="testnet",
        package_id=PACKAGE_ID,
        retry_delay=0,
        max_retries=3,
    )


@pytest.fixture
def make_response():
    """Factory for aiohttp response context managers."""
    def _make(status=200, body=None, text=""):
        response = MagicMock()
        response.status = status
        response.json = AsyncMock(return_value=body)
        response.text = AsyncMock(return_value=text)

        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(return_value=response)
        ctx.__aexit__ = AsyncMock(return_value=False)
        return ctx
    return _make


@pytest.fixture
def mock_session():
    """aiohttp session whose post() is configured per test."""
    session = MagicMock()
    session.close = AsyncMock()
    return session
