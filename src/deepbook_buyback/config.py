"""
Configuration for the buyback bot.

Loads settings from environment variables (and a .env file).

Environment Variables:
    NETWORK                      Sui network: testnet/mainnet/devnet/localnet (default: testnet)
    SUI_RPC_URL                  Explicit JSON-RPC endpoint (default: public full node)
    DEEPBOOK_PACKAGE_ID          DeepBook v3 package emitting order events
    POLL_INTERVAL_SECONDS        Seconds between event polls (required)
    EVENT_QUERY_LIMIT            Events per event type per poll (default: 50)
    SELL_SIDE_ONLY               Only sell events trigger buybacks (default: true)
    BUYBACK_ENABLED              Submit buybacks at all (default: false)
    BUYBACK_BALANCE_MANAGER_ID   Default balance manager funding buybacks
    BUYBACK_MIN_AMOUNT           Default minimum buyback cost, settlement units
    BUYBACK_TIER_SMALL           Quantity when price is < 5% below floor (default: 100)
    BUYBACK_TIER_MEDIUM          Quantity when price is < 10% below floor (default: 500)
    BUYBACK_TIER_LARGE           Quantity otherwise (default: 1000)
    DEDUPLICATE_EVENTS           Skip redelivered events (default: true)
    STATE_PATH                   JSON snapshot of registrations and cursor
    AUTO_START_LISTENER          Start polling on startup (default: true)
    LOG_LEVEL                    DEBUG/INFO/WARNING/ERROR (default: INFO)
"""
from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deepbook_buyback.core.fixed_point import to_fixed
from deepbook_buyback.core.poller import PollerConfig
from deepbook_buyback.execution.engine import EngineConfig
from deepbook_buyback.ingestion.sui_source import DEFAULT_DEEPBOOK_PACKAGE_ID, FULLNODE_URLS


class BuybackSettings(BaseSettings):
    """Bot settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Chain
    network: str = "testnet"
    sui_rpc_url: Optional[str] = None
    deepbook_package_id: str = DEFAULT_DEEPBOOK_PACKAGE_ID

    # Polling
    poll_interval_seconds: float = Field(gt=0)
    event_query_limit: int = Field(default=50, gt=0)
    sell_side_only: bool = True

    # Buyback execution
    buyback_enabled: bool = False
    buyback_balance_manager_id: Optional[str] = None
    buyback_min_amount: Optional[Decimal] = Field(default=None, ge=0)
    buyback_tier_small: Decimal = Field(default=Decimal("100"), gt=0)
    buyback_tier_medium: Decimal = Field(default=Decimal("500"), gt=0)
    buyback_tier_large: Decimal = Field(default=Decimal("1000"), gt=0)
    deduplicate_events: bool = True

    # Runtime
    state_path: Optional[Path] = None
    auto_start_listener: bool = True
    log_level: str = "INFO"

    @field_validator("network")
    @classmethod
    def _known_network(cls, value: str) -> str:
        value = value.lower()
        if value not in FULLNODE_URLS:
            raise ValueError(f"network must be one of {sorted(FULLNODE_URLS)}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    def poller_config(self) -> PollerConfig:
        return PollerConfig(
            poll_interval_seconds=self.poll_interval_seconds,
            batch_limit=self.event_query_limit,
            sell_side_only=self.sell_side_only,
        )

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            enabled=self.buyback_enabled,
            default_balance_manager_id=self.buyback_balance_manager_id or None,
            default_min_buyback_cost=(
                to_fixed(self.buyback_min_amount)
                if self.buyback_min_amount is not None
                else None
            ),
            small_tier_quantity=self.buyback_tier_small,
            medium_tier_quantity=self.buyback_tier_medium,
            large_tier_quantity=self.buyback_tier_large,
            deduplicate_events=self.deduplicate_events,
        )
