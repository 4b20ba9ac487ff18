"""
Registry snapshots.

The registry lives in memory. A snapshot captures every registration
(configuration and counters) plus the poller's event cursor so a
restarted bot resumes where it stopped instead of replaying or missing
events.

IMPORTANT: Prices and costs are stored as 6-decimal fixed-point
integers, exactly as the registry holds them.
"""
from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from deepbook_buyback.core.fixed_point import DEFAULT_FLOOR_PRICE
from deepbook_buyback.core.registry import MarketRegistration, RegistrationConfig

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """A snapshot file exists but cannot be read."""
    pass


# =============================================================================
# RECORDS
# =============================================================================


class RegistrationRecord(BaseModel):
    """Persisted form of a MarketRegistration."""

    market_id: str
    vault_id: Optional[str] = None
    balance_manager_id: Optional[str] = None
    settlement_asset_id: Optional[str] = None
    traded_asset_type: Optional[str] = None
    floor_price: int = Field(default=DEFAULT_FLOOR_PRICE, ge=0)
    min_buyback_cost: Optional[int] = Field(default=None, ge=0)
    owner: Optional[str] = None
    last_trade_price: int = Field(default=0, ge=0)
    buyback_count: int = Field(default=0, ge=0)
    total_buyback_cost: int = Field(default=0, ge=0)
    registered_at: Optional[datetime] = None

    @classmethod
    def from_registration(cls, registration: MarketRegistration) -> "RegistrationRecord":
        return cls(
            market_id=registration.market_id,
            vault_id=registration.vault_id,
            balance_manager_id=registration.balance_manager_id,
            settlement_asset_id=registration.settlement_asset_id,
            traded_asset_type=registration.traded_asset_type,
            floor_price=registration.floor_price,
            min_buyback_cost=registration.min_buyback_cost,
            owner=registration.owner,
            last_trade_price=registration.last_trade_price,
            buyback_count=registration.buyback_count,
            total_buyback_cost=registration.total_buyback_cost,
            registered_at=registration.registered_at,
        )

    def to_config(self) -> RegistrationConfig:
        """Configuration part only, for registering the market afresh."""
        return RegistrationConfig(
            vault_id=self.vault_id,
            balance_manager_id=self.balance_manager_id,
            settlement_asset_id=self.settlement_asset_id,
            traded_asset_type=self.traded_asset_type,
            floor_price=self.floor_price,
            min_buyback_cost=self.min_buyback_cost,
            owner=self.owner,
        )

    def to_registration(self) -> MarketRegistration:
        registration = MarketRegistration(
            market_id=self.market_id,
            vault_id=self.vault_id,
            balance_manager_id=self.balance_manager_id,
            settlement_asset_id=self.settlement_asset_id,
            traded_asset_type=self.traded_asset_type,
            floor_price=self.floor_price,
            min_buyback_cost=self.min_buyback_cost,
            owner=self.owner,
            last_trade_price=self.last_trade_price,
            buyback_count=self.buyback_count,
            total_buyback_cost=self.total_buyback_cost,
        )
        if self.registered_at is not None:
            registration.registered_at = self.registered_at
        return registration


class RegistrySnapshot(BaseModel):
    """Everything needed to resume after a restart."""

    markets: list[RegistrationRecord] = Field(default_factory=list)
    cursor: Any = None
    exported_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def capture(
        cls,
        registrations: list[MarketRegistration],
        cursor: Any = None,
    ) -> "RegistrySnapshot":
        return cls(
            markets=[RegistrationRecord.from_registration(r) for r in registrations],
            cursor=cursor,
        )

    def registrations(self) -> list[MarketRegistration]:
        return [record.to_registration() for record in self.markets]


# =============================================================================
# STORE
# =============================================================================


class SnapshotStore:
    """
    JSON file holding the latest RegistrySnapshot.

    Usage:
        store = SnapshotStore("state/registry.json")
        store.save(RegistrySnapshot.capture(registry.export_records(), poller.cursor))

        snapshot = store.load()  # None on first start
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, snapshot: RegistrySnapshot) -> None:
        """
        Write the snapshot atomically.

        The file is written next to the target and swapped in, so a crash
        mid-write leaves the previous snapshot intact.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        text = snapshot.model_dump_json(indent=2)

        tmp_name: Optional[str] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", delete=False, dir=self._path.parent,
                prefix=f".{self._path.name}.", suffix=".tmp",
            ) as handle:
                tmp_name = handle.name
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.info(f"Saved snapshot of {len(snapshot.markets)} market(s) to {self._path}")

    def load(self) -> Optional[RegistrySnapshot]:
        """
        Read the snapshot.

        Returns:
            The snapshot, or None if no snapshot was saved yet

        Raises:
            SnapshotError: If the file exists but is not a valid snapshot
        """
        if not self._path.exists():
            logger.info(f"No snapshot at {self._path}, starting fresh")
            return None

        try:
            snapshot = RegistrySnapshot.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as e:
            raise SnapshotError(f"Cannot read snapshot {self._path}: {e}") from e

        logger.info(
            f"Loaded snapshot of {len(snapshot.markets)} market(s) "
            f"exported at {snapshot.exported_at.isoformat()}"
        )
        return snapshot
