"""
RiftSettle - Rift Configuration

A rift is configured through one of two record shapes:

- LegacyRiftConfig: rows from the original team-rift table, which only
  carried the team's split. Every legacy rift is a team rift with fees on.
- CurrentRiftConfig: the current shape with the LP/team split, the
  per-rift fee kill-switch and the time fees were enabled.

resolve_rift_config() is the single place that turns either shape (or
both) into the effective ResolvedRiftConfig; nothing else inspects the
legacy table.

Usage:
    registry = RiftConfigRegistry(store)
    config = registry.get_or_create(rift_id)
    configs = registry.load_all()  # {rift_id: ResolvedRiftConfig}
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from settlement_errors import ValidationError
from settlement_models import (
    DEFAULT_LP_SPLIT,
    HUNDRED,
    LEGACY_TEAM_SPLIT,
    ZERO,
    parse_timestamp,
    to_decimal,
    utc_now,
)
from storage.base import LedgerStore, StorageError

logger = logging.getLogger(__name__)

CONFIG_TABLE = "rift_configs"
LEGACY_TABLE = "legacy_team_rifts"
RIFTS_TABLE = "rifts"


def clamp_split(value: Any) -> Decimal:
    """Clamp a split percentage to [0, 100]."""
    return min(HUNDRED, max(ZERO, to_decimal(value)))


@dataclass
class LegacyRiftConfig:
    """Original team-rift record: only the team split was stored."""

    rift_id: str
    team_split: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rift_id": self.rift_id,
            "team_split": str(self.team_split) if self.team_split is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LegacyRiftConfig":
        raw = data.get("team_split")
        return cls(rift_id=data["rift_id"], team_split=to_decimal(raw) if raw not in (None, "") else None)


@dataclass
class CurrentRiftConfig:
    """Current rift configuration record."""

    rift_id: str
    is_team_rift: bool = False
    lp_split_percent: Decimal = DEFAULT_LP_SPLIT
    fees_enabled: bool = True
    fees_enabled_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rift_id": self.rift_id,
            "is_team_rift": self.is_team_rift,
            "lp_split_percent": str(self.lp_split_percent),
            "fees_enabled": self.fees_enabled,
            "fees_enabled_at": self.fees_enabled_at.isoformat() if self.fees_enabled_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CurrentRiftConfig":
        return cls(
            rift_id=data["rift_id"],
            is_team_rift=bool(data.get("is_team_rift", False)),
            lp_split_percent=to_decimal(
                data.get("lp_split_percent", data.get("lp_split")), DEFAULT_LP_SPLIT
            ),
            # A missing flag means enabled
            fees_enabled=data.get("fees_enabled") is not False,
            fees_enabled_at=parse_timestamp(data.get("fees_enabled_at")),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
        )


@dataclass(frozen=True)
class ResolvedRiftConfig:
    """Effective configuration the accrual and distribution code reads."""

    rift_id: str
    is_team_rift: bool
    lp_split_percent: Decimal
    fees_enabled: bool
    fees_enabled_at: datetime | None = None
    legacy: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rift_id": self.rift_id,
            "is_team_rift": self.is_team_rift,
            "lp_split_percent": str(self.lp_split_percent),
            "fees_enabled": self.fees_enabled,
            "fees_enabled_at": self.fees_enabled_at.isoformat() if self.fees_enabled_at else None,
            "legacy": self.legacy,
        }


def resolve_rift_config(
    current: CurrentRiftConfig | None,
    legacy: LegacyRiftConfig | None,
) -> ResolvedRiftConfig | None:
    """
    Resolve the effective configuration of a rift.

    The current record wins when both exist. A legacy-only rift is a team
    rift receiving ``team_split`` (80 when unset or zero) with fees enabled
    and no fees_enabled_at gate.
    """
    if current is not None:
        return ResolvedRiftConfig(
            rift_id=current.rift_id,
            is_team_rift=current.is_team_rift,
            lp_split_percent=current.lp_split_percent,
            fees_enabled=current.fees_enabled,
            fees_enabled_at=current.fees_enabled_at,
        )
    if legacy is not None:
        return ResolvedRiftConfig(
            rift_id=legacy.rift_id,
            is_team_rift=True,
            lp_split_percent=legacy.team_split or LEGACY_TEAM_SPLIT,
            fees_enabled=True,
            legacy=True,
        )
    return None


class RiftConfigRegistry:
    """Reads and writes rift configuration through the ledger store."""

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def get(self, rift_id: str) -> ResolvedRiftConfig | None:
        current = self.store.get(CONFIG_TABLE, rift_id)
        legacy = self.store.get(LEGACY_TABLE, rift_id)
        return resolve_rift_config(
            CurrentRiftConfig.from_dict(current) if current else None,
            LegacyRiftConfig.from_dict(legacy) if legacy else None,
        )

    def get_or_create(self, rift_id: str, has_existing_trades: bool = True) -> CurrentRiftConfig:
        """
        Return the current config, creating the conservative default on first access.

        fees_enabled_at is "now" so profit accrued before the config existed
        is never owed. A brand new rift with no trades may instead start
        from its recorded creation time.
        """
        if not rift_id:
            raise ValidationError("riftId required", field_name="riftId")

        existing = self.store.get(CONFIG_TABLE, rift_id)
        if existing:
            return CurrentRiftConfig.from_dict(existing)

        now = self._clock()
        fees_enabled_at = now
        if not has_existing_trades:
            rift = self.store.get(RIFTS_TABLE, rift_id) or {}
            fees_enabled_at = parse_timestamp(rift.get("created_at")) or now

        config = CurrentRiftConfig(
            rift_id=rift_id,
            fees_enabled_at=fees_enabled_at,
            created_at=now,
            updated_at=now,
        )

        if not self.store.insert_unique(CONFIG_TABLE, rift_id, config.to_dict()):
            # Lost a creation race; the winner's row is authoritative
            return CurrentRiftConfig.from_dict(self.store.get(CONFIG_TABLE, rift_id))

        logger.info(
            f"Created default config for rift {rift_id}: "
            f"lp_split={config.lp_split_percent}% fees_enabled_at={fees_enabled_at.isoformat()}"
        )
        return config

    def update_config(
        self,
        rift_id: str,
        is_team_rift: Any = None,
        lp_split: Any = None,
        fees_enabled: Any = None,
    ) -> CurrentRiftConfig:
        """
        Apply an admin update. Fields of the wrong type are ignored.

        lp_split is clamped to [0, 100]. fees_enabled_at is fixed when the
        config is created and is never moved by an update; fees_enabled
        alone switches accrual off and on.
        """
        config = self.get_or_create(rift_id)
        now = self._clock()

        if isinstance(is_team_rift, bool):
            config.is_team_rift = is_team_rift

        if isinstance(lp_split, (int, float, Decimal)) and not isinstance(lp_split, bool):
            config.lp_split_percent = clamp_split(lp_split)

        if isinstance(fees_enabled, bool):
            config.fees_enabled = fees_enabled

        config.updated_at = now
        self.store.upsert(CONFIG_TABLE, rift_id, config.to_dict())

        logger.info(
            f"Updated rift {rift_id} config: team={config.is_team_rift} "
            f"split={config.lp_split_percent}% fees={config.fees_enabled}"
        )
        return config

    def set_legacy_team_rift(self, rift_id: str, team_split: Any = None) -> LegacyRiftConfig:
        """Record a rift in the legacy team-rift table."""
        if not rift_id:
            raise ValidationError("riftId required", field_name="riftId")
        legacy = LegacyRiftConfig(
            rift_id=rift_id,
            team_split=clamp_split(team_split) if team_split is not None else None,
        )
        self.store.upsert(LEGACY_TABLE, rift_id, legacy.to_dict())
        return legacy

    def load_all(self) -> dict[str, ResolvedRiftConfig]:
        """
        Union of current and legacy configs by rift id, current winning.

        A failed read of either table degrades to "no rows" for that table.
        """
        current: dict[str, CurrentRiftConfig] = {}
        legacy: dict[str, LegacyRiftConfig] = {}

        try:
            for row in self.store.select(CONFIG_TABLE):
                current[row["rift_id"]] = CurrentRiftConfig.from_dict(row)
        except StorageError as e:
            logger.error(f"Failed to load rift configs: {e}")

        try:
            for row in self.store.select(LEGACY_TABLE):
                legacy[row["rift_id"]] = LegacyRiftConfig.from_dict(row)
        except StorageError as e:
            logger.error(f"Failed to load legacy team rifts: {e}")

        resolved = {}
        for rift_id in {**legacy, **current}:
            config = resolve_rift_config(current.get(rift_id), legacy.get(rift_id))
            if config is not None:
                resolved[rift_id] = config
        return resolved

    # =========================================================================
    # Rift directory (written by the indexing job)
    # =========================================================================

    def register_rift(
        self,
        rift_id: str,
        creator_wallet: str | None = None,
        symbol: str | None = None,
        created_at: datetime | None = None,
    ) -> dict[str, Any]:
        row = {
            "rift_id": rift_id,
            "creator_wallet": creator_wallet,
            "symbol": symbol,
            "created_at": (created_at or self._clock()).isoformat(),
        }
        self.store.upsert(RIFTS_TABLE, rift_id, row)
        return row

    def get_creator(self, rift_id: str) -> str | None:
        try:
            row = self.store.get(RIFTS_TABLE, rift_id)
        except StorageError as e:
            logger.error(f"Failed to look up creator of rift {rift_id}: {e}")
            return None
        return (row or {}).get("creator_wallet")

    def creators(self) -> dict[str, str]:
        """Creator wallet per rift id; unknown creators are omitted."""
        try:
            rows = self.store.select(RIFTS_TABLE)
        except StorageError as e:
            logger.error(f"Failed to load rift directory: {e}")
            return {}
        return {r["rift_id"]: r["creator_wallet"] for r in rows if r.get("creator_wallet")}
