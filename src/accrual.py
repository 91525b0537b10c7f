"""
RiftSettle - Profit Accrual

Turns raw trade history into money owed.

- TradeHistory: imports trades from the chain client into the ledger
  store's ``trades`` table and reads them back
- AccrualEngine: pure functions over trades and a resolved rift config
  (aggregate, owed, split)
- IncrementalProfitAggregator: running per-rift totals guarded by a
  trade-sequence watermark, with a full re-sum reconciliation that
  reports drift

The default path re-sums the full trade history on every run. Trades are
immutable and addition is commutative, so a re-sum can never drift; it
costs O(all trades) per run. Above FULL_RESUM_TRADE_BUDGET trades the
distribution scheduler switches to the incremental aggregator and
reconciles periodically.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from chain_client import ChainClient
from rift_config import ResolvedRiftConfig
from settlement_errors import ChainError
from settlement_models import HUNDRED, ZERO, Trade, iso_now, parse_timestamp, to_decimal
from storage.base import LedgerStore, StorageError

logger = logging.getLogger(__name__)

TRADES_TABLE = "trades"
AGGREGATOR_TABLE = "aggregator_state"
WATERMARK_KEY = "_watermark"

DEFAULT_FULL_RESUM_TRADE_BUDGET = 5000


def full_resum_trade_budget() -> int:
    return int(os.getenv("FULL_RESUM_TRADE_BUDGET", str(DEFAULT_FULL_RESUM_TRADE_BUDGET)))


# =============================================================================
# Trade history
# =============================================================================


class TradeHistory:
    """Trade rows in the ledger store, fed from chain history."""

    def __init__(self, store: LedgerStore, chain: ChainClient | None = None):
        self.store = store
        self.chain = chain

    def last_sequence(self) -> int:
        try:
            trades = self.store.select(TRADES_TABLE)
        except StorageError as e:
            logger.error(f"Failed to read trades: {e}")
            return 0
        return max((int(t.get("sequence") or 0) for t in trades), default=0)

    def sync(self) -> int:
        """
        Import trades newer than the last stored sequence.

        Rows are keyed by signature (or sequence), so overlapping imports
        never duplicate a trade. Chain failures leave the stored history
        as-is.

        Returns:
            Number of trades imported
        """
        if self.chain is None:
            return 0

        try:
            trades = self.chain.get_trades(since_sequence=self.last_sequence())
        except ChainError as e:
            logger.warning(f"Trade history sync failed, using stored trades: {e}")
            return 0

        imported = 0
        for trade in trades:
            key = trade.signature or f"seq:{trade.sequence}"
            if self.store.insert_unique(TRADES_TABLE, key, trade.to_dict()):
                imported += 1

        if imported:
            logger.info(f"Imported {imported} trades from chain history")
        return imported

    def add(self, trade: Trade) -> bool:
        key = trade.signature or f"seq:{trade.sequence}"
        return self.store.insert_unique(TRADES_TABLE, key, trade.to_dict())

    def all(self) -> list[Trade]:
        try:
            rows = self.store.select(TRADES_TABLE)
        except StorageError as e:
            logger.error(f"Failed to read trades: {e}")
            return []
        return [Trade.from_dict(r) for r in rows]

    def after(self, sequence: int) -> list[Trade]:
        return [t for t in self.all() if t.sequence > sequence]

    def for_rift(self, rift_id: str) -> list[Trade]:
        try:
            rows = self.store.select(TRADES_TABLE, rift_id=rift_id)
        except StorageError as e:
            logger.error(f"Failed to read trades of rift {rift_id}: {e}")
            return []
        return [Trade.from_dict(r) for r in rows]

    def count(self, rift_id: str | None = None) -> int:
        filters = {"rift_id": rift_id} if rift_id else {}
        try:
            return self.store.count(TRADES_TABLE, **filters)
        except StorageError as e:
            logger.error(f"Failed to count trades: {e}")
            return 0


# =============================================================================
# Engine
# =============================================================================


@dataclass(frozen=True)
class ProfitSplit:
    """Realized profit split between recipients (LPs or team) and the protocol."""

    total: Decimal
    owed: Decimal
    protocol: Decimal

    def to_dict(self) -> dict[str, str]:
        return {"total": str(self.total), "owed": str(self.owed), "protocol": str(self.protocol)}


class AccrualEngine:
    """Profit aggregation and split arithmetic."""

    @staticmethod
    def counts(trade: Trade, since: datetime | None = None) -> bool:
        """True if the trade contributes to accrual."""
        if not trade.success or trade.actual_profit <= 0:
            return False
        if since is not None:
            executed = parse_timestamp(trade.timestamp)
            # Untimestamped trades cannot be proven to postdate the gate
            if executed is None or executed < since:
                return False
        return True

    def aggregate_profit(self, trades: list[Trade], since: datetime | None = None) -> Decimal:
        """Sum of positive profit over successful trades executed at or after ``since``."""
        return sum((t.actual_profit for t in trades if self.counts(t, since)), ZERO)

    def compute_owed(self, total_profit: Decimal, config: ResolvedRiftConfig) -> Decimal:
        """Amount owed to LPs or the team; zero when the rift's fees are disabled."""
        if not config.fees_enabled:
            return ZERO
        return total_profit * config.lp_split_percent / HUNDRED

    def compute_split(self, total_profit: Decimal, config: ResolvedRiftConfig) -> ProfitSplit:
        owed = self.compute_owed(total_profit, config)
        return ProfitSplit(total=total_profit, owed=owed, protocol=total_profit - owed)

    def profit_by_rift(
        self,
        trades: list[Trade],
        configs: dict[str, ResolvedRiftConfig] | None = None,
    ) -> dict[str, Decimal]:
        """
        Realized profit per rift.

        With ``configs``, each rift's trades are gated by its
        fees_enabled_at; rifts without a config are not gated.
        """
        by_rift: dict[str, list[Trade]] = {}
        for trade in trades:
            by_rift.setdefault(trade.rift_id, []).append(trade)

        totals = {}
        for rift_id, rift_trades in by_rift.items():
            config = (configs or {}).get(rift_id)
            since = config.fees_enabled_at if config else None
            total = self.aggregate_profit(rift_trades, since)
            if total > 0:
                totals[rift_id] = total
        return totals


# =============================================================================
# Incremental aggregation
# =============================================================================


@dataclass
class ReconcileReport:
    """Result of a full re-sum against the incremental totals."""

    drift: dict[str, dict[str, str]] = field(default_factory=dict)
    rifts_checked: int = 0
    watermark: int = 0
    reconciled_at: str = field(default_factory=iso_now)

    @property
    def has_drift(self) -> bool:
        return bool(self.drift)

    def to_dict(self) -> dict[str, Any]:
        return {
            "drift": self.drift,
            "rifts_checked": self.rifts_checked,
            "watermark": self.watermark,
            "has_drift": self.has_drift,
            "reconciled_at": self.reconciled_at,
        }


class IncrementalProfitAggregator:
    """
    Running profit totals per rift, persisted in ``aggregator_state``.

    ``ingest`` only adds trades whose sequence is past the stored
    watermark. Each total remembers the fees_enabled_at gate it was built
    with; when a rift's gate moves, that rift is listed by ``stale_rifts``
    and must be rebuilt through ``reconcile``.
    """

    def __init__(self, store: LedgerStore, engine: AccrualEngine | None = None):
        self.store = store
        self.engine = engine or AccrualEngine()

    @staticmethod
    def _gate(config: ResolvedRiftConfig | None) -> str | None:
        if config is None or config.fees_enabled_at is None:
            return None
        return config.fees_enabled_at.isoformat()

    @property
    def watermark(self) -> int:
        row = self.store.get(AGGREGATOR_TABLE, WATERMARK_KEY) or {}
        return int(row.get("sequence", 0))

    def totals(self) -> dict[str, Decimal]:
        return {
            key: to_decimal(row.get("total_profit"))
            for key, row in self.store.select_keys(AGGREGATOR_TABLE)
            if key != WATERMARK_KEY
        }

    def stale_rifts(self, configs: dict[str, ResolvedRiftConfig]) -> list[str]:
        """Rifts whose stored total was built under a different fee gate."""
        stale = []
        for key, row in self.store.select_keys(AGGREGATOR_TABLE):
            if key == WATERMARK_KEY:
                continue
            if row.get("since") != self._gate(configs.get(key)):
                stale.append(key)
        return stale

    def ingest(
        self,
        trades: list[Trade],
        configs: dict[str, ResolvedRiftConfig] | None = None,
    ) -> dict[str, Decimal]:
        """Add trades past the watermark to the running totals and return all totals."""
        configs = configs or {}
        watermark = self.watermark
        fresh = sorted((t for t in trades if t.sequence > watermark), key=lambda t: t.sequence)
        if not fresh:
            return self.totals()

        additions: dict[str, Decimal] = {}
        for trade in fresh:
            config = configs.get(trade.rift_id)
            if self.engine.counts(trade, config.fees_enabled_at if config else None):
                additions[trade.rift_id] = additions.get(trade.rift_id, ZERO) + trade.actual_profit

        for rift_id, amount in additions.items():
            row = self.store.get(AGGREGATOR_TABLE, rift_id) or {
                "total_profit": "0",
                "since": self._gate(configs.get(rift_id)),
            }
            row["total_profit"] = str(to_decimal(row.get("total_profit")) + amount)
            row["updated_at"] = iso_now()
            self.store.upsert(AGGREGATOR_TABLE, rift_id, row)

        new_watermark = fresh[-1].sequence
        self.store.upsert(
            AGGREGATOR_TABLE, WATERMARK_KEY, {"sequence": new_watermark, "updated_at": iso_now()}
        )
        logger.debug(f"Ingested {len(fresh)} trades, watermark {watermark} -> {new_watermark}")
        return self.totals()

    def reconcile(
        self,
        trades: list[Trade],
        configs: dict[str, ResolvedRiftConfig] | None = None,
    ) -> ReconcileReport:
        """Re-sum from scratch, report per-rift drift and replace the running totals."""
        configs = configs or {}
        actual = self.engine.profit_by_rift(trades, configs)
        stored = self.totals()

        report = ReconcileReport(rifts_checked=len(set(actual) | set(stored)))
        for rift_id in set(actual) | set(stored):
            expected = actual.get(rift_id, ZERO)
            recorded = stored.get(rift_id, ZERO)
            if expected != recorded:
                report.drift[rift_id] = {"stored": str(recorded), "actual": str(expected)}

        self.store.delete_where(AGGREGATOR_TABLE)
        for rift_id, total in actual.items():
            self.store.upsert(
                AGGREGATOR_TABLE,
                rift_id,
                {
                    "total_profit": str(total),
                    "since": self._gate(configs.get(rift_id)),
                    "updated_at": iso_now(),
                },
            )

        report.watermark = max((t.sequence for t in trades), default=0)
        self.store.upsert(
            AGGREGATOR_TABLE, WATERMARK_KEY, {"sequence": report.watermark, "updated_at": iso_now()}
        )

        if report.has_drift:
            logger.warning(f"Profit aggregation drift in {len(report.drift)} rifts: {report.drift}")
        return report
