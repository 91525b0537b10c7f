"""
Tests for profit accrual (src/accrual.py)

Tests cover:
- Which trades count toward accrual
- Owed and protocol split arithmetic
- Per-rift aggregation with fee gates
- Trade history import from the chain
- Incremental aggregation, watermark and reconciliation
"""

import sys
from datetime import datetime
from decimal import Decimal

import pytest

sys.path.insert(0, "src")

from accrual import (
    AGGREGATOR_TABLE,
    AccrualEngine,
    IncrementalProfitAggregator,
    TradeHistory,
    full_resum_trade_budget,
)
from chain_client import MockChainClient
from rift_config import ResolvedRiftConfig
from settlement_models import Trade


def make_trade(rift_id="rift1", profit="1", success=True, timestamp="2024-06-01T00:00:00", sequence=1):
    return Trade(
        rift_id=rift_id,
        actual_profit=Decimal(profit),
        success=success,
        signature=f"sig{sequence}",
        timestamp=timestamp,
        sequence=sequence,
    )


def make_config(rift_id="rift1", split="40", fees_enabled=True, since=None, team=False):
    return ResolvedRiftConfig(
        rift_id=rift_id,
        is_team_rift=team,
        lp_split_percent=Decimal(split),
        fees_enabled=fees_enabled,
        fees_enabled_at=since,
    )


@pytest.fixture
def engine():
    return AccrualEngine()


# ============================================================
# Trade Filtering
# ============================================================


class TestCounts:
    """Tests for AccrualEngine.counts."""

    def test_successful_profitable_trade_counts(self, engine):
        assert engine.counts(make_trade()) is True

    def test_failed_trade_excluded(self, engine):
        assert engine.counts(make_trade(success=False)) is False

    def test_zero_and_negative_profit_excluded(self, engine):
        assert engine.counts(make_trade(profit="0")) is False
        assert engine.counts(make_trade(profit="-0.5")) is False

    def test_trade_before_gate_excluded(self, engine):
        gate = datetime(2024, 7, 1)
        assert engine.counts(make_trade(timestamp="2024-06-30T23:59:59"), gate) is False

    def test_trade_at_gate_included(self, engine):
        gate = datetime(2024, 7, 1)
        assert engine.counts(make_trade(timestamp="2024-07-01T00:00:00"), gate) is True

    def test_untimestamped_trade_excluded_when_gated(self, engine):
        """A trade without a timestamp cannot be shown to postdate the gate."""
        trade = make_trade(timestamp="")
        assert engine.counts(trade, datetime(2024, 1, 1)) is False
        assert engine.counts(trade) is True

    def test_timezone_aware_timestamp_compared_in_utc(self, engine):
        gate = datetime(2024, 7, 1, 12, 0)
        assert engine.counts(make_trade(timestamp="2024-07-01T13:30:00+02:00"), gate) is False
        assert engine.counts(make_trade(timestamp="2024-07-01T12:30:00Z"), gate) is True


# ============================================================
# Split Arithmetic
# ============================================================


class TestSplit:
    """Tests for owed / protocol split computation."""

    def test_aggregate_profit_sums_counted_trades(self, engine):
        trades = [
            make_trade(profit="1.5", sequence=1),
            make_trade(profit="0.5", sequence=2),
            make_trade(profit="2", success=False, sequence=3),
            make_trade(profit="-1", sequence=4),
        ]
        assert engine.aggregate_profit(trades) == Decimal("2.0")

    def test_compute_owed(self, engine):
        assert engine.compute_owed(Decimal("10"), make_config(split="40")) == Decimal("4")

    def test_compute_owed_zero_when_fees_disabled(self, engine):
        assert engine.compute_owed(Decimal("10"), make_config(fees_enabled=False)) == Decimal("0")

    def test_split_parts_sum_to_total(self, engine):
        split = engine.compute_split(Decimal("3.333333333"), make_config(split="33.3"))
        assert split.owed + split.protocol == split.total
        assert split.to_dict()["total"] == "3.333333333"

    def test_team_split(self, engine):
        split = engine.compute_split(Decimal("5"), make_config(split="80", team=True))
        assert split.owed == Decimal("4")
        assert split.protocol == Decimal("1")


# ============================================================
# Per-rift Aggregation
# ============================================================


class TestProfitByRift:
    """Tests for AccrualEngine.profit_by_rift."""

    def test_groups_by_rift(self, engine):
        trades = [
            make_trade("a", "1", sequence=1),
            make_trade("b", "2", sequence=2),
            make_trade("a", "3", sequence=3),
        ]
        assert engine.profit_by_rift(trades) == {"a": Decimal("4"), "b": Decimal("2")}

    def test_gate_applied_per_rift(self, engine):
        trades = [
            make_trade("a", "1", timestamp="2024-01-01T00:00:00", sequence=1),
            make_trade("a", "2", timestamp="2024-03-01T00:00:00", sequence=2),
            make_trade("b", "5", timestamp="2024-01-01T00:00:00", sequence=3),
        ]
        configs = {"a": make_config("a", since=datetime(2024, 2, 1))}
        assert engine.profit_by_rift(trades, configs) == {"a": Decimal("2"), "b": Decimal("5")}

    def test_rifts_without_profit_omitted(self, engine):
        trades = [make_trade("a", "1", success=False)]
        assert engine.profit_by_rift(trades) == {}


# ============================================================
# Trade History
# ============================================================


class TestTradeHistory:
    """Tests for TradeHistory import and reads."""

    def test_sync_imports_new_trades_once(self, store):
        chain = MockChainClient()
        chain.add_trade("rift1", "1")
        chain.add_trade("rift1", "2")
        history = TradeHistory(store, chain)

        assert history.sync() == 2
        assert history.sync() == 0
        assert history.count() == 2
        assert history.last_sequence() == 2

    def test_sync_picks_up_later_trades(self, store):
        chain = MockChainClient()
        chain.add_trade("rift1", "1")
        history = TradeHistory(store, chain)
        history.sync()

        chain.add_trade("rift2", "3")
        assert history.sync() == 1
        assert [t.rift_id for t in history.after(1)] == ["rift2"]

    def test_add_is_idempotent_by_signature(self, store):
        history = TradeHistory(store)
        trade = make_trade()
        assert history.add(trade) is True
        assert history.add(trade) is False
        assert history.count() == 1

    def test_sync_without_chain_is_noop(self, store):
        assert TradeHistory(store).sync() == 0

    def test_reads_narrowed_to_one_rift(self, store):
        chain = MockChainClient()
        chain.add_trade("rift1", "1")
        chain.add_trade("rift2", "2")
        chain.add_trade("rift1", "3")
        history = TradeHistory(store, chain)
        history.sync()

        assert [t.actual_profit for t in history.for_rift("rift1")] == [Decimal("1"), Decimal("3")]
        assert history.count("rift2") == 1
        assert history.count("missing") == 0


# ============================================================
# Incremental Aggregation
# ============================================================


class TestIncrementalAggregator:
    """Tests for IncrementalProfitAggregator."""

    def test_ingest_advances_watermark(self, store):
        aggregator = IncrementalProfitAggregator(store)
        totals = aggregator.ingest([make_trade("a", "1", sequence=1), make_trade("a", "2", sequence=2)])

        assert totals == {"a": Decimal("3")}
        assert aggregator.watermark == 2

    def test_ingest_skips_trades_at_or_below_watermark(self, store):
        aggregator = IncrementalProfitAggregator(store)
        aggregator.ingest([make_trade("a", "1", sequence=1)])
        totals = aggregator.ingest([make_trade("a", "1", sequence=1), make_trade("a", "4", sequence=2)])
        assert totals == {"a": Decimal("5")}

    def test_ingest_matches_full_resum(self, store, engine):
        trades = [make_trade("a" if i % 2 else "b", str(i), sequence=i) for i in range(1, 11)]
        aggregator = IncrementalProfitAggregator(store)
        aggregator.ingest(trades[:4])
        aggregator.ingest(trades[4:])
        assert aggregator.totals() == engine.profit_by_rift(trades)

    def test_stale_when_gate_moves(self, store):
        aggregator = IncrementalProfitAggregator(store)
        configs = {"a": make_config("a", since=datetime(2024, 1, 1))}
        aggregator.ingest([make_trade("a", "1", sequence=1)], configs)
        assert aggregator.stale_rifts(configs) == []

        moved = {"a": make_config("a", since=datetime(2024, 8, 1))}
        assert aggregator.stale_rifts(moved) == ["a"]

    def test_reconcile_reports_drift_and_rebuilds(self, store):
        aggregator = IncrementalProfitAggregator(store)
        trades = [make_trade("a", "1", sequence=1), make_trade("a", "2", sequence=2)]
        aggregator.ingest(trades)
        store.upsert(AGGREGATOR_TABLE, "a", {"total_profit": "99", "since": None})

        report = aggregator.reconcile(trades)

        assert report.has_drift
        assert report.drift["a"] == {"stored": "99", "actual": "3"}
        assert aggregator.totals() == {"a": Decimal("3")}
        assert report.to_dict()["watermark"] == 2

    def test_reconcile_without_drift(self, store):
        aggregator = IncrementalProfitAggregator(store)
        trades = [make_trade("a", "1", sequence=1)]
        aggregator.ingest(trades)
        assert aggregator.reconcile(trades).has_drift is False


class TestResumBudget:
    """Tests for the full re-sum trade budget setting."""

    def test_default_budget(self, monkeypatch):
        monkeypatch.delenv("FULL_RESUM_TRADE_BUDGET", raising=False)
        assert full_resum_trade_budget() == 5000

    def test_budget_from_env(self, monkeypatch):
        monkeypatch.setenv("FULL_RESUM_TRADE_BUDGET", "10")
        assert full_resum_trade_budget() == 10
