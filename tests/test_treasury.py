"""
Tests for the treasury audit trail (src/treasury.py)

Tests cover:
- Write-once payment records
- Durable retry queue with backoff and dead items
- Payment queries and statistics
- Local treasury balance tracking with the fee buffer
"""

import sys
from decimal import Decimal

import pytest

sys.path.insert(0, "src")

from settlement_errors import InsufficientTreasuryBalanceError
from settlement_models import PaymentStatus, PaymentType, TreasuryPayment
from storage import MemoryLedgerStore, StorageWriteError
from treasury import PAYMENTS_TABLE, RETRY_QUEUE_TABLE, TreasuryAuditLog, TreasuryBalanceTracker

from conftest import LP_A, LP_B


class FlakyStore(MemoryLedgerStore):
    """Memory store whose writes to selected tables fail."""

    def __init__(self):
        super().__init__()
        self.broken: set[str] = set()

    def _check(self, table):
        if table in self.broken:
            raise StorageWriteError(f"{table} unavailable")

    def insert_unique(self, table, key, row):
        self._check(table)
        return super().insert_unique(table, key, row)

    def upsert(self, table, key, row):
        self._check(table)
        return super().upsert(table, key, row)


def payment(amount="1.5", wallet=LP_A, payment_type=PaymentType.LP_CLAIM, **kwargs):
    return TreasuryPayment(
        payment_type=payment_type,
        amount=Decimal(amount),
        recipient_wallet=wallet,
        signature="sig_1",
        **kwargs,
    )


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def flaky_log(flaky_store, clock):
    return TreasuryAuditLog(flaky_store, max_attempts=3, clock=clock)


# ============================================================
# Recording
# ============================================================


class TestRecordPayment:
    """Tests for write-once payment rows."""

    def test_records_row(self, audit_log, store):
        p = payment(rift_id="r1")
        assert audit_log.record_payment(p) is True

        row = store.get(PAYMENTS_TABLE, p.payment_id)
        assert row["amount"] == "1.5"
        assert row["payment_type"] == "lp_claim"
        assert row["status"] == "confirmed"
        assert audit_log.events[-1]["event_type"] == "payment_recorded"

    def test_duplicate_payment_id_is_not_overwritten(self, audit_log, store):
        p = payment()
        audit_log.record_payment(p)
        p.amount = Decimal("99")
        audit_log.record_payment(p)

        assert store.get(PAYMENTS_TABLE, p.payment_id)["amount"] == "1.5"

    def test_failed_write_is_queued(self, flaky_log, flaky_store):
        flaky_store.broken.add(PAYMENTS_TABLE)
        p = payment()

        assert flaky_log.record_payment(p) is False
        item = flaky_store.get(RETRY_QUEUE_TABLE, p.payment_id)
        assert item["attempts"] == 0
        assert item["dead"] is False
        assert item["payment"]["recipient_wallet"] == LP_A
        assert flaky_log.events[-1]["event_type"] == "payment_queued"

    def test_never_raises_when_queue_is_down(self, flaky_log, flaky_store):
        flaky_store.broken.update({PAYMENTS_TABLE, RETRY_QUEUE_TABLE})
        assert flaky_log.record_payment(payment()) is False
        assert flaky_log.queue_depth() == 0


# ============================================================
# Retry Queue
# ============================================================


class TestRetryQueue:
    """Tests for flush_retry_queue()."""

    def test_flush_writes_when_store_recovers(self, flaky_log, flaky_store):
        flaky_store.broken.add(PAYMENTS_TABLE)
        p = payment()
        flaky_log.record_payment(p)
        flaky_store.broken.clear()

        result = flaky_log.flush_retry_queue()

        assert result == {"written": 1, "rescheduled": 0, "dead": 0, "remaining": 0}
        assert flaky_store.get(PAYMENTS_TABLE, p.payment_id) is not None

    def test_backoff_between_attempts(self, flaky_log, flaky_store, clock):
        flaky_store.broken.add(PAYMENTS_TABLE)
        p = payment()
        flaky_log.record_payment(p)

        assert flaky_log.flush_retry_queue()["rescheduled"] == 1
        item = flaky_store.get(RETRY_QUEUE_TABLE, p.payment_id)
        assert item["attempts"] == 1
        assert "unavailable" in item["last_error"]

        # Not due yet: 60s after the first failed retry
        flaky_store.broken.clear()
        assert flaky_log.flush_retry_queue() == {"written": 0, "rescheduled": 0, "dead": 0, "remaining": 1}

        clock.advance(seconds=61)
        assert flaky_log.flush_retry_queue()["written"] == 1

    def test_gives_up_after_max_attempts(self, flaky_log, flaky_store, clock):
        flaky_store.broken.add(PAYMENTS_TABLE)
        p = payment()
        flaky_log.record_payment(p)

        for _ in range(3):
            flaky_log.flush_retry_queue()
            clock.advance(hours=2)

        dead = flaky_log.dead_items()
        assert len(dead) == 1
        assert dead[0]["attempts"] == 3

        # Dead items are reported and left alone
        flaky_store.broken.clear()
        result = flaky_log.flush_retry_queue()
        assert result["dead"] == 1
        assert result["written"] == 0
        assert flaky_store.get(PAYMENTS_TABLE, p.payment_id) is None

    def test_queue_depth(self, flaky_log, flaky_store):
        flaky_store.broken.add(PAYMENTS_TABLE)
        flaky_log.record_payment(payment())
        flaky_log.record_payment(payment())
        assert flaky_log.queue_depth() == 2


# ============================================================
# Queries
# ============================================================


class TestQueries:
    """Tests for payment listing and statistics."""

    def test_payments_newest_first(self, audit_log):
        audit_log.record_payment(payment(created_at="2024-01-01T00:00:00"))
        audit_log.record_payment(payment(created_at="2024-03-01T00:00:00"))
        audit_log.record_payment(payment(created_at="2024-02-01T00:00:00"))

        dates = [p.created_at for p in audit_log.payments()]
        assert dates == ["2024-03-01T00:00:00", "2024-02-01T00:00:00", "2024-01-01T00:00:00"]

    def test_payment_filters(self, audit_log):
        audit_log.record_payment(payment(wallet=LP_A, rift_id="r1"))
        audit_log.record_payment(payment(wallet=LP_B, rift_id="r1"))
        audit_log.record_payment(
            payment(wallet=LP_B, rift_id="r2", payment_type=PaymentType.LP_DISTRIBUTION)
        )

        assert len(audit_log.payments(recipient_wallet=LP_B)) == 2
        assert len(audit_log.payments(rift_id="r1")) == 2
        assert len(audit_log.payments(payment_type=PaymentType.LP_DISTRIBUTION)) == 1
        assert len(audit_log.payments(limit=1)) == 1

    def test_round_trip_preserves_status(self, audit_log):
        audit_log.record_payment(payment(status=PaymentStatus.UNKNOWN))
        assert audit_log.payments()[0].status == PaymentStatus.UNKNOWN

    def test_statistics(self, audit_log):
        audit_log.record_payment(payment("1.5"))
        audit_log.record_payment(payment("0.5"))
        audit_log.record_payment(payment("2", payment_type=PaymentType.TEAM_DISTRIBUTION))

        stats = audit_log.get_statistics()

        assert Decimal(stats["totals_by_type"]["lp_claim"]) == Decimal("2")
        assert Decimal(stats["totals_by_type"]["team_distribution"]) == Decimal("2")
        assert stats["retry_queue_depth"] == 0


# ============================================================
# Balance Tracking
# ============================================================


class TestTreasuryBalanceTracker:
    """Tests for the per-run balance tracker."""

    def test_balance_in_sol(self):
        assert TreasuryBalanceTracker(1_500_000_000).balance == Decimal("1.5")

    def test_can_cover_includes_fee_buffer(self):
        tracker = TreasuryBalanceTracker(1_000_010_000)
        assert tracker.can_cover(1_000_000_000) is True
        assert tracker.can_cover(1_000_000_001) is False

    def test_debit_includes_fee_buffer(self):
        tracker = TreasuryBalanceTracker(2_000_000_000)
        tracker.debit(1_000_000_000)
        assert tracker.balance_lamports == 999_990_000

    def test_require_raises(self):
        tracker = TreasuryBalanceTracker(1_000)
        with pytest.raises(InsufficientTreasuryBalanceError) as exc_info:
            tracker.require(1_000)

        error = exc_info.value
        assert error.http_status == 503
        assert error.required == Decimal("0.000011")

    def test_custom_buffer(self):
        tracker = TreasuryBalanceTracker(100, fee_buffer_lamports=0)
        tracker.require(100)
        tracker.debit(100)
        assert tracker.balance_lamports == 0
