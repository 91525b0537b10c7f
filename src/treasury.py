"""
RiftSettle - Treasury Audit Trail

Every treasury outflow (claims, escrow claims, distribution transfers) is
recorded as a write-once TreasuryPayment row.

Core Properties:
- Best-effort: recording never raises into the payout path. The money has
  already moved by the time the audit row is written.
- Durable retry: a failed write is parked in ``audit_retry_queue`` and
  retried with exponential backoff by flush_retry_queue(). Items that
  exhaust their attempts stay queued, flagged ``dead``, for manual review.
- Local balance tracking: a distribution run reads the treasury balance
  once and decrements it per transfer through TreasuryBalanceTracker.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from monitoring import metrics
from retry import calculate_delay
from settlement_errors import InsufficientTreasuryBalanceError
from settlement_models import (
    TX_FEE_BUFFER_LAMPORTS,
    PaymentType,
    TreasuryPayment,
    lamports_to_sol,
    parse_timestamp,
    short_wallet,
    utc_now,
)
from storage.base import LedgerStore, StorageError

logger = logging.getLogger(__name__)

PAYMENTS_TABLE = "treasury_payments"
RETRY_QUEUE_TABLE = "audit_retry_queue"


class TreasuryAuditLog:
    """Write-once payment records with a durable retry queue."""

    # Retry schedule
    DEFAULT_MAX_ATTEMPTS = 8
    BASE_DELAY_SECONDS = 30.0
    MAX_DELAY_SECONDS = 3600.0
    EXPONENTIAL_BASE = 2.0

    def __init__(
        self,
        store: LedgerStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self._clock = clock
        self.events: list[dict[str, Any]] = []

    def _emit_event(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append(
            {"event_type": event_type, "timestamp": self._clock().isoformat(), "data": data}
        )

    def _write(self, payment: TreasuryPayment) -> None:
        # A duplicate id means the row is already recorded
        self.store.insert_unique(PAYMENTS_TABLE, payment.payment_id, payment.to_dict())

    def record_payment(self, payment: TreasuryPayment) -> bool:
        """
        Record a payment. Never raises.

        Returns:
            True if the row was written, False if it was queued for retry
            (or could not even be queued)
        """
        try:
            self._write(payment)
            self._emit_event("payment_recorded", {"payment_id": payment.payment_id})
            return True
        except StorageError as e:
            logger.error(
                f"Failed to record {payment.payment_type.value} payment {payment.payment_id}, "
                f"queueing for retry: {e}"
            )

        now = self._clock()
        item = {
            "payment": payment.to_dict(),
            "attempts": 0,
            "next_attempt_at": now.isoformat(),
            "last_error": None,
            "dead": False,
            "queued_at": now.isoformat(),
        }
        try:
            self.store.upsert(RETRY_QUEUE_TABLE, payment.payment_id, item)
            self._emit_event("payment_queued", {"payment_id": payment.payment_id})
        except StorageError as e:
            logger.critical(
                f"Audit record for payment {payment.payment_id} lost "
                f"({payment.amount} SOL to {short_wallet(payment.recipient_wallet)}): {e}"
            )
        return False

    def flush_retry_queue(self) -> dict[str, int]:
        """
        Retry due queue items.

        Returns:
            Counts of written, rescheduled and dead items plus the
            remaining queue depth
        """
        now = self._clock()
        result = {"written": 0, "rescheduled": 0, "dead": 0, "remaining": 0}

        try:
            items = self.store.select_keys(RETRY_QUEUE_TABLE)
        except StorageError as e:
            logger.error(f"Failed to read audit retry queue: {e}")
            return result

        for key, item in items:
            if item.get("dead"):
                result["dead"] += 1
                continue

            due = parse_timestamp(item.get("next_attempt_at"))
            if due is not None and due > now:
                continue

            try:
                self._write(TreasuryPayment.from_dict(item["payment"]))
                self.store.delete(RETRY_QUEUE_TABLE, key)
                result["written"] += 1
                continue
            except StorageError as e:
                item["last_error"] = str(e)

            item["attempts"] = int(item.get("attempts", 0)) + 1
            if item["attempts"] >= self.max_attempts:
                item["dead"] = True
                result["dead"] += 1
                logger.critical(
                    f"Audit record {key} gave up after {item['attempts']} attempts: {item['last_error']}"
                )
            else:
                delay = calculate_delay(
                    item["attempts"],
                    self.BASE_DELAY_SECONDS,
                    self.EXPONENTIAL_BASE,
                    self.MAX_DELAY_SECONDS,
                    0.0,
                )
                item["next_attempt_at"] = (now + timedelta(seconds=delay)).isoformat()
                result["rescheduled"] += 1

            try:
                self.store.upsert(RETRY_QUEUE_TABLE, key, item)
            except StorageError as e:
                logger.error(f"Failed to update audit retry item {key}: {e}")

        result["remaining"] = self.queue_depth()
        if result["written"] or result["dead"]:
            logger.info(f"Audit retry flush: {result}")
        return result

    def queue_depth(self) -> int:
        try:
            depth = self.store.count(RETRY_QUEUE_TABLE)
        except StorageError:
            return 0
        metrics.set_gauge("audit_retry_queue_depth", depth)
        return depth

    def dead_items(self) -> list[dict[str, Any]]:
        return self.store.select(RETRY_QUEUE_TABLE, dead=True)

    def payments(
        self,
        recipient_wallet: str | None = None,
        rift_id: str | None = None,
        payment_type: PaymentType | None = None,
        limit: int = 100,
    ) -> list[TreasuryPayment]:
        """Recorded payments, newest first."""
        filters: dict[str, Any] = {}
        if recipient_wallet:
            filters["recipient_wallet"] = recipient_wallet
        if rift_id:
            filters["rift_id"] = rift_id
        if payment_type:
            filters["payment_type"] = payment_type.value

        rows = self.store.select(PAYMENTS_TABLE, **filters)
        rows.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return [TreasuryPayment.from_dict(r) for r in rows[:limit]]

    def get_statistics(self) -> dict[str, Any]:
        totals: dict[str, Decimal] = {}
        for payment in self.payments(limit=10**9):
            name = payment.payment_type.value
            totals[name] = totals.get(name, Decimal("0")) + payment.amount
        return {
            "totals_by_type": {name: str(total) for name, total in totals.items()},
            "retry_queue_depth": self.queue_depth(),
        }


class TreasuryBalanceTracker:
    """
    Treasury balance read once per run and decremented locally.

    Each transfer must leave room for the transaction fee buffer.
    """

    def __init__(self, balance_lamports: int, fee_buffer_lamports: int = TX_FEE_BUFFER_LAMPORTS):
        self.balance_lamports = balance_lamports
        self.fee_buffer_lamports = fee_buffer_lamports

    @property
    def balance(self) -> Decimal:
        return lamports_to_sol(self.balance_lamports)

    def can_cover(self, lamports: int) -> bool:
        return self.balance_lamports >= lamports + self.fee_buffer_lamports

    def require(self, lamports: int) -> None:
        if not self.can_cover(lamports):
            raise InsufficientTreasuryBalanceError(
                "Insufficient treasury balance",
                balance=self.balance,
                required=lamports_to_sol(lamports + self.fee_buffer_lamports),
                action="distribute",
            )

    def debit(self, lamports: int) -> None:
        self.balance_lamports -= lamports + self.fee_buffer_lamports
