"""
RiftSettle - Distribution Scheduler

Turns accrued profit into money owed to LPs and rift teams.

record_earnings() is the current model: pure ledger writes, users claim
later through the ClaimProcessor.

    Load      rift configs (current + legacy), LP positions, creators
    Aggregate realized profit per rift, gated by fees_enabled_at
    Fan out   team rift -> creator; fee rift -> LPs by share_percent
    Delta     owed minus already recorded, dust skipped
    Commit    Earning rows
    Referral  referrer cut of each recorded delta

distribute() is the legacy direct-pay path kept for backwards
compatibility: a fixed amount is split over the remaining owed amounts
and transferred straight to per-rift escrow accounts.

Both run under the treasury lock, so runs never overlap each other or a
claim spending from the same account.
"""

import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from accrual import AGGREGATOR_TABLE, TRADES_TABLE, AccrualEngine, IncrementalProfitAggregator, TradeHistory
from chain_client import ChainClient, ConfirmationStatus
from claims import EscrowDirectory
from monitoring import metrics
from referrals import ReferralEngine
from rift_config import ResolvedRiftConfig, RiftConfigRegistry
from scaling import LockManager
from settings import SettlementSettings, ShareAllocationPolicy
from settlement_errors import (
    ChainError,
    ClaimAlreadyInFlightError,
    InsufficientTreasuryBalanceError,
    ResetConfirmationError,
    SettlementError,
    ShareAllocationError,
    ValidationError,
)
from settlement_ledger import SettlementLedger
from settlement_models import (
    HUNDRED,
    MIN_TRANSFER_LAMPORTS,
    VIP_BONUS_PERCENT,
    ZERO,
    EarningType,
    LpPosition,
    PaymentStatus,
    PaymentType,
    RecipientType,
    ReferralSourceType,
    Trade,
    TreasuryPayment,
    format_sol,
    generate_id,
    lamports_to_sol,
    parse_timestamp,
    short_wallet,
    sol_to_lamports,
    to_decimal,
    utc_now,
)
from storage.base import LedgerStore, StorageError
from treasury import TreasuryAuditLog, TreasuryBalanceTracker

logger = logging.getLogger(__name__)

LP_POSITIONS_TABLE = "lp_positions"
TEAM_PAYMENTS_TABLE = "team_payments"
LP_PAYMENTS_TABLE = "lp_payments"
RESET_TOKENS_TABLE = "reset_tokens"
RESET_CONFIRMATIONS_TABLE = "reset_confirmations"

# Legacy distribute ignores rifts owed less than this
MIN_DISTRIBUTION_OWED = Decimal("0.0001")

# Share totals within this distance of 100 are taken as complete
SHARE_TOLERANCE = Decimal("0.01")

RESET_PHRASE = "RESET PROFIT DATA"
RESET_TOKEN_TTL = timedelta(minutes=5)

RUN_LOCK_TIMEOUT = 30.0
RUN_LOCK_TTL = 600.0


@dataclass
class DistributionItem:
    """One transfer attempted by the legacy distribute path."""

    rift_id: str
    type: str
    recipient: str
    wallet_address: str
    amount: Decimal
    vip_bonus: Decimal = ZERO
    signature: str | None = None
    error: str | None = None
    pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        result = {
            "rift_id": self.rift_id,
            "type": self.type,
            "recipient": self.recipient,
            "wallet_address": self.wallet_address,
            "amount": format_sol(self.amount),
        }
        if self.vip_bonus:
            result["vip_bonus"] = format_sol(self.vip_bonus)
        if self.signature:
            result["signature"] = self.signature
        if self.pending:
            result["pending"] = True
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class DistributionReport:
    """Result of a record-earnings or distribute run."""

    success: bool = True
    message: str = ""
    recorded: int = 0
    total_amount: Decimal = ZERO
    earnings: list[dict[str, Any]] = field(default_factory=list)
    distributions: list[DistributionItem] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        successful = [d for d in self.distributions if not d.error]
        return {
            "total": len(self.distributions),
            "successful": len(successful),
            "failed": len(self.distributions) - len(successful),
            "team_distributions": sum(1 for d in successful if d.type == "team"),
            "lp_distributions": sum(1 for d in successful if d.type == "lp"),
        }

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "total_amount": format_sol(self.total_amount),
        }
        if self.distributions:
            result["total_distributed"] = result.pop("total_amount")
            result["distributions"] = [d.to_dict() for d in self.distributions]
            result["summary"] = self.summary
        else:
            result["recorded"] = self.recorded
            result["earnings"] = self.earnings
        if self.errors:
            result["errors"] = self.errors
        return result


def allocate_shares(
    rift_id: str,
    positions: list[LpPosition],
    policy: ShareAllocationPolicy = ShareAllocationPolicy.REJECT,
) -> list[tuple[LpPosition, Decimal]]:
    """
    Validate a rift's LP shares and return (position, share_percent) pairs.

    Totals within SHARE_TOLERANCE of 100 pass unchanged. Under ``reject`` an
    over-allocated rift raises and an under-allocated one passes (the rest
    stays with the protocol). Under ``normalize`` any positive total is
    scaled to exactly 100.

    Raises:
        ShareAllocationError: Shares sum past 100 under the reject policy
    """
    positions = [p for p in positions if p.share_percent > 0]
    total = sum((p.share_percent for p in positions), ZERO)

    if not positions or abs(total - HUNDRED) <= SHARE_TOLERANCE:
        return [(p, p.share_percent) for p in positions]

    if policy == ShareAllocationPolicy.NORMALIZE:
        return [(p, p.share_percent * HUNDRED / total) for p in positions]

    if total > HUNDRED:
        raise ShareAllocationError(
            f"LP shares for rift {rift_id} sum to {total}%",
            rift_id=rift_id,
            total_share=total,
            action="allocate_shares",
        )
    return [(p, p.share_percent) for p in positions]


class DistributionScheduler:
    """Record-earnings and legacy distribute runs."""

    def __init__(
        self,
        store: LedgerStore,
        ledger: SettlementLedger,
        referrals: ReferralEngine,
        registry: RiftConfigRegistry,
        chain: ChainClient,
        lock_manager: LockManager,
        audit_log: TreasuryAuditLog,
        treasury_wallet: str | None,
        settings: SettlementSettings | None = None,
        is_vip: Callable[[str], bool] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.ledger = ledger
        self.referrals = referrals
        self.registry = registry
        self.chain = chain
        self.locks = lock_manager
        self.audit_log = audit_log
        self.treasury_wallet = treasury_wallet
        self.settings = settings or SettlementSettings()
        self._is_vip = is_vip or (lambda wallet: False)
        self._clock = clock

        self.history = TradeHistory(store, chain)
        self.engine = AccrualEngine()
        self.aggregator = IncrementalProfitAggregator(store, self.engine)
        self.escrows = EscrowDirectory(store)
        self.events: list[dict[str, Any]] = []

    @property
    def _run_lock(self) -> str:
        return f"treasury:{self.treasury_wallet or 'ledger'}"

    def _emit_event(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append({"event_type": event_type, "timestamp": self._clock().isoformat(), "data": data})

    # =========================================================================
    # Loading
    # =========================================================================

    def positions_by_rift(self) -> dict[str, list[LpPosition]]:
        try:
            rows = self.store.select(LP_POSITIONS_TABLE)
        except StorageError as e:
            logger.error(f"Failed to load LP positions: {e}")
            return {}
        grouped: dict[str, list[LpPosition]] = {}
        for row in rows:
            position = LpPosition.from_dict(row)
            grouped.setdefault(position.rift_id, []).append(position)
        return grouped

    def realized_profit(self, configs: dict[str, ResolvedRiftConfig]) -> dict[str, Decimal]:
        """
        Gated profit per rift.

        Up to FULL_RESUM_TRADE_BUDGET trades the whole history is re-summed;
        above it the incremental aggregator is used, rebuilt whenever a
        rift's fee gate moved.
        """
        if self.history.count() <= self.settings.full_resum_trade_budget:
            return self.engine.profit_by_rift(self.history.all(), configs)

        stale = self.aggregator.stale_rifts(configs)
        if stale:
            logger.info(f"Fee gate moved for {len(stale)} rifts, reconciling profit totals")
            self.aggregator.reconcile(self.history.all(), configs)
            totals = self.aggregator.totals()
        else:
            totals = self.aggregator.ingest(self.history.after(self.aggregator.watermark), configs)
        return {rift_id: total for rift_id, total in totals.items() if total > 0}

    def _shares(
        self, rift_id: str, positions: list[LpPosition], report: DistributionReport
    ) -> list[tuple[LpPosition, Decimal]] | None:
        try:
            return allocate_shares(rift_id, positions, self.settings.share_allocation_policy)
        except ShareAllocationError as e:
            logger.error(e.message)
            report.errors.append({"rift_id": rift_id, "error": e.message, "code": e.code})
            return None

    # =========================================================================
    # Record earnings
    # =========================================================================

    def record_earnings(self, recipient_type: str = "all") -> DistributionReport:
        """Record new Earning rows for everything owed but not yet recorded."""
        try:
            recipients = RecipientType(recipient_type)
        except ValueError:
            raise ValidationError(
                f"Invalid recipientType: {recipient_type}", field_name="recipientType"
            ) from None

        try:
            with self.locks.lock(self._run_lock, timeout=RUN_LOCK_TIMEOUT, ttl=RUN_LOCK_TTL):
                return self._record_earnings_locked(recipients)
        except TimeoutError:
            raise ClaimAlreadyInFlightError("Distribution already in progress", key=self._run_lock) from None

    def _ensure_configs(self, rift_ids: set[str], configs: dict[str, ResolvedRiftConfig]) -> bool:
        """Create the default config for rifts that have LPs or trades but no config yet."""
        created = False
        for rift_id in sorted(rift_ids - set(configs)):
            self.registry.get_or_create(rift_id, has_existing_trades=self.history.count(rift_id) > 0)
            created = True
        return created

    def _lp_profit(
        self,
        position: LpPosition,
        config: ResolvedRiftConfig,
        rift_profit: Decimal,
        rift_trades: dict[str, list[Trade]],
    ) -> Decimal:
        """
        Profit an LP takes part in: the rift's gated profit, narrowed to
        trades executed after the LP joined when that is later than the gate.
        """
        joined = parse_timestamp(position.created_at)
        if joined is None or (config.fees_enabled_at is not None and joined <= config.fees_enabled_at):
            return rift_profit
        if config.rift_id not in rift_trades:
            rift_trades[config.rift_id] = self.history.for_rift(config.rift_id)
        return self.engine.aggregate_profit(rift_trades[config.rift_id], joined)

    def _record_earnings_locked(self, recipients: RecipientType) -> DistributionReport:
        report = DistributionReport()

        self.history.sync()
        positions = self.positions_by_rift()
        configs = self.registry.load_all()
        profits = self.realized_profit(configs)
        # Rifts without a config show up ungated in profits
        unconfigured = {rift_id for rift_id in positions if rift_id} | set(profits)
        if self._ensure_configs(unconfigured, configs):
            configs = self.registry.load_all()
            profits = self.realized_profit(configs)
        creators = self.registry.creators()
        rift_trades: dict[str, list[Trade]] = {}

        for rift_id, config in sorted(configs.items()):
            if not config.fees_enabled:
                continue
            profit = profits.get(rift_id, ZERO)
            if profit <= 0:
                continue
            owed = self.engine.compute_owed(profit, config)

            if config.is_team_rift:
                if recipients == RecipientType.LP:
                    continue
                creator = creators.get(rift_id)
                if not creator:
                    logger.warning(f"Team rift {rift_id} has no known creator, skipping")
                    continue
                description = (
                    f"Team earnings from rift arb profits "
                    f"({config.lp_split_percent}% of {profit:.4f} SOL)"
                )
                self._record(report, creator, rift_id, EarningType.TEAM, owed, description)
            else:
                if recipients == RecipientType.TEAM:
                    continue
                shares = self._shares(rift_id, positions.get(rift_id, []), report)
                for position, share in shares or []:
                    lp_profit = self._lp_profit(position, config, profit, rift_trades)
                    lp_owed = self.engine.compute_owed(lp_profit, config) * share / HUNDRED
                    description = (
                        f"LP earnings ({share}% share of {config.lp_split_percent}% split "
                        f"= {lp_owed:.4f} SOL)"
                    )
                    if self._is_vip(position.wallet_address):
                        # Funded from the protocol share
                        lp_owed += lp_owed * VIP_BONUS_PERCENT / HUNDRED
                        description += f" + {VIP_BONUS_PERCENT}% VIP bonus"
                    self._record(report, position.wallet_address, rift_id, EarningType.LP, lp_owed, description)

        metrics.record_earnings(report.recorded)
        if report.recorded == 0:
            report.message = "No new earnings to record"
        else:
            report.message = f"Recorded {report.recorded} earnings totaling {report.total_amount:.4f} SOL"
        logger.info(report.message)
        return report

    def _record(
        self,
        report: DistributionReport,
        wallet: str,
        rift_id: str,
        earning_type: EarningType,
        owed: Decimal,
        description: str,
    ) -> None:
        delta = self.ledger.record_earning_delta(wallet, rift_id, earning_type, owed, description)
        if delta <= 0:
            return

        report.recorded += 1
        report.total_amount += delta
        report.earnings.append(
            {
                "wallet": wallet,
                "rift_id": rift_id,
                "type": earning_type.value,
                "amount": format_sol(delta),
                "description": description,
            }
        )

        source = (
            ReferralSourceType.RIFT_PROFIT if earning_type == EarningType.TEAM else ReferralSourceType.LP_PROFIT
        )
        self.referrals.attribute_referral(rift_id, wallet, delta, source)

    # =========================================================================
    # Legacy distribute
    # =========================================================================

    def distribute(self, total_amount: Any, recipient_type: str = "all") -> DistributionReport:
        """
        Split ``total_amount`` over remaining owed amounts and transfer it.

        Raises:
            ValidationError: Non-positive amount, or nothing owed
            InsufficientTreasuryBalanceError: Treasury holds less than total_amount
        """
        amount = to_decimal(total_amount)
        if amount <= 0:
            raise ValidationError("Invalid amount", field_name="totalAmount")
        try:
            recipients = RecipientType(recipient_type)
        except ValueError:
            raise ValidationError(
                f"Invalid recipientType: {recipient_type}", field_name="recipientType"
            ) from None
        if not self.treasury_wallet:
            raise SettlementError("Treasury not configured", component="distribution", action="distribute")

        try:
            with self.locks.lock(self._run_lock, timeout=RUN_LOCK_TIMEOUT, ttl=RUN_LOCK_TTL):
                return self._distribute_locked(amount, recipients)
        except TimeoutError:
            raise ClaimAlreadyInFlightError("Distribution already in progress", key=self._run_lock) from None

    def _paid_maps(self) -> tuple[dict[str, Decimal], dict[str, Decimal]]:
        team_paid: dict[str, Decimal] = {}
        try:
            for row in self.store.select(TEAM_PAYMENTS_TABLE):
                team_paid[row["rift_id"]] = team_paid.get(row["rift_id"], ZERO) + to_decimal(row.get("amount"))
        except StorageError as e:
            logger.error(f"Failed to load team payments: {e}")

        lp_paid: dict[str, Decimal] = {}
        try:
            for key, row in self.store.select_keys(LP_PAYMENTS_TABLE):
                lp_paid[key] = to_decimal(row.get("total_profit"))
        except StorageError as e:
            logger.error(f"Failed to load LP payments: {e}")

        return team_paid, lp_paid

    def _distribute_locked(self, total_amount: Decimal, recipients: RecipientType) -> DistributionReport:
        report = DistributionReport(total_amount=ZERO)

        tracker = TreasuryBalanceTracker(sol_to_lamports(self.chain.get_balance(self.treasury_wallet)))
        if tracker.balance < total_amount:
            raise InsufficientTreasuryBalanceError(
                f"Insufficient treasury balance. Have: {tracker.balance:.4f} SOL",
                balance=tracker.balance,
                required=total_amount,
                action="distribute",
            )

        self.history.sync()
        configs = self.registry.load_all()
        profits = self.engine.profit_by_rift(self.history.all(), configs)
        team_paid, lp_paid = self._paid_maps()
        positions = self.positions_by_rift()
        creators = self.registry.creators()

        # (rift_id, type, recipient, remaining owed, split)
        targets: list[tuple[str, str, str, Decimal, Decimal]] = []
        for rift_id, config in sorted(configs.items()):
            if not config.fees_enabled:
                continue
            profit = profits.get(rift_id, ZERO)
            if profit <= 0:
                continue
            owed = self.engine.compute_owed(profit, config)

            if config.is_team_rift:
                if recipients == RecipientType.LP:
                    continue
                creator = creators.get(rift_id)
                if not creator:
                    logger.warning(f"Team rift {rift_id} has no known creator, skipping")
                    continue
                remaining = max(ZERO, owed - team_paid.get(rift_id, ZERO))
                if remaining > MIN_DISTRIBUTION_OWED:
                    targets.append((rift_id, "team", creator, remaining, config.lp_split_percent))
            else:
                if recipients == RecipientType.TEAM:
                    continue
                for position, share in self._shares(rift_id, positions.get(rift_id, []), report) or []:
                    paid = lp_paid.get(position.key, ZERO)
                    remaining = max(ZERO, owed * share / HUNDRED - paid)
                    if remaining > MIN_DISTRIBUTION_OWED:
                        targets.append(
                            (rift_id, "lp", position.wallet_address, remaining, config.lp_split_percent)
                        )

        if not targets:
            raise ValidationError("No rifts with remaining owed amounts", field_name="totalAmount")

        total_owed = sum((t[3] for t in targets), ZERO)

        # Resolve destinations first so balances can be read in one batch
        ready: list[tuple[tuple[str, str, str, Decimal, Decimal], Decimal, str]] = []
        for target in targets:
            rift_id, kind, recipient, owed, _ = target
            share = owed / total_owed * total_amount
            if sol_to_lamports(share) < MIN_TRANSFER_LAMPORTS:
                report.distributions.append(
                    DistributionItem(rift_id, kind, recipient, "skipped", share, error="Amount too small")
                )
                continue

            escrow_kind = EarningType.TEAM if kind == "team" else EarningType.LP
            destination = self.escrows.address(rift_id, recipient, escrow_kind)
            if not destination:
                report.distributions.append(
                    DistributionItem(
                        rift_id, kind, recipient, "error", ZERO, error="No escrow account registered"
                    )
                )
                continue
            ready.append((target, share, destination))

        destination_balances = self.chain.get_balances(sorted({d for _, _, d in ready})) if ready else {}
        context = self.chain.get_transfer_context() if ready else None
        run_id = generate_id("dist")

        for index, (target, share, destination) in enumerate(ready):
            rift_id, kind, recipient, _, split = target
            item = DistributionItem(rift_id, kind, recipient, destination, share)

            if kind == "lp" and self._is_vip(recipient):
                item.vip_bonus = share * VIP_BONUS_PERCENT / HUNDRED
                logger.info(f"Adding {VIP_BONUS_PERCENT}% VIP bonus for {short_wallet(recipient)}")

            surcharge = self.chain.account_init_surcharge(destination_balances.get(destination, ZERO))
            lamports = sol_to_lamports(share + item.vip_bonus) + sol_to_lamports(surcharge)

            if not tracker.can_cover(lamports):
                item.error = "Insufficient treasury balance"
                report.distributions.append(item)
                metrics.record_distribution_transfer("skipped")
                continue

            try:
                signature = self.chain.send_transfer(
                    self.treasury_wallet,
                    destination,
                    lamports_to_sol(lamports),
                    context=context,
                    reference=f"{run_id}:{index}",
                )
                status = self.chain.confirm_transfer(signature, timeout=self.settings.confirm_timeout)
            except ChainError as e:
                item.error = e.message
                report.distributions.append(item)
                metrics.record_distribution_transfer("failed")
                continue

            if status == ConfirmationStatus.FAILED:
                item.error = "Transfer failed"
                report.distributions.append(item)
                metrics.record_distribution_transfer("failed")
                continue

            # An unconfirmed transfer is booked as paid so it is never sent twice
            item.signature = signature
            item.pending = status == ConfirmationStatus.UNKNOWN
            tracker.debit(lamports)
            destination_balances[destination] = destination_balances.get(destination, ZERO) + lamports_to_sol(
                lamports
            )
            self._book_distribution(item, split, lp_paid, status)
            report.distributions.append(item)
            report.total_amount += share + item.vip_bonus
            metrics.record_distribution_transfer("pending" if item.pending else "confirmed")

        summary = report.summary
        report.message = (
            f"Distributed {report.total_amount:.4f} SOL in {summary['successful']} transfers "
            f"({summary['failed']} failed)"
        )
        logger.info(report.message)
        return report

    def _book_distribution(
        self,
        item: DistributionItem,
        split: Decimal,
        lp_paid: dict[str, Decimal],
        status: ConfirmationStatus,
    ) -> None:
        """Payment rows, referral attribution and audit for a sent transfer."""
        now = self._clock().isoformat()
        payment_status = PaymentStatus.CONFIRMED if status == ConfirmationStatus.CONFIRMED else PaymentStatus.UNKNOWN

        try:
            if item.type == "team":
                self.store.insert(
                    TEAM_PAYMENTS_TABLE,
                    {"rift_id": item.rift_id, "amount": str(item.amount), "signature": item.signature, "created_at": now},
                )
            else:
                key = LpPosition(item.rift_id, item.recipient).key
                lp_paid[key] = lp_paid.get(key, ZERO) + item.amount
                self.store.upsert(
                    LP_PAYMENTS_TABLE,
                    key,
                    {
                        "rift_id": item.rift_id,
                        "wallet_address": item.recipient,
                        "total_profit": str(lp_paid[key]),
                        "last_updated": now,
                    },
                )
        except StorageError as e:
            logger.critical(
                f"Transfer {item.signature} sent but payment row for rift {item.rift_id} not written: {e}"
            )

        if item.type == "team":
            self.referrals.attribute_referral(item.rift_id, item.recipient, item.amount, ReferralSourceType.RIFT_PROFIT)
            description = f"Admin distribution to team wallet ({split}% split)"
            payment_type = PaymentType.TEAM_DISTRIBUTION
        else:
            self.referrals.attribute_referral(item.rift_id, item.recipient, item.amount, ReferralSourceType.LP_PROFIT)
            description = f"Admin distribution to LP wallet for {short_wallet(item.recipient)}"
            payment_type = PaymentType.LP_DISTRIBUTION

        self.audit_log.record_payment(
            TreasuryPayment(
                payment_type=payment_type,
                amount=item.amount + item.vip_bonus,
                recipient_wallet=item.wallet_address,
                rift_id=item.rift_id,
                source_description=description,
                signature=item.signature,
                status=payment_status,
            )
        )

    # =========================================================================
    # LP positions
    # =========================================================================

    def sync_lp_shares(self, rift_id: str, liquidity_by_wallet: dict[str, Any]) -> list[LpPosition]:
        """
        Recompute share_percent from liquidity and replace the rift's positions.

        Wallets with no liquidity, and stored positions missing from the
        input, are removed.
        """
        if not rift_id:
            raise ValidationError("riftId required", field_name="riftId")

        liquidity = {w: to_decimal(v) for w, v in liquidity_by_wallet.items() if to_decimal(v) > 0}
        total = sum(liquidity.values(), ZERO)
        now = self._clock().isoformat()

        self.registry.get_or_create(rift_id, has_existing_trades=self.history.count(rift_id) > 0)
        stored = dict(self.store.select_keys(LP_POSITIONS_TABLE, rift_id=rift_id))

        positions = []
        for wallet, amount in sorted(liquidity.items()):
            position = LpPosition(
                rift_id=rift_id,
                wallet_address=wallet,
                liquidity_amount=amount,
                share_percent=amount / total * HUNDRED,
                last_updated=now,
            )
            # A wallet already in the pool keeps its join time
            previous = stored.get(position.key)
            position.created_at = previous.get("created_at") if previous else now
            positions.append(position)
            self.store.upsert(LP_POSITIONS_TABLE, position.key, position.to_dict())

        removed = 0
        for key, row in stored.items():
            if row.get("wallet_address") not in liquidity:
                self.store.delete(LP_POSITIONS_TABLE, key)
                removed += 1

        logger.info(f"Synced {len(positions)} LP positions for rift {rift_id} ({removed} removed)")
        return positions

    def update_lp_position(
        self,
        rift_id: str,
        wallet: str,
        liquidity_amount: Any = None,
        share_percent: Any = None,
    ) -> LpPosition:
        if not rift_id:
            raise ValidationError("riftId required", field_name="riftId")
        if not wallet:
            raise ValidationError("Wallet required", field_name="wallet")

        existing = self.store.get(LP_POSITIONS_TABLE, LpPosition(rift_id, wallet).key)
        if existing:
            position = LpPosition.from_dict(existing)
        else:
            self.registry.get_or_create(rift_id, has_existing_trades=self.history.count(rift_id) > 0)
            position = LpPosition(rift_id, wallet, created_at=self._clock().isoformat())

        if share_percent is not None:
            share = to_decimal(share_percent, default=None)
            if share is None or share < 0 or share > HUNDRED:
                raise ValidationError("sharePercent must be between 0 and 100", field_name="sharePercent")
            position.share_percent = share
        if liquidity_amount is not None:
            liquidity = to_decimal(liquidity_amount, default=None)
            if liquidity is None or liquidity < 0:
                raise ValidationError("liquidityAmount must be non-negative", field_name="liquidityAmount")
            position.liquidity_amount = liquidity

        position.last_updated = self._clock().isoformat()
        self.store.upsert(LP_POSITIONS_TABLE, position.key, position.to_dict())
        return position

    # =========================================================================
    # Admin views
    # =========================================================================

    def profit_overview(self) -> dict[str, Any]:
        """Protocol-wide profit, owed, paid and remaining per rift."""
        configs = self.registry.load_all()
        profits = self.engine.profit_by_rift(self.history.all(), configs)
        overview = self.ledger.protocol_breakdown(configs, profits)
        overview["trade_count"] = self.history.count()
        return overview

    # =========================================================================
    # Reset profit data
    # =========================================================================

    @staticmethod
    def _hash_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def request_reset(self, admin_wallet: str) -> dict[str, Any]:
        """Issue a single-use confirmation token for a profit reset."""
        if not admin_wallet:
            raise ValidationError("Wallet required", field_name="wallet")

        token = secrets.token_urlsafe(24)
        expires_at = self._clock() + RESET_TOKEN_TTL
        self.store.upsert(
            RESET_TOKENS_TABLE,
            self._hash_token(token),
            {
                "admin_wallet": admin_wallet,
                "expires_at": expires_at.isoformat(),
                "used": False,
                "created_at": self._clock().isoformat(),
            },
        )
        logger.warning(f"Profit reset requested by {short_wallet(admin_wallet)}")
        return {
            "confirmation_token": token,
            "expires_at": expires_at.isoformat(),
            "phrase": RESET_PHRASE,
        }

    def confirm_reset(self, admin_wallet: str, token: str, phrase: str) -> dict[str, Any]:
        """
        Delete trade history and legacy payment rows.

        Raises:
            ResetConfirmationError: Wrong phrase, unknown, expired, reused or
                foreign token
        """
        if phrase != RESET_PHRASE:
            raise ResetConfirmationError(f'Type "{RESET_PHRASE}" to confirm', action="confirm_reset")
        if not token:
            raise ResetConfirmationError("Confirmation token required", action="confirm_reset")

        key = self._hash_token(token)
        row = self.store.get(RESET_TOKENS_TABLE, key)
        if row is None or row.get("admin_wallet") != admin_wallet:
            raise ResetConfirmationError("Invalid confirmation token", action="confirm_reset")
        if row.get("used"):
            raise ResetConfirmationError("Confirmation token already used", action="confirm_reset")
        expires_at = parse_timestamp(row.get("expires_at"))
        if expires_at is None or self._clock() > expires_at:
            raise ResetConfirmationError("Confirmation token expired", action="confirm_reset")
        if not self.store.update_where(RESET_TOKENS_TABLE, key, {"used": False}, {"used": True}):
            raise ResetConfirmationError("Confirmation token already used", action="confirm_reset")

        try:
            with self.locks.lock(self._run_lock, timeout=RUN_LOCK_TIMEOUT, ttl=RUN_LOCK_TTL):
                deleted = {
                    "trades": self.store.delete_where(TRADES_TABLE),
                    "team_payments": self.store.delete_where(TEAM_PAYMENTS_TABLE),
                    "lp_payments": self.store.delete_where(LP_PAYMENTS_TABLE),
                }
                self.store.delete_where(AGGREGATOR_TABLE)
        except TimeoutError:
            raise ClaimAlreadyInFlightError("Distribution already in progress", key=self._run_lock) from None

        confirmed_at = self._clock().isoformat()
        self.store.insert(
            RESET_CONFIRMATIONS_TABLE,
            {"admin_wallet": admin_wallet, "deleted": deleted, "confirmed_at": confirmed_at},
        )
        self._emit_event("profit_reset", {"admin_wallet": admin_wallet, "deleted": deleted})
        metrics.increment("profit_resets_total")
        logger.warning(f"Profit data reset by {short_wallet(admin_wallet)}: {deleted}")

        return {"success": True, "message": "All profit data has been reset", "deleted": deleted}
