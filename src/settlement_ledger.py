"""
RiftSettle - Settlement Ledger

The single source of truth for "how much can this wallet claim right now":

    claimable(wallet, rift, type) = max(0, sum(earnings) - claimed)

Earnings are append-only rows; a wallet's earned total for a key is the
sum of its rows and is never overwritten. The claimed total is one
cumulative row per key, advanced with compare-and-swap so that it can
never pass the earned total. Referral earnings and claims follow the same
earned-minus-claimed pattern per referrer.

Read paths degrade: a failed store read is logged and treated as "no
rows" so dashboards stay available. Write paths raise.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from rift_config import ResolvedRiftConfig
from settlement_errors import InsufficientClaimableError, ValidationError
from settlement_models import (
    DUST_THRESHOLD,
    ZERO,
    Claim,
    Earning,
    EarningType,
    ReferralClaim,
    ReferralEarning,
    format_sol,
    to_decimal,
    utc_now,
)
from storage.base import LedgerStore, StorageError, StorageWriteError

logger = logging.getLogger(__name__)

EARNINGS_TABLE = "earnings"
CLAIMS_TABLE = "claims"
REFERRAL_EARNINGS_TABLE = "referral_earnings"
REFERRAL_CLAIMS_TABLE = "referral_claims"

# Attempts before a contended compare-and-swap gives up
CAS_ATTEMPTS = 10


def _fmt(amount: Decimal) -> str:
    return format_sol(amount)


class SettlementLedger:
    """Earned vs claimed bookkeeping over the ledger store."""

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def _select(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        """Degrading read: a store failure yields no rows."""
        try:
            return self.store.select(table, **filters)
        except StorageError as e:
            logger.error(f"Ledger read from {table} failed, treating as empty: {e}")
            return []

    # =========================================================================
    # Earnings
    # =========================================================================

    def record_earning(
        self,
        wallet: str,
        rift_id: str,
        earning_type: EarningType,
        amount: Decimal,
        description: str = "",
    ) -> Earning:
        """Append an earning row."""
        if not wallet:
            raise ValidationError("Wallet required", field_name="wallet")
        if not rift_id:
            raise ValidationError("riftId required", field_name="riftId")
        if amount <= 0:
            raise ValidationError("Earning amount must be positive", field_name="amount")

        earning = Earning(
            wallet=wallet,
            rift_id=rift_id,
            earning_type=earning_type,
            amount=amount,
            description=description,
            created_at=self._clock().isoformat(),
        )
        self.store.insert(EARNINGS_TABLE, earning.to_dict(), key=earning.earning_id)
        return earning

    def earned(self, wallet: str, rift_id: str, earning_type: EarningType) -> Decimal:
        rows = self._select(
            EARNINGS_TABLE, wallet=wallet, rift_id=rift_id, earning_type=earning_type.value
        )
        return sum((to_decimal(r.get("amount")) for r in rows), ZERO)

    def recorded_total(self, wallet: str, rift_id: str, earning_type: EarningType) -> Decimal:
        """
        Cumulative amount already recorded for the key.

        Strict read: a store failure raises instead of reading as zero, or
        the next delta would re-record everything already owed.
        """
        rows = self.store.select(
            EARNINGS_TABLE, wallet=wallet, rift_id=rift_id, earning_type=earning_type.value
        )
        return sum((to_decimal(r.get("amount")) for r in rows), ZERO)

    def record_earning_delta(
        self,
        wallet: str,
        rift_id: str,
        earning_type: EarningType,
        owed: Decimal,
        description: str = "",
    ) -> Decimal:
        """
        Record only what is owed beyond what was already recorded.

        Returns the recorded delta, or zero when the delta is at or below
        the dust threshold. Running the same computation twice records
        nothing the second time.
        """
        delta = max(ZERO, owed - self.recorded_total(wallet, rift_id, earning_type))
        if delta <= DUST_THRESHOLD:
            return ZERO
        self.record_earning(wallet, rift_id, earning_type, delta, description)
        return delta

    # =========================================================================
    # Claims
    # =========================================================================

    def _claim_row(self, wallet: str, rift_id: str, earning_type: EarningType) -> dict[str, Any] | None:
        return self.store.get(CLAIMS_TABLE, Claim.make_key(wallet, rift_id, earning_type))

    def claimed(self, wallet: str, rift_id: str, earning_type: EarningType) -> Decimal:
        try:
            row = self._claim_row(wallet, rift_id, earning_type)
        except StorageError as e:
            logger.error(f"Claim read failed for {wallet[:8]}.../{rift_id}: {e}")
            return ZERO
        return to_decimal(row.get("amount_claimed")) if row else ZERO

    def claimable(self, wallet: str, rift_id: str, earning_type: EarningType) -> Decimal:
        return max(ZERO, self.earned(wallet, rift_id, earning_type) - self.claimed(wallet, rift_id, earning_type))

    def mark_claimed(
        self,
        wallet: str,
        rift_id: str,
        earning_type: EarningType,
        amount: Decimal,
        signature: str | None = None,
    ) -> Claim:
        """
        Advance the cumulative claimed amount by ``amount``.

        Raises:
            InsufficientClaimableError: If claimed would exceed earned
            StorageWriteError: If the compare-and-swap stays contended
        """
        if amount <= 0:
            raise ValidationError("Claim amount must be positive", field_name="amount")

        key = Claim.make_key(wallet, rift_id, earning_type)
        earned = self.earned(wallet, rift_id, earning_type)

        for _ in range(CAS_ATTEMPTS):
            row = self.store.get(CLAIMS_TABLE, key)
            previous = to_decimal(row.get("amount_claimed")) if row else ZERO
            total = previous + amount

            if total > earned:
                raise InsufficientClaimableError(
                    "Insufficient claimable balance",
                    claimable=max(ZERO, earned - previous),
                    required=amount,
                    action="mark_claimed",
                )

            claim = Claim(
                wallet=wallet,
                rift_id=rift_id,
                earning_type=earning_type,
                amount_claimed=total,
                last_claim_at=self._clock().isoformat(),
                signature=signature if signature else (row or {}).get("signature"),
            )

            if row is None:
                if self.store.insert_unique(CLAIMS_TABLE, key, claim.to_dict()):
                    return claim
            elif self.store.update_where(
                CLAIMS_TABLE,
                key,
                {"amount_claimed": row.get("amount_claimed")},
                claim.to_dict(),
            ):
                return claim

        raise StorageWriteError(f"Claim update for {key} stayed contended")

    def unmark_claimed(
        self, wallet: str, rift_id: str, earning_type: EarningType, amount: Decimal
    ) -> Decimal:
        """Roll back a reservation made by mark_claimed. Returns the new cumulative total."""
        key = Claim.make_key(wallet, rift_id, earning_type)

        for _ in range(CAS_ATTEMPTS):
            row = self.store.get(CLAIMS_TABLE, key)
            if row is None:
                return ZERO
            total = max(ZERO, to_decimal(row.get("amount_claimed")) - amount)
            if self.store.update_where(
                CLAIMS_TABLE,
                key,
                {"amount_claimed": row.get("amount_claimed")},
                {"amount_claimed": str(total)},
            ):
                return total

        raise StorageWriteError(f"Claim rollback for {key} stayed contended")

    def attach_claim_signature(
        self, wallet: str, rift_id: str, earning_type: EarningType, signature: str
    ) -> bool:
        return self.store.update_where(
            CLAIMS_TABLE,
            Claim.make_key(wallet, rift_id, earning_type),
            {},
            {"signature": signature, "last_claim_at": self._clock().isoformat()},
        )

    # =========================================================================
    # Referral side
    # =========================================================================

    def record_referral_earning(self, earning: ReferralEarning) -> ReferralEarning:
        if earning.amount <= 0:
            raise ValidationError("Referral earning must be positive", field_name="amount")
        self.store.insert(REFERRAL_EARNINGS_TABLE, earning.to_dict(), key=earning.earning_id)
        return earning

    def referral_earned(self, wallet: str) -> Decimal:
        rows = self._select(REFERRAL_EARNINGS_TABLE, referrer_wallet=wallet)
        return sum((to_decimal(r.get("amount")) for r in rows), ZERO)

    def referral_claimed(self, wallet: str) -> Decimal:
        rows = self._select(REFERRAL_CLAIMS_TABLE, referrer_wallet=wallet)
        return sum((to_decimal(r.get("amount")) for r in rows), ZERO)

    def referral_claimable(self, wallet: str) -> Decimal:
        return max(ZERO, self.referral_earned(wallet) - self.referral_claimed(wallet))

    def mark_referral_claimed(
        self, wallet: str, amount: Decimal, signature: str | None = None
    ) -> ReferralClaim:
        """
        Append a referral claim row.

        Callers serialize per wallet (the claim lock); the check here keeps
        the claimed total from passing the earned total.
        """
        if amount <= 0:
            raise ValidationError("Claim amount must be positive", field_name="amount")

        available = self.referral_claimable(wallet)
        if amount > available:
            raise InsufficientClaimableError(
                "Insufficient referral balance",
                claimable=available,
                required=amount,
                action="mark_referral_claimed",
            )

        claim = ReferralClaim(
            referrer_wallet=wallet,
            amount=amount,
            signature=signature,
            created_at=self._clock().isoformat(),
        )
        self.store.insert(REFERRAL_CLAIMS_TABLE, claim.to_dict(), key=claim.claim_id)
        return claim

    def release_referral_claim(self, claim_id: str) -> bool:
        return self.store.delete(REFERRAL_CLAIMS_TABLE, claim_id)

    def attach_referral_signature(self, claim_id: str, signature: str) -> bool:
        return self.store.update_where(REFERRAL_CLAIMS_TABLE, claim_id, {}, {"signature": signature})

    # =========================================================================
    # Views
    # =========================================================================

    def claim_keys(self, wallet: str) -> list[tuple[str, EarningType]]:
        """Every (rift, type) the wallet has earnings under, in first-earned order."""
        keys: list[tuple[str, EarningType]] = []
        for row in self._select(EARNINGS_TABLE, wallet=wallet):
            key = (row["rift_id"], EarningType(row["earning_type"]))
            if key not in keys:
                keys.append(key)
        return keys

    def breakdown(
        self,
        wallet: str,
        rift_id: str | None = None,
        earning_type: EarningType | None = None,
    ) -> dict[str, Any]:
        """
        Per-rift and aggregate earned/claimed/claimable for a wallet.

        The referral section is included unless the view is narrowed to a
        rift or earning type.
        """
        filters: dict[str, Any] = {"wallet": wallet}
        if rift_id:
            filters["rift_id"] = rift_id
        if earning_type:
            filters["earning_type"] = earning_type.value

        earned: dict[tuple[str, str], Decimal] = {}
        for row in self._select(EARNINGS_TABLE, **filters):
            key = (row["rift_id"], row["earning_type"])
            earned[key] = earned.get(key, ZERO) + to_decimal(row.get("amount"))

        claimed: dict[tuple[str, str], Decimal] = {}
        for row in self._select(CLAIMS_TABLE, **filters):
            claimed[(row["rift_id"], row["earning_type"])] = to_decimal(row.get("amount_claimed"))

        rifts = []
        total_earned = total_claimed = total_claimable = ZERO
        for (rid, etype) in sorted(set(earned) | set(claimed)):
            e = earned.get((rid, etype), ZERO)
            c = claimed.get((rid, etype), ZERO)
            available = max(ZERO, e - c)
            total_earned += e
            total_claimed += c
            total_claimable += available
            rifts.append(
                {
                    "rift_id": rid,
                    "earning_type": etype,
                    "earned": _fmt(e),
                    "claimed": _fmt(c),
                    "claimable": _fmt(available),
                }
            )

        result: dict[str, Any] = {
            "wallet": wallet,
            "rifts": rifts,
            "totals": {
                "earned": _fmt(total_earned),
                "claimed": _fmt(total_claimed),
                "claimable": _fmt(total_claimable),
            },
        }

        grand_total = total_claimable
        if rift_id is None and earning_type is None:
            ref_earned = self.referral_earned(wallet)
            ref_claimed = self.referral_claimed(wallet)
            ref_claimable = max(ZERO, ref_earned - ref_claimed)
            grand_total += ref_claimable
            result["referral"] = {
                "earned": _fmt(ref_earned),
                "claimed": _fmt(ref_claimed),
                "claimable": _fmt(ref_claimable),
            }

        result["grand_total_claimable"] = _fmt(grand_total)
        return result

    def recorded_by_rift(self) -> dict[str, Decimal]:
        """Total earnings recorded per rift across all wallets."""
        totals: dict[str, Decimal] = {}
        for row in self._select(EARNINGS_TABLE):
            totals[row["rift_id"]] = totals.get(row["rift_id"], ZERO) + to_decimal(row.get("amount"))
        return totals

    def protocol_breakdown(
        self,
        configs: dict[str, ResolvedRiftConfig],
        profit_by_rift: dict[str, Decimal],
        paid_by_rift: dict[str, Decimal] | None = None,
    ) -> dict[str, Any]:
        """
        Admin view: realized profit, recipient vs protocol share, already
        paid (recorded) and remaining owed per rift.
        """
        paid_by_rift = paid_by_rift if paid_by_rift is not None else self.recorded_by_rift()

        rows = []
        totals = {"profit": ZERO, "owed": ZERO, "protocol": ZERO, "paid": ZERO, "remaining": ZERO}
        for rift_id in sorted(set(configs) | set(profit_by_rift)):
            config = configs.get(rift_id)
            profit = profit_by_rift.get(rift_id, ZERO)
            if config is not None and config.fees_enabled:
                owed = profit * config.lp_split_percent / 100
            else:
                owed = ZERO
            protocol = profit - owed
            paid = paid_by_rift.get(rift_id, ZERO)
            remaining = max(ZERO, owed - paid)

            totals["profit"] += profit
            totals["owed"] += owed
            totals["protocol"] += protocol
            totals["paid"] += paid
            totals["remaining"] += remaining

            rows.append(
                {
                    "rift_id": rift_id,
                    "is_team_rift": config.is_team_rift if config else False,
                    "lp_split_percent": str(config.lp_split_percent) if config else None,
                    "fees_enabled": config.fees_enabled if config else False,
                    "legacy": config.legacy if config else False,
                    "profit": _fmt(profit),
                    "owed": _fmt(owed),
                    "protocol_share": _fmt(protocol),
                    "paid": _fmt(paid),
                    "remaining_owed": _fmt(remaining),
                }
            )

        return {
            "rifts": rows,
            "totals": {name: _fmt(value) for name, value in totals.items()},
        }
