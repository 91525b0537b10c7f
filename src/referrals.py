"""
RiftSettle - Referral Engine

Referrers earn a tiered cut of what their referred wallets earn:

- rift_profit: the team earnings of a rift created by a referred wallet
- lp_profit: the LP earnings of a referred wallet

The cut is taken from the *delta* recorded in a run, never from a
cumulative total, so re-running a distribution cannot pay a referrer
twice. Tier rates:

    VIP referrer          10%
    10+ referrals         10%
    5-9 referrals          8%
    otherwise              5%

A failed tier lookup falls back to the 5% base rate and the earning row
is flagged with ``tier_fallback`` so it can be re-examined later.

Usage:
    engine = ReferralEngine(store, ledger, is_vip=policy.is_vip)
    engine.register_referral(referrer, referred)
    engine.attribute_referral(rift_id, recipient, delta, ReferralSourceType.LP_PROFIT)
"""

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from settlement_errors import ValidationError
from settlement_ledger import SettlementLedger
from settlement_models import (
    DUST_THRESHOLD,
    HUNDRED,
    REFERRAL_BASE_RATE,
    REFERRAL_MID_RATE,
    REFERRAL_MID_TIER_COUNT,
    REFERRAL_TOP_RATE,
    REFERRAL_TOP_TIER_COUNT,
    VIP_REFERRAL_RATE,
    ReferralEarning,
    ReferralLink,
    ReferralSourceType,
    ReferredRift,
    format_sol,
    quantize_sol,
    short_wallet,
)
from storage.base import LedgerStore, StorageError

logger = logging.getLogger(__name__)

REFERRALS_TABLE = "referrals"
REFERRED_RIFTS_TABLE = "referred_rifts"


def rate_for_count(count: int) -> Decimal:
    if count >= REFERRAL_TOP_TIER_COUNT:
        return REFERRAL_TOP_RATE
    if count >= REFERRAL_MID_TIER_COUNT:
        return REFERRAL_MID_RATE
    return REFERRAL_BASE_RATE


class ReferralEngine:
    """Referral registration, tier lookup and per-delta attribution."""

    def __init__(
        self,
        store: LedgerStore,
        ledger: SettlementLedger,
        is_vip: Callable[[str], bool] | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self._is_vip = is_vip or (lambda wallet: False)

    # =========================================================================
    # Registration
    # =========================================================================

    def register_referral(self, referrer_wallet: str, referred_wallet: str) -> tuple[bool, dict[str, Any]]:
        """
        Link a referred wallet to its referrer. The first referrer wins.

        Returns:
            Tuple of (success, result dict)
        """
        if not referrer_wallet or not referred_wallet:
            raise ValidationError("Referred wallet and referral code required", field_name="referredWallet")

        if referrer_wallet == referred_wallet:
            return False, {"error": "Cannot refer yourself"}

        link = ReferralLink(referrer_wallet=referrer_wallet, referred_wallet=referred_wallet)
        if not self.store.insert_unique(REFERRALS_TABLE, referred_wallet, link.to_dict()):
            return False, {"error": "Wallet already has a referrer", "already_referred": True}

        logger.info(
            f"Referral recorded: {short_wallet(referred_wallet)} referred by {short_wallet(referrer_wallet)}"
        )
        return True, {
            "referral": link.to_dict(),
            "message": f"Referral recorded: {referred_wallet} was referred by {referrer_wallet}",
        }

    def referrer_of(self, wallet: str) -> str | None:
        row = self.store.get(REFERRALS_TABLE, wallet)
        return row.get("referrer_wallet") if row else None

    def register_referred_rift(self, rift_id: str, creator_wallet: str) -> ReferredRift | None:
        """Attribute a newly created rift to its creator's referrer, if any."""
        referrer = self.referrer_of(creator_wallet)
        if not referrer:
            return None

        referred = ReferredRift(rift_id=rift_id, referrer_wallet=referrer, creator_wallet=creator_wallet)
        if not self.store.insert_unique(REFERRED_RIFTS_TABLE, rift_id, referred.to_dict()):
            existing = self.store.get(REFERRED_RIFTS_TABLE, rift_id) or {}
            return ReferredRift(
                rift_id=rift_id,
                referrer_wallet=existing.get("referrer_wallet", referrer),
                creator_wallet=existing.get("creator_wallet"),
            )
        return referred

    # =========================================================================
    # Tiers
    # =========================================================================

    def referral_count(self, referrer_wallet: str) -> int:
        return self.store.count(REFERRALS_TABLE, referrer_wallet=referrer_wallet)

    def tier_rate(self, referrer_wallet: str) -> tuple[Decimal, bool]:
        """
        Referral percentage for a referrer.

        Returns:
            Tuple of (rate, fallback) where fallback is True when the
            referral count could not be read and the base rate was used
        """
        if self._is_vip(referrer_wallet):
            return VIP_REFERRAL_RATE, False
        try:
            return rate_for_count(self.referral_count(referrer_wallet)), False
        except StorageError as e:
            logger.warning(
                f"Tier lookup failed for {short_wallet(referrer_wallet)}, using base rate: {e}"
            )
            return REFERRAL_BASE_RATE, True

    # =========================================================================
    # Attribution
    # =========================================================================

    def _find_referrer(self, rift_id: str, recipient: str, source_type: ReferralSourceType) -> str | None:
        if source_type == ReferralSourceType.RIFT_PROFIT:
            row = self.store.get(REFERRED_RIFTS_TABLE, rift_id)
            return row.get("referrer_wallet") if row else None
        return self.referrer_of(recipient)

    def attribute_referral(
        self,
        rift_id: str,
        recipient: str,
        delta: Decimal,
        source_type: ReferralSourceType,
    ) -> ReferralEarning | None:
        """
        Record the referrer's cut of a freshly recorded delta.

        Failures are logged and swallowed: a missing referral cut must not
        undo the recipient's own earning.
        """
        if delta <= 0:
            return None

        try:
            referrer = self._find_referrer(rift_id, recipient, source_type)
            if not referrer:
                return None

            rate, fallback = self.tier_rate(referrer)
            amount = quantize_sol(delta * rate / HUNDRED)
            if amount < DUST_THRESHOLD:
                return None

            earning = ReferralEarning(
                referrer_wallet=referrer,
                source_type=source_type,
                source_id=rift_id,
                amount=amount,
                rate=rate,
                referred_wallet=recipient if source_type == ReferralSourceType.LP_PROFIT else None,
                tier_fallback=fallback,
            )
            self.ledger.record_referral_earning(earning)
        except StorageError as e:
            logger.error(f"Failed to record referral earning for rift {rift_id}: {e}")
            return None

        logger.info(
            f"Recorded {source_type.value} referral earning: {amount:.6f} SOL ({rate}%) "
            f"for referrer {short_wallet(referrer)}"
        )
        return earning

    # =========================================================================
    # Stats
    # =========================================================================

    def referral_stats(self, wallet: str) -> dict[str, Any]:
        """Dashboard summary for a referrer."""
        if not wallet:
            raise ValidationError("Wallet required", field_name="wallet")

        referrals = self.store.select(REFERRALS_TABLE, referrer_wallet=wallet)
        earnings = self.store.select("referral_earnings", referrer_wallet=wallet)
        referred_rifts = self.store.select(REFERRED_RIFTS_TABLE, referrer_wallet=wallet)

        # Referred wallets that have generated at least one earning
        active = {e["referred_wallet"] for e in earnings if e.get("referred_wallet")}
        earning_rifts = {
            e["source_id"] for e in earnings if e.get("source_type") == ReferralSourceType.RIFT_PROFIT.value
        }
        for rift in referred_rifts:
            if rift["rift_id"] in earning_rifts and rift.get("creator_wallet"):
                active.add(rift["creator_wallet"])

        is_vip = self._is_vip(wallet)
        count = len(referrals)
        rate, _ = self.tier_rate(wallet)

        if is_vip or count >= REFERRAL_TOP_TIER_COUNT:
            next_refs, next_rate = None, None
        elif count >= REFERRAL_MID_TIER_COUNT:
            next_refs, next_rate = REFERRAL_TOP_TIER_COUNT, str(REFERRAL_TOP_RATE)
        else:
            next_refs, next_rate = REFERRAL_MID_TIER_COUNT, str(REFERRAL_MID_RATE)

        earned = self.ledger.referral_earned(wallet)
        claimed = self.ledger.referral_claimed(wallet)

        return {
            "wallet": wallet,
            "total_referrals": count,
            "active_referrals": len(active),
            "referred_rifts": len(referred_rifts),
            "current_rate": str(rate),
            "next_tier_refs": next_refs,
            "next_tier_rate": next_rate,
            "is_vip": is_vip,
            "referred_by": self.referrer_of(wallet),
            "total_earned": format_sol(earned),
            "total_claimed": format_sol(claimed),
            "claimable": format_sol(max(earned - claimed, Decimal("0"))),
        }
