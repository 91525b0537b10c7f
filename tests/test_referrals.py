"""
Tests for the referral engine (src/referrals.py)

Tests cover:
- Referral registration (first referrer wins, no self-referral)
- Tier rates by referral count and the VIP rate
- Attribution of referral cuts for team and LP earnings
- Tier lookup fallback when the count cannot be read
- Referral dashboard stats
"""

import sys
from decimal import Decimal

import pytest

sys.path.insert(0, "src")

from referrals import REFERRALS_TABLE, rate_for_count
from settlement_errors import ValidationError
from settlement_models import ReferralSourceType
from storage.base import StorageReadError

from conftest import CREATOR, LP_A, LP_B, REFERRER, VIP


def refer_many(referrals, referrer, count):
    for i in range(count):
        ok, _ = referrals.register_referral(referrer, f"ReferredWallet{i:04d}")
        assert ok


class TestRegistration:
    """Tests for linking referred wallets."""

    def test_register(self, referrals):
        ok, result = referrals.register_referral(REFERRER, LP_A)
        assert ok is True
        assert result["referral"]["referrer_wallet"] == REFERRER
        assert referrals.referrer_of(LP_A) == REFERRER

    def test_first_referrer_wins(self, referrals):
        referrals.register_referral(REFERRER, LP_A)
        ok, result = referrals.register_referral(LP_B, LP_A)
        assert ok is False
        assert result["already_referred"] is True
        assert referrals.referrer_of(LP_A) == REFERRER

    def test_cannot_refer_self(self, referrals):
        ok, result = referrals.register_referral(LP_A, LP_A)
        assert ok is False
        assert result["error"] == "Cannot refer yourself"

    def test_missing_wallets_rejected(self, referrals):
        with pytest.raises(ValidationError):
            referrals.register_referral("", LP_A)

    def test_referred_rift_follows_creator_referrer(self, referrals):
        referrals.register_referral(REFERRER, CREATOR)
        referred = referrals.register_referred_rift("r1", CREATOR)
        assert referred.referrer_wallet == REFERRER

    def test_rift_of_unreferred_creator(self, referrals):
        assert referrals.register_referred_rift("r1", CREATOR) is None


class TestTiers:
    """Tests for referral tier rates."""

    @pytest.mark.parametrize(
        "count,rate",
        [(0, "5"), (4, "5"), (5, "8"), (9, "8"), (10, "10"), (50, "10")],
    )
    def test_rate_for_count(self, count, rate):
        assert rate_for_count(count) == Decimal(rate)

    def test_tier_from_stored_referrals(self, referrals):
        refer_many(referrals, REFERRER, 5)
        assert referrals.tier_rate(REFERRER) == (Decimal("8"), False)

    def test_vip_rate(self, referrals):
        assert referrals.tier_rate(VIP) == (Decimal("10"), False)

    def test_fallback_when_count_unreadable(self, referrals, store, monkeypatch):
        def broken_count(table, **filters):
            raise StorageReadError("timeout")

        monkeypatch.setattr(store, "count", broken_count)
        assert referrals.tier_rate(REFERRER) == (Decimal("5"), True)


class TestAttribution:
    """Tests for referral cuts of recorded deltas."""

    def test_lp_profit_uses_wallet_referrer(self, referrals, ledger):
        referrals.register_referral(REFERRER, LP_A)
        earning = referrals.attribute_referral("r1", LP_A, Decimal("2"), ReferralSourceType.LP_PROFIT)

        assert earning.amount == Decimal("0.1")
        assert earning.referred_wallet == LP_A
        assert ledger.referral_earned(REFERRER) == Decimal("0.1")

    def test_rift_profit_uses_rift_referrer(self, referrals, ledger):
        referrals.register_referral(REFERRER, CREATOR)
        referrals.register_referred_rift("r1", CREATOR)

        earning = referrals.attribute_referral("r1", CREATOR, Decimal("10"), ReferralSourceType.RIFT_PROFIT)

        assert earning.source_type == ReferralSourceType.RIFT_PROFIT
        assert earning.referred_wallet is None
        assert ledger.referral_earned(REFERRER) == Decimal("0.5")

    def test_no_referrer_no_earning(self, referrals):
        assert referrals.attribute_referral("r1", LP_B, Decimal("1"), ReferralSourceType.LP_PROFIT) is None

    def test_dust_cut_skipped(self, referrals, ledger):
        referrals.register_referral(REFERRER, LP_A)
        assert referrals.attribute_referral("r1", LP_A, Decimal("0.00001"), ReferralSourceType.LP_PROFIT) is None

    def test_fallback_flag_recorded(self, referrals, store, monkeypatch):
        referrals.register_referral(REFERRER, LP_A)

        def broken_count(table, **filters):
            raise StorageReadError("timeout")

        monkeypatch.setattr(store, "count", broken_count)
        earning = referrals.attribute_referral("r1", LP_A, Decimal("1"), ReferralSourceType.LP_PROFIT)
        assert earning.tier_fallback is True
        assert earning.rate == Decimal("5")

    def test_storage_failure_is_swallowed(self, referrals, store, monkeypatch):
        referrals.register_referral(REFERRER, LP_A)

        def broken_get(table, key):
            raise StorageReadError("down")

        monkeypatch.setattr(store, "get", broken_get)
        assert referrals.attribute_referral("r1", LP_A, Decimal("1"), ReferralSourceType.LP_PROFIT) is None


class TestStats:
    """Tests for the referral dashboard."""

    def test_stats(self, referrals, store):
        referrals.register_referral(REFERRER, LP_A)
        referrals.register_referral(REFERRER, LP_B)
        referrals.attribute_referral("r1", LP_A, Decimal("2"), ReferralSourceType.LP_PROFIT)

        stats = referrals.referral_stats(REFERRER)

        assert stats["total_referrals"] == 2
        assert stats["active_referrals"] == 1
        assert stats["current_rate"] == "5"
        assert stats["next_tier_refs"] == 5
        assert stats["next_tier_rate"] == "8"
        assert stats["total_earned"] == "0.100000000"
        assert stats["claimable"] == "0.100000000"
        assert store.count(REFERRALS_TABLE) == 2

    def test_top_tier_has_no_next(self, referrals):
        refer_many(referrals, REFERRER, 10)
        stats = referrals.referral_stats(REFERRER)
        assert stats["current_rate"] == "10"
        assert stats["next_tier_refs"] is None

    def test_vip_stats(self, referrals):
        stats = referrals.referral_stats(VIP)
        assert stats["is_vip"] is True
        assert stats["current_rate"] == "10"
        assert stats["next_tier_rate"] is None

    def test_referred_by(self, referrals):
        referrals.register_referral(REFERRER, LP_A)
        assert referrals.referral_stats(LP_A)["referred_by"] == REFERRER
