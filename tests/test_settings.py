"""
Tests for settlement settings (src/settings.py)

Tests cover:
- Defaults
- Environment overrides
- Share allocation policy validation
- Serialized view hides secrets
"""

import sys
from decimal import Decimal

import pytest

sys.path.insert(0, "src")

from settings import SettlementSettings, ShareAllocationPolicy
from settlement_errors import ValidationError
from settlement_models import MIN_CLAIM_AMOUNT

ENV_VARS = (
    "TREASURY_WALLET",
    "CHAIN_BACKEND",
    "CHAIN_CONFIRM_TIMEOUT",
    "MIN_CLAIM_AMOUNT",
    "CLAIM_LOCK_TIMEOUT",
    "FULL_RESUM_TRADE_BUDGET",
    "SHARE_ALLOCATION_POLICY",
    "CRON_SECRET",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettlementSettings:
    """Tests for SettlementSettings.from_env()."""

    def test_defaults(self, clean_env):
        settings = SettlementSettings.from_env()

        assert settings.treasury_wallet is None
        assert settings.chain_backend == "http"
        assert settings.min_claim_amount == MIN_CLAIM_AMOUNT
        assert settings.claim_lock_timeout == 0.0
        assert settings.share_allocation_policy == ShareAllocationPolicy.REJECT
        assert settings.cron_secret is None

    def test_overrides(self, clean_env):
        clean_env.setenv("TREASURY_WALLET", "Treasury111")
        clean_env.setenv("CHAIN_BACKEND", "MOCK")
        clean_env.setenv("CHAIN_CONFIRM_TIMEOUT", "5")
        clean_env.setenv("MIN_CLAIM_AMOUNT", "0.01")
        clean_env.setenv("FULL_RESUM_TRADE_BUDGET", "100")
        clean_env.setenv("SHARE_ALLOCATION_POLICY", "Normalize")

        settings = SettlementSettings.from_env()

        assert settings.treasury_wallet == "Treasury111"
        assert settings.chain_backend == "mock"
        assert settings.confirm_timeout == 5.0
        assert settings.min_claim_amount == Decimal("0.01")
        assert settings.full_resum_trade_budget == 100
        assert settings.share_allocation_policy == ShareAllocationPolicy.NORMALIZE

    def test_unparseable_amount_falls_back(self, clean_env):
        clean_env.setenv("MIN_CLAIM_AMOUNT", "lots")
        assert SettlementSettings.from_env().min_claim_amount == MIN_CLAIM_AMOUNT

    def test_empty_treasury_is_unset(self, clean_env):
        clean_env.setenv("TREASURY_WALLET", "")
        assert SettlementSettings.from_env().treasury_wallet is None

    def test_invalid_policy(self, clean_env):
        clean_env.setenv("SHARE_ALLOCATION_POLICY", "average")
        with pytest.raises(ValidationError, match="SHARE_ALLOCATION_POLICY"):
            SettlementSettings.from_env()

    def test_to_dict_hides_cron_secret(self, clean_env):
        clean_env.setenv("CRON_SECRET", "s3cret")
        data = SettlementSettings.from_env().to_dict()

        assert data["cron_secret_configured"] is True
        assert "s3cret" not in str(data)
        assert data["share_allocation_policy"] == "reject"
        assert data["min_claim_amount"] == str(MIN_CLAIM_AMOUNT)

    def test_repr_hides_cron_secret(self):
        assert "s3cret" not in repr(SettlementSettings(cron_secret="s3cret"))
