"""
RiftSettle - Settlement Settings

Runtime configuration for the claim and distribution services, read from
the environment (the CLI loads a .env file first).

Environment Variables:
    TREASURY_WALLET=<funding account address>
    CHAIN_BACKEND=http|mock
    CHAIN_CONFIRM_TIMEOUT=30
    MIN_CLAIM_AMOUNT=0.001
    DUST_THRESHOLD=0.000001
    CLAIM_FEE_BUFFER=0.00001
    CLAIM_LOCK_TIMEOUT=0
    FULL_RESUM_TRADE_BUDGET=5000
    SHARE_ALLOCATION_POLICY=reject|normalize
    CRON_SECRET=<shared secret for scheduled runs>
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from accrual import DEFAULT_FULL_RESUM_TRADE_BUDGET
from chain_client import DEFAULT_CONFIRM_TIMEOUT
from settlement_errors import ValidationError
from settlement_models import (
    CLAIM_FEE_BUFFER,
    DUST_THRESHOLD,
    MIN_CLAIM_AMOUNT,
    REFERRAL_CLAIM_FEE_BUFFER,
    to_decimal,
)


class ShareAllocationPolicy(Enum):
    """How LP share totals that do not sum to 100 are handled."""

    REJECT = "reject"
    NORMALIZE = "normalize"


@dataclass
class SettlementSettings:
    """Settlement service configuration."""

    treasury_wallet: str | None = None
    chain_backend: str = "http"
    confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT
    min_claim_amount: Decimal = MIN_CLAIM_AMOUNT
    dust_threshold: Decimal = DUST_THRESHOLD
    claim_fee_buffer: Decimal = CLAIM_FEE_BUFFER
    referral_claim_fee_buffer: Decimal = REFERRAL_CLAIM_FEE_BUFFER
    claim_lock_timeout: float = 0.0
    full_resum_trade_budget: int = DEFAULT_FULL_RESUM_TRADE_BUDGET
    share_allocation_policy: ShareAllocationPolicy = ShareAllocationPolicy.REJECT
    cron_secret: str | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> "SettlementSettings":
        """Create settings from environment variables."""
        policy = os.getenv("SHARE_ALLOCATION_POLICY", ShareAllocationPolicy.REJECT.value).lower()
        try:
            allocation_policy = ShareAllocationPolicy(policy)
        except ValueError:
            raise ValidationError(
                f"SHARE_ALLOCATION_POLICY must be 'reject' or 'normalize', got '{policy}'",
                field_name="SHARE_ALLOCATION_POLICY",
            ) from None

        return cls(
            treasury_wallet=os.getenv("TREASURY_WALLET") or None,
            chain_backend=os.getenv("CHAIN_BACKEND", "http").lower(),
            confirm_timeout=float(os.getenv("CHAIN_CONFIRM_TIMEOUT", str(DEFAULT_CONFIRM_TIMEOUT))),
            min_claim_amount=to_decimal(os.getenv("MIN_CLAIM_AMOUNT"), MIN_CLAIM_AMOUNT),
            dust_threshold=to_decimal(os.getenv("DUST_THRESHOLD"), DUST_THRESHOLD),
            claim_fee_buffer=to_decimal(os.getenv("CLAIM_FEE_BUFFER"), CLAIM_FEE_BUFFER),
            referral_claim_fee_buffer=to_decimal(
                os.getenv("REFERRAL_CLAIM_FEE_BUFFER"), REFERRAL_CLAIM_FEE_BUFFER
            ),
            claim_lock_timeout=float(os.getenv("CLAIM_LOCK_TIMEOUT", "0")),
            full_resum_trade_budget=int(
                os.getenv("FULL_RESUM_TRADE_BUDGET", str(DEFAULT_FULL_RESUM_TRADE_BUDGET))
            ),
            share_allocation_policy=allocation_policy,
            cron_secret=os.getenv("CRON_SECRET") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "treasury_wallet": self.treasury_wallet,
            "chain_backend": self.chain_backend,
            "confirm_timeout": self.confirm_timeout,
            "min_claim_amount": str(self.min_claim_amount),
            "dust_threshold": str(self.dust_threshold),
            "claim_fee_buffer": str(self.claim_fee_buffer),
            "referral_claim_fee_buffer": str(self.referral_claim_fee_buffer),
            "claim_lock_timeout": self.claim_lock_timeout,
            "full_resum_trade_budget": self.full_resum_trade_budget,
            "share_allocation_policy": self.share_allocation_policy.value,
            "cron_secret_configured": bool(self.cron_secret),
        }
