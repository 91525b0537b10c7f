"""
RiftSettle - Settlement Data Model

Core entities shared by the accrual, referral, ledger, claim and
distribution components. Amounts are ``Decimal`` in whole native units
(SOL); rows are persisted through the ledger store as plain dictionaries
with amounts encoded as strings so that no precision is lost in JSON.

Entities:
- Trade: immutable arbitrage result sourced from chain history
- LpPosition: an LP's share of a rift's pool
- Earning / Claim: earned vs claimed per (wallet, rift, type)
- ReferralLink / ReferredRift / ReferralEarning / ReferralClaim
- TreasuryPayment: write-once payout audit record
- ClaimIntent: persisted claim state machine record
"""

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

# =============================================================================
# Constants
# =============================================================================

LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMAL_PLACES = 9

# Deltas and referral cuts at or below this are treated as float noise
DUST_THRESHOLD = Decimal("0.000001")

# Claims must be worth more than the transaction fee
MIN_CLAIM_AMOUNT = Decimal("0.001")
CLAIM_FEE_BUFFER = Decimal("0.00001")  # 10_000 lamports
REFERRAL_CLAIM_FEE_BUFFER = Decimal("0.000005")  # 5_000 lamports

# Split defaults
DEFAULT_LP_SPLIT = Decimal("40")
LEGACY_TEAM_SPLIT = Decimal("80")

# Referral tiers (percent)
REFERRAL_BASE_RATE = Decimal("5")
REFERRAL_MID_RATE = Decimal("8")
REFERRAL_TOP_RATE = Decimal("10")
REFERRAL_MID_TIER_COUNT = 5
REFERRAL_TOP_TIER_COUNT = 10
VIP_REFERRAL_RATE = Decimal("10")

# VIP wallets get this percentage on top of their direct-pay share
VIP_BONUS_PERCENT = Decimal("10")

# Legacy direct-pay path
MIN_TRANSFER_LAMPORTS = 1000
TX_FEE_BUFFER_LAMPORTS = 10_000
RENT_EXEMPT_MINIMUM_LAMPORTS = 890_880

# Legacy per-wallet escrow accounts keep a rent reserve
ESCROW_RENT_RESERVE = Decimal("0.002")
MIN_ESCROW_CLAIM_LAMPORTS = 1000

ZERO = Decimal("0")
HUNDRED = Decimal("100")


# =============================================================================
# Helpers
# =============================================================================


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Convert a stored or user-supplied value to Decimal, falling back to default."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        # str() avoids binary float artifacts (0.1 -> 0.1000000000000000055...)
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def quantize_sol(amount: Decimal) -> Decimal:
    """Round an amount to lamport precision."""
    return amount.quantize(Decimal(1).scaleb(-SOL_DECIMAL_PLACES), rounding=ROUND_HALF_UP)


def format_sol(amount: Decimal) -> str:
    """Lamport-precision amount as a plain decimal string."""
    return f"{quantize_sol(amount):f}"


def sol_to_lamports(amount: Decimal) -> int:
    """Convert SOL to lamports, truncating any sub-lamport remainder."""
    return int((amount * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


def lamports_to_sol(lamports: int) -> Decimal:
    """Convert lamports to SOL."""
    return Decimal(int(lamports)) / LAMPORTS_PER_SOL


def utc_now() -> datetime:
    """Naive UTC timestamp, the format every stored row uses."""
    return datetime.now(UTC).replace(tzinfo=None)


def iso_now() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string, epoch seconds or datetime into a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(UTC).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, UTC).replace(tzinfo=None)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def generate_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def short_wallet(wallet: str | None) -> str:
    """Abbreviate a wallet address for log lines."""
    if not wallet:
        return "unknown"
    return f"{wallet[:8]}..." if len(wallet) > 8 else wallet


# =============================================================================
# Enums
# =============================================================================


class EarningType(Enum):
    """Who an Earning row pays."""

    LP = "lp"
    TEAM = "team"


class ClaimSelector(Enum):
    """Which balances a claim request draws from."""

    LP = "lp"
    TEAM = "team"
    REFERRAL = "referral"
    ALL = "all"


class RecipientType(Enum):
    """Recipient filter for distribution runs."""

    LP = "lp"
    TEAM = "team"
    ALL = "all"


class ReferralSourceType(Enum):
    """What a referral cut was taken from."""

    RIFT_PROFIT = "rift_profit"  # Team earnings of a referred creator's rift
    LP_PROFIT = "lp_profit"  # LP earnings of a referred wallet


class PaymentType(Enum):
    """Kinds of treasury outflows recorded in the audit trail."""

    LP_CLAIM = "lp_claim"
    TEAM_CLAIM = "team_claim"
    REFERRAL_CLAIM = "referral_claim"
    MIXED_CLAIM = "mixed_claim"
    ESCROW_CLAIM = "escrow_claim"
    TEAM_DISTRIBUTION = "team_distribution"
    LP_DISTRIBUTION = "lp_distribution"


class PaymentStatus(Enum):
    """Status of an audited payment."""

    CONFIRMED = "confirmed"
    UNKNOWN = "unknown"


class ClaimState(Enum):
    """
    Claim state machine.

    requested -> funds_reserved -> transferred -> settled
    Any pre-settlement state may end in failed; transferred may pass
    through unknown when confirmation times out.
    """

    REQUESTED = "requested"
    FUNDS_RESERVED = "funds_reserved"
    TRANSFERRED = "transferred"
    UNKNOWN = "unknown"
    SETTLED = "settled"
    FAILED = "failed"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class Trade:
    """An arbitrage trade result. Immutable once recorded."""

    rift_id: str
    actual_profit: Decimal
    success: bool
    signature: str = ""
    timestamp: str = field(default_factory=iso_now)
    sequence: int = 0  # Monotonic id used as the incremental-aggregation watermark

    def to_dict(self) -> dict[str, Any]:
        return {
            "rift_id": self.rift_id,
            "actual_profit": str(self.actual_profit),
            "success": self.success,
            "signature": self.signature,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Trade":
        return cls(
            rift_id=data.get("rift_id", ""),
            actual_profit=to_decimal(data.get("actual_profit", data.get("actual_profit_sol"))),
            success=bool(data.get("success", False)),
            signature=data.get("signature", "") or "",
            timestamp=data.get("timestamp") or "",
            sequence=int(data.get("sequence", 0) or 0),
        )


@dataclass
class LpPosition:
    """A liquidity provider's position in a rift's pool."""

    rift_id: str
    wallet_address: str
    liquidity_amount: Decimal = ZERO
    share_percent: Decimal = ZERO
    last_updated: str = field(default_factory=iso_now)
    # When the wallet joined the pool; rows written before this was tracked have None
    created_at: str | None = None

    @property
    def key(self) -> str:
        return f"{self.rift_id}:{self.wallet_address}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rift_id": self.rift_id,
            "wallet_address": self.wallet_address,
            "liquidity_amount": str(self.liquidity_amount),
            "share_percent": str(self.share_percent),
            "last_updated": self.last_updated,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LpPosition":
        return cls(
            rift_id=data.get("rift_id", ""),
            wallet_address=data.get("wallet_address", ""),
            liquidity_amount=to_decimal(data.get("liquidity_amount")),
            share_percent=to_decimal(data.get("share_percent", data.get("share_pct"))),
            last_updated=data.get("last_updated") or iso_now(),
            created_at=data.get("created_at"),
        )


@dataclass
class Earning:
    """An append-only earnings fact for (wallet, rift, type)."""

    wallet: str
    rift_id: str
    earning_type: EarningType
    amount: Decimal
    description: str = ""
    earning_id: str = field(default_factory=lambda: generate_id("earn"))
    created_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "earning_id": self.earning_id,
            "wallet": self.wallet,
            "rift_id": self.rift_id,
            "earning_type": self.earning_type.value,
            "amount": str(self.amount),
            "description": self.description,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Earning":
        return cls(
            wallet=data["wallet"],
            rift_id=data["rift_id"],
            earning_type=EarningType(data["earning_type"]),
            amount=to_decimal(data.get("amount")),
            description=data.get("description", ""),
            earning_id=data.get("earning_id") or generate_id("earn"),
            created_at=data.get("created_at") or iso_now(),
        )


@dataclass
class Claim:
    """Cumulative claimed amount for (wallet, rift, type)."""

    wallet: str
    rift_id: str
    earning_type: EarningType
    amount_claimed: Decimal = ZERO
    last_claim_at: str | None = None
    signature: str | None = None

    @staticmethod
    def make_key(wallet: str, rift_id: str, earning_type: EarningType) -> str:
        return f"{wallet}:{rift_id}:{earning_type.value}"

    @property
    def key(self) -> str:
        return self.make_key(self.wallet, self.rift_id, self.earning_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "rift_id": self.rift_id,
            "earning_type": self.earning_type.value,
            "amount_claimed": str(self.amount_claimed),
            "last_claim_at": self.last_claim_at,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Claim":
        return cls(
            wallet=data["wallet"],
            rift_id=data["rift_id"],
            earning_type=EarningType(data["earning_type"]),
            amount_claimed=to_decimal(data.get("amount_claimed")),
            last_claim_at=data.get("last_claim_at"),
            signature=data.get("signature"),
        )


@dataclass
class ReferralLink:
    """One referred wallet maps to at most one referrer."""

    referrer_wallet: str
    referred_wallet: str
    created_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "referrer_wallet": self.referrer_wallet,
            "referred_wallet": self.referred_wallet,
            "created_at": self.created_at,
        }


@dataclass
class ReferredRift:
    """Attributes a rift to the referrer of its creator."""

    rift_id: str
    referrer_wallet: str
    creator_wallet: str | None = None
    created_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rift_id": self.rift_id,
            "referrer_wallet": self.referrer_wallet,
            "creator_wallet": self.creator_wallet,
            "created_at": self.created_at,
        }


@dataclass
class ReferralEarning:
    """An append-only referral cut taken at distribution time."""

    referrer_wallet: str
    source_type: ReferralSourceType
    source_id: str
    amount: Decimal
    rate: Decimal
    referred_wallet: str | None = None
    tier_fallback: bool = False
    earning_id: str = field(default_factory=lambda: generate_id("refearn"))
    created_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "earning_id": self.earning_id,
            "referrer_wallet": self.referrer_wallet,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "amount": str(self.amount),
            "rate": str(self.rate),
            "referred_wallet": self.referred_wallet,
            "tier_fallback": self.tier_fallback,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReferralEarning":
        return cls(
            referrer_wallet=data["referrer_wallet"],
            source_type=ReferralSourceType(data["source_type"]),
            source_id=data.get("source_id", ""),
            amount=to_decimal(data.get("amount")),
            rate=to_decimal(data.get("rate")),
            referred_wallet=data.get("referred_wallet"),
            tier_fallback=bool(data.get("tier_fallback", False)),
            earning_id=data.get("earning_id") or generate_id("refearn"),
            created_at=data.get("created_at") or iso_now(),
        )


@dataclass
class ReferralClaim:
    """A referral payout. Claimed total is the sum of all rows."""

    referrer_wallet: str
    amount: Decimal
    signature: str | None = None
    claim_id: str = field(default_factory=lambda: generate_id("refclaim"))
    created_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "referrer_wallet": self.referrer_wallet,
            "amount": str(self.amount),
            "signature": self.signature,
            "created_at": self.created_at,
        }


@dataclass
class TreasuryPayment:
    """Write-once audit record of a treasury outflow."""

    payment_type: PaymentType
    amount: Decimal
    recipient_wallet: str
    rift_id: str | None = None
    source_description: str | None = None
    signature: str | None = None
    status: PaymentStatus = PaymentStatus.CONFIRMED
    payment_id: str = field(default_factory=lambda: generate_id("pay"))
    created_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "payment_type": self.payment_type.value,
            "amount": str(self.amount),
            "recipient_wallet": self.recipient_wallet,
            "rift_id": self.rift_id,
            "source_description": self.source_description,
            "signature": self.signature,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TreasuryPayment":
        return cls(
            payment_type=PaymentType(data["payment_type"]),
            amount=to_decimal(data.get("amount")),
            recipient_wallet=data.get("recipient_wallet", ""),
            rift_id=data.get("rift_id"),
            source_description=data.get("source_description"),
            signature=data.get("signature"),
            status=PaymentStatus(data.get("status", "confirmed")),
            payment_id=data.get("payment_id") or generate_id("pay"),
            created_at=data.get("created_at") or iso_now(),
        )


@dataclass
class ClaimAllocation:
    """One ledger key a claim draws from."""

    earning_type: str  # "lp", "team" or "referral"
    amount: Decimal
    rift_id: str | None = None
    reservation_id: str | None = None  # ReferralClaim row reserved for referral draws

    def to_dict(self) -> dict[str, Any]:
        return {
            "earning_type": self.earning_type,
            "amount": str(self.amount),
            "rift_id": self.rift_id,
            "reservation_id": self.reservation_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClaimAllocation":
        return cls(
            earning_type=data["earning_type"],
            amount=to_decimal(data.get("amount")),
            rift_id=data.get("rift_id"),
            reservation_id=data.get("reservation_id"),
        )


@dataclass
class ClaimIntent:
    """Persisted claim record; retries with the same key collapse onto it."""

    idempotency_key: str
    wallet: str
    selector: ClaimSelector
    destination: str
    amount: Decimal = ZERO
    rift_id: str | None = None
    state: ClaimState = ClaimState.REQUESTED
    allocations: list[ClaimAllocation] = field(default_factory=list)
    signature: str | None = None
    transfer_reference: str | None = None
    error: str | None = None
    created_at: str = field(default_factory=iso_now)
    updated_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "wallet": self.wallet,
            "selector": self.selector.value,
            "destination": self.destination,
            "amount": str(self.amount),
            "rift_id": self.rift_id,
            "state": self.state.value,
            "allocations": [a.to_dict() for a in self.allocations],
            "signature": self.signature,
            "transfer_reference": self.transfer_reference,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClaimIntent":
        return cls(
            idempotency_key=data["idempotency_key"],
            wallet=data["wallet"],
            selector=ClaimSelector(data.get("selector", "lp")),
            destination=data.get("destination") or data["wallet"],
            amount=to_decimal(data.get("amount")),
            rift_id=data.get("rift_id"),
            state=ClaimState(data.get("state", "requested")),
            allocations=[ClaimAllocation.from_dict(a) for a in data.get("allocations", [])],
            signature=data.get("signature"),
            transfer_reference=data.get("transfer_reference"),
            error=data.get("error"),
            created_at=data.get("created_at") or iso_now(),
            updated_at=data.get("updated_at") or iso_now(),
        )


@dataclass
class EscrowAccount:
    """A dedicated per-wallet escrow account (legacy claim model)."""

    rift_id: str
    owner_wallet: str
    escrow_address: str
    kind: EarningType = EarningType.LP

    @property
    def key(self) -> str:
        return f"{self.rift_id}:{self.owner_wallet}:{self.kind.value}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rift_id": self.rift_id,
            "owner_wallet": self.owner_wallet,
            "escrow_address": self.escrow_address,
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscrowAccount":
        return cls(
            rift_id=data["rift_id"],
            owner_wallet=data["owner_wallet"],
            escrow_address=data["escrow_address"],
            kind=EarningType(data.get("kind", "lp")),
        )
