"""
RiftSettle - Settlement Exception Hierarchy

Provides a consistent set of exceptions for the accrual, ledger, claim and
distribution components. Every exception carries a stable error code, the
HTTP status the API layer should surface, and structured details so that
callers can render the reason string verbatim and logs stay machine-readable.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class ErrorContext:
    """Structured context for error tracking and debugging."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
        }


class SettlementError(Exception):
    """
    Base exception for all settlement errors.

    Subclasses override ``code`` and ``http_status``. ``message`` is the
    human-readable reason shown to the wallet owner.
    """

    code = "settlement_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        component: str = "settlement",
        action: str = "unknown",
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(component=component, action=action, details=details or {})
        self.cause = cause

        if cause:
            self.__cause__ = cause

    @property
    def details(self) -> dict[str, Any]:
        return self.context.details

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error": self.message,
            "code": self.code,
            **self.context.to_dict(),
        }
        if self.cause:
            result["cause"] = {"type": type(self.cause).__name__, "message": str(self.cause)}
        return result

    def __str__(self) -> str:
        return self.message


# =============================================================================
# Request Errors
# =============================================================================


class ValidationError(SettlementError):
    """Missing wallet, missing rift id, non-positive amount, split out of range."""

    code = "validation_error"
    http_status = 400

    def __init__(self, message: str, field_name: str | None = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if field_name:
            details["field"] = field_name
        super().__init__(message, component="validation", details=details, **kwargs)
        self.field_name = field_name


# =============================================================================
# Funds Errors
# =============================================================================


class InsufficientClaimableError(SettlementError):
    """Claimable balance is below the dust floor or would go negative."""

    code = "insufficient_claimable"
    http_status = 400

    def __init__(self, message: str, claimable: Any = None, required: Any = None, **kwargs):
        super().__init__(
            message,
            component="settlement_ledger",
            details={"claimable": str(claimable), "required": str(required)},
            **kwargs,
        )
        self.claimable = claimable
        self.required = required


class InsufficientTreasuryBalanceError(SettlementError):
    """The funding account cannot cover the transfer plus fee buffer."""

    code = "insufficient_treasury_balance"
    http_status = 503

    def __init__(self, message: str, balance: Any = None, required: Any = None, **kwargs):
        super().__init__(
            message,
            component="treasury",
            details={"balance": str(balance), "required": str(required)},
            **kwargs,
        )
        self.balance = balance
        self.required = required


class ShareAllocationError(SettlementError):
    """LP share percentages for a rift do not form a valid allocation."""

    code = "share_allocation_error"
    http_status = 409

    def __init__(self, message: str, rift_id: str, total_share: Any = None, **kwargs):
        super().__init__(
            message,
            component="distribution",
            details={"rift_id": rift_id, "total_share": str(total_share)},
            **kwargs,
        )
        self.rift_id = rift_id
        self.total_share = total_share


# =============================================================================
# Claim State Errors
# =============================================================================


class ClaimAlreadyInFlightError(SettlementError):
    """Another claim for the same wallet, rift and type holds the lock."""

    code = "claim_in_progress"
    http_status = 429

    def __init__(self, message: str = "Claim already in progress", key: str | None = None, **kwargs):
        super().__init__(message, component="claims", details={"key": key}, **kwargs)


class ClaimAlreadySettledError(SettlementError):
    """The idempotency key already maps to a settled claim."""

    code = "claim_already_settled"
    http_status = 409

    def __init__(self, message: str, idempotency_key: str, signature: str | None = None, **kwargs):
        super().__init__(
            message,
            component="claims",
            details={"idempotency_key": idempotency_key, "signature": signature},
            **kwargs,
        )
        self.idempotency_key = idempotency_key
        self.signature = signature


class ResetConfirmationError(SettlementError):
    """A profit reset was attempted without a valid confirmation."""

    code = "reset_confirmation_error"
    http_status = 400


# =============================================================================
# External Dependency Errors
# =============================================================================


class ChainError(SettlementError):
    """Base for chain client failures."""

    code = "chain_error"
    http_status = 502

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("component", "chain_client")
        super().__init__(message, **kwargs)


class TransferFailedError(ChainError):
    """The chain rejected or failed to execute a transfer."""

    code = "transfer_failed"


class PriceUnavailableError(SettlementError):
    """No fresh or stale price is available for an asset."""

    code = "price_unavailable"
    http_status = 503

    def __init__(self, message: str, asset_id: str, **kwargs):
        super().__init__(message, component="price_oracle", details={"asset_id": asset_id}, **kwargs)
        self.asset_id = asset_id
