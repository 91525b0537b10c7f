"""
RiftSettle - Claim Processor

Pays out a wallet's claimable balance from the treasury account.

Every claim is a persisted ClaimIntent that moves through:

    requested -> funds_reserved -> transferred -> settled
                       |                |
                       v                v
                     failed          unknown  (confirmation timed out)

- The intent row is written before anything is reserved or sent, keyed by
  an idempotency key. Without a caller-supplied key the key is derived
  from wallet, rift, type, destination and the wallet's cumulative
  earned total, so a double-submitted request collapses onto one intent.
- Funds are reserved in the settlement ledger (claimed is advanced)
  before the transfer is sent, and rolled back if the transfer fails.
- The transfer carries the idempotency key as its reference, so a
  transfer whose signature was lost can still be found.
- A timed out confirmation leaves the intent ``unknown``. The wallet's
  next claim, or reconcile_pending(), looks the signature up and either
  settles or rolls back.

Locks: ``claims:{wallet}`` (non-blocking by default) then
``treasury:{address}``.
"""

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from chain_client import ChainClient, ConfirmationStatus
from monitoring import LoggingContext, metrics
from scaling import LockManager
from settings import SettlementSettings
from settlement_errors import (
    ChainError,
    ClaimAlreadyInFlightError,
    ClaimAlreadySettledError,
    InsufficientClaimableError,
    InsufficientTreasuryBalanceError,
    SettlementError,
    TransferFailedError,
    ValidationError,
)
from settlement_ledger import SettlementLedger
from settlement_models import (
    ESCROW_RENT_RESERVE,
    MIN_ESCROW_CLAIM_LAMPORTS,
    ZERO,
    ClaimAllocation,
    ClaimIntent,
    ClaimSelector,
    ClaimState,
    EarningType,
    EscrowAccount,
    PaymentStatus,
    PaymentType,
    TreasuryPayment,
    format_sol,
    lamports_to_sol,
    quantize_sol,
    short_wallet,
    sol_to_lamports,
    utc_now,
)
from storage.base import LedgerStore, StorageError
from treasury import TreasuryAuditLog

logger = logging.getLogger(__name__)

INTENTS_TABLE = "claim_intents"
ESCROW_TABLE = "escrow_accounts"

# How long a claim waits for a distribution run holding the treasury
TREASURY_LOCK_TIMEOUT = 30.0
CLAIM_LOCK_TTL = 120.0

OPEN_STATES = (
    ClaimState.REQUESTED,
    ClaimState.FUNDS_RESERVED,
    ClaimState.TRANSFERRED,
    ClaimState.UNKNOWN,
)

_PAYMENT_TYPES = {
    ClaimSelector.LP: PaymentType.LP_CLAIM,
    ClaimSelector.TEAM: PaymentType.TEAM_CLAIM,
    ClaimSelector.REFERRAL: PaymentType.REFERRAL_CLAIM,
    ClaimSelector.ALL: PaymentType.MIXED_CLAIM,
}


@dataclass
class ClaimResult:
    """Outcome of a claim request."""

    success: bool
    state: ClaimState
    idempotency_key: str
    amount: Decimal = ZERO
    destination: str | None = None
    signature: str | None = None
    allocations: list[ClaimAllocation] = field(default_factory=list)
    message: str = ""

    @classmethod
    def from_intent(cls, intent: ClaimIntent, message: str = "") -> "ClaimResult":
        return cls(
            success=intent.state == ClaimState.SETTLED,
            state=intent.state,
            idempotency_key=intent.idempotency_key,
            amount=intent.amount,
            destination=intent.destination,
            signature=intent.signature,
            allocations=list(intent.allocations),
            message=message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state.value,
            "idempotency_key": self.idempotency_key,
            "amount": format_sol(self.amount),
            "destination": self.destination,
            "signature": self.signature,
            "allocations": [a.to_dict() for a in self.allocations],
            "message": self.message,
        }


# =============================================================================
# Escrow directory
# =============================================================================


class EscrowDirectory:
    """Dedicated per-wallet escrow accounts of the legacy claim model."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def register(
        self, rift_id: str, owner_wallet: str, escrow_address: str, kind: EarningType = EarningType.LP
    ) -> EscrowAccount:
        account = EscrowAccount(
            rift_id=rift_id, owner_wallet=owner_wallet, escrow_address=escrow_address, kind=kind
        )
        self.store.upsert(ESCROW_TABLE, account.key, account.to_dict())
        return account

    def get(self, rift_id: str, owner_wallet: str, kind: EarningType = EarningType.LP) -> EscrowAccount | None:
        key = EscrowAccount(rift_id, owner_wallet, "", kind).key
        row = self.store.get(ESCROW_TABLE, key)
        return EscrowAccount.from_dict(row) if row else None

    def address(self, rift_id: str, owner_wallet: str, kind: EarningType = EarningType.LP) -> str | None:
        account = self.get(rift_id, owner_wallet, kind)
        return account.escrow_address if account else None


# =============================================================================
# Processor
# =============================================================================


class ClaimProcessor:
    """Claim state machine over the settlement ledger and chain client."""

    def __init__(
        self,
        store: LedgerStore,
        ledger: SettlementLedger,
        chain: ChainClient,
        lock_manager: LockManager,
        audit_log: TreasuryAuditLog,
        treasury_wallet: str | None,
        settings: SettlementSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.ledger = ledger
        self.chain = chain
        self.locks = lock_manager
        self.audit_log = audit_log
        self.treasury_wallet = treasury_wallet
        self.settings = settings or SettlementSettings()
        self.escrows = EscrowDirectory(store)
        self._clock = clock

    # -------------------------------------------------------------------------
    # Intent persistence
    # -------------------------------------------------------------------------

    def get_intent(self, idempotency_key: str) -> ClaimIntent | None:
        row = self.store.get(INTENTS_TABLE, idempotency_key)
        return ClaimIntent.from_dict(row) if row else None

    def _transition(self, intent: ClaimIntent, state: ClaimState, **changes: Any) -> bool:
        """Compare-and-swap the intent from its current state to ``state``."""
        previous = intent.state
        intent.state = state
        intent.updated_at = self._clock().isoformat()
        for name, value in changes.items():
            setattr(intent, name, value)

        swapped = self.store.update_where(
            INTENTS_TABLE,
            intent.idempotency_key,
            {"state": previous.value},
            intent.to_dict(),
        )
        if not swapped:
            logger.warning(
                f"Intent {intent.idempotency_key[:16]} moved concurrently, "
                f"{previous.value} -> {state.value} not applied"
            )
        return swapped

    def _derive_key(
        self, wallet: str, rift_id: str | None, selector: ClaimSelector, destination: str
    ) -> str:
        if selector in (ClaimSelector.LP, ClaimSelector.TEAM):
            earned = self.ledger.earned(wallet, rift_id, EarningType(selector.value))
        elif selector == ClaimSelector.REFERRAL:
            earned = self.ledger.referral_earned(wallet)
        else:
            earned = sum(
                (self.ledger.earned(wallet, rid, etype) for rid, etype in self.ledger.claim_keys(wallet)),
                ZERO,
            ) + self.ledger.referral_earned(wallet)

        material = f"{wallet}|{rift_id or '*'}|{selector.value}|{destination}|{quantize_sol(earned)}"
        return "claim_" + hashlib.sha256(material.encode()).hexdigest()[:40]

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def _allocations(
        self, wallet: str, rift_id: str | None, selector: ClaimSelector
    ) -> list[ClaimAllocation]:
        allocations = []

        if selector in (ClaimSelector.LP, ClaimSelector.TEAM):
            amount = self.ledger.claimable(wallet, rift_id, EarningType(selector.value))
            if amount > 0:
                allocations.append(ClaimAllocation(selector.value, amount, rift_id))
            return allocations

        if selector == ClaimSelector.ALL:
            for rid, etype in self.ledger.claim_keys(wallet):
                amount = self.ledger.claimable(wallet, rid, etype)
                if amount > 0:
                    allocations.append(ClaimAllocation(etype.value, amount, rid))

        referral = self.ledger.referral_claimable(wallet)
        if referral > 0:
            allocations.append(ClaimAllocation("referral", referral))
        return allocations

    def _reserve(self, wallet: str, allocations: list[ClaimAllocation]) -> None:
        """Advance claimed for every allocation; undo the ones done if any fails."""
        reserved: list[ClaimAllocation] = []
        try:
            for allocation in allocations:
                if allocation.earning_type == "referral":
                    row = self.ledger.mark_referral_claimed(wallet, allocation.amount)
                    allocation.reservation_id = row.claim_id
                else:
                    self.ledger.mark_claimed(
                        wallet, allocation.rift_id, EarningType(allocation.earning_type), allocation.amount
                    )
                reserved.append(allocation)
        except (SettlementError, StorageError):
            self._release(wallet, reserved)
            raise

    def _release(self, wallet: str, allocations: list[ClaimAllocation]) -> None:
        for allocation in allocations:
            try:
                if allocation.earning_type == "referral":
                    if allocation.reservation_id:
                        self.ledger.release_referral_claim(allocation.reservation_id)
                else:
                    self.ledger.unmark_claimed(
                        wallet, allocation.rift_id, EarningType(allocation.earning_type), allocation.amount
                    )
            except StorageError as e:
                logger.critical(
                    f"Rollback of {allocation.amount} SOL ({allocation.earning_type}) "
                    f"for {short_wallet(wallet)} failed: {e}"
                )

    def _fee_buffer(self, selector: ClaimSelector) -> Decimal:
        if selector == ClaimSelector.REFERRAL:
            return self.settings.referral_claim_fee_buffer
        return self.settings.claim_fee_buffer

    # -------------------------------------------------------------------------
    # Settlement and rollback of an intent
    # -------------------------------------------------------------------------

    def _settle(self, intent: ClaimIntent) -> None:
        for allocation in intent.allocations:
            try:
                if allocation.earning_type == "referral":
                    if allocation.reservation_id:
                        self.ledger.attach_referral_signature(allocation.reservation_id, intent.signature)
                else:
                    self.ledger.attach_claim_signature(
                        intent.wallet,
                        allocation.rift_id,
                        EarningType(allocation.earning_type),
                        intent.signature,
                    )
            except StorageError as e:
                logger.error(f"Failed to attach signature to claim row: {e}")

        self._transition(intent, ClaimState.SETTLED, error=None)

        types = {a.earning_type for a in intent.allocations}
        payment_type = (
            _PAYMENT_TYPES[ClaimSelector(types.pop())] if len(types) == 1 else PaymentType.MIXED_CLAIM
        )
        self.audit_log.record_payment(
            TreasuryPayment(
                payment_type=payment_type,
                amount=intent.amount,
                recipient_wallet=intent.destination,
                rift_id=intent.rift_id,
                source_description=f"{intent.selector.value} claim {intent.idempotency_key}",
                signature=intent.signature,
                status=PaymentStatus.CONFIRMED,
            )
        )
        metrics.record_claim("settled", float(intent.amount))
        logger.info(
            f"Claim settled: {intent.amount:.6f} SOL to {short_wallet(intent.destination)} "
            f"({intent.selector.value}) sig={intent.signature[:16]}"
        )

    def _fail(self, intent: ClaimIntent, reason: str) -> None:
        self._release(intent.wallet, intent.allocations)
        self._transition(intent, ClaimState.FAILED, error=reason)
        metrics.record_claim("failed")
        logger.warning(f"Claim {intent.idempotency_key[:16]} failed and was rolled back: {reason}")

    def _apply_status(self, intent: ClaimIntent, status: ConfirmationStatus) -> None:
        if status == ConfirmationStatus.CONFIRMED:
            self._settle(intent)
        elif status == ConfirmationStatus.FAILED:
            self._fail(intent, "Transfer failed on chain")
        elif intent.state != ClaimState.UNKNOWN:
            self._transition(intent, ClaimState.UNKNOWN)
            metrics.record_claim("unknown")

    def _reconcile_intent(self, intent: ClaimIntent) -> ClaimState:
        """Drive an open intent towards a terminal state. Chain errors leave it as is."""
        try:
            if intent.state == ClaimState.REQUESTED:
                # Nothing was reserved or sent
                self._transition(intent, ClaimState.FAILED, error="Interrupted before reservation")

            elif intent.state == ClaimState.FUNDS_RESERVED:
                signature = self.chain.find_transfer(intent.transfer_reference or intent.idempotency_key)
                if signature is None:
                    self._fail(intent, "Transfer was never submitted")
                else:
                    self._transition(intent, ClaimState.TRANSFERRED, signature=signature)
                    self._apply_status(intent, self.chain.get_signature_status(signature))

            elif intent.state in (ClaimState.TRANSFERRED, ClaimState.UNKNOWN) and intent.signature:
                self._apply_status(intent, self.chain.get_signature_status(intent.signature))

        except ChainError as e:
            logger.warning(f"Could not reconcile intent {intent.idempotency_key[:16]}: {e}")

        return intent.state

    def _open_intents(self, wallet: str | None = None) -> list[ClaimIntent]:
        filters = {"wallet": wallet} if wallet else {}
        intents = [ClaimIntent.from_dict(r) for r in self.store.select(INTENTS_TABLE, **filters)]
        return [i for i in intents if i.state in OPEN_STATES]

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def claim(
        self,
        wallet: str,
        rift_id: str | None = None,
        earning_type: str = "lp",
        destination: str | None = None,
        idempotency_key: str | None = None,
    ) -> ClaimResult:
        """
        Claim the wallet's claimable balance for a rift/type, its referral
        balance, or everything ("all") in one transfer.

        Raises:
            ValidationError: Missing wallet or rift, unknown type
            ClaimAlreadyInFlightError: Another claim for the wallet is running
            ClaimAlreadySettledError: The idempotency key already settled
            InsufficientClaimableError: Claimable is below the minimum claim
            InsufficientTreasuryBalanceError: Treasury cannot cover amount + fees
            TransferFailedError: The transfer was rejected (funds rolled back)
        """
        if not wallet:
            raise ValidationError("Wallet required", field_name="wallet")
        try:
            selector = ClaimSelector(earning_type)
        except ValueError:
            raise ValidationError(
                f"Invalid claim type: {earning_type}", field_name="type"
            ) from None
        if selector in (ClaimSelector.LP, ClaimSelector.TEAM) and not rift_id:
            raise ValidationError("riftId required", field_name="riftId")
        if not self.treasury_wallet:
            raise SettlementError("Treasury not configured", component="claims", action="claim")

        destination = destination or wallet
        lock_name = f"claims:{wallet}"

        try:
            with self.locks.lock(lock_name, timeout=self.settings.claim_lock_timeout, ttl=CLAIM_LOCK_TTL):
                with self.locks.lock(
                    f"treasury:{self.treasury_wallet}", timeout=TREASURY_LOCK_TIMEOUT, ttl=CLAIM_LOCK_TTL
                ):
                    return self._claim_locked(wallet, rift_id, selector, destination, idempotency_key)
        except TimeoutError:
            metrics.record_claim("in_flight")
            raise ClaimAlreadyInFlightError(key=lock_name) from None

    def _claim_locked(
        self,
        wallet: str,
        rift_id: str | None,
        selector: ClaimSelector,
        destination: str,
        idempotency_key: str | None,
    ) -> ClaimResult:
        # Resolve anything left over from earlier attempts first
        for pending in self._open_intents(wallet):
            self._reconcile_intent(pending)

        key = idempotency_key or self._derive_key(wallet, rift_id, selector, destination)

        with LoggingContext(claim_key=key[:16], wallet=wallet):
            existing = self.get_intent(key)
            if existing is not None:
                if existing.state == ClaimState.SETTLED:
                    raise ClaimAlreadySettledError(
                        "Claim already settled", idempotency_key=key, signature=existing.signature
                    )
                if existing.state in OPEN_STATES:
                    return ClaimResult.from_intent(existing, "Transfer submitted; confirmation pending")

            allocations = self._allocations(wallet, rift_id, selector)
            amount = sum((a.amount for a in allocations), ZERO)
            if amount < self.settings.min_claim_amount:
                raise InsufficientClaimableError(
                    f"Nothing to claim (minimum {self.settings.min_claim_amount} SOL)",
                    claimable=amount,
                    required=self.settings.min_claim_amount,
                    action="claim",
                )

            balance = self.chain.get_balance(self.treasury_wallet)
            required = amount + self._fee_buffer(selector)
            if balance < required:
                raise InsufficientTreasuryBalanceError(
                    "Insufficient treasury balance", balance=balance, required=required, action="claim"
                )

            intent = ClaimIntent(
                idempotency_key=key,
                wallet=wallet,
                selector=selector,
                destination=destination,
                amount=amount,
                rift_id=rift_id,
                allocations=allocations,
                transfer_reference=key,
            )
            if existing is None:
                if not self.store.insert_unique(INTENTS_TABLE, key, intent.to_dict()):
                    raise ClaimAlreadyInFlightError(key=key)
            else:
                # A failed intent is retried under the same key
                intent.created_at = existing.created_at
                if not self.store.update_where(
                    INTENTS_TABLE, key, {"state": ClaimState.FAILED.value}, intent.to_dict()
                ):
                    raise ClaimAlreadyInFlightError(key=key)

            try:
                self._reserve(wallet, allocations)
            except (SettlementError, StorageError) as e:
                self._transition(intent, ClaimState.FAILED, error=str(e))
                raise
            self._transition(intent, ClaimState.FUNDS_RESERVED, allocations=allocations)

            try:
                signature = self.chain.send_transfer(
                    self.treasury_wallet, destination, amount, reference=key
                )
            except TransferFailedError as e:
                self._fail(intent, e.message)
                raise
            except ChainError as e:
                # The transfer may or may not have gone out; look it up by reference
                try:
                    signature = self.chain.find_transfer(key)
                except ChainError:
                    logger.error(f"Transfer outcome unknown for {key[:16]}, left for reconciliation: {e}")
                    raise e from None
                if signature is None:
                    self._fail(intent, e.message)
                    raise

            self._transition(intent, ClaimState.TRANSFERRED, signature=signature)
            status = self.chain.confirm_transfer(signature, timeout=self.settings.confirm_timeout)
            self._apply_status(intent, status)

            if intent.state == ClaimState.FAILED:
                raise TransferFailedError("Transfer failed on chain", action="confirm")
            if intent.state == ClaimState.UNKNOWN:
                return ClaimResult.from_intent(intent, "Transfer submitted; confirmation pending")
            return ClaimResult.from_intent(intent, f"Successfully claimed {amount:.4f} SOL")

    def reconcile_pending(self) -> dict[str, int]:
        """Resolve every open intent whose wallet is not mid-claim."""
        summary = {"checked": 0, "settled": 0, "failed": 0, "unresolved": 0, "skipped": 0}

        for intent in self._open_intents():
            if not self.locks.acquire(f"claims:{intent.wallet}", timeout=0, ttl=CLAIM_LOCK_TTL):
                summary["skipped"] += 1
                continue
            try:
                current = self.get_intent(intent.idempotency_key)
                if current is None or current.state not in OPEN_STATES:
                    continue
                summary["checked"] += 1
                state = self._reconcile_intent(current)
            finally:
                self.locks.release(f"claims:{intent.wallet}")

            if state == ClaimState.SETTLED:
                summary["settled"] += 1
            elif state == ClaimState.FAILED:
                summary["failed"] += 1
            else:
                summary["unresolved"] += 1

        if summary["checked"]:
            logger.info(f"Claim reconciliation: {summary}")
        return summary

    def claim_escrow(self, wallet: str, rift_id: str, kind: str = "lp") -> ClaimResult:
        """
        Legacy escrow claim: sweep the wallet's escrow account to the wallet,
        keeping the rent reserve in the escrow.
        """
        if not wallet:
            raise ValidationError("Wallet required", field_name="wallet")
        if not rift_id:
            raise ValidationError("riftId required", field_name="riftId")
        try:
            earning_type = EarningType(kind)
        except ValueError:
            raise ValidationError(f"Invalid escrow kind: {kind}", field_name="kind") from None

        account = self.escrows.get(rift_id, wallet, earning_type)
        if account is None:
            raise ValidationError("No escrow account found", field_name="riftId")

        lock_name = f"claims:{wallet}"
        try:
            with self.locks.lock(lock_name, timeout=self.settings.claim_lock_timeout, ttl=CLAIM_LOCK_TTL):
                balance_lamports = sol_to_lamports(self.chain.get_balance(account.escrow_address))
                claim_lamports = balance_lamports - sol_to_lamports(ESCROW_RENT_RESERVE)
                if claim_lamports < MIN_ESCROW_CLAIM_LAMPORTS:
                    raise InsufficientClaimableError(
                        "Nothing to claim",
                        claimable=lamports_to_sol(max(claim_lamports, 0)),
                        required=lamports_to_sol(MIN_ESCROW_CLAIM_LAMPORTS),
                        action="claim_escrow",
                    )

                amount = lamports_to_sol(claim_lamports)
                reference = f"escrow:{account.key}:{balance_lamports}"
                signature = self.chain.find_transfer(reference) or self.chain.send_transfer(
                    account.escrow_address, wallet, amount, reference=reference
                )
                status = self.chain.confirm_transfer(signature, timeout=self.settings.confirm_timeout)
        except TimeoutError:
            raise ClaimAlreadyInFlightError(key=lock_name) from None

        if status == ConfirmationStatus.FAILED:
            raise TransferFailedError("Escrow transfer failed on chain", action="claim_escrow")

        self.audit_log.record_payment(
            TreasuryPayment(
                payment_type=PaymentType.ESCROW_CLAIM,
                amount=amount,
                recipient_wallet=wallet,
                rift_id=rift_id,
                source_description=f"{earning_type.value} escrow {account.escrow_address}",
                signature=signature,
                status=PaymentStatus.CONFIRMED
                if status == ConfirmationStatus.CONFIRMED
                else PaymentStatus.UNKNOWN,
            )
        )

        state = ClaimState.SETTLED if status == ConfirmationStatus.CONFIRMED else ClaimState.UNKNOWN
        metrics.record_claim(state.value, float(amount) if state == ClaimState.SETTLED else None)
        return ClaimResult(
            success=state == ClaimState.SETTLED,
            state=state,
            idempotency_key=reference,
            amount=amount,
            destination=wallet,
            signature=signature,
            message=f"Successfully claimed {amount:.4f} SOL",
        )
