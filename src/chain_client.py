"""
RiftSettle - Chain Client

Everything the settlement core needs from the chain, behind one interface:
- Balance reads (single and batched)
- A transfer context (recent blockhash) fetched once per distribution run
- Transfers from a treasury or escrow account, tagged with a reference so
  that a transfer whose signature was lost can be found again
- Confirmation polling and signature status lookup for reconciliation
- Trade history for profit aggregation

Reads go to a JSON-RPC node over HTTPS. Transfers and trade history go
through the custody gateway, which holds the signing keys; every gateway
request is HMAC-authenticated and recorded in an audit log.

Usage:
    from chain_client import get_chain_client

    chain = get_chain_client()
    signature = chain.send_transfer(treasury, wallet, Decimal("0.5"), reference=key)
    status = chain.confirm_transfer(signature, timeout=30)
"""

import hashlib
import hmac
import itertools
import json
import logging
import os
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from retry import RetryConfig, is_retryable_status_code, retry_call
from scaling.cache import Cache, LocalCache
from settlement_errors import ChainError, TransferFailedError
from settlement_models import (
    RENT_EXEMPT_MINIMUM_LAMPORTS,
    ZERO,
    Trade,
    iso_now,
    lamports_to_sol,
    short_wallet,
    sol_to_lamports,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
API_VERSION = "v1"

# Timeouts (seconds)
DEFAULT_TIMEOUT = 30
CONNECT_TIMEOUT = 10
DEFAULT_CONFIRM_TIMEOUT = 30.0
CONFIRM_POLL_INTERVAL = 1.0

# Session-level retries only cover idempotent GETs; RPC reads are retried
# through retry.retry_call and transfers are never retried.
MAX_RETRIES = 3
RETRY_BACKOFF_FACTOR = 0.5

# HMAC configuration
HMAC_HEADER = "X-Rift-Signature"
TIMESTAMP_HEADER = "X-Rift-Timestamp"
NONCE_HEADER = "X-Rift-Nonce"

# Terminal signature statuses are cached this long
SIGNATURE_STATUS_TTL = 300.0


# =============================================================================
# Types
# =============================================================================


class ConfirmationStatus(Enum):
    """Outcome of a transfer as seen by the chain."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"  # Not seen yet, or still unconfirmed


@dataclass
class TransferContext:
    """Batch signing context shared by every transfer in one run."""

    recent_blockhash: str
    last_valid_block_height: int = 0
    fetched_at: str = field(default_factory=iso_now)


@dataclass
class TransferRecord:
    """A transfer submitted through the client."""

    signature: str
    source: str
    destination: str
    amount: Decimal
    reference: str | None = None
    status: ConfirmationStatus = ConfirmationStatus.CONFIRMED
    created_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "source": self.source,
            "destination": self.destination,
            "amount": str(self.amount),
            "reference": self.reference,
            "status": self.status.value,
            "created_at": self.created_at,
        }


# =============================================================================
# HMAC Authentication
# =============================================================================


class HMACAuthenticator:
    """
    HMAC-SHA256 request signing toward the custody gateway.

    Every request carries a timestamp and a fresh nonce; the gateway checks
    both to reject replays.
    """

    def __init__(self, secret_key: str):
        self.secret_key = secret_key.encode("utf-8")

    def _compute_signature(
        self, method: str, path: str, timestamp: int, nonce: str, body: str | None = None
    ) -> str:
        sign_string = f"{method.upper()}\n{path}\n{timestamp}\n{nonce}\n{body or ''}"
        return hmac.new(self.secret_key, sign_string.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_request(
        self, method: str, path: str, body: str | None = None, timestamp: int | None = None
    ) -> dict[str, str]:
        """
        Sign a request and return authentication headers.

        Args:
            method: HTTP method
            path: Request path
            body: Request body (JSON string)
            timestamp: Optional timestamp (uses current time if not provided)
        """
        if timestamp is None:
            timestamp = int(time.time())

        nonce = secrets.token_hex(16)
        signature = self._compute_signature(method, path, timestamp, nonce, body)

        return {HMAC_HEADER: signature, TIMESTAMP_HEADER: str(timestamp), NONCE_HEADER: nonce}


# =============================================================================
# Interface
# =============================================================================


class ChainClient(ABC):
    """
    Abstract chain client.

    Amounts cross this boundary as Decimal SOL and are converted to
    lamports (truncating) at the wire.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    @abstractmethod
    def get_balance(self, address: str) -> Decimal:
        """Balance of an account in SOL."""
        pass

    def get_balances(self, addresses: list[str]) -> dict[str, Decimal]:
        """Balances of several accounts in one round trip where supported."""
        return {address: self.get_balance(address) for address in addresses}

    @abstractmethod
    def get_transfer_context(self) -> TransferContext:
        """Fetch a signing context to reuse for a batch of transfers."""
        pass

    def account_init_surcharge(self, destination_balance: Decimal) -> Decimal:
        """Extra amount needed for a transfer to an empty account to be valid."""
        if destination_balance <= 0:
            return lamports_to_sol(RENT_EXEMPT_MINIMUM_LAMPORTS)
        return ZERO

    @abstractmethod
    def send_transfer(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        context: TransferContext | None = None,
        reference: str | None = None,
    ) -> str:
        """
        Submit a transfer and return its signature.

        Raises:
            TransferFailedError: If the transfer was rejected
        """
        pass

    @abstractmethod
    def get_signature_status(self, signature: str) -> ConfirmationStatus:
        """Look up the current status of a signature."""
        pass

    def confirm_transfer(
        self, signature: str, timeout: float = DEFAULT_CONFIRM_TIMEOUT
    ) -> ConfirmationStatus:
        """
        Poll until the signature is confirmed or failed.

        Returns UNKNOWN when ``timeout`` elapses; never raises on timeout.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                status = self.get_signature_status(signature)
            except ChainError as e:
                logger.warning(f"Status lookup for {signature[:16]} failed: {e}")
                status = ConfirmationStatus.UNKNOWN

            if status != ConfirmationStatus.UNKNOWN:
                return status
            if time.monotonic() >= deadline:
                return ConfirmationStatus.UNKNOWN
            self._sleep(CONFIRM_POLL_INTERVAL)

    @abstractmethod
    def find_transfer(self, reference: str) -> str | None:
        """Signature of the transfer submitted with ``reference``, if any."""
        pass

    @abstractmethod
    def get_trades(self, rift_id: str | None = None, since_sequence: int = 0) -> list[Trade]:
        """Trade history, optionally for one rift and past a sequence watermark."""
        pass

    def health_check(self) -> dict[str, Any]:
        return {"status": "ok", "backend": type(self).__name__}


# =============================================================================
# HTTP implementation
# =============================================================================


class HttpChainClient(ChainClient):
    """
    Chain client backed by a JSON-RPC node and the custody gateway.

    Features:
    - HTTPS with TLS certificate verification
    - HMAC request authentication toward the gateway
    - Retry with exponential backoff and a circuit breaker on RPC reads
    - Request logging for audit
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        gateway_url: str | None = None,
        gateway_secret: str | None = None,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
        cache: Cache | None = None,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            rpc_url: JSON-RPC endpoint
            gateway_url: Custody gateway base URL (transfers, trade history)
            gateway_secret: Shared secret for HMAC authentication
            verify_ssl: Whether to verify SSL certificates
            timeout: Request timeout in seconds
            cache: Cache for terminal signature statuses
            retry_config: Retry policy for RPC reads
        """
        super().__init__(sleep=sleep)
        self.rpc_url = rpc_url
        self.gateway_base = f"{gateway_url.rstrip('/')}/api/{API_VERSION}" if gateway_url else None
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.cache = cache or LocalCache(max_size=5000)
        self.retry_config = retry_config or RetryConfig.from_env()

        self.authenticator = HMACAuthenticator(gateway_secret) if gateway_secret else None

        self._request_ids = itertools.count(1)
        self.audit_log: list[dict[str, Any]] = []
        self._audit_lock = threading.Lock()

        self._setup_session()

    @classmethod
    def from_env(cls) -> "HttpChainClient":
        """Create a client from CHAIN_RPC_URL, CUSTODY_GATEWAY_URL and CUSTODY_GATEWAY_SECRET."""
        return cls(
            rpc_url=os.getenv("CHAIN_RPC_URL", DEFAULT_RPC_URL),
            gateway_url=os.getenv("CUSTODY_GATEWAY_URL"),
            gateway_secret=os.getenv("CUSTODY_GATEWAY_SECRET"),
            verify_ssl=os.getenv("CHAIN_VERIFY_SSL", "true").lower() != "false",
            timeout=int(os.getenv("CHAIN_TIMEOUT", str(DEFAULT_TIMEOUT))),
        )

    def _setup_session(self):
        """Set up requests session with retry logic for idempotent methods."""
        self.session = requests.Session()

        retry_strategy = Retry(
            total=MAX_RETRIES,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"],
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"RiftSettle-Python/{API_VERSION}",
            }
        )

    def _audit(self, entry: dict[str, Any]) -> None:
        with self._audit_lock:
            self.audit_log.append(entry)
            if len(self.audit_log) > 1000:
                del self.audit_log[:-1000]

    # =========================================================================
    # Transport
    # =========================================================================

    def _rpc_once(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._request_ids), "method": method, "params": params}
        entry = {"timestamp": iso_now(), "kind": "rpc", "method": method}

        try:
            response = self.session.post(
                self.rpc_url,
                json=payload,
                timeout=(CONNECT_TIMEOUT, self.timeout),
                verify=self.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            entry["error"] = str(e)
            self._audit(entry)
            raise

        entry["status_code"] = response.status_code
        self._audit(entry)

        if is_retryable_status_code(response.status_code, self.retry_config.retryable_status_codes):
            raise ConnectionError(f"RPC {method} returned HTTP {response.status_code}")
        if not response.ok:
            raise ChainError(f"RPC {method} failed: HTTP {response.status_code}", action=method)

        try:
            data = response.json()
        except ValueError as e:
            raise ChainError(f"RPC {method} returned invalid JSON", action=method, cause=e)

        if data.get("error"):
            raise ChainError(
                f"RPC {method} error: {data['error'].get('message', data['error'])}",
                action=method,
            )
        return data.get("result")

    def _rpc(self, method: str, params: list[Any]) -> Any:
        """JSON-RPC call with retries; transport failures surface as ChainError."""
        try:
            return retry_call(
                self._rpc_once,
                args=(method, params),
                config=self.retry_config,
                circuit_breaker_name="chain_rpc",
                sleep=self._sleep,
            )
        except ChainError:
            raise
        except (OSError, requests.exceptions.RequestException) as e:
            raise ChainError(f"RPC {method} unavailable: {e}", action=method, cause=e)

    def _gateway(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """
        Make an authenticated gateway request.

        Returns:
            Tuple of (status_code, response JSON)
        """
        if not self.gateway_base:
            raise ChainError("CUSTODY_GATEWAY_URL is not configured", action=path)

        url = f"{self.gateway_base}{path}"
        body_str = json.dumps(body, sort_keys=True) if body is not None else None

        headers = {}
        if self.authenticator:
            headers.update(self.authenticator.sign_request(method, path, body_str))

        entry = {
            "timestamp": iso_now(),
            "kind": "gateway",
            "method": method,
            "path": path,
            "body_hash": hashlib.sha256(body_str.encode()).hexdigest() if body_str else None,
        }

        try:
            response = self.session.request(
                method=method,
                url=url,
                data=body_str,
                params=params,
                headers=headers,
                timeout=(CONNECT_TIMEOUT, self.timeout),
                verify=self.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            entry["error"] = str(e)
            self._audit(entry)
            raise ChainError(f"Gateway {method} {path} failed: {e}", action=path, cause=e)

        entry["status_code"] = response.status_code
        self._audit(entry)

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"raw": response.text}
        return response.status_code, data

    # =========================================================================
    # Reads
    # =========================================================================

    def get_balance(self, address: str) -> Decimal:
        result = self._rpc("getBalance", [address, {"commitment": "confirmed"}])
        return lamports_to_sol(int(result["value"]))

    def get_balances(self, addresses: list[str]) -> dict[str, Decimal]:
        if not addresses:
            return {}
        balances: dict[str, Decimal] = {}
        # getMultipleAccounts accepts at most 100 keys
        for start in range(0, len(addresses), 100):
            chunk = addresses[start:start + 100]
            result = self._rpc(
                "getMultipleAccounts", [chunk, {"commitment": "confirmed", "encoding": "base64"}]
            )
            for address, account in zip(chunk, result["value"]):
                lamports = account["lamports"] if account else 0
                balances[address] = lamports_to_sol(int(lamports))
        return balances

    def get_transfer_context(self) -> TransferContext:
        result = self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
        value = result["value"]
        return TransferContext(
            recent_blockhash=value["blockhash"],
            last_valid_block_height=int(value.get("lastValidBlockHeight", 0)),
        )

    def get_signature_status(self, signature: str) -> ConfirmationStatus:
        cached = self.cache.get(f"sigstatus:{signature}")
        if cached:
            return ConfirmationStatus(cached)

        result = self._rpc(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        info = (result.get("value") or [None])[0]

        if info is None:
            return ConfirmationStatus.UNKNOWN
        if info.get("err") is not None:
            status = ConfirmationStatus.FAILED
        elif info.get("confirmationStatus") in ("confirmed", "finalized"):
            status = ConfirmationStatus.CONFIRMED
        else:
            return ConfirmationStatus.UNKNOWN

        self.cache.set(f"sigstatus:{signature}", status.value, ttl=SIGNATURE_STATUS_TTL)
        return status

    # =========================================================================
    # Gateway operations
    # =========================================================================

    def send_transfer(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        context: TransferContext | None = None,
        reference: str | None = None,
    ) -> str:
        lamports = sol_to_lamports(amount)
        if lamports <= 0:
            raise TransferFailedError(f"Transfer amount must be positive: {amount}", action="send")

        body = {
            "source": source,
            "destination": destination,
            "lamports": lamports,
            "recentBlockhash": context.recent_blockhash if context else None,
            "reference": reference,
        }
        status_code, data = self._gateway("POST", "/transfers", body=body)

        if status_code >= 400 or not data.get("signature"):
            message = data.get("error") or data.get("message") or f"HTTP {status_code}"
            raise TransferFailedError(
                f"Transfer to {short_wallet(destination)} failed: {message}",
                action="send",
                details={"status_code": status_code, "reference": reference},
            )

        logger.info(
            f"Transfer submitted: {lamports} lamports -> {short_wallet(destination)} "
            f"sig={data['signature'][:16]}"
        )
        return data["signature"]

    def find_transfer(self, reference: str) -> str | None:
        status_code, data = self._gateway("GET", "/transfers", params={"reference": reference})
        if status_code == 404:
            return None
        if status_code >= 400:
            raise ChainError(f"Transfer lookup failed: HTTP {status_code}", action="find_transfer")
        return data.get("signature")

    def get_trades(self, rift_id: str | None = None, since_sequence: int = 0) -> list[Trade]:
        params: dict[str, Any] = {"sinceSequence": since_sequence}
        if rift_id:
            params["riftId"] = rift_id
        status_code, data = self._gateway("GET", "/trades", params=params)
        if status_code >= 400:
            raise ChainError(f"Trade history fetch failed: HTTP {status_code}", action="get_trades")
        return [Trade.from_dict(t) for t in data.get("trades", [])]

    def health_check(self) -> dict[str, Any]:
        try:
            self._rpc_once("getHealth", [])
            return {"status": "ok", "backend": "http", "rpc_url": self.rpc_url}
        except (ChainError, OSError, requests.exceptions.RequestException) as e:
            return {"status": "unavailable", "backend": "http", "error": str(e)}

    def get_audit_log(self, limit: int = 100) -> list[dict[str, Any]]:
        """Get recent audit log entries."""
        with self._audit_lock:
            return self.audit_log[-limit:]


# =============================================================================
# Mock implementation
# =============================================================================


class MockChainClient(ChainClient):
    """
    In-memory chain for tests and dry runs.

    Failure injection:
        fail_transfers_to: destinations whose transfers are rejected
        fail_next_transfers: reject the next N transfers
        unconfirmed_transfers: the next N transfers stay UNKNOWN until
            resolve_signature() is called
        fail_balance_reads: every balance read raises ChainError
    """

    def __init__(self, balances: dict[str, Decimal] | None = None):
        super().__init__(sleep=lambda _: None)
        self._lock = threading.RLock()
        self._balances: dict[str, Decimal] = dict(balances or {})
        self._transfers: dict[str, TransferRecord] = {}
        self._trades: list[Trade] = []
        self._sequence = itertools.count(1)
        self._blockhash_requests = 0

        self.fail_transfers_to: set[str] = set()
        self.fail_next_transfers = 0
        self.unconfirmed_transfers = 0
        self.fail_balance_reads = False

    # -- test helpers ---------------------------------------------------------

    def set_balance(self, address: str, amount: Decimal | str | int) -> None:
        with self._lock:
            self._balances[address] = Decimal(str(amount))

    def add_trade(
        self,
        rift_id: str,
        profit: Decimal | str,
        success: bool = True,
        timestamp: str | None = None,
    ) -> Trade:
        with self._lock:
            sequence = next(self._sequence)
            trade = Trade(
                rift_id=rift_id,
                actual_profit=Decimal(str(profit)),
                success=success,
                signature=f"trade_{sequence}",
                timestamp=timestamp or iso_now(),
                sequence=sequence,
            )
            self._trades.append(trade)
            return trade

    def resolve_signature(self, signature: str, status: ConfirmationStatus) -> None:
        """Settle a pending transfer; FAILED refunds the source."""
        with self._lock:
            record = self._transfers[signature]
            if status == ConfirmationStatus.FAILED and record.status != ConfirmationStatus.FAILED:
                self._balances[record.source] = self._balances.get(record.source, ZERO) + record.amount
                self._balances[record.destination] = (
                    self._balances.get(record.destination, ZERO) - record.amount
                )
            record.status = status

    @property
    def transfers(self) -> list[TransferRecord]:
        with self._lock:
            return list(self._transfers.values())

    @property
    def blockhash_requests(self) -> int:
        return self._blockhash_requests

    # -- ChainClient ----------------------------------------------------------

    def get_balance(self, address: str) -> Decimal:
        if self.fail_balance_reads:
            raise ChainError(f"Balance read failed for {short_wallet(address)}", action="get_balance")
        with self._lock:
            return self._balances.get(address, ZERO)

    def get_transfer_context(self) -> TransferContext:
        with self._lock:
            self._blockhash_requests += 1
            return TransferContext(recent_blockhash=secrets.token_hex(16))

    def send_transfer(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        context: TransferContext | None = None,
        reference: str | None = None,
    ) -> str:
        with self._lock:
            if self.fail_next_transfers > 0:
                self.fail_next_transfers -= 1
                raise TransferFailedError("Simulated transfer failure", action="send")
            if destination in self.fail_transfers_to:
                raise TransferFailedError(
                    f"Simulated transfer failure to {short_wallet(destination)}", action="send"
                )

            lamports = sol_to_lamports(amount)
            if lamports <= 0:
                raise TransferFailedError(f"Transfer amount must be positive: {amount}", action="send")

            amount = lamports_to_sol(lamports)
            if self._balances.get(source, ZERO) < amount:
                raise TransferFailedError("Insufficient funds in source account", action="send")

            status = ConfirmationStatus.CONFIRMED
            if self.unconfirmed_transfers > 0:
                self.unconfirmed_transfers -= 1
                status = ConfirmationStatus.UNKNOWN

            signature = secrets.token_hex(32)
            self._balances[source] = self._balances.get(source, ZERO) - amount
            self._balances[destination] = self._balances.get(destination, ZERO) + amount
            self._transfers[signature] = TransferRecord(
                signature=signature,
                source=source,
                destination=destination,
                amount=amount,
                reference=reference,
                status=status,
            )
            return signature

    def get_signature_status(self, signature: str) -> ConfirmationStatus:
        with self._lock:
            record = self._transfers.get(signature)
            return record.status if record else ConfirmationStatus.UNKNOWN

    def confirm_transfer(
        self, signature: str, timeout: float = DEFAULT_CONFIRM_TIMEOUT
    ) -> ConfirmationStatus:
        return self.get_signature_status(signature)

    def find_transfer(self, reference: str) -> str | None:
        with self._lock:
            for record in self._transfers.values():
                if record.reference == reference:
                    return record.signature
        return None

    def get_trades(self, rift_id: str | None = None, since_sequence: int = 0) -> list[Trade]:
        with self._lock:
            return [
                t for t in self._trades
                if (rift_id is None or t.rift_id == rift_id) and t.sequence > since_sequence
            ]

    def health_check(self) -> dict[str, Any]:
        return {"status": "ok", "backend": "mock"}


# =============================================================================
# Module-level convenience functions
# =============================================================================

_default_client: ChainClient | None = None


def get_chain_client() -> ChainClient:
    """
    Get the default chain client singleton.

    CHAIN_BACKEND selects the implementation: "http" (default) or "mock".
    """
    global _default_client
    if _default_client is None:
        backend = os.getenv("CHAIN_BACKEND", "http").lower()
        if backend == "mock":
            _default_client = MockChainClient()
        else:
            _default_client = HttpChainClient.from_env()
    return _default_client


def configure_chain_client(client: ChainClient) -> ChainClient:
    """Install ``client`` as the default chain client."""
    global _default_client
    _default_client = client
    return client


def reset_chain_client():
    """Reset the default chain client (useful for testing)."""
    global _default_client
    _default_client = None
