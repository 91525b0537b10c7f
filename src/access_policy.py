"""
RiftSettle - Access Policy

Decides who may manage a rift, who is an admin and who is a VIP referrer.

Roles come from configuration only:
- ADMIN_WALLETS: comma separated admin wallets
- VIP_WALLETS: comma separated wallets that always get the top referral rate
- RIFT_MANAGERS: JSON object mapping rift id -> list of partner wallets
- ACCESS_POLICY_FILE: JSON file with "admins", "vips" and "rift_managers"
  keys, merged with the environment values

A rift's creator (from the rift directory) may always manage it.

Usage:
    from access_policy import require_admin, require_rift_manager

    @bp.route("/admin/config", methods=["POST"])
    @require_rift_manager
    def update_config():
        ...
"""

import json
import logging
import os
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any

from flask import g, jsonify, request

from settlement_models import iso_now, short_wallet

logger = logging.getLogger(__name__)


def _wallet_list(value: str | None) -> set[str]:
    return {w.strip() for w in (value or "").split(",") if w.strip()}


@dataclass
class AccessPolicy:
    """Role lookups for wallets."""

    admin_wallets: set[str] = field(default_factory=set)
    vip_wallets: set[str] = field(default_factory=set)
    rift_managers: dict[str, set[str]] = field(default_factory=dict)
    creator_lookup: Callable[[str], str | None] | None = None

    def __post_init__(self):
        self._audit_log: list[dict[str, Any]] = []
        self._max_audit_entries = 1000
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, creator_lookup: Callable[[str], str | None] | None = None) -> "AccessPolicy":
        admins = _wallet_list(os.getenv("ADMIN_WALLETS"))
        vips = _wallet_list(os.getenv("VIP_WALLETS"))
        managers: dict[str, set[str]] = {}

        raw_managers = os.getenv("RIFT_MANAGERS")
        if raw_managers:
            try:
                for rift_id, wallets in json.loads(raw_managers).items():
                    managers.setdefault(rift_id, set()).update(wallets)
            except (ValueError, AttributeError) as e:
                logger.error(f"Ignoring malformed RIFT_MANAGERS: {e}")

        policy_file = os.getenv("ACCESS_POLICY_FILE")
        if policy_file:
            with open(policy_file) as f:
                data = json.load(f)
            admins.update(data.get("admins", []))
            vips.update(data.get("vips", []))
            for rift_id, wallets in data.get("rift_managers", {}).items():
                managers.setdefault(rift_id, set()).update(wallets)
            logger.info(f"Access policy loaded from {policy_file}")

        return cls(
            admin_wallets=admins,
            vip_wallets=vips,
            rift_managers=managers,
            creator_lookup=creator_lookup,
        )

    def is_admin(self, wallet: str | None) -> bool:
        return bool(wallet) and wallet in self.admin_wallets

    def is_vip(self, wallet: str | None) -> bool:
        return bool(wallet) and wallet in self.vip_wallets

    def can_manage_rift(self, wallet: str | None, rift_id: str | None) -> bool:
        """Admins, the rift's partners and the rift's creator may manage it."""
        if not wallet:
            return False
        if self.is_admin(wallet):
            return True
        if not rift_id:
            return False
        if wallet in self.rift_managers.get(rift_id, set()):
            return True
        return self.creator_lookup is not None and self.creator_lookup(rift_id) == wallet

    def audit(self, action: str, **kwargs: Any) -> None:
        entry = {"timestamp": iso_now(), "action": action, **kwargs}
        with self._lock:
            self._audit_log.append(entry)
            if len(self._audit_log) > self._max_audit_entries:
                self._audit_log = self._audit_log[-self._max_audit_entries :]
        logger.debug(f"Access audit: {action} - {kwargs}")

    def get_audit_log(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            return self._audit_log[-limit:]


# =============================================================================
# Global policy
# =============================================================================

_policy: AccessPolicy | None = None
_policy_lock = threading.Lock()


def get_access_policy() -> AccessPolicy:
    global _policy
    with _policy_lock:
        if _policy is None:
            _policy = AccessPolicy.from_env()
        return _policy


def configure_access_policy(policy: AccessPolicy) -> AccessPolicy:
    global _policy
    with _policy_lock:
        _policy = policy
    return policy


def reset_access_policy() -> None:
    global _policy
    with _policy_lock:
        _policy = None


# =============================================================================
# Flask decorators
# =============================================================================


def caller_wallet() -> str | None:
    """Wallet the caller claims to act as: body, then header, then query string."""
    body = request.get_json(silent=True) or {}
    if isinstance(body, dict):
        wallet = body.get("adminWallet") or body.get("wallet")
        if isinstance(wallet, str) and wallet:
            return wallet
    return request.headers.get("X-Wallet-Address") or request.args.get("wallet")


def _has_cron_secret() -> bool:
    secret = os.getenv("CRON_SECRET")
    header = request.headers.get("Authorization", "")
    if not secret or not header.startswith("Bearer "):
        return False
    return secrets.compare_digest(header[len("Bearer ") :], secret)


def require_cron_secret(f: Callable) -> Callable:
    """Require ``Authorization: Bearer $CRON_SECRET``."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not os.getenv("CRON_SECRET"):
            return jsonify({"error": "Cron secret not configured"}), 503
        if not _has_cron_secret():
            return jsonify({"error": "Unauthorized"}), 401
        g.wallet = None
        g.via_cron = True
        return f(*args, **kwargs)

    return decorated_function


def require_admin(allow_cron: bool = False, audit: bool = True):
    """
    Require an admin wallet. With ``allow_cron`` a valid cron secret is
    accepted instead.

    Example:
        @bp.route("/admin/record-earnings", methods=["POST"])
        @require_admin(allow_cron=True)
        def record_earnings():
            ...
    """

    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if allow_cron and _has_cron_secret():
                g.wallet = None
                g.via_cron = True
                return f(*args, **kwargs)

            policy = get_access_policy()
            wallet = caller_wallet()
            allowed = policy.is_admin(wallet)

            if audit:
                policy.audit(
                    "admin_check",
                    wallet=short_wallet(wallet),
                    allowed=allowed,
                    endpoint=request.endpoint,
                    method=request.method,
                )

            if not wallet:
                return jsonify({"error": "Wallet required"}), 401
            if not allowed:
                return jsonify({"error": "Unauthorized"}), 403

            g.wallet = wallet
            g.via_cron = False
            return f(*args, **kwargs)

        return decorated_function

    return decorator


def require_rift_manager(f: Callable) -> Callable:
    """Require a wallet allowed to manage the rift named by ``riftId``."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        policy = get_access_policy()
        wallet = caller_wallet()
        body = request.get_json(silent=True) or {}
        rift_id = body.get("riftId") if isinstance(body, dict) else None
        rift_id = rift_id or request.args.get("riftId")

        allowed = policy.can_manage_rift(wallet, rift_id)
        policy.audit(
            "rift_manager_check",
            wallet=short_wallet(wallet),
            rift_id=rift_id,
            allowed=allowed,
            endpoint=request.endpoint,
        )

        if not wallet:
            return jsonify({"error": "Wallet required"}), 401
        if not allowed:
            return jsonify({"error": "Unauthorized"}), 403

        g.wallet = wallet
        return f(*args, **kwargs)

    return decorated_function
