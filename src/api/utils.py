"""
Shared utilities for the RiftSettle API.

This module contains common utilities, decorators, and helpers
used across all API blueprints.
"""

import ipaddress
import os
import secrets
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from functools import wraps
from typing import Any

from flask import jsonify, request

from settlement_errors import ValidationError
from settlement_models import to_decimal

# ============================================================
# Security Configuration
# ============================================================

# Rate limiting configuration
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "100"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds
rate_limit_store: dict[str, dict[str, Any]] = {}
_rate_limit_lock = threading.Lock()

# Bounded parameters
MAX_RESULTS = 100
MAX_WALLET_LENGTH = 64
MAX_RIFT_ID_LENGTH = 128


def api_key_required() -> bool:
    return os.getenv("RIFTSETTLE_REQUIRE_AUTH", "false").lower() == "true"


# ============================================================
# Validation Utilities
# ============================================================


def validate_limit(limit: Any, max_limit: int = MAX_RESULTS) -> int:
    """Bound a requested result limit to [1, max_limit]."""
    try:
        value = int(limit) if limit else max_limit
    except (TypeError, ValueError):
        value = max_limit
    return max(1, min(value, max_limit))


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple[type, ...]],
    optional_fields: dict[str, type | tuple[type, ...]] | None = None,
    max_lengths: dict[str, int] | None = None,
) -> tuple:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data or data[field_name] in (None, ""):
            return False, f"Missing required field: {field_name}"
        if not isinstance(data[field_name], expected_type):
            return False, f"Field '{field_name}' has the wrong type"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if field_name in data and data[field_name] is not None:
                if not isinstance(data[field_name], expected_type):
                    return False, f"Field '{field_name}' has the wrong type"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            if field_name in data and isinstance(data[field_name], str):
                if len(data[field_name]) > max_len:
                    return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def json_body() -> dict[str, Any]:
    """The request's JSON object body, or raise ValidationError."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def parse_amount(value: Any, field_name: str) -> Decimal:
    """Parse a positive SOL amount from JSON (number or numeric string)."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}", field_name=field_name)
    amount = to_decimal(value, default=None)
    if amount is None or not amount.is_finite() or amount <= 0:
        raise ValidationError("Invalid amount", field_name=field_name)
    return amount


# ============================================================
# IP and Rate Limiting Utilities
# ============================================================


def is_valid_ip(ip_str: str) -> bool:
    try:
        ipaddress.ip_address(ip_str.strip())
        return True
    except (ValueError, AttributeError):
        return False


# Only trust X-Forwarded-For from these proxies
TRUSTED_PROXIES = {
    ip.strip() for ip in os.getenv("RIFTSETTLE_TRUSTED_PROXIES", "").split(",") if ip.strip()
}


def get_client_ip() -> str:
    """
    Get client IP address, considering proxies.

    X-Forwarded-For is only honoured when the direct peer is a trusted
    proxy; the rightmost untrusted address is used.
    """
    remote_addr = request.remote_addr or "unknown"

    if TRUSTED_PROXIES and remote_addr in TRUSTED_PROXIES:
        xff = request.headers.get("X-Forwarded-For")
        if xff:
            parts = [p.strip() for p in xff.split(",")]
            for ip in reversed(parts):
                if ip and is_valid_ip(ip) and ip not in TRUSTED_PROXIES:
                    return ip

    return remote_addr


def check_rate_limit() -> dict[str, Any] | None:
    """
    Check if client has exceeded rate limit.

    Returns:
        None if within limit, error dict if exceeded
    """
    client_ip = get_client_ip()
    current_time = time.time()

    with _rate_limit_lock:
        client_data = rate_limit_store.setdefault(
            client_ip, {"count": 0, "window_start": current_time}
        )

        if current_time - client_data["window_start"] > RATE_LIMIT_WINDOW:
            client_data["count"] = 0
            client_data["window_start"] = current_time

        if client_data["count"] >= RATE_LIMIT_REQUESTS:
            return {
                "error": "Rate limit exceeded",
                "retry_after": int(RATE_LIMIT_WINDOW - (current_time - client_data["window_start"])),
            }

        client_data["count"] += 1
    return None


# ============================================================
# Authentication Decorator
# ============================================================


def require_api_key(f):
    """Require X-API-Key when RIFTSETTLE_REQUIRE_AUTH is on."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not api_key_required():
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key")
        if not provided_key:
            return jsonify({"error": "API key required", "hint": "Provide API key in X-API-Key header"}), 401

        api_key = os.getenv("RIFTSETTLE_API_KEY")
        if not api_key:
            return jsonify(
                {"error": "Server API key not configured", "hint": "Set RIFTSETTLE_API_KEY environment variable"}
            ), 503

        if not secrets.compare_digest(provided_key, api_key):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)

    return decorated_function


# ============================================================
# Service Registry
# ============================================================


@dataclass
class ServiceRegistry:
    """
    Centralized registry for the settlement services.

    Blueprints read services from here; a missing service answers 503.
    """

    settings: Any = None
    store: Any = None
    chain: Any = None
    lock_manager: Any = None
    access_policy: Any = None

    ledger: Any = None
    registry: Any = None
    referrals: Any = None
    audit_log: Any = None
    claims: Any = None
    distribution: Any = None
    price_oracle: Any = None

    def is_ready(self) -> bool:
        return self.store is not None and self.claims is not None and self.distribution is not None

    def clear(self) -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, None)


# Global service registry instance
services = ServiceRegistry()


def service_unavailable(name: str):
    return jsonify({"error": f"{name} not initialized"}), 503
