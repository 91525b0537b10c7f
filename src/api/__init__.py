"""
RiftSettle API Package.

This package contains the modular Flask blueprints for the RiftSettle API.

Blueprints:
- claims: Claimable breakdown, claims and legacy escrow sweeps
- referrals: Referral registration and dashboard
- admin: Rift config, LP positions, earnings runs, distribute, reset
- monitoring: Health probes and Prometheus metrics

Errors raised by the settlement services are mapped to JSON bodies of
the form {"error": "..."} with the status carried by the error class.
"""

import logging
import os

from flask import Flask, jsonify, request

from api.admin import admin_bp
from api.claims import claims_bp
from api.monitoring import monitoring_bp
from api.referrals import referrals_bp
from api.state import init_services
from api.utils import check_rate_limit, services
from monitoring import setup_request_logging
from settlement_errors import ClaimAlreadySettledError, SettlementError
from storage.base import StorageError

logger = logging.getLogger(__name__)

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (claims_bp, ""),
    (referrals_bp, ""),
    (admin_bp, None),       # blueprint carries /admin
    (monitoring_bp, ""),
]

# Probes and scrapes are never rate limited
RATE_LIMIT_EXEMPT = {"monitoring.liveness", "monitoring.readiness", "monitoring.prometheus_metrics"}


def register_blueprints(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        if url_prefix is None:
            app.register_blueprint(blueprint)
        else:
            app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(SettlementError)
    def handle_settlement_error(error: SettlementError):
        body = {"error": error.message, "code": error.code}
        if isinstance(error, ClaimAlreadySettledError):
            body["idempotency_key"] = error.details.get("idempotency_key")
            body["signature"] = error.details.get("signature")
        if error.http_status >= 500:
            logger.error(f"{error.code}: {error.message}", exc_info=error.cause)
        return jsonify(body), error.http_status

    @app.errorhandler(StorageError)
    def handle_storage_error(error: StorageError):
        logger.error(f"Storage failure: {error}")
        return jsonify({"error": "Storage unavailable"}), 503

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405


def create_app(**service_overrides) -> Flask:
    """
    Build the Flask app.

    Keyword arguments are passed to ``init_services`` (settings, store,
    chain, lock_manager, access_policy, price_oracle, clock).
    """
    app = Flask(__name__)
    app.json.sort_keys = False
    app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_CONTENT_LENGTH", str(64 * 1024)))

    init_services(**service_overrides)

    setup_request_logging(app)

    if os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true":

        @app.before_request
        def rate_limit():
            if request.endpoint in RATE_LIMIT_EXEMPT:
                return None
            limited = check_rate_limit()
            if limited:
                return jsonify(limited), 429
            return None

    register_error_handlers(app)
    register_blueprints(app)
    return app


__all__ = ["create_app", "register_blueprints", "services", "ALL_BLUEPRINTS"]
