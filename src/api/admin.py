"""
RiftSettle - Admin API Blueprint

Protocol administration: rift configuration, LP positions, earnings
runs, legacy distributions, profit resets and reconciliation.

Admin routes require a wallet listed in ADMIN_WALLETS. Rift
configuration is also open to the rift's creator and partners.
record-earnings and reconcile additionally accept the cron secret.
"""

import logging

from flask import Blueprint, g, jsonify, request

from access_policy import require_admin, require_rift_manager
from api.utils import (
    MAX_RIFT_ID_LENGTH,
    MAX_WALLET_LENGTH,
    json_body,
    parse_amount,
    service_unavailable,
    services,
    validate_json_schema,
    validate_limit,
)
from monitoring import counted, timed
from price_oracle import SOL_MINT
from settlement_errors import PriceUnavailableError, ValidationError
from settlement_models import EarningType, PaymentType, to_decimal

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


# =============================================================================
# Views
# =============================================================================


@admin_bp.route("/profits", methods=["GET"])
@require_admin()
def get_profits():
    """Protocol-wide profit, owed, paid and remaining per rift."""
    if not services.distribution:
        return service_unavailable("Distribution scheduler")

    overview = services.distribution.profit_overview()

    overview["sol_price_usd"] = None
    if services.price_oracle:
        try:
            quote = services.price_oracle.get_quote(SOL_MINT)
            overview["sol_price_usd"] = str(quote.price)
            overview["sol_price_stale"] = quote.stale
            overview["totals_usd"] = {
                name: str((to_decimal(value) * quote.price).quantize(to_decimal("0.01")))
                for name, value in overview["totals"].items()
            }
        except PriceUnavailableError as e:
            logger.warning(f"Profit view without USD prices: {e}")

    return jsonify(overview)


@admin_bp.route("/payments", methods=["GET"])
@require_admin()
def get_payments():
    """
    Treasury payment audit log.

    Query params:
        wallet: recipient filter
        riftId: rift filter
        type: payment type filter
        limit: max rows (default 100)
    """
    if not services.audit_log:
        return service_unavailable("Treasury audit log")

    payment_type = None
    if request.args.get("type"):
        try:
            payment_type = PaymentType(request.args["type"])
        except ValueError:
            return jsonify({"error": f"Invalid type: {request.args['type']}"}), 400

    payments = services.audit_log.payments(
        recipient_wallet=request.args.get("recipient"),
        rift_id=request.args.get("riftId"),
        payment_type=payment_type,
        limit=validate_limit(request.args.get("limit")),
    )
    return jsonify(
        {
            "payments": [p.to_dict() for p in payments],
            "statistics": services.audit_log.get_statistics(),
        }
    )


# =============================================================================
# Configuration
# =============================================================================


@admin_bp.route("/config", methods=["POST"])
@require_rift_manager
def update_rift_config():
    """
    Update a rift's profit configuration.

    Request body:
        {
            "riftId": "...",
            "isTeamRift": true,
            "lpSplit": 40,            // clamped to 0-100
            "feesEnabled": true
        }
    """
    if not services.registry:
        return service_unavailable("Rift config registry")

    data = json_body()
    is_valid, error = validate_json_schema(
        data, required_fields={"riftId": str}, max_lengths={"riftId": MAX_RIFT_ID_LENGTH}
    )
    if not is_valid:
        raise ValidationError(error, field_name="riftId")

    config = services.registry.update_config(
        data["riftId"],
        is_team_rift=data.get("isTeamRift"),
        lp_split=data.get("lpSplit"),
        fees_enabled=data.get("feesEnabled"),
    )
    services.access_policy.audit("rift_config_updated", wallet=g.wallet, rift_id=data["riftId"])
    return jsonify({"success": True, "config": config.to_dict()})


@admin_bp.route("/lp-position", methods=["POST"])
@require_rift_manager
def update_lp_position():
    """
    Set one LP position.

    Request body:
        {"riftId": "...", "lpWallet": "...", "sharePercent": 25, "liquidityAmount": 10}
    """
    if not services.distribution:
        return service_unavailable("Distribution scheduler")

    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={"riftId": str, "lpWallet": str},
        max_lengths={"riftId": MAX_RIFT_ID_LENGTH, "lpWallet": MAX_WALLET_LENGTH},
    )
    if not is_valid:
        raise ValidationError(error)

    position = services.distribution.update_lp_position(
        data["riftId"],
        data["lpWallet"],
        liquidity_amount=data.get("liquidityAmount"),
        share_percent=data.get("sharePercent"),
    )
    return jsonify({"success": True, "position": position.to_dict()})


@admin_bp.route("/lp-sync", methods=["POST"])
@require_rift_manager
def sync_lp_positions():
    """
    Replace a rift's LP positions from current liquidity.

    Request body:
        {"riftId": "...", "liquidity": {"<wallet>": 12.5, ...}}
    """
    if not services.distribution:
        return service_unavailable("Distribution scheduler")

    data = json_body()
    is_valid, error = validate_json_schema(
        data, required_fields={"riftId": str, "liquidity": dict}, max_lengths={"riftId": MAX_RIFT_ID_LENGTH}
    )
    if not is_valid:
        raise ValidationError(error)

    positions = services.distribution.sync_lp_shares(data["riftId"], data["liquidity"])
    return jsonify({"success": True, "positions": [p.to_dict() for p in positions]})


@admin_bp.route("/escrow", methods=["POST"])
@require_admin()
def register_escrow():
    """
    Register a legacy escrow account.

    Request body:
        {"riftId": "...", "ownerWallet": "...", "escrowAddress": "...", "kind": "lp" | "team"}
    """
    if not services.claims:
        return service_unavailable("Claim processor")

    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={"riftId": str, "ownerWallet": str, "escrowAddress": str},
        optional_fields={"kind": str},
        max_lengths={"ownerWallet": MAX_WALLET_LENGTH, "escrowAddress": MAX_WALLET_LENGTH},
    )
    if not is_valid:
        raise ValidationError(error)
    try:
        kind = EarningType(data.get("kind") or "lp")
    except ValueError:
        raise ValidationError(f"Invalid escrow kind: {data.get('kind')}", field_name="kind") from None

    account = services.claims.escrows.register(data["riftId"], data["ownerWallet"], data["escrowAddress"], kind)
    return jsonify({"success": True, "escrow": account.to_dict()}), 201


# =============================================================================
# Runs
# =============================================================================


@admin_bp.route("/record-earnings", methods=["GET", "POST"])
@require_admin(allow_cron=True)
@counted("record_earnings_runs_total")
@timed("record_earnings")
def record_earnings():
    """
    Record earnings owed to LPs and rift teams.

    Request body (optional):
        {"recipientType": "all" | "lp" | "team"}
    """
    if not services.distribution:
        return service_unavailable("Distribution scheduler")

    data = json_body() if request.method == "POST" else {}
    recipient_type = data.get("recipientType") or request.args.get("recipientType") or "all"

    report = services.distribution.record_earnings(recipient_type)
    logger.info(f"record-earnings run by {'cron' if g.via_cron else 'admin'}: {report.message}")
    return jsonify(report.to_dict())


@admin_bp.route("/distribute", methods=["POST"])
@require_admin()
@counted("distribution_runs_total")
def distribute():
    """
    Legacy direct-pay distribution.

    Request body:
        {"totalAmount": 1.5, "recipientType": "all" | "lp" | "team"}
    """
    if not services.distribution:
        return service_unavailable("Distribution scheduler")

    data = json_body()
    amount = parse_amount(data.get("totalAmount"), "totalAmount")
    report = services.distribution.distribute(amount, data.get("recipientType") or "all")
    return jsonify(report.to_dict())


@admin_bp.route("/reconcile", methods=["POST"])
@require_admin(allow_cron=True)
def reconcile():
    """Resolve open claim intents and flush the audit retry queue."""
    if not services.claims or not services.audit_log:
        return service_unavailable("Claim processor")

    return jsonify(
        {
            "claims": services.claims.reconcile_pending(),
            "audit_queue": services.audit_log.flush_retry_queue(),
        }
    )


# =============================================================================
# Reset
# =============================================================================


@admin_bp.route("/reset/request", methods=["POST"])
@require_admin()
def request_reset():
    """Issue a five-minute confirmation token for a profit reset."""
    if not services.distribution:
        return service_unavailable("Distribution scheduler")

    result = services.distribution.request_reset(g.wallet)
    services.access_policy.audit("profit_reset_requested", wallet=g.wallet)
    return jsonify(result)


@admin_bp.route("/reset/confirm", methods=["POST"])
@require_admin()
def confirm_reset():
    """
    Delete trade history and legacy payment rows.

    Request body:
        {"adminWallet": "...", "confirmationToken": "...", "confirmPhrase": "RESET PROFIT DATA"}
    """
    if not services.distribution:
        return service_unavailable("Distribution scheduler")

    data = json_body()
    result = services.distribution.confirm_reset(
        g.wallet, data.get("confirmationToken") or "", data.get("confirmPhrase") or ""
    )
    services.access_policy.audit("profit_reset_confirmed", wallet=g.wallet)
    return jsonify(result)
