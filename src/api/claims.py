"""
RiftSettle - Claims API Blueprint

Endpoints:
- GET  /claims         claimable breakdown for a wallet
- POST /claims         claim to the wallet (or a destination)
- POST /claims/escrow  legacy escrow sweep
"""

from flask import Blueprint, jsonify, request

from api.utils import (
    MAX_RIFT_ID_LENGTH,
    MAX_WALLET_LENGTH,
    json_body,
    require_api_key,
    service_unavailable,
    services,
    validate_json_schema,
)
from monitoring import timed
from settlement_errors import ValidationError
from settlement_models import ClaimState, EarningType

claims_bp = Blueprint("claims", __name__)


@claims_bp.route("/claims", methods=["GET"])
def get_claimable():
    """
    Claimable breakdown for a wallet.

    Query params:
        wallet: Wallet address (required)
        riftId: Narrow to one rift
        type: Narrow to "lp" or "team"
    """
    if not services.ledger:
        return service_unavailable("Settlement ledger")

    wallet = request.args.get("wallet")
    if not wallet:
        return jsonify({"error": "Wallet required"}), 400

    earning_type = None
    if request.args.get("type"):
        try:
            earning_type = EarningType(request.args["type"])
        except ValueError:
            return jsonify({"error": f"Invalid type: {request.args['type']}"}), 400

    return jsonify(services.ledger.breakdown(wallet, request.args.get("riftId"), earning_type))


@claims_bp.route("/claims", methods=["POST"])
@require_api_key
@timed("claim_request")
def submit_claim():
    """
    Claim earnings.

    Request body:
        {
            "wallet": "...",
            "riftId": "...",            // required for lp / team
            "type": "lp",               // lp, team, referral, all
            "destination": "...",       // optional, defaults to wallet
            "idempotencyKey": "..."     // optional
        }

    Returns:
        200 when settled, 202 when the transfer is submitted but unconfirmed
    """
    if not services.claims:
        return service_unavailable("Claim processor")

    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={"wallet": str},
        optional_fields={"riftId": str, "type": str, "destination": str, "idempotencyKey": str},
        max_lengths={
            "wallet": MAX_WALLET_LENGTH,
            "destination": MAX_WALLET_LENGTH,
            "riftId": MAX_RIFT_ID_LENGTH,
            "idempotencyKey": 128,
        },
    )
    if not is_valid:
        raise ValidationError(error)

    result = services.claims.claim(
        data["wallet"],
        rift_id=data.get("riftId"),
        earning_type=data.get("type") or "lp",
        destination=data.get("destination"),
        idempotency_key=data.get("idempotencyKey"),
    )

    status = 200 if result.state == ClaimState.SETTLED else 202
    return jsonify(result.to_dict()), status


@claims_bp.route("/claims/escrow", methods=["POST"])
@require_api_key
def claim_escrow():
    """
    Sweep a legacy escrow account to its owner.

    Request body:
        {"wallet": "...", "riftId": "...", "kind": "lp" | "team"}
    """
    if not services.claims:
        return service_unavailable("Claim processor")

    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={"wallet": str, "riftId": str},
        optional_fields={"kind": str},
        max_lengths={"wallet": MAX_WALLET_LENGTH, "riftId": MAX_RIFT_ID_LENGTH},
    )
    if not is_valid:
        raise ValidationError(error)

    result = services.claims.claim_escrow(data["wallet"], data["riftId"], kind=data.get("kind") or "lp")
    status = 200 if result.state == ClaimState.SETTLED else 202
    return jsonify(result.to_dict()), status
