"""
RiftSettle - Referrals API Blueprint

Endpoints:
- GET  /referrals?wallet=  referral dashboard for a referrer
- POST /referrals          link a referred wallet to its referrer
"""

from flask import Blueprint, jsonify, request

from api.utils import MAX_WALLET_LENGTH, json_body, require_api_key, service_unavailable, services

referrals_bp = Blueprint("referrals", __name__)


@referrals_bp.route("/referrals", methods=["GET"])
def get_referral_stats():
    if not services.referrals:
        return service_unavailable("Referral engine")

    wallet = request.args.get("wallet")
    if not wallet:
        return jsonify({"error": "Wallet required"}), 400

    return jsonify(services.referrals.referral_stats(wallet))


@referrals_bp.route("/referrals", methods=["POST"])
@require_api_key
def register_referral():
    """
    Record a referral.

    Request body:
        {
            "referralCode": "...",      // referrer wallet (or "referrerWallet")
            "referredWallet": "..."
        }
    """
    if not services.referrals:
        return service_unavailable("Referral engine")

    data = json_body()
    referrer = data.get("referralCode") or data.get("referrerWallet")
    referred = data.get("referredWallet")
    for value in (referrer, referred):
        if value is not None and (not isinstance(value, str) or len(value) > MAX_WALLET_LENGTH):
            return jsonify({"error": "Invalid wallet address"}), 400

    success, result = services.referrals.register_referral(referrer, referred)
    if success:
        return jsonify({"success": True, **result}), 201
    return jsonify(result), 400
