# Overview: Flask API routes for mobile-money callbacks, status refresh and the expiry sweep.

import hmac

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PaymentError, SaleEngineError
from ..extensions import db
from ..models import PaymentTransaction
from ..services import payment_service
from ..decorators import require_context


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _callback_token_valid() -> bool:
    expected = current_app.config.get("MOBILE_MONEY_CALLBACK_TOKEN") or ""
    supplied = request.args.get("token") or ""
    if not expected:
        current_app.logger.warning("MOBILE_MONEY_CALLBACK_TOKEN is not configured; rejecting callback")
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


@payments_bp.post("/mobile-money/callback")
def mobile_money_callback_route():
    """
    Gateway callback (Daraja STK result).

    Authenticated by the shared ?token= query parameter. Once authenticated
    every callback is acknowledged, including duplicates and unknown ids;
    those are logged for reconciliation instead of bounced back to the
    gateway.
    """
    if not _callback_token_valid():
        return jsonify({"ResultCode": 1, "ResultDesc": "Unauthorized"}), 401

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        current_app.logger.warning("Mobile money callback with non-JSON body ignored")
        return jsonify(CALLBACK_ACK), 200

    try:
        payment_service.handle_callback(payload)
    except PaymentError as e:
        current_app.logger.warning("Mobile money callback not applied: %s %s", e.message, e.details)
    except Exception:
        current_app.logger.exception("Failed to process mobile money callback")
        return jsonify({"ResultCode": 1, "ResultDesc": "Internal error"}), 500

    return jsonify(CALLBACK_ACK), 200


@payments_bp.post("/<checkout_request_id>/refresh")
@require_context
def refresh_payment_route(checkout_request_id: str):
    """Query the gateway for a transaction whose callback never arrived."""
    try:
        tx = db.session.query(PaymentTransaction).filter_by(checkout_request_id=checkout_request_id).first()
        if tx is None or tx.sale.org_id != g.org_id:
            return jsonify({"error": "Payment transaction not found"}), 404

        tx = payment_service.refresh_payment_status(checkout_request_id)
        return jsonify({"payment_transaction": tx.to_dict()}), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to refresh payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/expire-stale")
@require_context
def expire_stale_route():
    """Expiry sweep for the caller's organization only."""
    try:
        timeouts = payment_service.expire_stale_payments(org_id=g.org_id)
        return jsonify({
            "expired_count": len(timeouts),
            "expired": [t.to_dict() for t in timeouts],
        }), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to expire stale payments")
        return jsonify({"error": "Internal server error"}), 500
