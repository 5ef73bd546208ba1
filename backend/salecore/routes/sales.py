# Overview: Flask API routes for committing and operating on sales; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import SaleEngineError
from ..services import payment_service, sales_service
from ..services.ledger_service import list_sale_events
from ..services.sales_service import CommitRequest, SaleResult
from ..decorators import require_context


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("/commit")
@require_context
def commit_sale_route():
    """
    Commit a cart as a sale.

    201 with the sale; 400 for validation, stock and loyalty failures;
    502 when the mobile money push could not be initiated (the sale is
    recorded as FAILED and its stock released).
    """
    try:
        data = request.get_json(silent=True) or {}
        commit_request = CommitRequest.from_payload(data, org_id=g.org_id, actor_user_id=g.actor_user_id)
        result = sales_service.commit_sale(commit_request)
        return jsonify({"sale": result.to_dict()}), 201

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to commit sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/quote")
@require_context
def quote_sale_route():
    """Price a cart and check availability without committing anything."""
    try:
        data = request.get_json(silent=True) or {}
        commit_request = CommitRequest.from_payload(data, org_id=g.org_id, actor_user_id=g.actor_user_id)
        return jsonify({"quote": sales_service.quote_sale(commit_request)}), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to quote sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_context
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id, org_id=g.org_id)
        return jsonify({
            "sale": SaleResult.from_sale(sale).to_dict(),
            "payment_transactions": [tx.to_dict() for tx in sale.payment_transactions],
            "events": [ev.to_dict() for ev in list_sale_events(sale.id)],
        }), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/cancel")
@require_context
def cancel_sale_route(sale_id: int):
    """Cancel a PENDING sale; releases reserved stock and restores points."""
    try:
        data = request.get_json(silent=True) or {}
        sale = payment_service.cancel_pending_sale(
            sale_id,
            reason=data.get("reason") or "",
            actor_user_id=g.actor_user_id,
            org_id=g.org_id,
        )
        return jsonify({"sale": SaleResult.from_sale(sale).to_dict()}), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/mark-paid")
@require_context
def mark_paid_route(sale_id: int):
    try:
        data = request.get_json(silent=True) or {}
        sale = payment_service.mark_paid_manually(
            sale_id,
            actor_user_id=g.actor_user_id,
            receipt_number=data.get("receipt_number"),
            note=data.get("note"),
            org_id=g.org_id,
        )
        return jsonify({"sale": SaleResult.from_sale(sale).to_dict()}), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark sale paid")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/retry-payment")
@require_context
def retry_payment_route(sale_id: int):
    try:
        data = request.get_json(silent=True) or {}
        tx = payment_service.retry_mobile_payment(
            sale_id,
            phone_number=data.get("phone_number"),
            actor_user_id=g.actor_user_id,
            org_id=g.org_id,
        )
        return jsonify({"payment_transaction": tx.to_dict()}), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to retry payment")
        return jsonify({"error": "Internal server error"}), 500
