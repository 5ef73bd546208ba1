# Overview: Flask API routes for batch stock: availability and restock.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import SaleEngineError, ValidationError
from ..services import inventory_service
from ..decorators import require_context
from ..time_utils import parse_iso_date, parse_iso_datetime


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _int_arg(name: str, *, required: bool = True):
    raw = request.args.get(name)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{name} is required")
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={name: raw})


@inventory_bp.get("/available")
@require_context
def available_route():
    """
    Stock summary for one product (and variant) at one location.

    Query: location_id, product_id, variant_id (optional), as_of (optional ISO date/datetime).
    """
    try:
        summary = inventory_service.get_stock_summary(
            g.org_id,
            _int_arg("location_id"),
            _int_arg("product_id"),
            _int_arg("variant_id", required=False),
            as_of=request.args.get("as_of") or None,
        )
        return jsonify(summary), 200

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get stock availability")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/batches")
@require_context
def receive_batch_route():
    """Restock: record a new inbound batch."""
    try:
        data = request.get_json(silent=True) or {}
        expiry_date = parse_iso_date(data.get("expiry_date"), "expiry_date")
        received_at = parse_iso_datetime(data.get("received_at"), "received_at")

        batch = inventory_service.receive_batch(
            org_id=g.org_id,
            location_id=data.get("location_id"),
            product_id=data.get("product_id"),
            variant_id=data.get("variant_id"),
            quantity=data.get("quantity"),
            unit_cost_cents=data.get("unit_cost_cents"),
            expiry_date=expiry_date,
            received_at=received_at,
            batch_number=data.get("batch_number"),
        )
        current_app.logger.info(
            "Received batch %s: product %s x%s at location %s",
            batch.id, batch.product_id, batch.quantity, batch.location_id,
        )
        return jsonify({"batch": batch.to_dict()}), 201

    except SaleEngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to receive batch")
        return jsonify({"error": "Internal server error"}), 500
