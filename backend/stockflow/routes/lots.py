# Overview: Flask API routes for the lot registry; listing, expiry reporting and lot maintenance.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_operator
from ..errors import StockError
from ..services import lot_service
from ..validation import ValidationError, coerce_bool, coerce_int

lots_bp = Blueprint("lots", __name__, url_prefix="/api/lots")


@lots_bp.get("/product/<int:product_id>")
@require_operator
def list_product_lots_route(product_id: int):
    """All lots of a product, soonest expiry first; ?available=1 keeps lots with quantity > 0."""
    try:
        if coerce_bool(request.args.get("available", "")):
            lots = lot_service.list_available(operator_id=g.operator_id, product_id=product_id)
        else:
            lots = lot_service.list_lots(operator_id=g.operator_id, product_id=product_id)
        return jsonify({"items": [lot_service.lot_to_dict(lot) for lot in lots]}), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list lots")
        return jsonify({"error": "Internal server error"}), 500


@lots_bp.get("/expiring")
@require_operator
def list_expiring_route():
    try:
        days = coerce_int(request.args.get("days"), "days", minimum=0, required=False)
        lots = lot_service.list_expiring(operator_id=g.operator_id, days=days)
        return jsonify({"items": [lot_service.lot_to_dict(lot) for lot in lots]}), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list expiring lots")
        return jsonify({"error": "Internal server error"}), 500


@lots_bp.post("")
@require_operator
def create_lot_route():
    """
    Create a lot out of the product's unallocated stock.

    Body: product_id, lot_number, quantity, manufacture_date?, expiry_date?
    (dates as YYYY-MM-DD).
    """
    payload = request.get_json(silent=True) or {}

    try:
        lot = lot_service.create_lot(
            operator_id=g.operator_id,
            product_id=coerce_int(payload.get("product_id"), "product_id", minimum=1),
            lot_number=payload.get("lot_number"),
            quantity=coerce_int(payload.get("quantity"), "quantity", minimum=0),
            manufacture_date=payload.get("manufacture_date"),
            expiry_date=payload.get("expiry_date"),
        )
        return jsonify({"lot": lot_service.lot_to_dict(lot)}), 201

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create lot")
        return jsonify({"error": "Internal server error"}), 500


@lots_bp.put("/<int:lot_id>")
@require_operator
def update_lot_route(lot_id: int):
    """Edit lot_number and dates; quantity only changes through movements."""
    payload = request.get_json(silent=True) or {}
    if "quantity" in payload:
        return jsonify({"error": "quantity cannot be edited; record a movement instead"}), 400

    fields = {k: payload[k] for k in ("lot_number", "manufacture_date", "expiry_date") if k in payload}

    try:
        lot = lot_service.update_lot(operator_id=g.operator_id, lot_id=lot_id, **fields)
        return jsonify({"lot": lot_service.lot_to_dict(lot)}), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update lot")
        return jsonify({"error": "Internal server error"}), 500


@lots_bp.delete("/<int:lot_id>")
@require_operator
def delete_lot_route(lot_id: int):
    try:
        lot_service.delete_lot(
            operator_id=g.operator_id,
            lot_id=lot_id,
            write_off=coerce_bool(request.args.get("write_off", "")),
        )
        return jsonify({"deleted": lot_id}), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete lot")
        return jsonify({"error": "Internal server error"}), 500
