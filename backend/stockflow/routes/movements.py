# Overview: Flask API routes for the movement ledger; receipts, exits, adjustments and status edits.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_operator
from ..errors import StockError
from ..models.inventory import MOVEMENT_ADJUSTMENT, MOVEMENT_EXIT, MOVEMENT_RECEIPT
from ..services import ledger_service, status_service, valuation_service
from ..services.allocation_service import commit_exit
from ..validation import ValidationError, coerce_int, lot_rows

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- Lists are newest first (occurred_at desc, id desc).
"""

movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")


def _summary(product_id: int) -> dict:
    return valuation_service.inventory_summary(operator_id=g.operator_id, product_id=product_id)


@movements_bp.get("")
@require_operator
def list_movements_route():
    try:
        default_limit = current_app.config.get("MOVEMENT_LIST_LIMIT", 200)
        limit = coerce_int(request.args.get("limit"), "limit", minimum=1, required=False) or default_limit
        limit = min(limit, 500)
        product_id = coerce_int(request.args.get("product_id"), "product_id", required=False)

        movement_type = request.args.get("type")
        if movement_type:
            movement_type = movement_type.upper()
        status = request.args.get("status")
        if status:
            status = status.upper()

        rows = ledger_service.list_movements(
            operator_id=g.operator_id,
            product_id=product_id,
            movement_type=movement_type or None,
            status=status or None,
            receipt_number=request.args.get("receipt_number") or None,
            limit=limit,
        )
        return jsonify({"items": [m.to_dict() for m in rows], "limit": limit}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list movements")
        return jsonify({"error": "Internal server error"}), 500


@movements_bp.post("")
@require_operator
def create_movement_route():
    """
    Record one movement.

    Body:
    - type: RECEIPT | EXIT | ADJUSTMENT
    - product_id, quantity (exits from lot-managed products may omit quantity
      and send `lots` only)
    - unit_price_cents: acquisition cost for receipts, charged price for exits
      (defaults to the effective sale price)
    - direction: IN | OUT (adjustments only)
    - lots: [{"lot_id", "quantity"}] for lot-backed exits and adjustments
    - lot_id or new_lot: {"lot_number", "manufacture_date", "expiry_date"}
      for receipts into a lot (required for lot-managed products)
    - occurred_at, description

    Exits are always created CONFIRMED; PATCH /<id>/status changes that.
    """
    payload = request.get_json(silent=True) or {}

    try:
        movement_type = str(payload.get("type") or "").upper()
        product_id = coerce_int(payload.get("product_id"), "product_id", minimum=1)
        quantity = coerce_int(payload.get("quantity"), "quantity", minimum=1,
                              required=movement_type != MOVEMENT_EXIT)
        common = {
            "operator_id": g.operator_id,
            "product_id": product_id,
            "occurred_at": payload.get("occurred_at"),
            "description": payload.get("description"),
        }

        if movement_type == MOVEMENT_RECEIPT:
            new_lot = payload.get("new_lot")
            if new_lot is not None and not isinstance(new_lot, dict):
                raise ValidationError("new_lot must be an object")
            movement = ledger_service.record_receipt(
                quantity=quantity,
                unit_cost_cents=coerce_int(payload.get("unit_price_cents"), "unit_price_cents", minimum=0),
                lot_id=coerce_int(payload.get("lot_id"), "lot_id", minimum=1, required=False),
                new_lot=new_lot,
                **common,
            )
        elif movement_type == MOVEMENT_EXIT:
            movement = commit_exit(
                quantity=quantity,
                lots=lot_rows(payload),
                unit_price_cents=coerce_int(payload.get("unit_price_cents"), "unit_price_cents",
                                            minimum=0, required=False),
                **common,
            )
        elif movement_type == MOVEMENT_ADJUSTMENT:
            movement = ledger_service.record_adjustment(
                quantity=quantity,
                direction=str(payload.get("direction") or "").upper(),
                lots=lot_rows(payload),
                **common,
            )
        else:
            raise ValidationError("type must be RECEIPT, EXIT or ADJUSTMENT")

        return jsonify({"movement": movement.to_dict(), "summary": _summary(product_id)}), 201

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record movement")
        return jsonify({"error": "Internal server error"}), 500


@movements_bp.post("/count")
@require_operator
def stock_count_route():
    """Set a product's stock to a counted level; the difference becomes an adjustment."""
    payload = request.get_json(silent=True) or {}

    try:
        product_id = coerce_int(payload.get("product_id"), "product_id", minimum=1)
        movement = ledger_service.set_stock_level(
            operator_id=g.operator_id,
            product_id=product_id,
            counted=coerce_int(payload.get("counted"), "counted", minimum=0),
            description=payload.get("description"),
        )
        return jsonify({
            "movement": movement.to_dict() if movement is not None else None,
            "summary": _summary(product_id),
        }), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to apply stock count")
        return jsonify({"error": "Internal server error"}), 500


@movements_bp.get("/<int:movement_id>")
@require_operator
def get_movement_route(movement_id: int):
    try:
        movement = ledger_service.get_movement(g.operator_id, movement_id)
        return jsonify({"movement": movement.to_dict()}), 200
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status


@movements_bp.delete("/<int:movement_id>")
@require_operator
def delete_movement_route(movement_id: int):
    try:
        ledger_service.remove_movement(operator_id=g.operator_id, movement_id=movement_id)
        return jsonify({"deleted": movement_id}), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete movement")
        return jsonify({"error": "Internal server error"}), 500


@movements_bp.patch("/<int:movement_id>/status")
@require_operator
def change_status_route(movement_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        change = status_service.change_exit_status(
            operator_id=g.operator_id,
            movement_id=movement_id,
            new_status=str(payload.get("status") or ""),
        )
        movement = ledger_service.get_movement(g.operator_id, movement_id)
        return jsonify({
            "change": change.to_dict(),
            "movement": movement.to_dict(),
            "summary": _summary(movement.product_id),
        }), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to change movement status")
        return jsonify({"error": "Internal server error"}), 500
