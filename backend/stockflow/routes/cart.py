# Overview: Flask API routes for the sale cart; draft lines, discount, payment and checkout.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_operator
from ..errors import StockError
from ..services import cart_service
from ..validation import coerce_int, lot_rows

"""
The cart is draft state persisted per operator. Nothing here touches stock
until POST /checkout.
"""

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


def _cart_response(status: int = 200):
    cart = cart_service.get_open_cart(operator_id=g.operator_id)
    return jsonify({"cart": cart_service.cart_summary(cart)}), status


@cart_bp.get("")
@require_operator
def get_cart_route():
    try:
        return _cart_response()
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.post("/lines")
@require_operator
def add_line_route():
    """Body: product_id, quantity?, unit_price_cents?, lots?: [{"lot_id", "quantity"}]."""
    payload = request.get_json(silent=True) or {}

    try:
        cart_service.add_line(
            operator_id=g.operator_id,
            product_id=coerce_int(payload.get("product_id"), "product_id", minimum=1),
            quantity=coerce_int(payload.get("quantity"), "quantity", minimum=1, required=False),
            unit_price_cents=coerce_int(payload.get("unit_price_cents"), "unit_price_cents",
                                        minimum=0, required=False),
            lots=lot_rows(payload),
        )
        return _cart_response(201)

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to add cart line")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.patch("/lines/<int:line_id>")
@require_operator
def update_line_route(line_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        cart_service.update_line_quantity(
            operator_id=g.operator_id,
            line_id=line_id,
            quantity=coerce_int(payload.get("quantity"), "quantity"),
        )
        return _cart_response()

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to update cart line")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("/lines/<int:line_id>/lots")
@require_operator
def set_line_lots_route(line_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        cart_service.set_line_lots(operator_id=g.operator_id, line_id=line_id, lots=lot_rows(payload))
        return _cart_response()

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set cart line lots")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/lines/<int:line_id>")
@require_operator
def remove_line_route(line_id: int):
    try:
        cart_service.remove_line(operator_id=g.operator_id, line_id=line_id)
        return _cart_response()

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to remove cart line")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("/discount")
@require_operator
def set_discount_route():
    payload = request.get_json(silent=True) or {}

    try:
        cart_service.set_discount(
            operator_id=g.operator_id,
            discount_cents=coerce_int(payload.get("discount_cents"), "discount_cents", minimum=0),
        )
        return _cart_response()

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set cart discount")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("/amount-received")
@require_operator
def set_amount_received_route():
    payload = request.get_json(silent=True) or {}

    try:
        cart_service.set_amount_received(
            operator_id=g.operator_id,
            amount_cents=coerce_int(payload.get("amount_cents"), "amount_cents", minimum=0, required=False),
        )
        return _cart_response()

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set amount received")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("")
@require_operator
def clear_cart_route():
    try:
        cart_service.clear_cart(operator_id=g.operator_id)
        return _cart_response()

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.post("/checkout")
@require_operator
def checkout_route():
    """
    Returns 201 when every line was written, 207 when only some were
    (the result lists each line as COMMITTED / FAILED / NOT_ATTEMPTED).
    """
    try:
        result = cart_service.checkout(operator_id=g.operator_id)
        status = 207 if result.needs_review else 201
        return jsonify({"result": result.to_dict(), "receipt": result.to_receipt()}), status

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to check out cart")
        return jsonify({"error": "Internal server error"}), 500
