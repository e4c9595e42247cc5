# Overview: Flask API routes for product stock valuation; inventory summary and margin.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_operator
from ..errors import StockError
from ..services import valuation_service
from ..validation import coerce_int

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("/<int:product_id>/summary")
@require_operator
def product_summary_route(product_id: int):
    try:
        summary = valuation_service.inventory_summary(operator_id=g.operator_id, product_id=product_id)
        return jsonify(summary), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to build inventory summary")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>/margin")
@require_operator
def product_margin_route(product_id: int):
    """
    Margin of selling `quantity` units at the effective sale price less
    `discount_percent` (0-100), against the most recent receipt cost.
    """
    try:
        margin = valuation_service.product_margin(
            operator_id=g.operator_id,
            product_id=product_id,
            quantity=coerce_int(request.args.get("quantity"), "quantity", minimum=1, required=False) or 1,
            discount_percent=request.args.get("discount_percent", "0"),
        )
        return jsonify(margin.to_dict()), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compute margin")
        return jsonify({"error": "Internal server error"}), 500
