# Overview: Cost valuation; weighted-average cost, latest cost, sale price, discount and margin.

"""
StockFlow Cost Valuation

All amounts are integer cents. Every derived amount is rounded to the nearest
cent, half-up.

- Weighted-average cost (WAC) is computed from RECEIPT movements only:
      sum(qty * unit_price) / sum(qty)
  Adjustments and exits never change it.
- Effective sale price: the product's own sale price when it is > 0, else the
  WAC of its receipts, else 0.
- Acquisition cost for margins is the unit price of the MOST RECENT receipt,
  not the WAC. Sale price follows the historical average while margin follows
  the latest cost; keep the two separate.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func

from ..extensions import db
from ..errors import InvalidDiscount, StockError
from ..models import Movement, Product
from ..models.inventory import MOVEMENT_RECEIPT, STATUS_CONFIRMED
from .catalog_service import get_product
from .lot_service import allocated_quantity


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _receipts(product_id: int):
    return db.session.query(Movement).filter(
        Movement.product_id == product_id,
        Movement.type == MOVEMENT_RECEIPT,
        Movement.status == STATUS_CONFIRMED,
    )


def weighted_average_cost_cents(product_id: int) -> int | None:
    """WAC over all receipts of the product; None when it has never been received."""
    row = db.session.query(
        func.coalesce(func.sum(Movement.quantity), 0).label("units"),
        func.coalesce(func.sum(Movement.quantity * Movement.unit_price_cents), 0).label("cost"),
    ).filter(
        Movement.product_id == product_id,
        Movement.type == MOVEMENT_RECEIPT,
        Movement.status == STATUS_CONFIRMED,
    ).one()

    total_units = int(row.units or 0)
    if total_units <= 0:
        return None

    total_cost = int(row.cost or 0)
    # nearest-cent rounding (half-up)
    return (total_cost + (total_units // 2)) // total_units


def recent_receipt_cost_cents(product_id: int) -> int | None:
    receipt = _receipts(product_id).order_by(
        Movement.occurred_at.desc(),
        Movement.id.desc(),
    ).first()
    return receipt.unit_price_cents if receipt else None


def effective_sale_price_cents(product: Product) -> int:
    if product.sale_price_cents and product.sale_price_cents > 0:
        return product.sale_price_cents
    wac = weighted_average_cost_cents(product.id)
    return wac if wac is not None else 0


def acquisition_cost_cents(product_id: int) -> int:
    recent = recent_receipt_cost_cents(product_id)
    return recent if recent is not None else 0


def validate_discount_percent(discount_percent) -> Decimal:
    try:
        pct = Decimal(str(discount_percent))
    except Exception as exc:
        raise InvalidDiscount(f"discount {discount_percent!r} is not a number") from exc
    if not pct.is_finite() or pct < 0 or pct > 100:
        raise InvalidDiscount(
            f"discount must be between 0 and 100 percent, got {discount_percent}",
            details={"discount_percent": str(discount_percent)},
        )
    return pct


def discounted_price_cents(base_price_cents: int, discount_percent) -> int:
    """base * (1 - pct / 100); out-of-range percentages are rejected, never clamped."""
    if base_price_cents < 0:
        raise StockError("base price must be >= 0")
    pct = validate_discount_percent(discount_percent)
    return round_half_up(Decimal(base_price_cents) * (Decimal(100) - pct) / Decimal(100))


@dataclass(frozen=True)
class Margin:
    unit_price_cents: int
    unit_cost_cents: int
    quantity: int
    revenue_cents: int
    profit_cents: int
    margin_percent: Decimal

    def to_dict(self) -> dict:
        return {
            "unit_price_cents": self.unit_price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "quantity": self.quantity,
            "revenue_cents": self.revenue_cents,
            "profit_cents": self.profit_cents,
            "margin_percent": str(self.margin_percent),
        }


def compute_margin(price_after_discount_cents: int, acquisition_cost: int, quantity: int) -> Margin:
    """
    profit = (price - cost) * qty
    margin% = profit / (qty * price) * 100, or 0 when qty * price == 0
    """
    profit = (price_after_discount_cents - acquisition_cost) * quantity
    revenue = quantity * price_after_discount_cents
    if revenue == 0:
        pct = Decimal("0.00")
    else:
        pct = (Decimal(profit) / Decimal(revenue) * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return Margin(
        unit_price_cents=price_after_discount_cents,
        unit_cost_cents=acquisition_cost,
        quantity=quantity,
        revenue_cents=revenue,
        profit_cents=profit,
        margin_percent=pct,
    )


def product_margin(*, operator_id: int, product_id: int, quantity: int = 1, discount_percent=0) -> Margin:
    product = get_product(operator_id, product_id)
    price = discounted_price_cents(effective_sale_price_cents(product), discount_percent)
    return compute_margin(price, acquisition_cost_cents(product.id), quantity)


def inventory_summary(*, operator_id: int, product_id: int) -> dict:
    product = get_product(operator_id, product_id)

    wac = weighted_average_cost_cents(product.id)
    recent = recent_receipt_cost_cents(product.id)
    in_lots = allocated_quantity(product.id) if product.managed_by_lots else None

    return {
        "product_id": product.id,
        "sku": product.sku,
        "stock": product.stock,
        "managed_by_lots": product.managed_by_lots,
        "allocated_to_lots": in_lots,
        "unallocated": (product.stock - in_lots) if in_lots is not None else None,
        "weighted_average_cost_cents": wac,
        "recent_unit_cost_cents": recent,
        "effective_sale_price_cents": effective_sale_price_cents(product),
        "stock_value_cents": (product.stock * wac) if wac is not None else None,
    }
