# Overview: Sale aggregator; persisted draft cart, discount split and multi-line checkout.

"""
StockFlow Sale Aggregator (Cart)

The cart is draft state: persisted per operator so it survives reloads, but
it never touches stock. Checkout turns it into EXIT movements that all share
one receipt number.

Discount:
- The cart-level discount is an AMOUNT in cents (line discounts are not
  percentages at this level).
- total = max(0, subtotal - discount)
- The applied discount is spread back over the lines in proportion to each
  line's subtotal. Line discounts are whole cents and add up exactly to the
  applied discount (largest remainder); each line's final unit price is
  (line_subtotal - line_discount) / quantity rounded half-up.
- subtotal == 0: no split, lines keep their unit price.

Checkout phases:
1. Validate EVERY line against current stock / lots, counting demand from
   earlier lines of the same cart. Any failure aborts with
   CheckoutValidationError and nothing is written.
2. Write each line in its own transaction through the allocation engine,
   which re-validates under lock. Once the first line is written the checkout
   is not aborted: the remaining lines are still attempted and each ends
   COMMITTED or FAILED. A partial result is flagged for manual review and is
   never retried automatically.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from fractions import Fraction

from flask import current_app

from ..extensions import db
from ..errors import (
    CheckoutValidationError,
    ExceedsLotStock,
    InsufficientStock,
    InvalidDiscount,
    NoQuantitySelected,
    NotFound,
    StockError,
)
from ..models import Cart, CartLine, CartLineLot, Movement
from ..models.carts import CART_CHECKED_OUT, CART_OPEN
from ..time_utils import to_utc_z, utcnow
from .allocation_service import commit_exit, merge_rows, validate_allocation
from .catalog_service import get_product
from .concurrency import run_in_transaction
from .events import StockEvent, publish, publishes_rejections
from .lot_service import find_lots
from .operator_service import require_operator
from .valuation_service import effective_sale_price_cents, round_half_up


LINE_COMMITTED = "COMMITTED"
LINE_FAILED = "FAILED"
LINE_NOT_ATTEMPTED = "NOT_ATTEMPTED"


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LinePricing:
    quantity: int
    unit_price_cents: int
    subtotal_cents: int
    discount_cents: int
    final_unit_price_cents: int

    @property
    def final_total_cents(self) -> int:
        return self.subtotal_cents - self.discount_cents


@dataclass(frozen=True)
class CartPricing:
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    lines: tuple[LinePricing, ...]


def distribute_discount(lines, discount_cents: int) -> CartPricing:
    """
    Split a cart-level discount over (quantity, unit_price_cents) lines.

    The applied discount is capped at the subtotal so the total never goes
    below zero. Line totals are exact and add up to the cart total;
    final_unit_price_cents is the line total per unit rounded to the cent.
    """
    if not isinstance(discount_cents, int) or isinstance(discount_cents, bool) or discount_cents < 0:
        raise InvalidDiscount(
            "discount must be a non-negative amount in cents",
            details={"discount_cents": discount_cents},
        )

    lines = list(lines)
    subtotals = [quantity * unit_price for quantity, unit_price in lines]
    subtotal = sum(subtotals)
    applied = min(discount_cents, subtotal)

    if subtotal == 0 or applied == 0:
        priced = tuple(
            LinePricing(q, p, s, 0, p) for (q, p), s in zip(lines, subtotals)
        )
        return CartPricing(subtotal, applied, subtotal - applied, priced)

    shares = [Fraction(s * applied, subtotal) for s in subtotals]
    line_discounts = [int(share) for share in shares]
    leftover = applied - sum(line_discounts)
    # Hand the leftover cents to the largest fractional parts, first line wins ties
    order = sorted(range(len(shares)), key=lambda i: (-(shares[i] - line_discounts[i]), i))
    for i in order[:leftover]:
        line_discounts[i] += 1

    priced = []
    for (quantity, unit_price), line_subtotal, line_discount in zip(lines, subtotals, line_discounts):
        final_unit = round_half_up(Decimal(line_subtotal - line_discount) / Decimal(quantity))
        priced.append(LinePricing(quantity, unit_price, line_subtotal, line_discount, final_unit))

    return CartPricing(subtotal, applied, subtotal - applied, tuple(priced))


def generate_receipt_number(now=None) -> str:
    """REC-YYYYMMDD-HHMMSSmmm-XXXX: sortable by time, random suffix for same-millisecond sales."""
    now = now or utcnow()
    return (
        f"REC-{now:%Y%m%d}-{now:%H%M%S}{now.microsecond // 1000:03d}-"
        f"{secrets.token_hex(2).upper()}"
    )


def unique_receipt_number(attempts: int = 5) -> str:
    for _ in range(attempts):
        candidate = generate_receipt_number()
        taken = (
            db.session.query(Movement.id).filter_by(receipt_number=candidate).first()
            or db.session.query(Cart.id).filter_by(receipt_number=candidate).first()
        )
        if not taken:
            return candidate
    raise StockError("could not generate a unique receipt number")


# ---------------------------------------------------------------------------
# Draft cart
# ---------------------------------------------------------------------------

def _find_open_cart(operator_id: int) -> Cart | None:
    return (
        db.session.query(Cart)
        .filter_by(operator_id=operator_id, status=CART_OPEN)
        .order_by(Cart.id.desc())
        .first()
    )


def get_open_cart(*, operator_id: int) -> Cart:
    """The operator's open cart, created on first use."""
    require_operator(operator_id)
    cart = _find_open_cart(operator_id)
    if cart is None:
        cart = Cart(operator_id=operator_id, status=CART_OPEN, discount_cents=0)
        db.session.add(cart)
        db.session.commit()
    return cart


def _get_line(operator_id: int, line_id: int) -> CartLine:
    line = db.session.get(CartLine, line_id)
    if line is None or line.cart.operator_id != operator_id or line.cart.status != CART_OPEN:
        raise NotFound(f"cart line {line_id} not found", details={"line_id": line_id})
    return line


def _replace_lot_rows(line: CartLine, product, rows) -> None:
    merged = merge_rows(rows)
    if merged:
        find_lots(product, merged.keys())
    line.lots.clear()
    for lot_id, quantity in merged.items():
        line.lots.append(CartLineLot(lot_id=lot_id, quantity=quantity))


def _require_quantity(quantity) -> int:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise StockError("quantity must be a positive integer")
    return quantity


def add_line(
    *,
    operator_id: int,
    product_id: int,
    quantity: int | None = None,
    unit_price_cents: int | None = None,
    lots=(),
) -> CartLine:
    """
    Add a product to the open cart.

    Adding the same product with the same lots and price again increases the
    existing line instead of creating a second one. For lot-managed products
    the line quantity is the sum of its lot rows. Availability is not checked
    here; it is checked at checkout.
    """
    require_operator(operator_id)
    product = get_product(operator_id, product_id)
    merged = merge_rows(lots)

    if merged:
        if not product.managed_by_lots:
            raise StockError(
                f"product {product.sku} is not managed by lots",
                details={"product_id": product.id},
            )
        find_lots(product, merged.keys())
        lot_total = sum(merged.values())
        if quantity is not None and quantity != lot_total:
            raise StockError(
                f"lot rows add up to {lot_total}, line quantity is {quantity}",
                details={"product_id": product.id, "allocated": lot_total, "requested": quantity},
            )
        quantity = lot_total
    else:
        if product.managed_by_lots:
            raise NoQuantitySelected(
                f"no lot quantity selected for {product.name}",
                details={"product_id": product.id},
            )
        quantity = _require_quantity(1 if quantity is None else quantity)

    if unit_price_cents is None:
        unit_price_cents = effective_sale_price_cents(product)
    if not isinstance(unit_price_cents, int) or isinstance(unit_price_cents, bool) or unit_price_cents < 0:
        raise StockError("unit_price_cents must be a non-negative integer")

    cart = get_open_cart(operator_id=operator_id)
    lot_ids = frozenset(merged)

    def _op():
        for line in cart.lines:
            if (
                line.product_id == product.id
                and line.unit_price_cents == unit_price_cents
                and frozenset(row.lot_id for row in line.lots) == lot_ids
            ):
                line.quantity += quantity
                for row in line.lots:
                    row.quantity += merged[row.lot_id]
                db.session.flush()
                return line

        line = CartLine(
            product_id=product.id,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            position=max((l.position for l in cart.lines), default=-1) + 1,
        )
        cart.lines.append(line)
        for lot_id, lot_quantity in merged.items():
            line.lots.append(CartLineLot(lot_id=lot_id, quantity=lot_quantity))
        db.session.flush()
        return line

    return run_in_transaction(_op)


def update_line_quantity(*, operator_id: int, line_id: int, quantity: int) -> CartLine | None:
    """
    Set a line's quantity; 0 or less removes the line.

    A line drawing on several lots must be edited with set_line_lots.
    """
    require_operator(operator_id)
    line = _get_line(operator_id, line_id)

    def _op():
        if quantity <= 0:
            db.session.delete(line)
            db.session.flush()
            return None
        if len(line.lots) > 1:
            raise StockError(
                "line draws on several lots; edit its lot rows instead",
                details={"line_id": line.id},
            )
        if line.lots:
            line.lots[0].quantity = quantity
        line.quantity = quantity
        db.session.flush()
        return line

    return run_in_transaction(_op)


def set_line_lots(*, operator_id: int, line_id: int, lots) -> CartLine:
    require_operator(operator_id)
    line = _get_line(operator_id, line_id)
    product = get_product(operator_id, line.product_id)
    if not product.managed_by_lots:
        raise StockError(f"product {product.sku} is not managed by lots", details={"product_id": product.id})

    merged = merge_rows(lots)
    if not merged:
        raise NoQuantitySelected(
            f"no lot quantity selected for {product.name}",
            details={"product_id": product.id, "line_id": line.id},
        )

    def _op():
        _replace_lot_rows(line, product, merged.items())
        line.quantity = sum(merged.values())
        db.session.flush()
        return line

    return run_in_transaction(_op)


def remove_line(*, operator_id: int, line_id: int) -> None:
    require_operator(operator_id)
    line = _get_line(operator_id, line_id)

    def _op():
        db.session.delete(line)
        db.session.flush()

    run_in_transaction(_op)


def set_discount(*, operator_id: int, discount_cents: int) -> Cart:
    if not isinstance(discount_cents, int) or isinstance(discount_cents, bool) or discount_cents < 0:
        raise InvalidDiscount(
            "discount must be a non-negative amount in cents",
            details={"discount_cents": discount_cents},
        )
    cart = get_open_cart(operator_id=operator_id)
    cart.discount_cents = discount_cents
    return run_in_transaction(lambda: cart)


def set_amount_received(*, operator_id: int, amount_cents: int | None) -> Cart:
    if amount_cents is not None and (
        not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents < 0
    ):
        raise StockError("amount received must be a non-negative amount in cents")
    cart = get_open_cart(operator_id=operator_id)
    cart.amount_received_cents = amount_cents
    return run_in_transaction(lambda: cart)


def clear_cart(*, operator_id: int) -> Cart:
    """Drop every draft line and reset discount and amount received. No ledger effect."""
    cart = get_open_cart(operator_id=operator_id)

    def _op():
        cart.lines.clear()
        cart.discount_cents = 0
        cart.amount_received_cents = None
        db.session.flush()
        return cart

    return run_in_transaction(_op)


def cart_pricing(cart: Cart) -> CartPricing:
    return distribute_discount(
        [(line.quantity, line.unit_price_cents) for line in cart.lines],
        cart.discount_cents,
    )


def cart_summary(cart: Cart) -> dict:
    pricing = cart_pricing(cart)
    data = cart.to_dict()
    for line_data, priced in zip(data["lines"], pricing.lines):
        line_data["discount_cents"] = priced.discount_cents
        line_data["final_unit_price_cents"] = priced.final_unit_price_cents
        line_data["final_total_cents"] = priced.final_total_cents
    data.update({
        "subtotal_cents": pricing.subtotal_cents,
        "applied_discount_cents": pricing.discount_cents,
        "total_cents": pricing.total_cents,
        "change_cents": (
            cart.amount_received_cents - pricing.total_cents
            if cart.amount_received_cents is not None
            else None
        ),
    })
    return data


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

@dataclass
class LineOutcome:
    line_id: int
    position: int
    product_id: int
    product_name: str
    quantity: int
    unit_price_cents: int
    discount_cents: int
    final_unit_price_cents: int
    lots: list[dict] = field(default_factory=list)
    status: str = LINE_NOT_ATTEMPTED
    movement_id: int | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def final_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents - self.discount_cents

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "position": self.position,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "final_unit_price_cents": self.final_unit_price_cents,
            "final_total_cents": self.final_total_cents,
            "lots": self.lots,
            "status": self.status,
            "movement_id": self.movement_id,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass
class CheckoutResult:
    cart_id: int
    receipt_number: str
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    amount_received_cents: int | None
    occurred_at: object
    lines: list[LineOutcome]

    @property
    def committed_lines(self) -> list[LineOutcome]:
        return [l for l in self.lines if l.status == LINE_COMMITTED]

    @property
    def failed_lines(self) -> list[LineOutcome]:
        return [l for l in self.lines if l.status == LINE_FAILED]

    @property
    def needs_review(self) -> bool:
        return any(l.status != LINE_COMMITTED for l in self.lines)

    @property
    def committed_total_cents(self) -> int:
        return sum(l.final_total_cents for l in self.committed_lines)

    @property
    def change_cents(self) -> int | None:
        if self.amount_received_cents is None:
            return None
        return self.amount_received_cents - self.committed_total_cents

    def to_dict(self) -> dict:
        return {
            "cart_id": self.cart_id,
            "receipt_number": self.receipt_number,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "committed_total_cents": self.committed_total_cents,
            "amount_received_cents": self.amount_received_cents,
            "change_cents": self.change_cents,
            "needs_review": self.needs_review,
            "occurred_at": to_utc_z(self.occurred_at),
            "lines": [l.to_dict() for l in self.lines],
        }

    def to_receipt(self) -> dict:
        """Read-only payload for receipt rendering: committed lines only."""
        return {
            "receipt_number": self.receipt_number,
            "date": to_utc_z(self.occurred_at),
            "items": [
                {
                    "name": l.product_name,
                    "quantity": l.quantity,
                    "unit_price_cents": l.final_unit_price_cents,
                    "total_cents": l.final_total_cents,
                    "lots": [row["lot_number"] for row in l.lots],
                }
                for l in self.committed_lines
            ],
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.committed_total_cents,
            "amount_received_cents": self.amount_received_cents,
            "change_cents": self.change_cents,
        }


def _line_failure(line: CartLine, exc: StockError) -> dict:
    return {
        "line_id": line.id,
        "position": line.position,
        "product_id": line.product_id,
        "code": exc.code,
        "error": str(exc),
        "details": exc.details,
    }


def _validate_cart(operator_id: int, lines: list[CartLine]) -> None:
    """
    Phase 1: check every line against current state, including demand from
    earlier lines of this cart on the same product or lot.
    """
    product_demand: dict[int, int] = {}
    lot_demand: dict[int, int] = {}
    failures = []

    for line in lines:
        try:
            product = get_product(operator_id, line.product_id)
            rows = [(row.lot_id, row.quantity) for row in line.lots]
            plan = validate_allocation(
                product,
                None if product.managed_by_lots else line.quantity,
                rows,
            )
            if plan.quantity != line.quantity:
                raise StockError(
                    f"lot rows add up to {plan.quantity}, line quantity is {line.quantity}",
                    details={"product_id": product.id, "line_id": line.id},
                )

            already = product_demand.get(product.id, 0)
            if already + plan.quantity > product.stock:
                raise InsufficientStock(
                    f"{product.name} has only {product.stock} in stock, "
                    f"{already + plan.quantity} requested across the cart",
                    details={
                        "product_id": product.id,
                        "available": product.stock,
                        "requested": already + plan.quantity,
                    },
                )
            for deduction in plan.deductions:
                lot_already = lot_demand.get(deduction.lot_id, 0)
                if lot_already + deduction.quantity > deduction.available:
                    raise ExceedsLotStock(
                        f"lot {deduction.lot_number} has only {deduction.available} available, "
                        f"{lot_already + deduction.quantity} requested across the cart",
                        details={
                            "product_id": product.id,
                            "lot_id": deduction.lot_id,
                            "lot_number": deduction.lot_number,
                            "available": deduction.available,
                            "requested": lot_already + deduction.quantity,
                        },
                    )

            product_demand[product.id] = already + plan.quantity
            for deduction in plan.deductions:
                lot_demand[deduction.lot_id] = lot_demand.get(deduction.lot_id, 0) + deduction.quantity
        except StockError as exc:
            failures.append(_line_failure(line, exc))

    if failures:
        first = failures[0]
        raise CheckoutValidationError(
            f"line {first['position'] + 1}: {first['error']}",
            failures,
        )


@publishes_rejections("checkout")
def checkout(*, operator_id: int, cart_id: int | None = None) -> CheckoutResult:
    """
    Turn the open cart into EXIT movements sharing one receipt number.

    Raises CheckoutValidationError (nothing written) when any line fails the
    pre-write validation. After that, every line is attempted and its outcome
    reported on the result.
    """
    require_operator(operator_id)
    if cart_id is None:
        cart = _find_open_cart(operator_id)
    else:
        cart = db.session.get(Cart, cart_id)
        if cart is None or cart.operator_id != operator_id or cart.status != CART_OPEN:
            raise NotFound(f"open cart {cart_id} not found", details={"cart_id": cart_id})
    if cart is None or not cart.lines:
        raise StockError("cart is empty")

    lines = list(cart.lines)
    pricing = cart_pricing(cart)

    _validate_cart(operator_id, lines)

    receipt_number = unique_receipt_number()
    occurred_at = utcnow()

    outcomes = []
    for line, priced in zip(lines, pricing.lines):
        product = get_product(operator_id, line.product_id)
        outcomes.append(LineOutcome(
            line_id=line.id,
            position=line.position,
            product_id=product.id,
            product_name=product.name,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            discount_cents=priced.discount_cents,
            final_unit_price_cents=priced.final_unit_price_cents,
            lots=[{"lot_id": row.lot_id, "quantity": row.quantity} for row in line.lots],
        ))

    cart_id = cart.id
    amount_received = cart.amount_received_cents

    # Phase 2: from here on, no abort
    for outcome in outcomes:
        try:
            movement = commit_exit(
                operator_id=operator_id,
                product_id=outcome.product_id,
                quantity=outcome.quantity,
                lots=[(row["lot_id"], row["quantity"]) for row in outcome.lots],
                unit_price_cents=outcome.final_unit_price_cents,
                total_cents=outcome.final_total_cents,
                receipt_number=receipt_number,
                description=f"Sale {receipt_number}",
                occurred_at=occurred_at,
            )
        except StockError as exc:
            outcome.status = LINE_FAILED
            outcome.error = str(exc)
            outcome.error_code = exc.code
            continue
        except Exception as exc:
            current_app.logger.exception(
                "Checkout %s: writing line %s failed", receipt_number, outcome.line_id
            )
            outcome.status = LINE_FAILED
            outcome.error = str(exc)
            outcome.error_code = "WRITE_FAILED"
            continue

        outcome.status = LINE_COMMITTED
        outcome.movement_id = movement.id
        outcome.lots = [
            {"lot_id": a.lot_id, "lot_number": a.lot_number, "quantity": a.quantity}
            for a in movement.allocations
        ]

    result = CheckoutResult(
        cart_id=cart_id,
        receipt_number=receipt_number,
        subtotal_cents=pricing.subtotal_cents,
        discount_cents=pricing.discount_cents,
        total_cents=pricing.total_cents,
        amount_received_cents=amount_received,
        occurred_at=occurred_at,
        lines=outcomes,
    )

    if result.committed_lines:
        def _close():
            closed = db.session.get(Cart, cart_id)
            closed.status = CART_CHECKED_OUT
            closed.receipt_number = receipt_number
            closed.checked_out_at = occurred_at
            db.session.flush()

        run_in_transaction(_close)

    if result.needs_review:
        current_app.logger.warning(
            "Checkout %s partially committed: %d of %d lines written; manual review required",
            receipt_number, len(result.committed_lines), len(result.lines),
        )

    publish(StockEvent(
        event_type="checkout.completed" if not result.needs_review else "checkout.partial",
        operator_id=operator_id,
        title="Sale completed" if not result.needs_review else "Sale needs review",
        message=(
            f"Sale {receipt_number}: {len(result.committed_lines)} of {len(result.lines)} lines, "
            f"total {result.committed_total_cents / 100:.2f}"
        ),
        kind="success" if not result.needs_review else "warning",
        quantity=sum(l.quantity for l in result.committed_lines),
        payload={"receipt_number": receipt_number, "cart_id": cart_id},
    ))
    return result
