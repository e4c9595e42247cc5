# Overview: Movement ledger; records stock-affecting events and keeps product stock in step.

"""
StockFlow Movement Ledger Invariants (authoritative)

Movement kinds:
- RECEIPT adds stock; unit_price_cents is the acquisition cost.
- EXIT removes stock; unit_price_cents is the price actually charged.
- ADJUSTMENT adds or removes stock (direction IN / OUT).

Business invariants:
- product.stock never goes negative; a movement that would do so is rejected
  with InsufficientStock before anything is written.
- For a lot-managed product product.stock == SUM(lot.quantity). Every stock
  increase names the lots it goes into. Decreases name their lots too; the
  only exception is stock held from before the product was tracked by lot
  (the unallocated remainder), which may be consumed without naming a lot
  but never below zero.
- SUM(allocation.quantity) == movement.quantity for lot-backed movements.
- total_cents = quantity * unit_price_cents, except discounted sale lines,
  which keep their exact amount and a unit price rounded to the cent.

Atomicity:
- Stock update, lot updates and the movement row are written in one DB
  transaction; any failure rolls all of them back.
- Removing a movement reverses its stock effect and its lot allocations in the
  same way. Cancelled exits have no remaining effect and are removed as-is.

Events:
- A domain event is published after commit. Publishing can fail on its own
  without touching the committed write.
"""

from __future__ import annotations

from ..extensions import db
from ..errors import InsufficientStock, NoQuantitySelected, NotFound, RestorationUnavailable, StockError
from ..models import Movement, MovementLotAllocation, Product
from ..models.inventory import (
    DIRECTION_IN,
    DIRECTION_OUT,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_EXIT,
    MOVEMENT_RECEIPT,
    MOVEMENT_TYPES,
    STATUS_CONFIRMED,
    movement_direction,
)
from ..time_utils import normalize_datetime
from .catalog_service import get_product
from .concurrency import run_in_transaction
from .events import StockEvent, publish, publishes_rejections
from .lot_service import adjust_lot_quantity, allocated_quantity, lots_for_update, new_lot_inner
from .operator_service import require_operator


_TITLES = {
    MOVEMENT_RECEIPT: "Stock receipt",
    MOVEMENT_EXIT: "Stock exit",
    MOVEMENT_ADJUSTMENT: "Stock adjustment",
}


def movement_event(movement: Movement, product: Product, action: str) -> StockEvent:
    """Describe a recorded or removed movement for the operator."""
    verb = "added to" if movement.signed_quantity > 0 else "removed from"
    if action == "removed":
        verb = "returned to" if movement.signed_quantity < 0 else "taken back from"
    message = f"{movement.quantity} {product.unit} {verb} {product.name} (stock now {product.stock})"
    if movement.allocations:
        lots = ", ".join(f"{a.lot_number}: {a.quantity}" for a in movement.allocations)
        message += f"; lots {lots}"
    return StockEvent(
        event_type=f"movement.{action}",
        operator_id=movement.operator_id,
        title=_TITLES[movement.type] + (" removed" if action == "removed" else ""),
        message=message,
        kind="warning" if action == "removed" else ("success" if movement.signed_quantity > 0 else "info"),
        product_id=product.id,
        quantity=movement.quantity,
        payload={"movement_id": movement.id, "receipt_number": movement.receipt_number},
    )


def _require_positive_int(name: str, value) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise StockError(f"{name} must be a positive integer")
    return value


def _require_price(value) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise StockError("unit_price_cents must be a non-negative integer")
    return value


def _line_total(quantity: int, unit_price_cents: int, total_cents) -> int:
    if total_cents is None:
        return quantity * unit_price_cents
    if not isinstance(total_cents, int) or isinstance(total_cents, bool) or total_cents < 0:
        raise StockError("total_cents must be a non-negative integer")
    # unit_price_cents must be total_cents / quantity to the nearest cent
    if abs(2 * (total_cents - quantity * unit_price_cents)) > quantity:
        raise StockError(
            f"total {total_cents} does not match {quantity} x {unit_price_cents}",
            details={"quantity": quantity, "unit_price_cents": unit_price_cents, "total_cents": total_cents},
        )
    return total_cents


def apply_stock_delta(product: Product, delta: int, *, lot_backed: bool) -> None:
    """
    Move product.stock by `delta`, refusing to go below zero.

    A decrease that is not backed by lots may only consume the unallocated
    remainder of a lot-managed product.
    """
    if delta < 0:
        requested = -delta
        if product.stock < requested:
            raise InsufficientStock(
                f"{product.name} has only {product.stock} in stock, {requested} requested",
                details={"product_id": product.id, "available": product.stock, "requested": requested},
            )
        if product.managed_by_lots and not lot_backed:
            unallocated = product.stock - allocated_quantity(product.id)
            if unallocated < requested:
                raise InsufficientStock(
                    f"{product.name} has only {unallocated} units outside lots, {requested} requested; "
                    "select the lots to take them from",
                    details={
                        "product_id": product.id,
                        "available": unallocated,
                        "requested": requested,
                        "unallocated": True,
                    },
                )
    product.stock = product.stock + delta


def apply_lot_deltas(allocations, sign: int) -> None:
    """Move each (lot, quantity) pair by sign * quantity."""
    for lot, quantity in allocations:
        adjust_lot_quantity(lot, lot.quantity + sign * quantity)


def record_movement_inner(
    *,
    operator_id: int,
    product: Product,
    movement_type: str,
    quantity: int,
    unit_price_cents: int,
    direction: str | None = None,
    occurred_at=None,
    description: str | None = None,
    receipt_number: str | None = None,
    allocations=(),
    total_cents: int | None = None,
) -> Movement:
    """
    Core ledger write without commit.

    `product` must already be loaded for update. `allocations` is a sequence of
    (Lot, quantity) pairs that move in the movement's direction.

    `total_cents` carries an exact line amount (a discounted sale line) when it
    is not a whole number of cents per unit; `unit_price_cents` is then that
    amount per unit rounded to the cent.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise StockError(f"unknown movement type {movement_type!r}")

    quantity = _require_positive_int("quantity", quantity)
    unit_price_cents = _require_price(unit_price_cents)
    total_cents = _line_total(quantity, unit_price_cents, total_cents)
    try:
        direction = movement_direction(movement_type, direction)
    except ValueError as exc:
        raise StockError(str(exc)) from exc

    allocations = [(lot, _require_positive_int("lot quantity", qty)) for lot, qty in allocations]
    if allocations:
        if not product.managed_by_lots:
            raise StockError(
                f"product {product.sku} is not managed by lots",
                details={"product_id": product.id},
            )
        if any(lot.product_id != product.id for lot, _ in allocations):
            raise StockError("allocated lots must belong to the movement's product")
        allocated = sum(qty for _, qty in allocations)
        if allocated != quantity:
            raise StockError(
                f"lot allocations add up to {allocated}, movement quantity is {quantity}",
                details={"product_id": product.id, "allocated": allocated, "quantity": quantity},
            )
    elif product.managed_by_lots and direction == DIRECTION_IN:
        raise NoQuantitySelected(
            f"{product.name} is tracked by lot; choose the lot that receives {quantity} {product.unit}",
            details={"product_id": product.id, "requested": quantity},
        )

    sign = 1 if direction == DIRECTION_IN else -1
    apply_lot_deltas(allocations, sign)
    apply_stock_delta(product, sign * quantity, lot_backed=bool(allocations))

    movement = Movement(
        operator_id=operator_id,
        product_id=product.id,
        type=movement_type,
        direction=direction,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        total_cents=total_cents,
        status=STATUS_CONFIRMED,
        receipt_number=receipt_number,
        description=description,
        occurred_at=normalize_datetime(occurred_at),
    )
    for lot, qty in allocations:
        movement.allocations.append(
            MovementLotAllocation(lot_id=lot.id, lot_number=lot.lot_number, quantity=qty)
        )
    db.session.add(movement)
    db.session.flush()
    return movement


def _resolve_lot_rows(product: Product, lot_rows) -> list:
    """[(lot_id, quantity), ...] -> [(Lot, quantity), ...] with merged duplicates."""
    merged: dict[int, int] = {}
    for lot_id, qty in lot_rows or ():
        merged[lot_id] = merged.get(lot_id, 0) + _require_positive_int("lot quantity", qty)
    lots = lots_for_update(product, merged.keys())
    return [(lots[lot_id], qty) for lot_id, qty in merged.items()]


@publishes_rejections("movement")
def record_movement(
    *,
    operator_id: int,
    product_id: int,
    movement_type: str,
    quantity: int,
    unit_price_cents: int = 0,
    direction: str | None = None,
    occurred_at=None,
    description: str | None = None,
    receipt_number: str | None = None,
    lots=(),
) -> Movement:
    """
    Append one movement and update product stock atomically.

    `lots` is an optional sequence of (lot_id, quantity) rows for lot-backed
    movements. Exits from lot-managed products normally come through the
    allocation engine, which validates the lot rows first.
    """
    require_operator(operator_id)

    def _op():
        product = get_product(operator_id, product_id, lock=True)
        allocations = _resolve_lot_rows(product, lots)
        movement = record_movement_inner(
            operator_id=operator_id,
            product=product,
            movement_type=movement_type,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            direction=direction,
            occurred_at=occurred_at,
            description=description,
            receipt_number=receipt_number,
            allocations=allocations,
        )
        return movement, movement_event(movement, product, "recorded")

    movement, event = run_in_transaction(_op)
    publish(event)
    return movement


@publishes_rejections("receipt")
def record_receipt(
    *,
    operator_id: int,
    product_id: int,
    quantity: int,
    unit_cost_cents: int,
    occurred_at=None,
    description: str | None = None,
    lot_id: int | None = None,
    new_lot: dict | None = None,
) -> Movement:
    """
    Receive stock.

    For lot-managed products the receipt can go into an existing lot (`lot_id`)
    or a new one (`new_lot` = {"lot_number", "manufacture_date", "expiry_date"});
    otherwise it lands in the unallocated remainder.
    """
    require_operator(operator_id)
    if lot_id is not None and new_lot is not None:
        raise StockError("give either lot_id or new_lot, not both")

    def _op():
        product = get_product(operator_id, product_id, lock=True)
        allocations = []
        if lot_id is not None:
            allocations = _resolve_lot_rows(product, [(lot_id, quantity)])
        elif new_lot is not None:
            if not product.managed_by_lots:
                raise StockError(
                    f"product {product.sku} is not managed by lots",
                    details={"product_id": product.id},
                )
            lot = new_lot_inner(
                product=product,
                lot_number=new_lot.get("lot_number"),
                quantity=0,
                manufacture_date=new_lot.get("manufacture_date"),
                expiry_date=new_lot.get("expiry_date"),
            )
            allocations = [(lot, quantity)]

        movement = record_movement_inner(
            operator_id=operator_id,
            product=product,
            movement_type=MOVEMENT_RECEIPT,
            quantity=quantity,
            unit_price_cents=unit_cost_cents,
            occurred_at=occurred_at,
            description=description,
            allocations=allocations,
        )
        return movement, movement_event(movement, product, "recorded")

    movement, event = run_in_transaction(_op)
    publish(event)
    return movement


def record_exit(
    *,
    operator_id: int,
    product_id: int,
    quantity: int,
    unit_price_cents: int,
    occurred_at=None,
    description: str | None = None,
    receipt_number: str | None = None,
    lots=(),
) -> Movement:
    """Ledger-level exit. Sales go through allocation_service.commit_exit instead."""
    return record_movement(
        operator_id=operator_id,
        product_id=product_id,
        movement_type=MOVEMENT_EXIT,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        occurred_at=occurred_at,
        description=description,
        receipt_number=receipt_number,
        lots=lots,
    )


def record_adjustment(
    *,
    operator_id: int,
    product_id: int,
    quantity: int,
    direction: str,
    occurred_at=None,
    description: str | None = None,
    lots=(),
) -> Movement:
    return record_movement(
        operator_id=operator_id,
        product_id=product_id,
        movement_type=MOVEMENT_ADJUSTMENT,
        quantity=quantity,
        unit_price_cents=0,
        direction=direction,
        occurred_at=occurred_at,
        description=description,
        lots=lots,
    )


def set_stock_level(
    *,
    operator_id: int,
    product_id: int,
    counted: int,
    description: str | None = None,
) -> Movement | None:
    """
    Bring stock to a counted level by recording the difference as an adjustment.

    Returns None when stock already matches.
    """
    require_operator(operator_id)
    if not isinstance(counted, int) or isinstance(counted, bool) or counted < 0:
        raise StockError("counted must be a non-negative integer")

    product = get_product(operator_id, product_id)
    difference = counted - product.stock
    if difference == 0:
        return None
    return record_adjustment(
        operator_id=operator_id,
        product_id=product_id,
        quantity=abs(difference),
        direction=DIRECTION_IN if difference > 0 else DIRECTION_OUT,
        description=description or f"Stock count: {product.stock} -> {counted}",
    )


def get_movement(operator_id: int, movement_id: int) -> Movement:
    movement = db.session.get(Movement, movement_id)
    if movement is None or movement.operator_id != operator_id:
        raise NotFound(f"movement {movement_id} not found", details={"movement_id": movement_id})
    return movement


def list_movements(
    *,
    operator_id: int,
    product_id: int | None = None,
    movement_type: str | None = None,
    status: str | None = None,
    receipt_number: str | None = None,
    limit: int | None = 200,
) -> list[Movement]:
    """Movements newest first."""
    q = db.session.query(Movement).filter(Movement.operator_id == operator_id)
    if product_id is not None:
        q = q.filter(Movement.product_id == product_id)
    if movement_type is not None:
        q = q.filter(Movement.type == movement_type)
    if status is not None:
        q = q.filter(Movement.status == status)
    if receipt_number is not None:
        q = q.filter(Movement.receipt_number == receipt_number)
    q = q.order_by(Movement.occurred_at.desc(), Movement.id.desc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


@publishes_rejections("movement_remove")
def remove_movement(*, operator_id: int, movement_id: int) -> None:
    """
    Delete a movement and compensate its effect on stock and lots.

    Lot-backed movements are reversed lot by lot from their stored allocations;
    if one of those lots no longer exists the removal fails with
    RestorationUnavailable instead of skipping it.
    """
    require_operator(operator_id)

    def _op():
        movement = get_movement(operator_id, movement_id)
        product = get_product(operator_id, movement.product_id, lock=True)

        if movement.in_effect:
            allocations = []
            for allocation in movement.allocations:
                if allocation.lot_id is None:
                    raise RestorationUnavailable(
                        f"lot {allocation.lot_number} no longer exists; cannot reverse "
                        f"{allocation.quantity} units of movement {movement.id}",
                        details={
                            "movement_id": movement.id,
                            "product_id": product.id,
                            "lot_number": allocation.lot_number,
                            "requested": allocation.quantity,
                        },
                    )
                allocations.append(allocation)

            locked = lots_for_update(product, [a.lot_id for a in allocations])
            sign = -1 if movement.signed_quantity > 0 else 1
            apply_lot_deltas([(locked[a.lot_id], a.quantity) for a in allocations], sign)
            apply_stock_delta(product, -movement.signed_quantity, lot_backed=bool(allocations))

        event = movement_event(movement, product, "removed")
        db.session.delete(movement)
        db.session.flush()
        return event

    publish(run_in_transaction(_op))
