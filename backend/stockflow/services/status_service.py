# Overview: Status transition machine for exits; pending, confirmed and cancelled.

"""
StockFlow exit status transitions.

    PENDING  <-> CONFIRMED     label only, no stock effect
    PENDING | CONFIRMED -> CANCELLED    stock (and lots) given back
    CANCELLED -> PENDING | CONFIRMED    stock (and lots) taken again

Lot handling:
- Exits written through the allocation engine store their per-lot breakdown,
  so cancelling gives back exactly what was taken and re-activating takes the
  same lots again.
- Exits with no stored breakdown on a lot-managed product fall back to an
  even split over the product's current lots: ceil(quantity / lot_count) per
  lot, never more than what is left to place. The split used is stored on the
  movement, so the next transition is exact again.
- A lot that no longer exists, or a product with no lots to use, fails with
  RestorationUnavailable. Nothing is skipped silently.

Only EXIT movements change status; anything else is InvalidStatusTransition.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..extensions import db
from ..errors import InsufficientStock, InvalidStatusTransition, RestorationUnavailable
from ..models import Lot, Movement, MovementLotAllocation, Product
from ..models.inventory import (
    MOVEMENT_EXIT,
    MOVEMENT_STATUSES,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
)
from ..time_utils import utcnow
from .catalog_service import get_product
from .concurrency import lock_for_update, run_in_transaction
from .events import StockEvent, publish, publishes_rejections
from .ledger_service import apply_stock_delta, get_movement
from .lot_service import adjust_lot_quantity, lots_for_update, order_by_expiry
from .operator_service import require_operator


@dataclass
class StatusChange:
    movement_id: int
    product_id: int
    old_status: str
    new_status: str
    stock_delta: int = 0
    exact: bool = True
    lots: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "movement_id": self.movement_id,
            "product_id": self.product_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "stock_delta": self.stock_delta,
            "exact": self.exact,
            "lots": self.lots,
        }


def proportional_shares(quantity: int, capacities) -> list[int]:
    """
    Spread `quantity` over lots: ceil(quantity / n) each, in order, never more
    than what is left to place.

    `capacities` holds, per lot, the most it can take (None for no limit).
    When capped lots leave a remainder, a second pass fills the others in
    order. The result may add up to less than `quantity` if capacity runs out.
    """
    capacities = list(capacities)
    if not capacities or quantity <= 0:
        return [0] * len(capacities)

    per_lot = -(-quantity // len(capacities))
    shares = []
    remaining = quantity
    for cap in capacities:
        share = min(per_lot, remaining)
        if cap is not None:
            share = min(share, cap)
        shares.append(share)
        remaining -= share

    for i, cap in enumerate(capacities):
        if remaining <= 0:
            break
        room = remaining if cap is None else min(remaining, cap - shares[i])
        if room > 0:
            shares[i] += room
            remaining -= room

    return shares


def _current_lots(product: Product, *, with_stock: bool) -> list[Lot]:
    query = db.session.query(Lot).filter(Lot.product_id == product.id)
    if with_stock:
        query = query.filter(Lot.quantity > 0)
    return lock_for_update(order_by_expiry(query)).all()


def _stored_lots(movement: Movement, product: Product) -> list[tuple[Lot, int]]:
    for allocation in movement.allocations:
        if allocation.lot_id is None:
            raise RestorationUnavailable(
                f"lot {allocation.lot_number} no longer exists; cannot move "
                f"{allocation.quantity} units for movement {movement.id}",
                details={
                    "movement_id": movement.id,
                    "product_id": product.id,
                    "lot_number": allocation.lot_number,
                    "requested": allocation.quantity,
                },
            )
    locked = lots_for_update(product, [a.lot_id for a in movement.allocations])
    return [(locked[a.lot_id], a.quantity) for a in movement.allocations]


def _split_over_lots(movement: Movement, product: Product, *, restoring: bool) -> list[tuple[Lot, int]]:
    """Pick lots for an exit that has no stored breakdown, and store the pick."""
    lots = _current_lots(product, with_stock=not restoring)
    if not lots:
        raise RestorationUnavailable(
            f"{product.name} has no lots to {'restore' if restoring else 'take'} "
            f"{movement.quantity} units {'to' if restoring else 'from'}",
            details={"movement_id": movement.id, "product_id": product.id, "requested": movement.quantity},
        )

    capacities = [None if restoring else lot.quantity for lot in lots]
    shares = proportional_shares(movement.quantity, capacities)
    placed = sum(shares)
    if placed < movement.quantity:
        raise InsufficientStock(
            f"lots of {product.name} hold only {placed}, {movement.quantity} requested",
            details={"movement_id": movement.id, "product_id": product.id, "available": placed, "requested": movement.quantity},
        )

    picked = [(lot, share) for lot, share in zip(lots, shares) if share > 0]
    for lot, share in picked:
        movement.allocations.append(
            MovementLotAllocation(lot_id=lot.id, lot_number=lot.lot_number, quantity=share)
        )
    return picked


def _move_stock(movement: Movement, product: Product, change: StatusChange, *, sign: int) -> None:
    """sign=+1 gives the exit's quantity back, sign=-1 takes it again."""
    if movement.allocations:
        picked = _stored_lots(movement, product)
    elif product.managed_by_lots:
        picked = _split_over_lots(movement, product, restoring=sign > 0)
        change.exact = False
    else:
        picked = []

    for lot, quantity in picked:
        adjust_lot_quantity(lot, lot.quantity + sign * quantity)
        change.lots.append({"lot_id": lot.id, "lot_number": lot.lot_number, "delta": sign * quantity})

    apply_stock_delta(product, sign * movement.quantity, lot_backed=bool(picked))
    change.stock_delta = sign * movement.quantity


def _status_event(movement: Movement, product: Product, change: StatusChange) -> StockEvent:
    message = f"Exit {movement.id} of {product.name}: {change.old_status} -> {change.new_status}"
    if change.stock_delta > 0:
        message += f"; {change.stock_delta} {product.unit} returned to stock"
    elif change.stock_delta < 0:
        message += f"; {-change.stock_delta} {product.unit} taken from stock"
    if change.lots:
        message += "; lots " + ", ".join(f"{l['lot_number']}: {l['delta']:+d}" for l in change.lots)
    message += f" (stock now {product.stock})"
    return StockEvent(
        event_type="movement.status_changed",
        operator_id=movement.operator_id,
        title="Exit cancelled" if change.new_status == STATUS_CANCELLED else "Exit status changed",
        message=message,
        kind="warning" if change.new_status == STATUS_CANCELLED else "info",
        product_id=product.id,
        quantity=movement.quantity,
        payload=change.to_dict(),
    )


@publishes_rejections("status_change")
def change_exit_status(*, operator_id: int, movement_id: int, new_status: str) -> StatusChange:
    require_operator(operator_id)
    new_status = (new_status or "").strip().upper()
    if new_status not in MOVEMENT_STATUSES:
        raise InvalidStatusTransition(
            f"unknown status {new_status!r}",
            details={"movement_id": movement_id, "status": new_status},
        )

    def _op():
        movement = get_movement(operator_id, movement_id)
        if movement.type != MOVEMENT_EXIT:
            raise InvalidStatusTransition(
                f"only exits change status; movement {movement.id} is a {movement.type.lower()}",
                details={"movement_id": movement.id, "product_id": movement.product_id},
            )

        product = get_product(operator_id, movement.product_id, lock=True)
        change = StatusChange(
            movement_id=movement.id,
            product_id=product.id,
            old_status=movement.status,
            new_status=new_status,
        )
        if movement.status == new_status:
            return change, None

        if new_status == STATUS_CANCELLED:
            _move_stock(movement, product, change, sign=1)
        elif movement.status == STATUS_CANCELLED:
            _move_stock(movement, product, change, sign=-1)
        # PENDING <-> CONFIRMED: label only

        movement.status = new_status
        movement.status_changed_at = utcnow()
        db.session.flush()
        return change, _status_event(movement, product, change)

    change, event = run_in_transaction(_op)
    if event is not None:
        publish(event)
    return change


def cancel_exit(*, operator_id: int, movement_id: int) -> StatusChange:
    return change_exit_status(operator_id=operator_id, movement_id=movement_id, new_status=STATUS_CANCELLED)


def confirm_exit(*, operator_id: int, movement_id: int) -> StatusChange:
    return change_exit_status(operator_id=operator_id, movement_id=movement_id, new_status=STATUS_CONFIRMED)


def mark_pending(*, operator_id: int, movement_id: int) -> StatusChange:
    return change_exit_status(operator_id=operator_id, movement_id=movement_id, new_status=STATUS_PENDING)
