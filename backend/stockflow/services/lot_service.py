# Overview: Lot registry; per-product lots, quantity primitive and expiry classification.

"""
StockFlow Lot Registry

Invariants:
- lot_number is unique per product (the same number may exist on another product).
- lot.quantity >= 0 at all times; a change that would go below zero is rejected
  before anything is written.
- For a lot-managed product, SUM(lot.quantity) == product.stock. The only
  gap allowed is stock held from before the product was tracked by lot (the
  unallocated remainder); new lots are carved out of it and it never grows.
- Lot quantities change together with product.stock: exits, receipts into a lot,
  lot-backed adjustments and status changes all move both in one transaction.
  `adjust_lot_quantity` is the primitive they share; it never commits.

Expiry status is a read-time classification and is never stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from flask import current_app, has_app_context
from sqlalchemy import func

from ..extensions import db
from ..errors import (
    DuplicateLot,
    ExceedsAvailableStock,
    ExceedsLotStock,
    NotFound,
    StockError,
)
from ..models import Lot, MovementLotAllocation, Product
from ..time_utils import parse_iso_date, today
from .catalog_service import get_product
from .concurrency import lock_for_update, run_in_transaction
from .events import StockEvent, publish, publishes_rejections
from .operator_service import require_operator


LOT_EXPIRED = "expired"
LOT_EXPIRING_SOON = "expiring_soon"
LOT_OK = "ok"
LOT_UNMANAGED = "unmanaged"

DEFAULT_EXPIRY_WARNING_DAYS = 30


@dataclass(frozen=True)
class LotStatus:
    state: str
    days_until_expiry: int | None

    def to_dict(self) -> dict:
        return {"state": self.state, "days_until_expiry": self.days_until_expiry}


def _warning_days() -> int:
    if has_app_context():
        return int(current_app.config.get("EXPIRY_WARNING_DAYS", DEFAULT_EXPIRY_WARNING_DAYS))
    return DEFAULT_EXPIRY_WARNING_DAYS


def classify_expiry(expiry_date: date | None, *, on: date | None = None, warning_days: int | None = None) -> LotStatus:
    """
    < 0 days -> expired; 0..warning_days -> expiring soon; later -> ok;
    no expiry date -> unmanaged.
    """
    if expiry_date is None:
        return LotStatus(LOT_UNMANAGED, None)

    on = on or today()
    if warning_days is None:
        warning_days = _warning_days()

    days = (expiry_date - on).days
    if days < 0:
        return LotStatus(LOT_EXPIRED, days)
    if days <= warning_days:
        return LotStatus(LOT_EXPIRING_SOON, days)
    return LotStatus(LOT_OK, days)


def lot_status(lot: Lot, *, on: date | None = None) -> LotStatus:
    return classify_expiry(lot.expiry_date, on=on)


def lot_to_dict(lot: Lot, *, on: date | None = None) -> dict:
    data = lot.to_dict()
    data["status"] = lot_status(lot, on=on).to_dict()
    return data


def allocated_quantity(product_id: int) -> int:
    total = db.session.query(func.coalesce(func.sum(Lot.quantity), 0)).filter(
        Lot.product_id == product_id
    ).scalar()
    return int(total or 0)


def unallocated_quantity(product: Product) -> int:
    """Stock not assigned to any lot."""
    return product.stock - allocated_quantity(product.id)


def get_lot(operator_id: int, lot_id: int, *, lock: bool = False) -> Lot:
    query = db.session.query(Lot).filter_by(id=lot_id)
    if lock:
        query = lock_for_update(query)
    lot = query.first()
    if lot is None or lot.operator_id != operator_id:
        raise NotFound(f"lot {lot_id} not found", details={"lot_id": lot_id})
    return lot


def find_lots(product: Product, lot_ids, *, lock: bool = False) -> dict[int, Lot]:
    """Return the requested lots by id; all of them must belong to `product`."""
    wanted = sorted(set(lot_ids))
    if not wanted:
        return {}
    query = db.session.query(Lot).filter(Lot.id.in_(wanted), Lot.product_id == product.id)
    if lock:
        query = lock_for_update(query)
    rows = query.all()
    found = {lot.id: lot for lot in rows}
    missing = [lot_id for lot_id in wanted if lot_id not in found]
    if missing:
        raise NotFound(
            f"lot(s) {', '.join(str(m) for m in missing)} not found for product {product.sku}",
            details={"product_id": product.id, "lot_ids": missing},
        )
    return found


def lots_for_update(product: Product, lot_ids) -> dict[int, Lot]:
    return find_lots(product, lot_ids, lock=True)


def order_by_expiry(query):
    # Soonest expiry first, undated lots last
    return query.order_by(
        Lot.expiry_date.is_(None),
        Lot.expiry_date.asc(),
        Lot.created_at.asc(),
        Lot.id.asc(),
    )


def list_lots(*, operator_id: int, product_id: int) -> list[Lot]:
    product = get_product(operator_id, product_id)
    return order_by_expiry(db.session.query(Lot).filter(Lot.product_id == product.id)).all()


def list_available(*, operator_id: int, product_id: int) -> list[Lot]:
    """Lots with quantity > 0, i.e. the choices offered when allocating an exit."""
    product = get_product(operator_id, product_id)
    return order_by_expiry(
        db.session.query(Lot).filter(Lot.product_id == product.id, Lot.quantity > 0)
    ).all()


def list_expiring(*, operator_id: int, days: int | None = None, on: date | None = None) -> list[Lot]:
    """Lots with stock whose expiry falls within the next `days` (expired lots excluded)."""
    on = on or today()
    if days is None:
        days = _warning_days()
    if days < 0:
        raise StockError("days must be >= 0")
    horizon = on + timedelta(days=days)
    return order_by_expiry(
        db.session.query(Lot).filter(
            Lot.operator_id == operator_id,
            Lot.quantity > 0,
            Lot.expiry_date.isnot(None),
            Lot.expiry_date >= on,
            Lot.expiry_date <= horizon,
        )
    ).all()


def adjust_lot_quantity(lot: Lot, new_quantity: int) -> Lot:
    """
    Set a lot's stored quantity directly.

    Used for allocation deductions and for cancellation restores. Rejects
    negative results with the lot's actual shortfall. Flushes, never commits.
    """
    if new_quantity < 0:
        requested = lot.quantity - new_quantity
        raise ExceedsLotStock(
            f"lot {lot.lot_number} has only {lot.quantity} available, {requested} requested",
            details={
                "product_id": lot.product_id,
                "lot_id": lot.id,
                "lot_number": lot.lot_number,
                "available": lot.quantity,
                "requested": requested,
            },
        )
    lot.quantity = new_quantity
    db.session.flush()
    return lot


def _normalize_lot_number(lot_number) -> str:
    value = str(lot_number).strip() if lot_number is not None else ""
    if not value:
        raise StockError("lot_number is required")
    if len(value) > 64:
        raise StockError("lot_number must be at most 64 characters")
    return value


def _check_dates(manufacture_date: date | None, expiry_date: date | None) -> None:
    if manufacture_date and expiry_date and expiry_date < manufacture_date:
        raise StockError("expiry_date cannot be before manufacture_date")


def _ensure_unique_number(product: Product, lot_number: str, *, exclude_lot_id: int | None = None) -> None:
    query = db.session.query(Lot).filter_by(product_id=product.id, lot_number=lot_number)
    if exclude_lot_id is not None:
        query = query.filter(Lot.id != exclude_lot_id)
    if query.first() is not None:
        raise DuplicateLot(
            f"lot {lot_number} already exists for product {product.sku}",
            details={"product_id": product.id, "lot_number": lot_number},
        )


def new_lot_inner(
    *,
    product: Product,
    lot_number: str,
    quantity: int,
    manufacture_date=None,
    expiry_date=None,
) -> Lot:
    """Insert a lot after the duplicate check. No stock check, no commit."""
    lot_number = _normalize_lot_number(lot_number)
    manufacture_date = parse_iso_date(manufacture_date)
    expiry_date = parse_iso_date(expiry_date)
    _check_dates(manufacture_date, expiry_date)
    _ensure_unique_number(product, lot_number)

    lot = Lot(
        operator_id=product.operator_id,
        product_id=product.id,
        lot_number=lot_number,
        quantity=quantity,
        manufacture_date=manufacture_date,
        expiry_date=expiry_date,
    )
    db.session.add(lot)
    db.session.flush()
    return lot


@publishes_rejections("lot_create")
def create_lot(
    *,
    operator_id: int,
    product_id: int,
    lot_number: str,
    quantity: int,
    manufacture_date=None,
    expiry_date=None,
) -> Lot:
    """
    Create a lot from the product's unallocated stock.

    Raises DuplicateLot when the number is taken for this product, and
    ExceedsAvailableStock when the lots would add up to more than product.stock.
    """
    require_operator(operator_id)
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
        raise StockError("quantity must be a non-negative integer")

    def _op():
        product = get_product(operator_id, product_id, lock=True)
        if not product.managed_by_lots:
            raise StockError(
                f"product {product.sku} is not managed by lots",
                details={"product_id": product.id},
            )

        available = unallocated_quantity(product)
        if quantity > available:
            raise ExceedsAvailableStock(
                f"product {product.sku} has only {available} unallocated units, {quantity} requested",
                details={"product_id": product.id, "available": available, "requested": quantity},
            )

        lot = new_lot_inner(
            product=product,
            lot_number=lot_number,
            quantity=quantity,
            manufacture_date=manufacture_date,
            expiry_date=expiry_date,
        )
        return product, lot

    product, lot = run_in_transaction(_op)
    publish(StockEvent(
        event_type="lot.created",
        operator_id=operator_id,
        title="Lot created",
        message=f"Lot {lot.lot_number} created for {product.name} with {lot.quantity} {product.unit}",
        kind="success",
        product_id=product.id,
        quantity=lot.quantity,
        payload={"lot_id": lot.id},
    ))
    return lot


_UNSET = object()


@publishes_rejections("lot_update")
def update_lot(
    *,
    operator_id: int,
    lot_id: int,
    lot_number=_UNSET,
    manufacture_date=_UNSET,
    expiry_date=_UNSET,
) -> Lot:
    """
    Edit a lot's number and dates.

    Quantity is not editable here: it only moves through the ledger so that
    product stock follows it.
    """
    require_operator(operator_id)

    def _op():
        lot = get_lot(operator_id, lot_id, lock=True)
        if lot_number is not _UNSET:
            number = _normalize_lot_number(lot_number)
            if number != lot.lot_number:
                _ensure_unique_number(lot.product, number, exclude_lot_id=lot.id)
                lot.lot_number = number
        if manufacture_date is not _UNSET:
            lot.manufacture_date = parse_iso_date(manufacture_date)
        if expiry_date is not _UNSET:
            lot.expiry_date = parse_iso_date(expiry_date)
        _check_dates(lot.manufacture_date, lot.expiry_date)
        db.session.flush()
        return lot

    return run_in_transaction(_op)


@publishes_rejections("lot_delete")
def delete_lot(*, operator_id: int, lot_id: int, write_off: bool = False) -> None:
    """
    Delete a lot.

    Only empty lots can be deleted. With write_off=True the remaining quantity
    is first removed through a lot-backed OUT adjustment, so product stock
    drops with it. Past movements keep the lot number snapshot.
    """
    from .ledger_service import record_movement_inner, movement_event
    from ..models.inventory import MOVEMENT_ADJUSTMENT, DIRECTION_OUT

    require_operator(operator_id)

    def _op():
        lot = get_lot(operator_id, lot_id, lock=True)
        product = get_product(operator_id, lot.product_id, lock=True)
        movement = None
        if lot.quantity > 0:
            if not write_off:
                raise StockError(
                    f"lot {lot.lot_number} still holds {lot.quantity} units; write it off before deleting",
                    details={"lot_id": lot.id, "product_id": product.id, "quantity": lot.quantity},
                )
            movement = record_movement_inner(
                operator_id=operator_id,
                product=product,
                movement_type=MOVEMENT_ADJUSTMENT,
                direction=DIRECTION_OUT,
                quantity=lot.quantity,
                unit_price_cents=0,
                description=f"Write-off of lot {lot.lot_number}",
                allocations=[(lot, lot.quantity)],
            )

        db.session.query(MovementLotAllocation).filter_by(lot_id=lot.id).update(
            {"lot_id": None}, synchronize_session="fetch"
        )
        lot_number = lot.lot_number
        db.session.delete(lot)
        db.session.flush()

        events = [movement_event(movement, product, "recorded")] if movement is not None else []
        events.append(StockEvent(
            event_type="lot.deleted",
            operator_id=operator_id,
            title="Lot deleted",
            message=f"Lot {lot_number} of {product.name} was deleted",
            kind="warning",
            product_id=product.id,
            quantity=movement.quantity if movement is not None else 0,
        ))
        return events

    for event in run_in_transaction(_op):
        publish(event)
