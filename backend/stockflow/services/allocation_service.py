# Overview: Allocation engine; maps an exit quantity onto lots, validates and commits it.

"""
StockFlow Allocation Engine

State machine for one exit line:

    UNSELECTED -> SELECTING -> VALID -> COMMITTED

    UNSELECTED: no lot rows yet
    SELECTING:  lot rows are being added / edited
    VALID:      sum of rows > 0 and every row <= its lot's current quantity
    COMMITTED:  lot deductions and the exit movement are written

Products that are not lot-managed skip selection: the quantity is checked
against product.stock only.

Rules:
- A row asking for more than its lot holds fails with ExceedsLotStock naming
  that lot (and every other failing lot in details["lots"]).
- Zero across all rows fails with NoQuantitySelected.
- Taking a lot's full remaining quantity is fine; the lot stays with 0.
- Commit re-reads product and lots (locked) and validates AGAIN right before
  writing. The earlier validation only tells the operator what to fix; the
  commit-time check is what prevents two sales of the same last unit.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import (
    ExceedsLotStock,
    InsufficientStock,
    NoQuantitySelected,
    StockError,
)
from ..models import Movement, Product
from ..models.inventory import MOVEMENT_EXIT
from .catalog_service import get_product
from .concurrency import run_in_transaction
from .events import publish, publishes_rejections
from .ledger_service import movement_event, record_movement_inner
from .lot_service import find_lots, lots_for_update
from .operator_service import require_operator
from .valuation_service import effective_sale_price_cents


ALLOCATION_UNSELECTED = "UNSELECTED"
ALLOCATION_SELECTING = "SELECTING"
ALLOCATION_VALID = "VALID"
ALLOCATION_COMMITTED = "COMMITTED"


@dataclass(frozen=True)
class LotDeduction:
    lot_id: int
    lot_number: str
    available: int
    quantity: int

    @property
    def remaining(self) -> int:
        return self.available - self.quantity

    def to_dict(self) -> dict:
        return {
            "lot_id": self.lot_id,
            "lot_number": self.lot_number,
            "available": self.available,
            "quantity": self.quantity,
            "remaining": self.remaining,
        }


@dataclass(frozen=True)
class AllocationPlan:
    product_id: int
    quantity: int
    deductions: tuple[LotDeduction, ...] = ()

    @property
    def lot_backed(self) -> bool:
        return bool(self.deductions)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "lots": [d.to_dict() for d in self.deductions],
        }


def merge_rows(rows) -> dict[int, int]:
    """
    Normalize lot rows to {lot_id: quantity}, in first-seen order.

    Accepts (lot_id, quantity) pairs or {"lot_id", "quantity"} dicts. Rows for
    the same lot are added up; zero rows are dropped.
    """
    merged: dict[int, int] = {}
    for row in rows or ():
        if isinstance(row, dict):
            lot_id, quantity = row.get("lot_id"), row.get("quantity")
        else:
            lot_id, quantity = row
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
            raise StockError(
                f"quantity for lot {lot_id} must be a non-negative integer",
                details={"lot_id": lot_id},
            )
        if quantity == 0:
            continue
        merged[lot_id] = merged.get(lot_id, 0) + quantity
    return merged


def validate_allocation(product: Product, quantity: int | None, rows=(), *, lock: bool = False) -> AllocationPlan:
    """
    Check an exit request against CURRENT product and lot quantities.

    For lot-managed products `quantity` may be None (taken from the rows); if
    given it must equal the sum of the rows.
    """
    if not product.managed_by_lots:
        if rows:
            raise StockError(
                f"product {product.sku} is not managed by lots",
                details={"product_id": product.id},
            )
        if not quantity:
            raise NoQuantitySelected(
                f"no quantity selected for {product.name}",
                details={"product_id": product.id},
            )
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
            raise StockError("quantity must be a positive integer")
        if quantity > product.stock:
            raise InsufficientStock(
                f"{product.name} has only {product.stock} in stock, {quantity} requested",
                details={"product_id": product.id, "available": product.stock, "requested": quantity},
            )
        return AllocationPlan(product_id=product.id, quantity=quantity)

    merged = merge_rows(rows)
    total = sum(merged.values())
    if total == 0:
        raise NoQuantitySelected(
            f"no lot quantity selected for {product.name}",
            details={"product_id": product.id},
        )
    if quantity is not None and quantity != total:
        raise StockError(
            f"lot rows add up to {total}, requested quantity is {quantity}",
            details={"product_id": product.id, "allocated": total, "requested": quantity},
        )

    lots = find_lots(product, merged.keys(), lock=lock)

    failures = []
    deductions = []
    for lot_id, wanted in merged.items():
        lot = lots[lot_id]
        if wanted > lot.quantity:
            failures.append({
                "lot_id": lot.id,
                "lot_number": lot.lot_number,
                "available": lot.quantity,
                "requested": wanted,
            })
            continue
        deductions.append(LotDeduction(lot.id, lot.lot_number, lot.quantity, wanted))

    if failures:
        first = failures[0]
        raise ExceedsLotStock(
            f"lot {first['lot_number']} has only {first['available']} available, {first['requested']} requested",
            details={"product_id": product.id, **first, "lots": failures},
        )

    if total > product.stock:
        raise InsufficientStock(
            f"{product.name} has only {product.stock} in stock, {total} requested",
            details={"product_id": product.id, "available": product.stock, "requested": total},
        )

    return AllocationPlan(product_id=product.id, quantity=total, deductions=tuple(deductions))


def commit_exit_inner(
    *,
    operator_id: int,
    product: Product,
    quantity: int | None,
    lots=(),
    unit_price_cents: int | None = None,
    receipt_number: str | None = None,
    description: str | None = None,
    occurred_at=None,
    total_cents: int | None = None,
) -> tuple[Movement, AllocationPlan]:
    """Re-validate under lock and write the exit. No commit."""
    plan = validate_allocation(product, quantity, lots, lock=True)
    locked = lots_for_update(product, [d.lot_id for d in plan.deductions])

    price = unit_price_cents if unit_price_cents is not None else effective_sale_price_cents(product)
    movement = record_movement_inner(
        operator_id=operator_id,
        product=product,
        movement_type=MOVEMENT_EXIT,
        quantity=plan.quantity,
        unit_price_cents=price,
        occurred_at=occurred_at,
        description=description,
        receipt_number=receipt_number,
        allocations=[(locked[d.lot_id], d.quantity) for d in plan.deductions],
        total_cents=total_cents,
    )
    return movement, plan


@publishes_rejections("exit")
def commit_exit(
    *,
    operator_id: int,
    product_id: int,
    quantity: int | None = None,
    lots=(),
    unit_price_cents: int | None = None,
    receipt_number: str | None = None,
    description: str | None = None,
    occurred_at=None,
    total_cents: int | None = None,
) -> Movement:
    """
    Write one exit line: lot deductions plus one EXIT movement whose quantity
    is the sum of the deductions (or `quantity` for products without lots).

    `unit_price_cents` defaults to the product's effective sale price.
    `total_cents` is the exact line amount when a discount leaves a fraction
    of a cent per unit.
    """
    require_operator(operator_id)

    def _op():
        product = get_product(operator_id, product_id, lock=True)
        movement, _ = commit_exit_inner(
            operator_id=operator_id,
            product=product,
            quantity=quantity,
            lots=lots,
            unit_price_cents=unit_price_cents,
            receipt_number=receipt_number,
            description=description,
            occurred_at=occurred_at,
            total_cents=total_cents,
        )
        return movement, movement_event(movement, product, "recorded")

    movement, event = run_in_transaction(_op)
    publish(event)
    return movement


class AllocationDraft:
    """
    An exit being prepared for one product.

    Selecting lots reserves nothing; only `commit()` touches stock, and it
    validates against the state of the database at that moment.
    """

    def __init__(self, *, operator_id: int, product_id: int, quantity: int | None = None):
        self.operator_id = operator_id
        self.product_id = product_id
        self.quantity = quantity
        self.rows: dict[int, int] = {}
        self.state = ALLOCATION_UNSELECTED
        self.plan: AllocationPlan | None = None
        self.movement: Movement | None = None

    def _ensure_open(self) -> None:
        if self.state == ALLOCATION_COMMITTED:
            raise StockError("allocation already committed")

    def set_row(self, lot_id: int, quantity: int) -> None:
        self._ensure_open()
        if quantity < 0:
            raise StockError("quantity must be >= 0", details={"lot_id": lot_id})
        if quantity == 0:
            self.rows.pop(lot_id, None)
        else:
            self.rows[lot_id] = quantity
        self.plan = None
        self.state = ALLOCATION_SELECTING if self.rows else ALLOCATION_UNSELECTED

    def remove_row(self, lot_id: int) -> None:
        self.set_row(lot_id, 0)

    @property
    def selected_quantity(self) -> int:
        return sum(self.rows.values())

    def validate(self) -> AllocationPlan:
        self._ensure_open()
        product = get_product(self.operator_id, self.product_id)
        quantity = None if product.managed_by_lots else self.quantity
        rows = list(self.rows.items()) if product.managed_by_lots else ()
        self.plan = validate_allocation(product, quantity, rows)
        self.state = ALLOCATION_VALID
        return self.plan

    def commit(self, *, unit_price_cents: int | None = None, **kwargs) -> Movement:
        if self.state != ALLOCATION_VALID:
            self.validate()
        self.movement = commit_exit(
            operator_id=self.operator_id,
            product_id=self.product_id,
            quantity=self.plan.quantity,
            lots=[(d.lot_id, d.quantity) for d in self.plan.deductions],
            unit_price_cents=unit_price_cents,
            **kwargs,
        )
        self.state = ALLOCATION_COMMITTED
        return self.movement
