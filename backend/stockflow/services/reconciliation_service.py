# Overview: Read-only stock consistency reports; lot sums and ledger replay against product stock.

"""
Nothing here repairs anything. A mismatch means a compensating update was
missed somewhere and needs a person to look at it.

- Lot drift: for lot-managed products, SUM(lot.quantity) vs product.stock.
  Less than stock is stock held from before the product was tracked by lot
  (the unallocated remainder, waiting to be put into lots); more than stock
  is a broken invariant.
- Ledger drift: product.stock vs the replay of its movements still in effect
  (receipts + adjustments IN - exits - adjustments OUT, cancelled exits skipped).
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import case, func

from ..extensions import db
from ..models import Lot, Movement, Product
from ..models.inventory import DIRECTION_IN, STATUS_CANCELLED


@dataclass(frozen=True)
class LotDrift:
    product_id: int
    sku: str
    stock: int
    in_lots: int

    @property
    def unallocated(self) -> int:
        return self.stock - self.in_lots

    @property
    def over_allocated(self) -> bool:
        return self.in_lots > self.stock

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "sku": self.sku,
            "stock": self.stock,
            "in_lots": self.in_lots,
            "unallocated": self.unallocated,
            "over_allocated": self.over_allocated,
        }


@dataclass(frozen=True)
class LedgerDrift:
    product_id: int
    sku: str
    stock: int
    ledger_stock: int

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "sku": self.sku,
            "stock": self.stock,
            "ledger_stock": self.ledger_stock,
            "difference": self.stock - self.ledger_stock,
        }


def find_lot_drift(operator_id: int | None = None) -> list[LotDrift]:
    """Lot-managed products whose lots do not add up to their stock."""
    in_lots = func.coalesce(func.sum(Lot.quantity), 0)
    q = (
        db.session.query(Product, in_lots)
        .outerjoin(Lot, Lot.product_id == Product.id)
        .filter(Product.managed_by_lots.is_(True))
        .group_by(Product.id)
    )
    if operator_id is not None:
        q = q.filter(Product.operator_id == operator_id)

    return [
        LotDrift(product.id, product.sku, product.stock, int(total))
        for product, total in q.all()
        if int(total) != product.stock
    ]


def find_ledger_drift(operator_id: int | None = None) -> list[LedgerDrift]:
    signed = case(
        (Movement.direction == DIRECTION_IN, Movement.quantity),
        else_=-Movement.quantity,
    )
    replay = (
        db.session.query(Movement.product_id, func.coalesce(func.sum(signed), 0).label("ledger_stock"))
        .filter(Movement.status != STATUS_CANCELLED)
        .group_by(Movement.product_id)
        .subquery()
    )
    q = (
        db.session.query(Product, func.coalesce(replay.c.ledger_stock, 0))
        .outerjoin(replay, replay.c.product_id == Product.id)
    )
    if operator_id is not None:
        q = q.filter(Product.operator_id == operator_id)

    return [
        LedgerDrift(product.id, product.sku, product.stock, int(ledger_stock))
        for product, ledger_stock in q.all()
        if int(ledger_stock) != product.stock
    ]
