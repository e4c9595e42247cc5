from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


MOVEMENT_RECEIPT = "RECEIPT"
MOVEMENT_EXIT = "EXIT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_TYPES = (MOVEMENT_RECEIPT, MOVEMENT_EXIT, MOVEMENT_ADJUSTMENT)

DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"

STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_CANCELLED = "CANCELLED"
MOVEMENT_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_CANCELLED)


def movement_direction(movement_type: str, direction: str | None = None) -> str:
    """
    Resolve the stock direction of a movement kind.

    RECEIPT is always IN, EXIT is always OUT, ADJUSTMENT must say which.
    """
    if movement_type == MOVEMENT_RECEIPT:
        if direction not in (None, DIRECTION_IN):
            raise ValueError("receipts always add stock")
        return DIRECTION_IN
    if movement_type == MOVEMENT_EXIT:
        if direction not in (None, DIRECTION_OUT):
            raise ValueError("exits always remove stock")
        return DIRECTION_OUT
    if movement_type == MOVEMENT_ADJUSTMENT:
        if direction not in (DIRECTION_IN, DIRECTION_OUT):
            raise ValueError("adjustment direction must be IN or OUT")
        return direction
    raise ValueError(f"unknown movement type {movement_type!r}")


class Movement(db.Model):
    """
    One stock-affecting event in the movement ledger.

    Kinds:
    - RECEIPT: stock in, unit_price_cents is the acquisition cost
    - EXIT: stock out, unit_price_cents is the price actually charged (post-discount);
      the only kind whose status can change after it is written
    - ADJUSTMENT: stock in or out (direction), corrections and write-offs

    Rows are immutable apart from `status`. `quantity` is always positive; the
    sign comes from the kind (see `signed_quantity`).
    """
    __tablename__ = "movements"
    __table_args__ = (
        db.Index("ix_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_movements_operator_occurred", "operator_id", "occurred_at"),
        db.CheckConstraint("quantity > 0", name="ck_movements_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_movements_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    direction = db.Column(db.String(3), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=STATUS_CONFIRMED, index=True)

    # Shared by every line written by one checkout
    receipt_number = db.Column(db.String(64), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    status_changed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy=True))
    allocations = db.relationship(
        "MovementLotAllocation",
        backref="movement",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="MovementLotAllocation.id",
    )

    @property
    def signed_quantity(self) -> int:
        """Stock delta this movement applies while it is in effect."""
        direction = movement_direction(self.type, self.direction)
        return self.quantity if direction == DIRECTION_IN else -self.quantity

    @property
    def in_effect(self) -> bool:
        # Cancelled exits no longer touch stock
        return self.status != STATUS_CANCELLED

    @property
    def is_lot_backed(self) -> bool:
        return bool(self.allocations)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "product_id": self.product_id,
            "type": self.type,
            "direction": self.direction,
            "quantity": self.quantity,
            "signed_quantity": self.signed_quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "status": self.status,
            "receipt_number": self.receipt_number,
            "description": self.description,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "status_changed_at": to_utc_z(self.status_changed_at) if self.status_changed_at else None,
            "allocations": [a.to_dict() for a in self.allocations],
        }


class MovementLotAllocation(db.Model):
    """
    Which lots a movement took stock from (or put stock into), and how much.

    Kept so that cancelling an exit restores exactly the lots it debited.
    `lot_id` is cleared if the lot is later deleted; `lot_number` stays as a
    snapshot for history.
    """
    __tablename__ = "movement_lot_allocations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_allocations_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    movement_id = db.Column(db.Integer, db.ForeignKey("movements.id"), nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id", ondelete="SET NULL"), nullable=True, index=True)
    lot_number = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    lot = db.relationship("Lot")

    def to_dict(self) -> dict:
        return {
            "lot_id": self.lot_id,
            "lot_number": self.lot_number,
            "quantity": self.quantity,
        }


class Lot(db.Model):
    """
    A dated subdivision of a product's stock.

    - lot_number is unique per product (not globally)
    - quantity is the remaining quantity and is mutated in place
    - expiry status is derived at read time, never stored
    """
    __tablename__ = "lots"
    __table_args__ = (
        db.UniqueConstraint("product_id", "lot_number", name="uq_lots_product_number"),
        db.CheckConstraint("quantity >= 0", name="ck_lots_quantity_non_negative"),
        db.Index("ix_lots_product_expiry", "product_id", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    lot_number = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    manufacture_date = db.Column(db.Date, nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("lots", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Lot id={self.id} number={self.lot_number!r} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "lot_number": self.lot_number,
            "quantity": self.quantity,
            "manufacture_date": to_iso_date(self.manufacture_date),
            "expiry_date": to_iso_date(self.expiry_date),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
