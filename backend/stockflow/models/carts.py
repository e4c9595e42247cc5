from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CART_OPEN = "OPEN"
CART_CHECKED_OUT = "CHECKED_OUT"


class Cart(db.Model):
    """
    Draft sale held by an operator before checkout.

    Persisted so it survives reloads and navigation, but it is draft state only:
    nothing here touches stock until checkout. Carts reserve nothing.
    """
    __tablename__ = "carts"
    __table_args__ = (
        db.Index("ix_carts_operator_status", "operator_id", "status"),
        db.CheckConstraint("discount_cents >= 0", name="ck_carts_discount_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=CART_OPEN)

    # Cart-level discount is an amount, not a percentage
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_received_cents = db.Column(db.Integer, nullable=True)

    receipt_number = db.Column(db.String(64), nullable=True)
    checked_out_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    lines = db.relationship(
        "CartLine",
        backref="cart",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="CartLine.position",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "status": self.status,
            "discount_cents": self.discount_cents,
            "amount_received_cents": self.amount_received_cents,
            "receipt_number": self.receipt_number,
            "checked_out_at": to_utc_z(self.checked_out_at) if self.checked_out_at else None,
            "lines": [line.to_dict() for line in self.lines],
        }


class CartLine(db.Model):
    __tablename__ = "cart_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_cart_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")
    lots = db.relationship(
        "CartLineLot",
        backref="line",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="CartLineLot.id",
    )

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "position": self.position,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "lots": [row.to_dict() for row in self.lots],
        }


class CartLineLot(db.Model):
    __tablename__ = "cart_line_lots"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_cart_line_lots_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    line_id = db.Column(db.Integer, db.ForeignKey("cart_lines.id"), nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {"lot_id": self.lot_id, "quantity": self.quantity}
