from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Operator(db.Model):
    """
    The person operating the shop.

    Every write to the ledger, lots or cart is attributed to an operator and
    every query is scoped to that operator's data. API tokens are stored as a
    SHA-256 hash, the plaintext is shown once on creation.
    """
    __tablename__ = "operators"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True)
    api_token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Operator id={self.id} username={self.username!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data.

    Products are maintained by the catalog screens; the inventory core only
    reads them and mutates `stock`.

    STOCK:
    - `stock` is a cached total kept in step with the movement ledger.
    - For lot-managed products, SUM(lot.quantity) <= stock, and the two are equal
      once the whole stock has been allocated to lots.
    - `version_id` makes concurrent stock updates fail instead of overwriting.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("operator_id", "sku", name="uq_products_operator_sku"),
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("sale_price_cents >= 0", name="ck_products_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="un")

    managed_by_lots = db.Column(db.Boolean, nullable=False, default=False)
    stock = db.Column(db.Integer, nullable=False, default=0)

    # 0 means "derive from receipt history"
    sale_price_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    operator = db.relationship("Operator", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "sku": self.sku,
            "name": self.name,
            "unit": self.unit,
            "managed_by_lots": self.managed_by_lots,
            "stock": self.stock,
            "sale_price_cents": self.sale_price_cents,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
