# Overview: Product lookups used by the inventory core.

"""
Product access for the inventory core.

Product CRUD belongs to the catalog screens; the core only reads products
(scoped to the acting operator) and mutates `stock` through the ledger.
`create_product` exists for the CLI and for tests.
"""

from __future__ import annotations

from ..extensions import db
from ..errors import NotFound, StockError
from ..models import Product
from .concurrency import lock_for_update
from .operator_service import require_operator


def get_product(operator_id: int, product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None or product.operator_id != operator_id:
        raise NotFound(f"product {product_id} not found", details={"product_id": product_id})
    return product


def create_product(
    *,
    operator_id: int,
    sku: str,
    name: str,
    unit: str = "un",
    managed_by_lots: bool = False,
    sale_price_cents: int = 0,
) -> Product:
    require_operator(operator_id)
    if sale_price_cents < 0:
        raise StockError("sale_price_cents must be >= 0")
    existing = db.session.query(Product).filter_by(operator_id=operator_id, sku=sku).first()
    if existing is not None:
        raise StockError(f"SKU {sku!r} already exists", details={"product_id": existing.id})

    # Stock starts at zero and only moves through the ledger
    product = Product(
        operator_id=operator_id,
        sku=sku,
        name=name,
        unit=unit,
        managed_by_lots=managed_by_lots,
        stock=0,
        sale_price_cents=sale_price_cents,
    )
    db.session.add(product)
    db.session.commit()
    return product
