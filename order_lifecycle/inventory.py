"""
Inventory ledger.

Both helpers run inside the caller's transaction and lock the product row,
so the snapshot they return is exactly what was written. Callers decide
whether a movement is allowed (the reservation flag on the order record);
the ledger only moves stock.
"""
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotFoundError
from .models import Product
from .schemas import InventoryMeta, RecordMeta


@dataclass
class StockMovement:
    product_id: str
    before: int
    after: int


def _locked_product(db: Session, product_id: str) -> Product:
    product = db.execute(
        select(Product)
        .where(Product.id == product_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def decrement(db: Session, product_id: str, quantity: int) -> StockMovement:
    """Take ``quantity`` units out of stock, never going below zero."""
    product = _locked_product(db, product_id)
    before = int(product.inventory or 0)
    product.inventory = max(0, before - int(quantity))
    db.flush()
    return StockMovement(product_id=product_id, before=before, after=product.inventory)


def increment(db: Session, product_id: str, quantity: int) -> StockMovement:
    """Put ``quantity`` units back into stock."""
    product = _locked_product(db, product_id)
    before = int(product.inventory or 0)
    product.inventory = before + int(quantity)
    db.flush()
    return StockMovement(product_id=product_id, before=before, after=product.inventory)


def restock_record(db: Session, record, meta: RecordMeta, now) -> bool:
    """Return a reserved record's units to stock and note the snapshot in ``meta``.

    Does nothing for a record whose stock was never taken. The caller must
    clear ``inventory_reserved`` in the same compare-and-swap write.
    """
    if not record.inventory_reserved:
        return False
    movement = increment(db, record.product_id, record.quantity)
    snapshot = meta.inventory or InventoryMeta()
    snapshot.restock_before = movement.before
    snapshot.restock_after = movement.after
    snapshot.restocked_at = now
    meta.inventory = snapshot
    return True
