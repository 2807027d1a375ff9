"""
Cart lines are order records with ``item_type = cart``.

Adding a product that is already in the cart merges into the existing line
with an UPDATE conditioned on the quantity it read. A partial unique index
allows one cart line per (user, product), so when two tabs race the first
insert the loser gets an IntegrityError and merges instead.
"""
import logging
import uuid
from typing import List

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, ValidationError
from .models import OrderRecord, Product, utcnow
from .pricing import cents
from .statuses import ItemType, PaymentStatus, StorageStatus

logger = logging.getLogger(__name__)


def _cart_line_query(user_id, product_id):
    return (
        select(OrderRecord)
        .where(OrderRecord.user_id == user_id)
        .where(OrderRecord.product_id == product_id)
        .where(OrderRecord.item_type == ItemType.CART.value)
    )


def list_cart(db: Session, user_id: str) -> List[OrderRecord]:
    if not user_id:
        raise ValidationError("user_id required")
    return list(
        db.execute(
            select(OrderRecord)
            .where(OrderRecord.user_id == user_id)
            .where(OrderRecord.item_type == ItemType.CART.value)
            .order_by(OrderRecord.created_at.desc())
        ).scalars()
    )


def _merge_into_existing(db: Session, user_id, product_id, quantity, meta):
    # Conditioned on the observed quantity; a concurrent merge makes us re-read.
    for _ in range(3):
        existing = db.execute(
            _cart_line_query(user_id, product_id).with_for_update().execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if existing is None:
            return None

        merged = existing.quantity + quantity
        result = db.execute(
            update(OrderRecord)
            .where(OrderRecord.id == existing.id)
            .where(OrderRecord.item_type == ItemType.CART.value)
            .where(OrderRecord.quantity == existing.quantity)
            .values(
                quantity=merged,
                total_amount=cents(existing.price * merged),
                meta={**(existing.meta or {}), **meta},
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            db.refresh(existing)
            return existing
        db.rollback()

    raise ConflictError("Cart changed while adding the product, please try again")


def _positive_quantity(quantity) -> int:
    if quantity is None:
        return 1
    quantity = int(quantity)
    if quantity < 1:
        raise ValidationError("quantity must be at least 1", {"quantity": quantity})
    return quantity


def add_to_cart(db: Session, user_id: str, product_id: str, quantity: int = 1, meta=None) -> OrderRecord:
    if not user_id or not product_id:
        raise ValidationError("user_id and product_id required")
    quantity = _positive_quantity(quantity)
    meta = dict(meta or {})

    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")

    # Second round only happens when a concurrent request inserted the line first.
    for _ in range(2):
        line = _merge_into_existing(db, user_id, product_id, quantity, meta)
        if line is not None:
            return line

        line = OrderRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            product_id=product_id,
            item_type=ItemType.CART.value,
            status=StorageStatus.ACTIVE.value,
            payment_status=PaymentStatus.PENDING.value,
            quantity=quantity,
            price=float(product.price),
            total_amount=cents(float(product.price) * quantity),
            meta={"product_name": product.name, **meta},
            progress_history=[],
        )
        db.add(line)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Cart line for %s/%s created concurrently, merging", user_id, product_id)
            continue
        db.refresh(line)
        return line

    raise ConflictError("Cart changed while adding the product, please try again")


def _owned_cart_line(db: Session, line_id, user_id) -> OrderRecord:
    line = db.get(OrderRecord, line_id)
    # Someone else's line is reported as missing, not forbidden.
    if line is None or line.item_type != ItemType.CART.value or line.user_id != user_id:
        raise NotFoundError("Cart item not found")
    return line


def update_quantity(db: Session, line_id: str, user_id: str, quantity: int) -> OrderRecord:
    quantity = _positive_quantity(quantity)
    line = _owned_cart_line(db, line_id, user_id)
    line.quantity = quantity
    line.total_amount = cents(line.price * quantity)
    line.updated_at = utcnow()
    db.commit()
    db.refresh(line)
    return line


def remove_line(db: Session, line_id: str, user_id: str) -> None:
    result = db.execute(
        delete(OrderRecord)
        .where(OrderRecord.id == line_id)
        .where(OrderRecord.user_id == user_id)
        .where(OrderRecord.item_type == ItemType.CART.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFoundError("Cart item not found")
    db.commit()
