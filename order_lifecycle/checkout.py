"""
Checkout aggregation: cart selection -> priced order records -> payment session.

Order records and the removal of their cart lines are committed together,
so a failed checkout leaves the cart exactly as it was. The payment session
is requested only afterwards; if the gateway is down the records stay in
``pending_payment`` and the checkout can be resumed by id (or by replaying
the same idempotency key).
"""
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConflictError, ForbiddenError, NotFoundError, StorageError, UpstreamError, ValidationError
from .models import Checkout, OrderRecord, Product, utcnow
from .notifications import Notifier
from .payments import ORDER_IDS_METADATA_KEY, PaymentGateway, join_ids
from .pricing import PricedLine, cents, line_total, quote
from .reconciler import reconcile_payment
from .records import history_entry
from .schemas import CheckoutRequest, PaymentConfirmation, PaymentSessionRequest, RecordMeta
from .statuses import ItemType, PaymentStatus, StorageStatus, progress_label
from .vouchers import VoucherCheck, consume_voucher, validate_voucher

logger = logging.getLogger(__name__)

AWAITING_PAYMENT = "awaiting_payment"
SESSION_FAILED = "payment_session_failed"
PAID = "paid"

# Keys a cart line's free-form meta may not override on the order record.
_TYPED_META_KEYS = set(RecordMeta.model_fields)


@dataclass
class CheckoutResult:
    checkout_id: str
    order_record_ids: List[str]
    subtotal: float
    discount: float
    total: float
    checkout_url: Optional[str] = None
    voucher: Optional[VoucherCheck] = None
    resumed: bool = False
    paid: bool = False

    def to_dict(self):
        body = {
            "success": True,
            "checkout_id": self.checkout_id,
            "checkout_url": self.checkout_url,
            "order_record_ids": self.order_record_ids,
            "totals": {"subtotal": self.subtotal, "discount": self.discount, "total": self.total},
            "resumed": self.resumed,
            "paid": self.paid,
        }
        if self.voucher is not None:
            body["voucher"] = self.voucher.to_dict()
        return body


def _validate(request: CheckoutRequest) -> List[str]:
    if not request.user_id or not request.cart_line_ids:
        raise ValidationError("user_id and cart_line_ids required")
    for line_id, addons in request.addons_by_line.items():
        for addon in addons:
            if addon.fee < 0:
                raise ValidationError(f"Add-on {addon.key} on line {line_id} has a negative fee")
    # Keep the caller's order, drop duplicates.
    return list(dict.fromkeys(request.cart_line_ids))


def _load_lines(db: Session, request: CheckoutRequest, line_ids: List[str]):
    """Return the priced lines in request order and each line's carried-over cart meta."""
    rows = db.execute(
        select(OrderRecord, Product)
        .join(Product, Product.id == OrderRecord.product_id)
        .where(OrderRecord.user_id == request.user_id)
        .where(OrderRecord.item_type == ItemType.CART.value)
        .where(OrderRecord.id.in_(line_ids))
    ).all()
    by_id = {record.id: (record, product) for record, product in rows}
    missing = [line_id for line_id in line_ids if line_id not in by_id]
    if missing:
        raise NotFoundError("Cart items not found", {"missing": missing})

    lines, cart_meta = [], {}
    for line_id in line_ids:
        record, product = by_id[line_id]
        addons = request.addons_by_line.get(line_id, [])
        lines.append(
            PricedLine(
                line_id=line_id,
                product_id=product.id,
                product_name=product.name or "Product",
                quantity=int(record.quantity or 1),
                unit_price=float(product.price or 0),
                addons=addons,
                line_total=line_total(product.price, addons, record.quantity or 1),
            )
        )
        cart_meta[line_id] = {k: v for k, v in (record.meta or {}).items() if k not in _TYPED_META_KEYS}
    return lines, cart_meta


def _order_record(line: PricedLine, extra_meta, checkout: Checkout, voucher_code, discount, now) -> OrderRecord:
    meta = RecordMeta.load(
        {
            **extra_meta,
            "product_name": line.product_name,
            "addons": [addon.model_dump() for addon in line.addons],
            "line_total": line.line_total,
            "voucher_code": voucher_code,
            "voucher_discount": line.discount_share,
            "checkout_discount": discount,
        }
    )
    return OrderRecord(
        id=str(uuid.uuid4()),
        user_id=checkout.user_id,
        product_id=line.product_id,
        checkout_id=checkout.id,
        item_type=ItemType.ORDER.value,
        status=StorageStatus.PENDING_PAYMENT.value,
        order_status=StorageStatus.PENDING_PAYMENT.value,
        order_progress=progress_label(StorageStatus.PENDING_PAYMENT),
        quantity=line.quantity,
        price=line.unit_price,
        total_amount=line.total_amount,
        payment_status=PaymentStatus.PENDING.value,
        inventory_reserved=False,
        meta=meta.dump(),
        progress_history=[history_entry(StorageStatus.PENDING_PAYMENT.value, checkout.user_id, now)],
        created_at=now,
        updated_at=now,
    )


def _unpaid_records(db: Session, checkout_id: str) -> List[OrderRecord]:
    return list(
        db.execute(
            select(OrderRecord)
            .where(OrderRecord.checkout_id == checkout_id)
            .where(OrderRecord.status == StorageStatus.PENDING_PAYMENT.value)
            .where(OrderRecord.payment_status == PaymentStatus.PENDING.value)
            .order_by(OrderRecord.created_at)
        ).scalars()
    )


def _request_session(
    db: Session, gateway: PaymentGateway, checkout: Checkout, record_ids: List[str], amount: float, payment_method=None
) -> str:
    base_url = settings.STOREFRONT_BASE_URL.rstrip("/")
    method = payment_method or checkout.payment_method or settings.DEFAULT_PAYMENT_METHOD
    session_request = PaymentSessionRequest(
        amount=amount,
        currency=checkout.currency,
        reference=checkout.id,
        description=f"Cart checkout ({len(record_ids)} item(s))",
        metadata={ORDER_IDS_METADATA_KEY: join_ids(record_ids), "checkout_id": checkout.id, "user_id": checkout.user_id},
        success_url=f"{base_url}{settings.PAYMENT_SUCCESS_PATH}",
        cancel_url=f"{base_url}{settings.PAYMENT_CANCEL_PATH}",
        payment_method=method,
    )
    try:
        session = gateway.create_session(session_request)
    except UpstreamError as e:
        checkout.status = SESSION_FAILED
        checkout.updated_at = utcnow()
        db.commit()
        e.details.update({"checkout_id": checkout.id, "order_record_ids": record_ids, "resumable": True})
        raise

    checkout.payment_method = method
    checkout.payment_session_id = session.session_id
    checkout.checkout_url = session.checkout_url
    checkout.status = AWAITING_PAYMENT
    checkout.updated_at = utcnow()
    db.commit()
    logger.info("Payment session %s created for checkout %s", session.session_id, checkout.id)
    return session.checkout_url


def _settle_without_payment(db: Session, checkout: Checkout, record_ids: List[str], notifier) -> bool:
    """A fully discounted checkout has nothing to charge; confirm it right away."""
    confirmation = PaymentConfirmation(
        transaction_id=f"free:{checkout.id}",
        order_record_ids=record_ids,
        provider="voucher",
        amount_paid=0.0,
    )
    result = reconcile_payment(db, confirmation, notifier)
    result.raise_for_failures()
    return True


def _result_for(db: Session, checkout: Checkout, resumed: bool) -> CheckoutResult:
    record_ids = list(
        db.execute(
            select(OrderRecord.id).where(OrderRecord.checkout_id == checkout.id).order_by(OrderRecord.created_at)
        ).scalars()
    )
    return CheckoutResult(
        checkout_id=checkout.id,
        order_record_ids=record_ids,
        subtotal=checkout.subtotal,
        discount=checkout.discount,
        total=checkout.total,
        checkout_url=checkout.checkout_url,
        resumed=resumed,
        paid=checkout.status == PAID,
    )


def _replay(db: Session, gateway: PaymentGateway, checkout: Checkout, notifier) -> CheckoutResult:
    """Answer a repeated checkout submission from the stored checkout."""
    if checkout.status == SESSION_FAILED:
        return _resume(db, gateway, checkout, notifier)
    return _result_for(db, checkout, resumed=True)


def _resume(db: Session, gateway: PaymentGateway, checkout: Checkout, notifier, payment_method=None) -> CheckoutResult:
    unpaid = _unpaid_records(db, checkout.id)
    if not unpaid:
        raise ConflictError("Nothing left to pay for this checkout")

    record_ids = [record.id for record in unpaid]
    amount = cents(sum(record.total_amount for record in unpaid))
    if amount <= 0:
        _settle_without_payment(db, checkout, record_ids, notifier)
    else:
        _request_session(db, gateway, checkout, record_ids, amount, payment_method)
    db.refresh(checkout)
    return _result_for(db, checkout, resumed=True)


def checkout(
    db: Session, gateway: PaymentGateway, request: CheckoutRequest, notifier: Optional[Notifier] = None
) -> CheckoutResult:
    line_ids = _validate(request)

    if request.idempotency_key:
        existing = db.execute(
            select(Checkout).where(Checkout.idempotency_key == request.idempotency_key)
        ).scalar_one_or_none()
        if existing is not None:
            if existing.user_id != request.user_id:
                raise ForbiddenError("Idempotency key belongs to another user")
            logger.info("Replaying checkout %s for key %s", existing.id, request.idempotency_key)
            return _replay(db, gateway, existing, notifier)

    lines, cart_meta = _load_lines(db, request, line_ids)
    subtotal = cents(sum(line.line_total for line in lines))

    voucher = None
    if request.voucher_code:
        voucher = validate_voucher(db, request.voucher_code, subtotal)
        if not voucher.valid:
            logger.info("Voucher %r not applied: %s", request.voucher_code, voucher.reason)
    applied = voucher if voucher is not None and voucher.valid else None
    priced = quote(lines, applied.type if applied else None, applied.value if applied else 0.0)

    now = utcnow()
    checkout_row = Checkout(
        id=str(uuid.uuid4()),
        user_id=request.user_id,
        idempotency_key=request.idempotency_key,
        subtotal=priced.subtotal,
        discount=priced.discount,
        total=priced.total,
        currency=settings.DEFAULT_CURRENCY,
        voucher_code=applied.code if applied else None,
        payment_method=request.payment_method or settings.DEFAULT_PAYMENT_METHOD,
        status=AWAITING_PAYMENT,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(checkout_row)
        db.flush()
        records = [
            _order_record(line, cart_meta[line.line_id], checkout_row, checkout_row.voucher_code, priced.discount, now)
            for line in priced.lines
        ]
        db.add_all(records)
        db.flush()

        removed = db.execute(
            delete(OrderRecord)
            .where(OrderRecord.id.in_(line_ids))
            .where(OrderRecord.user_id == request.user_id)
            .where(OrderRecord.item_type == ItemType.CART.value)
            .execution_options(synchronize_session=False)
        ).rowcount
        if removed != len(line_ids):
            raise ConflictError("Cart changed during checkout, please try again")
        db.commit()
    except ConflictError:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        # Two submissions with the same key raced; the other one won.
        if request.idempotency_key:
            existing = db.execute(
                select(Checkout).where(Checkout.idempotency_key == request.idempotency_key)
            ).scalar_one_or_none()
            if existing is not None and existing.user_id == request.user_id:
                return _replay(db, gateway, existing, notifier)
        logger.error("Checkout for %s failed: %s", request.user_id, e)
        raise StorageError("Checkout failed, please try again") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Checkout for %s failed: %s", request.user_id, e)
        raise StorageError("Checkout failed, please try again") from e

    record_ids = [record.id for record in records]
    checkout_id = checkout_row.id
    logger.info("Checkout %s created %s order record(s), total %.2f", checkout_id, len(record_ids), priced.total)

    if applied is not None:
        if not consume_voucher(db, applied.discount_code_id, checkout_id):
            # The quote stands; the code just hit its limit between validation and now.
            logger.warning("Voucher %s was not counted for checkout %s", applied.code, checkout_id)

    checkout_row = db.get(Checkout, checkout_id)
    result = CheckoutResult(
        checkout_id=checkout_id,
        order_record_ids=record_ids,
        subtotal=priced.subtotal,
        discount=priced.discount,
        total=priced.total,
        voucher=voucher,
    )
    if priced.total <= 0:
        result.paid = _settle_without_payment(db, checkout_row, record_ids, notifier)
    else:
        result.checkout_url = _request_session(db, gateway, checkout_row, record_ids, priced.total)
    return result


def resume_payment(
    db: Session,
    gateway: PaymentGateway,
    checkout_id: str,
    user_id: str,
    payment_method: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> CheckoutResult:
    """Request a fresh payment session for the unpaid records of a checkout."""
    if not checkout_id or not user_id:
        raise ValidationError("checkout_id and user_id required")
    checkout_row = db.get(Checkout, checkout_id)
    if checkout_row is None:
        raise NotFoundError("Checkout not found")
    if checkout_row.user_id != user_id:
        raise ForbiddenError("Unauthorized access")
    return _resume(db, gateway, checkout_row, notifier, payment_method)
