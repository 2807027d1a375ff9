"""
Payment reconciliation.

``reconcile_payment`` applies one settlement to every order record it
references. Each record is handled in its own transaction so one bad line
never blocks its siblings, and every step is safe to replay: a record that
is already paid is skipped, and the claim itself is a compare-and-swap on
the record's status, payment status and reservation flag, so two
concurrent deliveries cannot both decrement inventory.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import inventory
from .errors import PartialFailure
from .models import Checkout, OrderRecord, utcnow
from .notifications import CHANNEL_ADMIN, NotificationEvent, Notifier, send_quietly
from .pricing import cents
from .records import appended_history, compare_and_set, history_entry, load_record
from .schemas import InventoryMeta, PaymentConfirmation, PaymentMeta, RecordMeta, check_stage_meta
from .statuses import ItemType, PaymentStatus, StorageStatus, progress_label

logger = logging.getLogger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"
MISSING = "missing"
REFUND_PENDING = "refund_pending"


@dataclass
class ReconciliationResult:
    transaction_id: str
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    refund_pending: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    notified: bool = False

    def to_dict(self):
        return asdict(self)

    def raise_for_failures(self):
        if self.failed:
            raise PartialFailure(
                f"{len(self.failed)} order record(s) could not be reconciled",
                self.to_dict(),
            )


@dataclass
class _AppliedLine:
    record_id: str
    user_id: str
    checkout_id: Optional[str]
    product_id: str
    product_name: Optional[str]
    quantity: int
    line_total: float
    discount_share: float
    total_amount: float


def _apply_one(db: Session, record_id: str, confirmation: PaymentConfirmation):
    record = load_record(db, record_id, required=False)
    if record is None:
        return MISSING, None

    if record.payment_status == PaymentStatus.COMPLETED.value:
        return SKIPPED, None

    now = utcnow()
    meta = RecordMeta.load(record.meta)
    meta.payment = PaymentMeta(
        confirmed_at=now,
        transaction_id=confirmation.transaction_id,
        provider=confirmation.provider,
        amount_paid=confirmation.amount_paid,
        provider_order_id=confirmation.provider_order_id,
    )

    # Paid after the customer cancelled: nothing to reserve, money goes back.
    if record.status == StorageStatus.CANCELLED.value:
        refunded = compare_and_set(
            db,
            record.id,
            [
                OrderRecord.status == StorageStatus.CANCELLED.value,
                OrderRecord.payment_status == PaymentStatus.PENDING.value,
            ],
            {
                "payment_status": PaymentStatus.REFUND_PENDING.value,
                "payment_id": confirmation.transaction_id,
                "meta": meta.dump(),
            },
        )
        return (REFUND_PENDING if refunded else SKIPPED), None

    # Unpaid records an admin already moved past pending_payment keep their stage.
    advanced = record.status != StorageStatus.PENDING_PAYMENT.value
    if advanced:
        logger.warning(
            "Payment %s arrived for record %s already at %s, recording it without changing the stage",
            confirmation.transaction_id,
            record.id,
            record.order_status or record.status,
        )

    values = {
        "item_type": ItemType.RESERVATION.value,
        "payment_status": PaymentStatus.COMPLETED.value,
        "payment_id": confirmation.transaction_id,
        "inventory_reserved": True,
    }
    if not record.inventory_reserved:
        movement = inventory.decrement(db, record.product_id, record.quantity)
        meta.inventory = InventoryMeta(stock_before=movement.before, stock_after=movement.after, reserved_at=now)
    if not advanced:
        actor = f"payment:{confirmation.provider or 'gateway'}"
        values.update(
            {
                "status": StorageStatus.RESERVED.value,
                "order_status": StorageStatus.RESERVED.value,
                "order_progress": progress_label(StorageStatus.RESERVED),
                "progress_history": appended_history(
                    record, history_entry(StorageStatus.RESERVED.value, actor, now)
                ),
            }
        )
    check_stage_meta(ItemType.RESERVATION.value, values.get("status", record.status), meta)
    values["meta"] = meta.dump()

    claimed = compare_and_set(
        db,
        record.id,
        [
            OrderRecord.status == record.status,
            OrderRecord.payment_status != PaymentStatus.COMPLETED.value,
            OrderRecord.inventory_reserved.is_(bool(record.inventory_reserved)),
        ],
        values,
    )
    if not claimed:
        # Another delivery got there first; undo our stock movement.
        db.rollback()
        return SKIPPED, None

    line = _AppliedLine(
        record_id=record.id,
        user_id=record.user_id,
        checkout_id=record.checkout_id,
        product_id=record.product_id,
        product_name=meta.product_name,
        quantity=record.quantity,
        line_total=meta.line_total if meta.line_total is not None else cents(record.price * record.quantity),
        discount_share=meta.voucher_discount,
        total_amount=record.total_amount,
    )
    return APPLIED, line


def _mark_checkouts_paid(db: Session, checkout_ids):
    for checkout_id in checkout_ids:
        unpaid = db.execute(
            select(OrderRecord.id)
            .where(OrderRecord.checkout_id == checkout_id)
            .where(OrderRecord.payment_status == PaymentStatus.PENDING.value)
            .where(OrderRecord.status != StorageStatus.CANCELLED.value)
            .limit(1)
        ).first()
        if unpaid is None:
            checkout = db.get(Checkout, checkout_id)
            if checkout is not None:
                checkout.status = "paid"
                checkout.updated_at = utcnow()
    db.commit()


def _order_placed_event(lines: List[_AppliedLine], confirmation: PaymentConfirmation) -> NotificationEvent:
    subtotal = cents(sum(line.line_total for line in lines))
    discount = cents(sum(line.discount_share for line in lines))
    total = cents(sum(line.total_amount for line in lines))
    count = sum(line.quantity for line in lines)
    return NotificationEvent(
        channel=CHANNEL_ADMIN,
        title="New order placed",
        message=f"{count} item(s) paid, total {total:.2f}",
        category="order_placed",
        recipient_user_id=None,
        metadata={
            "transaction_id": confirmation.transaction_id,
            "user_ids": sorted({line.user_id for line in lines}),
            "items": [
                {
                    "id": line.record_id,
                    "product_id": line.product_id,
                    "name": line.product_name,
                    "quantity": line.quantity,
                    "line_total": line.line_total,
                }
                for line in lines
            ],
            "subtotal": subtotal,
            "discount": discount,
            "total": total,
        },
    )


def reconcile_payment(
    db: Session, confirmation: PaymentConfirmation, notifier: Optional[Notifier] = None
) -> ReconciliationResult:
    """Apply a payment confirmation to each referenced order record exactly once."""
    result = ReconciliationResult(transaction_id=confirmation.transaction_id)
    applied_lines: List[_AppliedLine] = []

    for record_id in confirmation.order_record_ids:
        try:
            outcome, line = _apply_one(db, record_id, confirmation)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.exception("Reconciling order record %s for %s failed", record_id, confirmation.transaction_id)
            result.failed[record_id] = str(e)
            continue

        if outcome == APPLIED:
            result.applied.append(record_id)
            applied_lines.append(line)
        elif outcome == REFUND_PENDING:
            logger.warning("Payment %s arrived for cancelled record %s, refund pending", confirmation.transaction_id, record_id)
            result.refund_pending.append(record_id)
        elif outcome == MISSING:
            logger.warning("Payment %s references unknown order record %s", confirmation.transaction_id, record_id)
            result.missing.append(record_id)
        else:
            result.skipped.append(record_id)

    if applied_lines:
        try:
            _mark_checkouts_paid(db, {line.checkout_id for line in applied_lines if line.checkout_id})
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not mark checkouts paid for %s", confirmation.transaction_id)
        result.notified = send_quietly(notifier, _order_placed_event(applied_lines, confirmation))

    logger.info(
        "Reconciled payment %s: applied=%s skipped=%s failed=%s",
        confirmation.transaction_id,
        len(result.applied),
        len(result.skipped),
        len(result.failed),
    )
    return result
