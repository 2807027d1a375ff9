"""
Customer cancellation.

Cancelling is a compensating transaction for one order record: reserved
stock goes back, a paid record becomes ``refund_pending``. Voucher usage
is left alone: a used code stays used.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from . import inventory
from .errors import ConflictError, ForbiddenError, ValidationError
from .fulfillment import TransitionResult, transition_order
from .models import OrderRecord, utcnow
from .notifications import Notifier
from .records import appended_history, compare_and_set, history_entry, load_record
from .schemas import CancellationMeta, RecordMeta, check_stage_meta
from .statuses import (
    CANCELLABLE_STATUSES,
    CANCELLATION_REQUEST_STAGES,
    PaymentStatus,
    Stage,
    StorageStatus,
    parse_stage,
)

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Cancelled by customer"


@dataclass
class CancellationResult:
    record: OrderRecord
    inventory_restored: bool

    def to_dict(self):
        return {"success": True, "order_id": self.record.id, "inventory_restored": self.inventory_restored}


def is_cancellable(record: OrderRecord) -> bool:
    if record.status not in CANCELLABLE_STATUSES:
        return False
    return record.order_status is None or record.order_status in CANCELLABLE_STATUSES


def _owned_record(db: Session, record_id, user_id) -> OrderRecord:
    if not record_id or not user_id:
        raise ValidationError("Missing order id or user id")
    record = load_record(db, record_id)
    if record.user_id != user_id:
        raise ForbiddenError("Unauthorized access")
    return record


def cancel_order(db: Session, record_id: str, user_id: str, reason: Optional[str] = None) -> CancellationResult:
    record = _owned_record(db, record_id, user_id)
    if not is_cancellable(record):
        raise ConflictError("Order can no longer be cancelled")

    now = utcnow()
    meta = RecordMeta.load(record.meta)
    restored = inventory.restock_record(db, record, meta, now)
    meta.cancellation = CancellationMeta(
        cancelled_at=now,
        actor=user_id,
        reason=reason or DEFAULT_REASON,
        cancellation_state="user_cancelled",
    )
    check_stage_meta(record.item_type, StorageStatus.CANCELLED.value, meta)

    paid = record.payment_status == PaymentStatus.COMPLETED.value
    written = compare_and_set(
        db,
        record.id,
        [
            OrderRecord.user_id == user_id,
            OrderRecord.status == record.status,
            OrderRecord.payment_status == record.payment_status,
            OrderRecord.inventory_reserved.is_(bool(record.inventory_reserved)),
        ],
        {
            "status": StorageStatus.CANCELLED.value,
            "order_status": StorageStatus.CANCELLED.value,
            "order_progress": StorageStatus.CANCELLED.value,
            "payment_status": PaymentStatus.REFUND_PENDING.value if paid else record.payment_status,
            "inventory_reserved": False,
            "meta": meta.dump(),
            "progress_history": appended_history(
                record, history_entry(StorageStatus.CANCELLED.value, user_id, now)
            ),
        },
    )
    if not written:
        # Payment or an admin update landed between our read and write.
        db.rollback()
        raise ConflictError("Order changed while cancelling, please try again")

    db.commit()
    db.refresh(record)
    logger.info("Order %s cancelled by %s (inventory restored: %s)", record.id, user_id, restored)
    return CancellationResult(record=record, inventory_restored=restored)


def request_cancellation(
    db: Session,
    record_id: str,
    user_id: str,
    reason: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> TransitionResult:
    """Ask for cancellation of an order that is already being fulfilled."""
    record = _owned_record(db, record_id, user_id)
    if is_cancellable(record):
        raise ConflictError("Order can be cancelled directly")
    if parse_stage(record.order_status) not in CANCELLATION_REQUEST_STAGES:
        raise ConflictError("Order can no longer be cancelled")

    cancellation = CancellationMeta(
        requested_at=utcnow(),
        actor=user_id,
        reason=reason or DEFAULT_REASON,
        cancellation_state="cancellation_requested",
    )
    return transition_order(
        db,
        record.id,
        Stage.PENDING_CANCELLATION.value,
        notifier=notifier,
        actor=user_id,
        cancellation=cancellation,
    )
