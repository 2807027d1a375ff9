"""
Admin-driven fulfillment transitions and the notifications they trigger.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import inventory
from .errors import ConflictError, StorageError, ValidationError
from .models import OrderRecord, utcnow
from .notifications import (
    CHANNEL_EMAIL,
    CHANNEL_IN_APP,
    NotificationEvent,
    Notifier,
    load_preferences,
    send_quietly,
)
from .records import appended_history, compare_and_set, history_entry, load_record
from .schemas import CancellationMeta, RecordMeta, check_stage_meta
from .statuses import (
    PaymentStatus,
    Stage,
    can_transition,
    parse_stage,
    progress_label,
    status_display,
    status_message,
    storage_status,
)

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    record: OrderRecord
    new_status: str
    wrote: bool
    in_app_sent: bool = False
    email_sent: bool = False
    inventory_restored: bool = False

    def to_dict(self):
        return {
            "success": True,
            "order_id": self.record.id,
            "new_status": self.new_status,
            "wrote": self.wrote,
            "in_app_sent": self.in_app_sent,
            "email_sent": self.email_sent,
            "inventory_restored": self.inventory_restored,
        }


def _matches(column, value):
    return column.is_(None) if value is None else column == value


def _write_transition(
    db: Session,
    record: OrderRecord,
    target: Stage,
    actor,
    notes,
    estimated_delivery_date,
    cancellation: Optional[CancellationMeta],
) -> bool:
    current = record.order_status or record.status
    if not can_transition(current, target):
        raise ConflictError(f"Cannot move order from {current} to {target.value}")

    now = utcnow()
    meta = RecordMeta.load(record.meta)
    values = {
        "status": storage_status(target),
        "order_status": target.value,
        "order_progress": progress_label(target),
        "progress_history": appended_history(record, history_entry(target.value, actor, now)),
    }
    if notes:
        values["admin_notes"] = notes
    if estimated_delivery_date:
        values["estimated_delivery_date"] = estimated_delivery_date

    restored = False
    if target == Stage.CANCELLED:
        restored = inventory.restock_record(db, record, meta, now)
        values["inventory_reserved"] = False
        if record.payment_status == PaymentStatus.COMPLETED.value:
            values["payment_status"] = PaymentStatus.REFUND_PENDING.value
        requested = meta.cancellation
        meta.cancellation = cancellation or CancellationMeta(
            cancelled_at=now,
            requested_at=requested.requested_at if requested else None,
            actor=actor,
            reason=notes or (requested.reason if requested else None),
            cancellation_state="admin_cancelled",
        )
    elif cancellation is not None:
        meta.cancellation = cancellation
    check_stage_meta(record.item_type, values["status"], meta)
    values["meta"] = meta.dump()

    written = compare_and_set(
        db,
        record.id,
        [
            OrderRecord.status == record.status,
            _matches(OrderRecord.order_status, record.order_status),
            OrderRecord.inventory_reserved.is_(bool(record.inventory_reserved)),
        ],
        values,
    )
    if not written:
        db.rollback()
        raise ConflictError("Order was changed by someone else, reload and try again")
    return restored


def _notify_status(db: Session, notifier: Optional[Notifier], record: OrderRecord, new_status: str, actor):
    prefs = load_preferences(db, record.user_id)
    meta = RecordMeta.load(record.meta)
    product_name = meta.product_name or "Your Order"
    display = status_display(new_status)
    title = f"Order Status: {display}"
    message = f"{product_name} - {status_message(new_status)}"
    metadata = {
        "order_id": record.id,
        "product_id": record.product_id,
        "product_name": product_name,
        "new_status": new_status,
        "admin_name": actor,
        "action_url": "/profile/order",
    }

    in_app_sent = email_sent = False
    if prefs.in_app:
        in_app_sent = send_quietly(
            notifier,
            NotificationEvent(
                channel=CHANNEL_IN_APP,
                title=title,
                message=message,
                category="order_status",
                recipient_user_id=record.user_id,
                metadata=metadata,
            ),
        )
    if prefs.email:
        email_sent = send_quietly(
            notifier,
            NotificationEvent(
                channel=CHANNEL_EMAIL,
                title=title,
                message=message,
                category="order_status",
                recipient_user_id=record.user_id,
                metadata=metadata,
            ),
        )
    return in_app_sent, email_sent


def transition_order(
    db: Session,
    record_id: str,
    new_status: str,
    notifier: Optional[Notifier] = None,
    actor: Optional[str] = None,
    notes: Optional[str] = None,
    estimated_delivery_date: Optional[str] = None,
    skip_write: bool = False,
    cancellation: Optional[CancellationMeta] = None,
) -> TransitionResult:
    """Move an order to ``new_status`` and notify its owner.

    With ``skip_write`` the status change was already persisted elsewhere
    (the admin tool) and only the notifications run.
    """
    if not record_id or not new_status:
        raise ValidationError("Missing required fields")

    record = load_record(db, record_id)
    target = parse_stage(new_status)

    restored = False
    if not skip_write:
        if target is None:
            raise ValidationError(f"Unknown order status: {new_status}")
        try:
            restored = _write_transition(
                db, record, target, actor, notes, estimated_delivery_date, cancellation
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Order %s status update failed: %s", record_id, e)
            raise StorageError(str(getattr(e, "orig", None) or e)) from e
        db.refresh(record)
        logger.info("Order %s moved to %s by %s", record.id, target.value, actor or "system")
    else:
        # Nothing is written, so release the row lock taken by load_record.
        db.rollback()

    status_value = target.value if target is not None else new_status
    in_app_sent, email_sent = _notify_status(db, notifier, record, status_value, actor)
    return TransitionResult(
        record=record,
        new_status=status_value,
        wrote=not skip_write,
        in_app_sent=in_app_sent,
        email_sent=email_sent,
        inventory_restored=restored,
    )
