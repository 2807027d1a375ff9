"""
Order status vocabularies and the fulfillment transition table.

There are two status vocabularies:

* ``StorageStatus`` is what the ``order_records.status`` column may hold
  (enforced by a CHECK constraint).
* ``Stage`` is the richer customer-facing stage kept in ``order_status``.

``storage_status`` and ``progress_label`` map between them; both pass
unknown values through unchanged.
"""
from enum import Enum


class ItemType(str, Enum):
    CART = "cart"
    ORDER = "order"
    RESERVATION = "reservation"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUND_PENDING = "refund_pending"


class StorageStatus(str, Enum):
    ACTIVE = "active"  # cart rows
    PENDING_PAYMENT = "pending_payment"
    RESERVED = "reserved"
    APPROVED = "approved"
    IN_PRODUCTION = "in_production"
    START_PACKAGING = "start_packaging"
    READY_FOR_DELIVERY = "ready_for_delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PENDING_CANCELLATION = "pending_cancellation"


class Stage(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PENDING_ACCEPTANCE = "pending_acceptance"
    RESERVED = "reserved"
    PENDING_BALANCE_PAYMENT = "pending_balance_payment"
    APPROVED = "approved"
    IN_PRODUCTION = "in_production"
    QUALITY_CHECK = "quality_check"
    PACKAGING = "packaging"
    READY_FOR_DELIVERY = "ready_for_delivery"
    OUT_FOR_DELIVERY = "out_for_delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PENDING_CANCELLATION = "pending_cancellation"


# Forward order of the fulfillment pipeline.
STAGE_ORDER = [
    Stage.PENDING_PAYMENT,
    Stage.PENDING_ACCEPTANCE,
    Stage.RESERVED,
    Stage.PENDING_BALANCE_PAYMENT,
    Stage.APPROVED,
    Stage.IN_PRODUCTION,
    Stage.QUALITY_CHECK,
    Stage.PACKAGING,
    Stage.READY_FOR_DELIVERY,
    Stage.OUT_FOR_DELIVERY,
    Stage.COMPLETED,
]

TERMINAL_STAGES = {Stage.COMPLETED, Stage.CANCELLED}

# A customer may cancel outright only before fulfillment starts.
CANCELLABLE_STATUSES = {
    "pending_payment",
    "reserved",
    "pending_balance_payment",
    "pending_acceptance",
}

# Past the cancellable set but not yet delivered: cancellation needs approval.
CANCELLATION_REQUEST_STAGES = {
    Stage.APPROVED,
    Stage.IN_PRODUCTION,
    Stage.QUALITY_CHECK,
    Stage.PACKAGING,
    Stage.READY_FOR_DELIVERY,
    Stage.OUT_FOR_DELIVERY,
}

_STORAGE_MAP = {
    "packaging": StorageStatus.START_PACKAGING.value,
    "quality_check": StorageStatus.IN_PRODUCTION.value,
    "out_for_delivery": StorageStatus.READY_FOR_DELIVERY.value,
    "pending_balance_payment": StorageStatus.RESERVED.value,
    "pending_acceptance": StorageStatus.PENDING_PAYMENT.value,
}

_PROGRESS_MAP = {
    "pending_payment": "awaiting_payment",
    "pending_acceptance": "awaiting_acceptance",
    "reserved": "payment_confirmed",
    "approved": "in_production",
    "in_production": "in_production",
    "quality_check": "quality_check",
    "start_packaging": "packaging",
    "packaging": "packaging",
    "ready_for_delivery": "ready_for_delivery",
    "out_for_delivery": "out_for_delivery",
    "completed": "delivered",
    "cancelled": "cancelled",
    "pending_cancellation": "pending_cancellation",
    "pending_balance_payment": "balance_due",
}

STATUS_MESSAGES = {
    "pending_payment": "Your order is awaiting payment confirmation.",
    "pending_acceptance": "Your order is waiting to be accepted by our team.",
    "reserved": "Your order has been reserved and payment confirmed.",
    "pending_balance_payment": "Please settle the remaining balance so we can continue processing your order.",
    "approved": "Your order has been approved and will begin production soon.",
    "in_production": "Your order is currently being manufactured.",
    "quality_check": "Your order is undergoing quality inspection.",
    "start_packaging": "Your order is being packaged.",
    "packaging": "Your order is being packaged.",
    "ready_for_delivery": "Your order is ready for delivery! We will contact you soon.",
    "out_for_delivery": "Your order is on its way to you!",
    "completed": "Your order has been completed successfully. Thank you for shopping with us!",
    "cancelled": "Your order has been cancelled. If you have any questions, please contact us.",
    "pending_cancellation": "Your cancellation request is being processed.",
}


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else status


def storage_status(status) -> str:
    """Canonical storage status for a requested stage (identity when unmapped)."""
    status = _value(status)
    return _STORAGE_MAP.get(status, status)


def progress_label(status) -> str:
    """Display label for a stage or storage status (identity when unmapped)."""
    status = _value(status)
    return _PROGRESS_MAP.get(status, status)


def status_display(status) -> str:
    return _value(status).replace("_", " ").upper()


def status_message(status) -> str:
    status = _value(status)
    return STATUS_MESSAGES.get(
        status, f"Your order status has been updated to: {status_display(status)}"
    )


def _build_transitions():
    table = {}
    for index, stage in enumerate(STAGE_ORDER):
        if stage in TERMINAL_STAGES:
            table[stage] = set()
            continue
        allowed = set(STAGE_ORDER[index + 1:])
        allowed.update({Stage.CANCELLED, Stage.PENDING_CANCELLATION})
        table[stage] = allowed
    # An admin either approves the cancellation or puts the order back to work.
    table[Stage.PENDING_CANCELLATION] = {Stage.CANCELLED} | set(CANCELLATION_REQUEST_STAGES)
    table[Stage.CANCELLED] = set()
    return table


TRANSITIONS = _build_transitions()


def parse_stage(value):
    """Return the Stage for ``value`` or None when it is not a known stage."""
    try:
        return Stage(_value(value))
    except ValueError:
        return None


def can_transition(current, target) -> bool:
    current_stage = parse_stage(current)
    target_stage = parse_stage(target)
    if current_stage is None or target_stage is None:
        return False
    return target_stage in TRANSITIONS[current_stage]
