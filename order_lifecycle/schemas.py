# --- Imports ---
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError
from .statuses import ItemType, StorageStatus


# --- Order record meta ---
# The ``meta`` JSON column holds one typed section per lifecycle stage.

class AddOn(BaseModel):
    """An optional extra selected for a line (e.g. colour customization)."""
    key: str
    label: str
    fee: float = 0.0
    value: Optional[str] = None


class PaymentMeta(BaseModel):
    confirmed_at: datetime
    transaction_id: str
    provider: Optional[str] = None
    amount_paid: Optional[float] = None
    provider_order_id: Optional[str] = None


class InventoryMeta(BaseModel):
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    reserved_at: Optional[datetime] = None
    restock_before: Optional[int] = None
    restock_after: Optional[int] = None
    restocked_at: Optional[datetime] = None


class CancellationMeta(BaseModel):
    cancelled_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    cancellation_state: str  # user_cancelled | admin_cancelled | cancellation_requested


class RecordMeta(BaseModel):
    model_config = ConfigDict(extra="allow")

    product_name: Optional[str] = None
    addons: List[AddOn] = Field(default_factory=list)
    line_total: Optional[float] = None
    voucher_code: Optional[str] = None
    voucher_discount: float = 0.0  # This line's share of the checkout discount.
    checkout_discount: float = 0.0
    payment: Optional[PaymentMeta] = None
    inventory: Optional[InventoryMeta] = None
    cancellation: Optional[CancellationMeta] = None

    @classmethod
    def load(cls, raw):
        return cls.model_validate(raw or {})

    def dump(self):
        return self.model_dump(mode="json", exclude_none=True)


def check_stage_meta(item_type, status, meta: RecordMeta):
    """Reject a meta payload that lacks the section its stage requires."""
    if item_type == ItemType.RESERVATION.value and meta.payment is None:
        raise ValidationError("reservation rows must carry payment details")
    if status == StorageStatus.CANCELLED.value and meta.cancellation is None:
        raise ValidationError("cancelled rows must carry cancellation details")


# --- Request Models ---

class CartAddRequest(BaseModel):
    user_id: str
    product_id: str
    quantity: int = 1
    meta: Dict = Field(default_factory=dict)


class CartUpdateRequest(BaseModel):
    user_id: str
    quantity: int


class VoucherValidateRequest(BaseModel):
    code: Optional[str] = None
    subtotal: Optional[float] = None


class CheckoutRequest(BaseModel):
    """Defines the data model for an incoming checkout request."""
    user_id: str
    cart_line_ids: List[str]
    voucher_code: Optional[str] = None
    addons_by_line: Dict[str, List[AddOn]] = Field(default_factory=dict)
    payment_method: Optional[str] = None
    idempotency_key: Optional[str] = None


class ResumePaymentRequest(BaseModel):
    user_id: str
    payment_method: Optional[str] = None


class CancelRequest(BaseModel):
    user_id: str
    reason: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    new_status: str
    admin_name: Optional[str] = None
    admin_notes: Optional[str] = None
    estimated_delivery_date: Optional[str] = None
    skip_update: bool = False


# --- Payment gateway wire models ---

class PaymentSessionRequest(BaseModel):
    amount: float
    currency: str
    reference: str
    description: str
    metadata: Dict[str, str]
    success_url: str
    cancel_url: str
    payment_method: str


class PaymentSession(BaseModel):
    session_id: str
    checkout_url: str


class PaymentConfirmation(BaseModel):
    """Provider-neutral settlement: one payment covering one or more order records."""
    transaction_id: str
    order_record_ids: List[str]
    provider: Optional[str] = None
    amount_paid: Optional[float] = None
    provider_order_id: Optional[str] = None


# --- Response Models ---

class OrderRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    product_id: str
    checkout_id: Optional[str] = None
    item_type: str
    status: str
    order_status: Optional[str] = None
    order_progress: Optional[str] = None
    quantity: int
    price: float
    total_amount: float
    payment_status: str
    payment_id: Optional[str] = None
    inventory_reserved: bool
    meta: Dict
    progress_history: List[Dict]
    admin_notes: Optional[str] = None
    estimated_delivery_date: Optional[str] = None
    created_at: datetime
    updated_at: datetime
