"""
Discount code validation and consumption.

Validation never changes state. Consumption happens once per checkout: a
``voucher_redemptions`` row keyed on the checkout id is inserted in the same
transaction as a conditional ``used_count`` increment, so a replayed
checkout cannot count twice and the counter cannot pass ``max_uses``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import DiscountCode, VoucherRedemption

logger = logging.getLogger(__name__)


@dataclass
class VoucherCheck:
    valid: bool
    code: Optional[str] = None
    type: Optional[str] = None
    value: float = 0.0
    reason: Optional[str] = None
    discount_code_id: Optional[int] = None

    def to_dict(self):
        if not self.valid:
            return {"valid": False, "reason": self.reason}
        return {"valid": True, "discount": {"code": self.code, "type": self.type, "value": self.value}}


def normalize_code(code) -> str:
    return (code or "").strip().upper()


def _aware(moment):
    # SQLite hands back naive datetimes; they were stored as UTC.
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def find_code(db: Session, code) -> Optional[DiscountCode]:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return db.execute(
        select(DiscountCode).where(func.upper(DiscountCode.code) == normalized)
    ).scalar_one_or_none()


def check_code(voucher: Optional[DiscountCode], subtotal=None, now=None) -> VoucherCheck:
    """Pure gate checks against an already loaded code."""
    if voucher is None:
        return VoucherCheck(valid=False, reason="not_found")
    if not voucher.active:
        return VoucherCheck(valid=False, reason="inactive")

    now = now or datetime.now(timezone.utc)
    if voucher.starts_at is not None and _aware(voucher.starts_at) > now:
        return VoucherCheck(valid=False, reason="not_started")
    if voucher.expires_at is not None and _aware(voucher.expires_at) < now:
        return VoucherCheck(valid=False, reason="expired")
    if subtotal is not None and float(subtotal) < float(voucher.min_subtotal or 0):
        return VoucherCheck(valid=False, reason="min_subtotal_not_met")
    if voucher.max_uses is not None and (voucher.used_count or 0) >= voucher.max_uses:
        return VoucherCheck(valid=False, reason="usage_limit_reached")

    return VoucherCheck(
        valid=True,
        code=voucher.code,
        type=voucher.type,
        value=float(voucher.value),
        discount_code_id=voucher.id,
    )


def validate_voucher(db: Session, code, subtotal=None, now=None) -> VoucherCheck:
    """Validate ``code`` for a cart with ``subtotal`` (None skips the minimum check)."""
    return check_code(find_code(db, code), subtotal=subtotal, now=now)


def consume_voucher(db: Session, discount_code_id: int, checkout_id: str) -> bool:
    """Count one use of the code for ``checkout_id``.

    Returns False when this checkout already consumed it or the cap was hit
    concurrently; neither case is an error for the caller.
    """
    try:
        db.add(VoucherRedemption(discount_code_id=discount_code_id, checkout_id=checkout_id))
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("Voucher %s already consumed by checkout %s", discount_code_id, checkout_id)
        return False

    result = db.execute(
        update(DiscountCode)
        .where(DiscountCode.id == discount_code_id)
        .where(or_(DiscountCode.max_uses.is_(None), DiscountCode.used_count < DiscountCode.max_uses))
        .values(used_count=DiscountCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.warning(
            "Voucher %s reached its usage cap before checkout %s could consume it",
            discount_code_id,
            checkout_id,
        )
        return False

    db.commit()
    return True
