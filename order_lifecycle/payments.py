"""
Payment gateway client and inbound payment event parsing.

The gateway fronts the actual providers (card, e-wallet, PayPal). This
service only needs two calls from it: create a hosted checkout session and
capture an approved payment. Every inbound confirmation, whichever path it
arrives on, is turned into a ``PaymentConfirmation`` for the reconciler.
"""
import logging
from typing import Optional

import requests

from .config import settings
from .errors import UpstreamError, ValidationError
from .schemas import PaymentConfirmation, PaymentSession, PaymentSessionRequest

logger = logging.getLogger(__name__)

ORDER_IDS_METADATA_KEY = "order_record_ids"

PAID_EVENT_TYPES = {
    "checkout_session.payment.paid",
    "payment.paid",
    "payment.capture.completed",
}

CAPTURED_STATUSES = {"completed", "captured", "succeeded", "paid"}


def join_ids(ids) -> str:
    return ",".join(ids)


def split_ids(value) -> list:
    if isinstance(value, (list, tuple)):
        parts = value
    else:
        parts = str(value or "").split(",")
    seen = []
    for part in parts:
        part = str(part).strip()
        if part and part not in seen:
            seen.append(part)
    return seen


class PaymentGateway:
    def __init__(self, base_url=None, timeout=None):
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_URL).rstrip("/")
        self.timeout = timeout or settings.PAYMENT_GATEWAY_TIMEOUT

    def create_session(self, req: PaymentSessionRequest) -> PaymentSession:
        """Request a hosted checkout session for one logical charge."""
        try:
            response = requests.post(
                f"{self.base_url}/sessions",
                json=req.model_dump(),
                timeout=self.timeout,
            )
            response.raise_for_status()  # Raises an exception for 4xx/5xx status codes
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error("Payment session request for %s failed: %s", req.reference, e)
            raise UpstreamError("Failed to create payment session", {"reference": req.reference}) from e

        if not data.get("checkout_url"):
            raise UpstreamError("Payment gateway returned no checkout URL", {"reference": req.reference})
        return PaymentSession(session_id=str(data.get("session_id") or ""), checkout_url=data["checkout_url"])

    def capture(self, reference: str) -> PaymentConfirmation:
        """Capture an approved payment synchronously."""
        try:
            response = requests.post(f"{self.base_url}/captures/{reference}", timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error("Payment capture for %s failed: %s", reference, e)
            raise UpstreamError("Payment capture failed", {"reference": reference}) from e

        status = str(data.get("status", "")).lower()
        if status not in CAPTURED_STATUSES:
            raise UpstreamError(f"Payment capture was not completed (status={status or 'unknown'})", {"reference": reference})

        ids = split_ids((data.get("metadata") or {}).get(ORDER_IDS_METADATA_KEY))
        if not ids:
            raise UpstreamError("Capture response does not reference any order", {"reference": reference})

        return PaymentConfirmation(
            transaction_id=str(data.get("transaction_id") or reference),
            order_record_ids=ids,
            provider=data.get("provider"),
            amount_paid=data.get("amount"),
            provider_order_id=reference,
        )


def parse_webhook(payload: dict) -> Optional[PaymentConfirmation]:
    """Turn a provider webhook body into a confirmation, or None when the event is not a payment."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid webhook data")

    event_type = str(payload.get("type") or "").lower()
    if event_type not in PAID_EVENT_TYPES:
        logger.info("Ignoring payment webhook of type %r", event_type)
        return None

    data = payload.get("data") or {}
    ids = split_ids((data.get("metadata") or {}).get(ORDER_IDS_METADATA_KEY))
    if not ids:
        raise ValidationError("Invalid webhook data: no order records referenced")

    transaction_id = data.get("id") or data.get("reference")
    if not transaction_id:
        raise ValidationError("Invalid webhook data: missing transaction id")

    return PaymentConfirmation(
        transaction_id=str(transaction_id),
        order_record_ids=ids,
        provider=data.get("provider"),
        amount_paid=data.get("amount"),
        provider_order_id=data.get("reference"),
    )
