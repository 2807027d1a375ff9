import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import cart as cart_ops
from .cancellation import cancel_order, request_cancellation
from .checkout import checkout, resume_payment
from .config import settings
from .consumers import start_consumer_thread
from .database import Base, engine, get_db
from .errors import ForbiddenError, NotFoundError, OrderEngineError, ValidationError
from .fulfillment import transition_order
from .messaging.bus import RabbitMQNotifier, RabbitMQProducer
from .models import OrderRecord
from .payments import PaymentGateway, parse_webhook
from .reconciler import reconcile_payment
from .schemas import (
    CancelRequest,
    CartAddRequest,
    CartUpdateRequest,
    CheckoutRequest,
    OrderRecordOut,
    ResumePaymentRequest,
    StatusUpdateRequest,
    VoucherValidateRequest,
)
from .statuses import ItemType
from .vouchers import validate_voucher

# --- Database Initialization ---
# Create tables if they don't exist.
Base.metadata.create_all(bind=engine)

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# --- App Instance ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.ENABLE_PAYMENT_CONSUMER:
        start_consumer_thread()
    yield


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)


# --- Error Handling ---
@app.exception_handler(OrderEngineError)
async def order_engine_error_handler(request: Request, exc: OrderEngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    body = ValidationError("Invalid request", {"errors": exc.errors()}).to_dict()
    return JSONResponse(status_code=400, content=jsonable_encoder(body))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Something went wrong, please try again", "code": "error"})


# --- Dependencies ---
def get_notifier():
    """One notifier per request: pika connections must not be shared across threads."""
    notifier = RabbitMQNotifier(RabbitMQProducer(connect_attempts=settings.RABBITMQ_REQUEST_CONNECT_ATTEMPTS))
    try:
        yield notifier
    finally:
        notifier.close()


def get_gateway():
    return PaymentGateway()


def require_admin(x_admin_key: Optional[str] = Header(None)):
    """Admin endpoints check X-Admin-Key when ADMIN_API_KEY is configured."""
    if settings.ADMIN_API_KEY and x_admin_key != settings.ADMIN_API_KEY:
        raise ForbiddenError("Admin access required")


# --- Endpoints ---
@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.APP_NAME}


# Cart
@app.get("/api/v1/cart")
def list_cart(user_id: str, db: Session = Depends(get_db)):
    return [OrderRecordOut.model_validate(line) for line in cart_ops.list_cart(db, user_id)]


@app.post("/api/v1/cart")
def add_to_cart(req: CartAddRequest, db: Session = Depends(get_db)):
    line = cart_ops.add_to_cart(db, req.user_id, req.product_id, req.quantity, req.meta)
    return OrderRecordOut.model_validate(line)


@app.patch("/api/v1/cart/{line_id}")
def update_cart_line(line_id: str, req: CartUpdateRequest, db: Session = Depends(get_db)):
    return OrderRecordOut.model_validate(cart_ops.update_quantity(db, line_id, req.user_id, req.quantity))


@app.delete("/api/v1/cart/{line_id}")
def remove_cart_line(line_id: str, user_id: str, db: Session = Depends(get_db)):
    cart_ops.remove_line(db, line_id, user_id)
    return {"success": True, "line_id": line_id}


# Vouchers
@app.post("/api/v1/discount-codes/validate")
def validate_discount_code(req: VoucherValidateRequest, db: Session = Depends(get_db)):
    """Live preview for the cart page; never consumes the code."""
    return validate_voucher(db, req.code, req.subtotal).to_dict()


# Checkout & payment
@app.post("/api/v1/checkout")
def create_checkout(
    req: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    return checkout(db, gateway, req, notifier).to_dict()


@app.post("/api/v1/checkouts/{checkout_id}/payment-session")
def resume_checkout_payment(
    checkout_id: str,
    req: ResumePaymentRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    return resume_payment(db, gateway, checkout_id, req.user_id, req.payment_method, notifier).to_dict()


@app.post("/api/v1/webhooks/payments")
def payment_webhook(payload: dict = Body(...), db: Session = Depends(get_db), notifier=Depends(get_notifier)):
    confirmation = parse_webhook(payload)
    if confirmation is None:
        return {"received": True, "ignored": True}
    result = reconcile_payment(db, confirmation, notifier)
    # A 500 makes the provider redeliver; replay only touches the failed records.
    result.raise_for_failures()
    return {"received": True, **result.to_dict()}


@app.post("/api/v1/payments/{reference}/capture")
def capture_payment(
    reference: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    confirmation = gateway.capture(reference)
    result = reconcile_payment(db, confirmation, notifier)
    result.raise_for_failures()
    return {"success": True, **result.to_dict()}


# Orders
@app.post("/api/v1/orders/{order_id}/cancel")
def cancel(order_id: str, req: CancelRequest, db: Session = Depends(get_db)):
    return cancel_order(db, order_id, req.user_id, req.reason).to_dict()


@app.post("/api/v1/orders/{order_id}/cancellation-request")
def cancellation_request(
    order_id: str, req: CancelRequest, db: Session = Depends(get_db), notifier=Depends(get_notifier)
):
    return request_cancellation(db, order_id, req.user_id, req.reason, notifier).to_dict()


@app.post("/api/v1/admin/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(
    order_id: str, req: StatusUpdateRequest, db: Session = Depends(get_db), notifier=Depends(get_notifier)
):
    result = transition_order(
        db,
        order_id,
        req.new_status,
        notifier=notifier,
        actor=req.admin_name,
        notes=req.admin_notes,
        estimated_delivery_date=req.estimated_delivery_date,
        skip_write=req.skip_update,
    )
    return result.to_dict()


@app.get("/api/v1/orders")
def list_orders(user_id: str, db: Session = Depends(get_db)):
    if not user_id:
        raise ValidationError("user_id required")
    records = db.execute(
        select(OrderRecord)
        .where(OrderRecord.user_id == user_id)
        .where(OrderRecord.item_type != ItemType.CART.value)
        .order_by(OrderRecord.created_at.desc())
    ).scalars()
    return [OrderRecordOut.model_validate(record) for record in records]


@app.get("/api/v1/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db)):
    record = db.get(OrderRecord, order_id)
    if record is None or record.item_type == ItemType.CART.value:
        raise NotFoundError("Order not found")
    return OrderRecordOut.model_validate(record)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
