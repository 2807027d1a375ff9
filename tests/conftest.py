import os

# Must be set before the app (and its engine) is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_PAYMENT_CONSUMER"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from order_lifecycle.cart import add_to_cart
from order_lifecycle.checkout import checkout
from order_lifecycle.database import Base, get_db
from order_lifecycle.errors import UpstreamError
from order_lifecycle.main import app, get_gateway, get_notifier
from order_lifecycle.models import DiscountCode, NotificationPreference, Product
from order_lifecycle.reconciler import reconcile_payment
from order_lifecycle.schemas import CheckoutRequest, PaymentConfirmation, PaymentSession


class RecordingNotifier:
    """Keeps every published event instead of sending it."""

    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def publish(self, event):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.events.append(event)

    def on(self, channel):
        return [e for e in self.events if e.channel == channel]


class StubGateway:
    def __init__(self):
        self.sessions = []
        self.captures = {}
        self.fail = False

    def create_session(self, req):
        if self.fail:
            raise UpstreamError("Failed to create payment session", {"reference": req.reference})
        self.sessions.append(req)
        return PaymentSession(
            session_id=f"cs_{len(self.sessions)}",
            checkout_url=f"https://pay.example.test/{req.reference}",
        )

    def capture(self, reference):
        return self.captures[reference]


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def client(db, notifier, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(product_id="mug-1", name="Custom Mug", price=5000.0, inventory=10):
        product = Product(id=product_id, name=name, price=price, inventory=inventory)
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def make_code(db):
    def _make(code="SAVE10", type="percent", value=10.0, **fields):
        discount = DiscountCode(code=code, type=type, value=value, **fields)
        db.add(discount)
        db.commit()
        return discount

    return _make


@pytest.fixture
def opt_out(db):
    def _opt_out(user_id, in_app=None, email=None):
        db.add(
            NotificationPreference(
                user_id=user_id, order_status_notifications=in_app, email_notifications=email
            )
        )
        db.commit()

    return _opt_out


@pytest.fixture
def pending_order(db, gateway, notifier, make_product):
    """A single unpaid order record for user-1 (quantity 2 of a 5000 mug)."""

    def _make(user_id="user-1", quantity=2, product_id="mug-1", inventory=10):
        if db.get(Product, product_id) is None:
            make_product(product_id=product_id, inventory=inventory)
        line = add_to_cart(db, user_id, product_id, quantity)
        result = checkout(db, gateway, CheckoutRequest(user_id=user_id, cart_line_ids=[line.id]), notifier)
        return result.order_record_ids[0]

    return _make


@pytest.fixture
def paid_order(db, notifier, pending_order):
    """A reserved (paid) order record; returns its id."""

    def _make(**kwargs):
        record_id = pending_order(**kwargs)
        reconcile_payment(
            db,
            PaymentConfirmation(transaction_id=f"tx-{record_id}", order_record_ids=[record_id], provider="card"),
            notifier,
        )
        return record_id

    return _make


@pytest.fixture
def broken_notifier():
    return RecordingNotifier(fail=True)
