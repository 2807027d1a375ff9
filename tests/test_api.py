from unittest import mock

from fastapi.testclient import TestClient

from order_lifecycle import inventory
from order_lifecycle.main import app, settings
from order_lifecycle.models import OrderRecord, Product
from order_lifecycle.schemas import PaymentConfirmation


def _add(client, product_id="mug-1", quantity=2, user_id="user-1"):
    response = client.post("/api/v1/cart", json={"user_id": user_id, "product_id": product_id, "quantity": quantity})
    assert response.status_code == 200
    return response.json()


def _checkout(client, line_ids, **body):
    return client.post("/api/v1/checkout", json={"user_id": "user-1", "cart_line_ids": line_ids, **body})


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_cart_endpoints(client, make_product):
    make_product(price=100)
    line = _add(client, quantity=1)
    _add(client, quantity=2)

    cart = client.get("/api/v1/cart", params={"user_id": "user-1"}).json()
    assert len(cart) == 1
    assert cart[0]["quantity"] == 3

    updated = client.patch(f"/api/v1/cart/{line['id']}", json={"user_id": "user-1", "quantity": 5}).json()
    assert updated["total_amount"] == 500

    assert client.delete(f"/api/v1/cart/{line['id']}", params={"user_id": "user-1"}).json()["success"]
    missing = client.delete(f"/api/v1/cart/{line['id']}", params={"user_id": "user-1"})
    assert missing.status_code == 404
    assert missing.json() == {"error": "Cart item not found", "code": "not_found"}


def test_voucher_preview(client, make_code):
    make_code(min_subtotal=1000)

    assert client.post("/api/v1/discount-codes/validate", json={"code": "save10", "subtotal": 2000}).json() == {
        "valid": True,
        "discount": {"code": "SAVE10", "type": "percent", "value": 10.0},
    }
    assert client.post("/api/v1/discount-codes/validate", json={"code": "SAVE10", "subtotal": 10}).json() == {
        "valid": False,
        "reason": "min_subtotal_not_met",
    }


def test_checkout_then_webhook(client, db, notifier, make_product, make_code):
    make_product(price=5000, inventory=10)
    make_code()
    line = _add(client)

    response = _checkout(
        client,
        [line["id"]],
        voucher_code="SAVE10",
        addons_by_line={line["id"]: [{"key": "engraving", "label": "Engraving", "fee": 300}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["totals"] == {"subtotal": 10600, "discount": 1060, "total": 9540}
    assert body["checkout_url"].startswith("https://pay.example.test/")
    record_id = body["order_record_ids"][0]

    webhook = {
        "type": "checkout_session.payment.paid",
        "data": {"id": "pay_1", "reference": "cs_1", "amount": 9540, "metadata": {"order_record_ids": record_id}},
    }
    first = client.post("/api/v1/webhooks/payments", json=webhook)
    second = client.post("/api/v1/webhooks/payments", json=webhook)

    assert first.json()["applied"] == [record_id]
    assert second.json()["skipped"] == [record_id]
    db.expire_all()
    assert db.get(Product, "mug-1").inventory == 8

    order = client.get(f"/api/v1/orders/{record_id}").json()
    assert order["status"] == "reserved"
    assert order["payment_id"] == "pay_1"
    assert [o["id"] for o in client.get("/api/v1/orders", params={"user_id": "user-1"}).json()] == [record_id]


def test_ignored_webhook(client):
    response = client.post("/api/v1/webhooks/payments", json={"type": "payment.failed", "data": {}})
    assert response.json() == {"received": True, "ignored": True}


def test_malformed_webhook_is_a_bad_request(client):
    response = client.post("/api/v1/webhooks/payments", json={"type": "payment.paid", "data": {"id": "pay_1"}})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_failed"


def test_capture_endpoint(client, db, gateway, pending_order):
    record_id = pending_order()
    gateway.captures["paypal-1"] = PaymentConfirmation(
        transaction_id="cap_1", order_record_ids=[record_id], provider="paypal"
    )

    response = client.post("/api/v1/payments/paypal-1/capture")

    assert response.status_code == 200
    assert response.json()["applied"] == [record_id]


def test_webhook_with_failed_lines_asks_for_redelivery(client, pending_order, monkeypatch):
    def locked(*args):
        raise RuntimeError("lock timeout")

    record_id = pending_order()
    monkeypatch.setattr(inventory, "decrement", locked)
    webhook = {"type": "payment.paid", "data": {"id": "pay_1", "metadata": {"order_record_ids": record_id}}}

    response = client.post("/api/v1/webhooks/payments", json=webhook)

    assert response.status_code == 500
    assert response.json()["code"] == "partial_failure"
    assert response.json()["details"]["failed"] == {record_id: "lock timeout"}


def test_gateway_outage_returns_502_with_resume_handle(client, gateway, make_product):
    make_product()
    line = _add(client)
    gateway.fail = True

    response = _checkout(client, [line["id"]])

    assert response.status_code == 502
    checkout_id = response.json()["details"]["checkout_id"]

    gateway.fail = False
    resumed = client.post(f"/api/v1/checkouts/{checkout_id}/payment-session", json={"user_id": "user-1"})
    assert resumed.status_code == 200
    assert resumed.json()["checkout_url"].endswith(checkout_id)


def test_request_validation_errors_are_400(client):
    response = client.post("/api/v1/checkout", json={"user_id": "user-1"})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_failed"


def test_customer_cancellation(client, db, paid_order):
    record_id = paid_order()

    forbidden = client.post(f"/api/v1/orders/{record_id}/cancel", json={"user_id": "user-2"})
    assert forbidden.status_code == 403

    response = client.post(f"/api/v1/orders/{record_id}/cancel", json={"user_id": "user-1"})
    assert response.json() == {"success": True, "order_id": record_id, "inventory_restored": True}

    again = client.post(f"/api/v1/orders/{record_id}/cancel", json={"user_id": "user-1"})
    assert again.status_code == 409


def test_admin_status_update_and_cancellation_request(client, db, notifier, paid_order):
    record_id = paid_order()

    response = client.post(
        f"/api/v1/admin/orders/{record_id}/status",
        json={"new_status": "in_production", "admin_name": "admin-ana"},
    )
    assert response.status_code == 200
    assert response.json()["new_status"] == "in_production"

    request = client.post(
        f"/api/v1/orders/{record_id}/cancellation-request", json={"user_id": "user-1", "reason": "Changed my mind"}
    )
    assert request.status_code == 200
    db.expire_all()
    assert db.get(OrderRecord, record_id).status == "pending_cancellation"

    illegal = client.post(f"/api/v1/admin/orders/{record_id}/status", json={"new_status": "reserved"})
    assert illegal.status_code == 409


def test_admin_key_is_enforced_when_configured(client, paid_order, monkeypatch):
    record_id = paid_order()
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "s3cret")
    url = f"/api/v1/admin/orders/{record_id}/status"

    assert client.post(url, json={"new_status": "approved"}).status_code == 403
    ok = client.post(url, json={"new_status": "approved"}, headers={"X-Admin-Key": "s3cret"})
    assert ok.status_code == 200


def test_unknown_order(client):
    assert client.get("/api/v1/orders/ghost").status_code == 404


def test_payment_consumer_starts_with_the_app_when_enabled(monkeypatch):
    monkeypatch.setattr(settings, "ENABLE_PAYMENT_CONSUMER", True)
    with mock.patch("order_lifecycle.main.start_consumer_thread") as start:
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200

    start.assert_called_once_with()


def test_payment_consumer_stays_off_by_default():
    with mock.patch("order_lifecycle.main.start_consumer_thread") as start:
        with TestClient(app):
            pass

    start.assert_not_called()


def test_zero_quantity_update_is_rejected(client, make_product):
    make_product()
    line = _add(client, quantity=1)

    response = client.patch(f"/api/v1/cart/{line['id']}", json={"user_id": "user-1", "quantity": 0})

    assert response.status_code == 400
    assert response.json()["code"] == "validation_failed"
