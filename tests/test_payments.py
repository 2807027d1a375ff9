from unittest import mock

import pytest
import requests

from order_lifecycle.errors import UpstreamError, ValidationError
from order_lifecycle.payments import PaymentGateway, join_ids, parse_webhook, split_ids
from order_lifecycle.schemas import PaymentSessionRequest


def _response(payload, status=200):
    response = mock.Mock()
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error")
    return response


def _session_request():
    return PaymentSessionRequest(
        amount=9540,
        currency="PHP",
        reference="checkout-1",
        description="Cart checkout (1 item(s))",
        metadata={"order_record_ids": "r-1", "checkout_id": "checkout-1"},
        success_url="http://shop.test/profile/order",
        cancel_url="http://shop.test/profile/cart",
        payment_method="paymongo",
    )


def test_ids_round_trip_through_metadata():
    assert join_ids(["a", "b"]) == "a,b"
    assert split_ids(" a, b,,a ") == ["a", "b"]
    assert split_ids(["x", "x", "y"]) == ["x", "y"]
    assert split_ids(None) == []


def test_paid_webhook_becomes_a_confirmation():
    confirmation = parse_webhook(
        {
            "type": "Checkout_Session.Payment.Paid",
            "data": {"id": "pay_1", "reference": "cs_1", "amount": 9540, "metadata": {"order_record_ids": "r-1,r-2"}},
        }
    )

    assert confirmation.transaction_id == "pay_1"
    assert confirmation.order_record_ids == ["r-1", "r-2"]
    assert confirmation.amount_paid == 9540
    assert confirmation.provider_order_id == "cs_1"


def test_other_webhook_types_are_ignored():
    assert parse_webhook({"type": "payment.failed", "data": {}}) is None


@pytest.mark.parametrize(
    "payload",
    [
        "not a dict",
        {"type": "payment.paid", "data": {"id": "pay_1", "metadata": {}}},
        {"type": "payment.paid", "data": {"metadata": {"order_record_ids": "r-1"}}},
    ],
)
def test_malformed_paid_webhooks_are_rejected(payload):
    with pytest.raises(ValidationError):
        parse_webhook(payload)


def test_create_session_posts_to_the_gateway():
    gateway = PaymentGateway(base_url="http://gateway.test/api/", timeout=3)
    with mock.patch("order_lifecycle.payments.requests.post") as post:
        post.return_value = _response({"session_id": "cs_1", "checkout_url": "https://pay.test/cs_1"})
        session = gateway.create_session(_session_request())

    assert session.checkout_url == "https://pay.test/cs_1"
    url = post.call_args.args[0]
    assert url == "http://gateway.test/api/sessions"
    assert post.call_args.kwargs["json"]["metadata"]["order_record_ids"] == "r-1"
    assert post.call_args.kwargs["timeout"] == 3


@pytest.mark.parametrize(
    "side_effect, payload",
    [
        (requests.exceptions.ConnectionError("refused"), None),
        (None, {"session_id": "cs_1"}),
    ],
)
def test_create_session_failures_are_upstream_errors(side_effect, payload):
    gateway = PaymentGateway(base_url="http://gateway.test")
    with mock.patch("order_lifecycle.payments.requests.post") as post:
        if side_effect is not None:
            post.side_effect = side_effect
        else:
            post.return_value = _response(payload)
        with pytest.raises(UpstreamError) as exc:
            gateway.create_session(_session_request())

    assert exc.value.details["reference"] == "checkout-1"


def test_gateway_http_error_is_an_upstream_error():
    gateway = PaymentGateway(base_url="http://gateway.test")
    with mock.patch("order_lifecycle.payments.requests.post", return_value=_response({}, status=503)):
        with pytest.raises(UpstreamError):
            gateway.create_session(_session_request())


def test_capture_returns_a_confirmation():
    gateway = PaymentGateway(base_url="http://gateway.test")
    payload = {
        "transaction_id": "cap_1",
        "status": "COMPLETED",
        "amount": 200,
        "metadata": {"order_record_ids": "r-1"},
    }
    with mock.patch("order_lifecycle.payments.requests.post", return_value=_response(payload)) as post:
        confirmation = gateway.capture("paypal-order-1")

    assert post.call_args.args[0] == "http://gateway.test/captures/paypal-order-1"
    assert confirmation.transaction_id == "cap_1"
    assert confirmation.order_record_ids == ["r-1"]
    assert confirmation.provider_order_id == "paypal-order-1"


@pytest.mark.parametrize(
    "payload",
    [
        {"transaction_id": "cap_1", "status": "DECLINED", "metadata": {"order_record_ids": "r-1"}},
        {"transaction_id": "cap_1", "status": "COMPLETED", "metadata": {}},
    ],
)
def test_unusable_captures_are_upstream_errors(payload):
    gateway = PaymentGateway(base_url="http://gateway.test")
    with mock.patch("order_lifecycle.payments.requests.post", return_value=_response(payload)):
        with pytest.raises(UpstreamError):
            gateway.capture("paypal-order-1")
