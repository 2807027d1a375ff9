import json
from unittest import mock

import pytest

from order_lifecycle import consumers
from order_lifecycle.consumers import ACK, DROP, REQUEUE, PaymentEventConsumer, handle_payment_event
from order_lifecycle.models import OrderRecord
from order_lifecycle.reconciler import ReconciliationResult


def _body(record_ids, transaction_id="tx-bus-1"):
    return json.dumps({"transaction_id": transaction_id, "order_record_ids": record_ids, "provider": "gcash"}).encode()


def test_payment_event_is_reconciled(db, notifier, pending_order):
    record_id = pending_order()

    outcome = handle_payment_event(_body([record_id]), session_factory=lambda: db, notifier=notifier)

    assert outcome == ACK
    db.expire_all()
    assert db.get(OrderRecord, record_id).status == "reserved"


def test_redelivered_event_is_acked_without_changes(db, notifier, pending_order):
    record_id = pending_order()
    handle_payment_event(_body([record_id]), session_factory=lambda: db, notifier=notifier)

    assert handle_payment_event(_body([record_id]), session_factory=lambda: db, notifier=notifier) == ACK
    assert len(notifier.on("admin")) == 1


@pytest.mark.parametrize("body", [b"{not json", b'{"order_record_ids": ["r-1"]}', b"[]"])
def test_unreadable_events_are_dropped(db, body):
    assert handle_payment_event(body, session_factory=lambda: db) == DROP


def test_partial_failure_is_requeued(db, monkeypatch):
    failed = ReconciliationResult(transaction_id="tx-bus-1", failed={"r-1": "lock timeout"})
    monkeypatch.setattr(consumers, "reconcile_payment", lambda *args, **kwargs: failed)

    assert handle_payment_event(_body(["r-1"]), session_factory=lambda: db) == REQUEUE


@pytest.mark.parametrize(
    "outcome, acked, requeue",
    [(ACK, True, None), (REQUEUE, False, True), (DROP, False, False)],
)
def test_callback_settles_the_delivery(monkeypatch, outcome, acked, requeue):
    monkeypatch.setattr(consumers, "handle_payment_event", lambda body, notifier=None: outcome)
    consumer = PaymentEventConsumer(notifier=mock.Mock())
    channel = mock.Mock()

    consumer.callback(channel, mock.Mock(delivery_tag=7), None, b"{}")

    if acked:
        channel.basic_ack.assert_called_once_with(delivery_tag=7)
        channel.basic_nack.assert_not_called()
    else:
        channel.basic_nack.assert_called_once_with(delivery_tag=7, requeue=requeue)


def test_consumer_binds_a_durable_queue():
    with mock.patch("order_lifecycle.consumers.pika.BlockingConnection") as connection:
        channel = connection.return_value.channel.return_value
        consumer = PaymentEventConsumer(notifier=mock.Mock())
        consumer.connect()

    channel.exchange_declare.assert_called_once_with(exchange="events", exchange_type="topic", durable=True)
    channel.queue_declare.assert_called_once_with(queue="orders.payment.confirmed", durable=True)
    channel.queue_bind.assert_called_once_with(
        exchange="events", queue="orders.payment.confirmed", routing_key="payment.confirmed"
    )
    channel.basic_consume.assert_called_once_with(
        queue="orders.payment.confirmed", on_message_callback=consumer.callback
    )
