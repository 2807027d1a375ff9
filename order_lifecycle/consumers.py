import json
import logging
import threading
import time

import pika
from pydantic import ValidationError as PydanticValidationError

from .config import settings
from .database import SessionLocal
from .errors import PartialFailure
from .messaging.bus import RabbitMQNotifier
from .reconciler import reconcile_payment
from .schemas import PaymentConfirmation

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED_KEY = "payment.confirmed"

ACK = "ack"
REQUEUE = "requeue"
DROP = "drop"


def handle_payment_event(body, session_factory=SessionLocal, notifier=None) -> str:
    """Reconcile one ``payment.confirmed`` message and say what to do with it.

    Unreadable messages are dropped; a settlement with failed records goes
    back on the queue, and replaying it only touches the records that failed.
    """
    try:
        confirmation = PaymentConfirmation.model_validate(json.loads(body))
    except (ValueError, PydanticValidationError) as e:
        logger.error("Dropping unreadable payment event: %s", e)
        return DROP

    db = session_factory()
    try:
        result = reconcile_payment(db, confirmation, notifier)
        result.raise_for_failures()
    except PartialFailure as e:
        logger.warning("Payment %s partially reconciled, requeueing: %s", confirmation.transaction_id, e.details)
        return REQUEUE
    except Exception:
        logger.exception("Payment %s could not be reconciled", confirmation.transaction_id)
        return REQUEUE
    finally:
        db.close()
    return ACK


class PaymentEventConsumer:
    """Listens for payment confirmations published by the payment gateway bridge."""

    def __init__(self, notifier=None):
        self.notifier = notifier
        self.connection = None
        self.channel = None

    def connect(self):
        credentials = pika.PlainCredentials(settings.RABBITMQ_USER, settings.RABBITMQ_PASSWORD)
        self.connection = pika.BlockingConnection(
            pika.ConnectionParameters(
                host=settings.RABBITMQ_HOST,
                credentials=credentials,
                heartbeat=600,
                blocked_connection_timeout=300,
            )
        )
        self.channel = self.connection.channel()
        self.channel.exchange_declare(exchange=settings.EVENTS_EXCHANGE, exchange_type="topic", durable=True)

        # Durable named queue so confirmations survive a restart of this service.
        self.channel.queue_declare(queue=settings.PAYMENT_EVENTS_QUEUE, durable=True)
        self.channel.queue_bind(
            exchange=settings.EVENTS_EXCHANGE,
            queue=settings.PAYMENT_EVENTS_QUEUE,
            routing_key=PAYMENT_CONFIRMED_KEY,
        )
        self.channel.basic_qos(prefetch_count=1)
        self.channel.basic_consume(queue=settings.PAYMENT_EVENTS_QUEUE, on_message_callback=self.callback)

    def callback(self, ch, method, properties, body):
        if self.notifier is None:
            self.notifier = RabbitMQNotifier()
        outcome = handle_payment_event(body, notifier=self.notifier)
        if outcome == ACK:
            ch.basic_ack(delivery_tag=method.delivery_tag)
        else:
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=outcome == REQUEUE)

    def run(self):
        # Keep trying until RabbitMQ is ready.
        while True:
            try:
                self.connect()
                logger.info("Payment consumer listening on %s", settings.PAYMENT_EVENTS_QUEUE)
                self.channel.start_consuming()
                break
            except pika.exceptions.AMQPConnectionError as e:
                logger.warning("Connection failed, retrying in %ss: %s", settings.RABBITMQ_RETRY_DELAY, e)
                time.sleep(settings.RABBITMQ_RETRY_DELAY)


def start_consumer_thread():
    t = threading.Thread(target=PaymentEventConsumer().run, daemon=True)
    t.start()
    return t
