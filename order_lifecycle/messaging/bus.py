import json
import logging
import time

import pika

from ..config import settings
from ..notifications import NotificationEvent

logger = logging.getLogger(__name__)


class RabbitMQProducer:
    """
    Handles the connection to RabbitMQ and publishing of events.
    The connection is opened on first publish and reopened if it was lost.
    """

    def __init__(self, exchange_name=None, exchange_type="topic", connect_attempts=None):
        self.exchange_name = exchange_name or settings.EVENTS_EXCHANGE
        self.exchange_type = exchange_type
        self.connect_attempts = connect_attempts or settings.RABBITMQ_CONNECT_ATTEMPTS
        self.connection = None
        self.channel = None

    def connect(self):
        """Establishes a connection to RabbitMQ, retrying a bounded number of times."""
        attempts = max(1, self.connect_attempts)
        for attempt in range(1, attempts + 1):
            try:
                credentials = pika.PlainCredentials(settings.RABBITMQ_USER, settings.RABBITMQ_PASSWORD)
                parameters = pika.ConnectionParameters(
                    host=settings.RABBITMQ_HOST,
                    credentials=credentials,
                    heartbeat=600,
                    blocked_connection_timeout=300,
                )
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()

                # Declare the exchange (durable ensures it survives restarts)
                self.channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True,
                )
                logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)
                return
            except pika.exceptions.AMQPConnectionError:
                if attempt == attempts:
                    raise
                logger.warning(
                    "RabbitMQ not ready (attempt %s/%s), retrying in %ss",
                    attempt,
                    attempts,
                    settings.RABBITMQ_RETRY_DELAY,
                )
                time.sleep(settings.RABBITMQ_RETRY_DELAY)

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'notification.in_app').
            message (dict): The data payload to send.
        """
        if not self.connection or self.connection.is_closed:
            self.connect()

        self.channel.basic_publish(
            exchange=self.exchange_name,
            routing_key=routing_key,
            body=json.dumps(message, default=str),
            properties=pika.BasicProperties(
                delivery_mode=2,  # Make message persistent
                content_type="application/json",
            ),
        )
        logger.debug("Sent event %s: %s", routing_key, message)

    def close(self):
        """Closes the connection cleanly."""
        if self.connection and not self.connection.is_closed:
            try:
                self.connection.close()
            except pika.exceptions.AMQPError as e:
                logger.warning("Closing RabbitMQ connection failed: %s", e)
        self.connection = None
        self.channel = None


class RabbitMQNotifier:
    """Notifier that hands notification events to the external delivery workers."""

    def __init__(self, producer=None):
        self.producer = producer or RabbitMQProducer()

    def publish(self, event: NotificationEvent) -> None:
        self.producer.publish(routing_key=f"notification.{event.channel}", message=event.to_dict())

    def close(self):
        self.producer.close()
