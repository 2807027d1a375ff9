"""
Order lifecycle service configuration.
Values come from the environment (or a local .env file).
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Storefront Order Lifecycle"
    LOG_LEVEL: str = "INFO"
    ADMIN_API_KEY: Optional[str] = None  # unset = admin endpoints trust the caller

    # Database
    DATABASE_URL: str = "sqlite:///./order_lifecycle.db"

    # RabbitMQ
    RABBITMQ_HOST: str = "rabbitmq"
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    EVENTS_EXCHANGE: str = "events"
    PAYMENT_EVENTS_QUEUE: str = "orders.payment.confirmed"
    RABBITMQ_CONNECT_ATTEMPTS: int = 5
    RABBITMQ_RETRY_DELAY: float = 5.0
    RABBITMQ_REQUEST_CONNECT_ATTEMPTS: int = 1  # request handlers fail fast, the consumer retries
    ENABLE_PAYMENT_CONSUMER: bool = False

    # Payment gateway
    PAYMENT_GATEWAY_URL: str = "http://payment_gateway:8000/api/v1"
    PAYMENT_GATEWAY_TIMEOUT: float = 10.0
    DEFAULT_CURRENCY: str = "PHP"
    DEFAULT_PAYMENT_METHOD: str = "paymongo"

    # Storefront URLs handed to the payment provider
    STOREFRONT_BASE_URL: str = "http://localhost:3000"
    PAYMENT_SUCCESS_PATH: str = "/profile/order"
    PAYMENT_CANCEL_PATH: str = "/profile/cart"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
