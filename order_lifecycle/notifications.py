"""
Notification events the engine decides to send.

Delivery is someone else's job: the engine hands a ``NotificationEvent`` to
a ``Notifier`` (RabbitMQ in production, see ``messaging/bus.py``). Failures
are logged and swallowed so they never undo a state change.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from .models import NotificationPreference, utcnow

logger = logging.getLogger(__name__)

CHANNEL_IN_APP = "in_app"
CHANNEL_EMAIL = "email"
CHANNEL_ADMIN = "admin"


@dataclass
class NotificationEvent:
    channel: str
    title: str
    message: str
    category: str
    recipient_user_id: Optional[str] = None  # None = broadcast
    metadata: dict = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self):
        return asdict(self)


class Notifier(Protocol):
    def publish(self, event: NotificationEvent) -> None:
        ...


@dataclass
class Preferences:
    in_app: bool = True
    email: bool = True


def load_preferences(db: Session, user_id: str) -> Preferences:
    """Both gates default to on; only an explicit False turns one off."""
    row = db.get(NotificationPreference, user_id)
    if row is None:
        return Preferences()
    return Preferences(
        in_app=row.order_status_notifications is not False,
        email=row.email_notifications is not False,
    )


def send_quietly(notifier: Optional[Notifier], event: NotificationEvent) -> bool:
    if notifier is None:
        logger.warning("No notifier configured, dropping %s notification", event.category)
        return False
    try:
        notifier.publish(event)
        return True
    except Exception:
        logger.exception("Failed to publish %s notification via %s", event.category, event.channel)
        return False
