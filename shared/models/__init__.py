"""SQLAlchemy models."""

from shared.models.app_notification import AppNotification
from shared.models.base import Base
from shared.models.push_subscription import PushSubscription

__all__ = [
    "AppNotification",
    "Base",
    "PushSubscription",
]
