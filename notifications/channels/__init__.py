"""Delivery channels subscribed to the event bus."""

from notifications.channels.app import init_app_channel
from notifications.channels.email import init_email_channel
from notifications.channels.push import init_push_channel

__all__ = ["init_app_channel", "init_email_channel", "init_push_channel"]
