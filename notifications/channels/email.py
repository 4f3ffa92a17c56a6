"""E-mail channel: account and membership e-mails handed to the mailer.

Messages are plain text. Validation and password reset e-mails carry the
one-time auth code minted during enrichment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import (
    EnrichedGroupEvent,
    EnrichedMemberEvent,
    EnrichedMemberRequestedEvent,
    EnrichedUserEvent,
)
from notifications.events import EventName
from shared.config import Settings

logger = structlog.get_logger()

APP_NAME = "Komunitin"


@dataclass(frozen=True)
class Email:
    subject: str
    body: str


@dataclass(frozen=True)
class EmailRoute:
    event_name: EventName
    recipients: Callable[[Any, Settings], list[str]]
    build: Callable[[Any, str], Email]


def _body(*paragraphs: str) -> str:
    return "\n\n".join(paragraphs) + "\n"


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def welcome_email(event: EnrichedMemberEvent, app_url: str) -> Email:
    group = event.group.name
    return Email(
        subject=f"Welcome to {group}",
        body=_body(
            f"Hello {event.member.name},",
            f"Your account {event.member.code} in {group} is active. "
            "You can now publish offers and needs and exchange with the other members.",
            f"Start here: {app_url}/home",
            f"Your group: {app_url}/groups/{event.code}",
        ),
    )


def member_requested_email(event: EnrichedMemberRequestedEvent, app_url: str) -> Email:
    return Email(
        subject=f"{event.member.name} wants to join {event.group.name}",
        body=_body(
            f"{event.member.name} has signed up to {event.group.name} and is waiting for approval.",
            f"Review the request: {app_url}/groups/{event.code}/members/{event.member.code}",
        ),
    )


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


def group_requested_email(event: EnrichedGroupEvent, app_url: str) -> Email:
    return Email(
        subject=f"New group request: {event.group.name} ({event.code})",
        body=_body(
            f"The group {event.group.name} ({event.code}) has been requested and needs to be activated.",
            f"Group page: {app_url}/groups/{event.code}",
        ),
    )


def group_activated_email(event: EnrichedGroupEvent, app_url: str) -> Email:
    return Email(
        subject=f"{event.group.name} is now active",
        body=_body(
            f"Your group {event.group.name} has been activated. Members can now sign up and start exchanging.",
            f"Group page: {app_url}/groups/{event.code}",
        ),
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _group_name(event: EnrichedUserEvent) -> str:
    return event.group.name if event.group is not None and event.group.name else APP_NAME


def validation_email(event: EnrichedUserEvent, app_url: str) -> Email:
    name = _group_name(event)
    # No group means the user is signing up to create one
    if event.code:
        url = f"{app_url}/groups/{event.code}/signup-member?token={event.token}"
    else:
        url = f"{app_url}/groups/new?token={event.token}"
    return Email(
        subject=f"Confirm your e-mail for {name}",
        body=_body(
            f"Welcome to {name}!",
            f"Please confirm your e-mail address by opening this link: {url}",
            "If you did not sign up, you can ignore this message.",
        ),
    )


def password_reset_email(event: EnrichedUserEvent, app_url: str) -> Email:
    return Email(
        subject=f"Reset your {APP_NAME} password",
        body=_body(
            "We received a request to reset your password.",
            f"Choose a new one here: {app_url}/set-password?token={event.token}",
            "If you did not ask for it, you can ignore this message.",
        ),
    )


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _member_users(event: EnrichedMemberEvent, settings: Settings) -> list[str]:
    return [u.user.email for u in event.users if u.settings.account_emails]


def _admins(event, settings: Settings) -> list[str]:
    return [u.user.email for u in event.admin_users]


def _service_admin(event, settings: Settings) -> list[str]:
    return [settings.admin_email] if settings.admin_email else []


def _target(event: EnrichedUserEvent, settings: Settings) -> list[str]:
    return [event.target.user.email]


EMAIL_ROUTES: tuple[EmailRoute, ...] = (
    EmailRoute(EventName.MEMBER_JOINED, _member_users, welcome_email),
    EmailRoute(EventName.MEMBER_REQUESTED, _admins, member_requested_email),
    EmailRoute(EventName.GROUP_REQUESTED, _service_admin, group_requested_email),
    EmailRoute(EventName.GROUP_ACTIVATED, _admins, group_activated_email),
    EmailRoute(EventName.VALIDATION_EMAIL_REQUESTED, _target, validation_email),
    EmailRoute(EventName.PASSWORD_RESET_REQUESTED, _target, password_reset_email),
)


def _listener(ctx: NotificationContext, route: EmailRoute):
    async def listener(event) -> None:
        addresses = [a for a in route.recipients(event, ctx.settings) if a]
        if not addresses:
            logger.debug("email_no_recipients", event_id=event.id, event_name=event.name.value)
            return

        email = route.build(event, ctx.settings.komunitin_app_url)
        for address in addresses:
            await ctx.mailer.send(address, email.subject, email.body)

        logger.info("emails_handed_to_mailer", event_id=event.id, event_name=event.name.value, count=len(addresses))

    return listener


def init_email_channel(ctx: NotificationContext) -> Callable[[], Awaitable[None]]:
    """Subscribe the channel to the bus. Returns a coroutine function that unsubscribes it."""
    logger.info("email_channel_initialized", enabled=ctx.mailer.enabled)
    unsubscribers = [ctx.bus.on(route.event_name, _listener(ctx, route)) for route in EMAIL_ROUTES]

    async def stop() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()

    return stop
