"""Notification events as read from the stream.

Event payloads are decoded once, when the event is built, into the frozen
model registered for its name. Handlers and channels never look at raw
dictionaries.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, ValidationError

SYNTHETIC_SOURCE = "notifications-synthetic-events"


class EventName(str, Enum):
    TRANSFER_COMMITTED = "TransferCommitted"
    TRANSFER_PENDING = "TransferPending"
    TRANSFER_REJECTED = "TransferRejected"
    TRANSFER_STILL_PENDING = "TransferStillPending"

    OFFER_PUBLISHED = "OfferPublished"
    NEED_PUBLISHED = "NeedPublished"
    OFFER_EXPIRED = "OfferExpired"
    NEED_EXPIRED = "NeedExpired"
    POST_EXPIRES_SOON = "PostExpiresSoon"

    MEMBER_JOINED = "MemberJoined"
    MEMBER_REQUESTED = "MemberRequested"
    MEMBER_HAS_EXPIRED_POSTS = "MemberHasExpiredPosts"
    MEMBER_HAS_NO_POSTS = "MemberHasNoPosts"

    MEMBERS_JOINED_DIGEST = "MembersJoinedDigest"
    POSTS_PUBLISHED_DIGEST = "PostsPublishedDigest"

    GROUP_REQUESTED = "GroupRequested"
    GROUP_ACTIVATED = "GroupActivated"

    VALIDATION_EMAIL_REQUESTED = "ValidationEmailRequested"
    PASSWORD_RESET_REQUESTED = "PasswordResetRequested"


class EventCategory(str, Enum):
    TRANSFER = "transfer"
    POST = "post"
    MEMBER = "member"
    GROUP = "group"
    USER = "user"
    # Produced already enriched by the periodic scans, never handled
    DIGEST = "digest"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class TransferData(_Payload):
    transfer: str
    payer: str
    payee: str


class PostData(_Payload):
    offer: str | None = None
    need: str | None = None
    member: str | None = None

    @property
    def post_type(self) -> Literal["offers", "needs"]:
        return "offers" if self.offer else "needs"

    @property
    def post_id(self) -> str | None:
        return self.offer or self.need


class MemberData(_Payload):
    member: str


class GroupData(_Payload):
    pass


class UserData(_Payload):
    user: str


class DigestData(_Payload):
    pass


class EngagementData(_Payload):
    balance: float
    type: Literal["offers", "needs"]


EventData = Union[
    TransferData, PostData, MemberData, GroupData, UserData, EngagementData, DigestData
]

_TRANSFER = (EventCategory.TRANSFER, TransferData)
_POST = (EventCategory.POST, PostData)
_MEMBER = (EventCategory.MEMBER, MemberData)
_GROUP = (EventCategory.GROUP, GroupData)
_USER = (EventCategory.USER, UserData)

EVENT_TYPES: dict[EventName, tuple[EventCategory, type[_Payload]]] = {
    EventName.TRANSFER_COMMITTED: _TRANSFER,
    EventName.TRANSFER_PENDING: _TRANSFER,
    EventName.TRANSFER_REJECTED: _TRANSFER,
    EventName.TRANSFER_STILL_PENDING: _TRANSFER,
    EventName.OFFER_PUBLISHED: _POST,
    EventName.NEED_PUBLISHED: _POST,
    EventName.OFFER_EXPIRED: _POST,
    EventName.NEED_EXPIRED: _POST,
    EventName.POST_EXPIRES_SOON: _POST,
    EventName.MEMBER_JOINED: _MEMBER,
    EventName.MEMBER_REQUESTED: _MEMBER,
    EventName.MEMBER_HAS_EXPIRED_POSTS: _MEMBER,
    EventName.MEMBER_HAS_NO_POSTS: (EventCategory.DIGEST, EngagementData),
    EventName.MEMBERS_JOINED_DIGEST: (EventCategory.DIGEST, DigestData),
    EventName.POSTS_PUBLISHED_DIGEST: (EventCategory.DIGEST, DigestData),
    EventName.GROUP_REQUESTED: _GROUP,
    EventName.GROUP_ACTIVATED: _GROUP,
    EventName.VALIDATION_EMAIL_REQUESTED: _USER,
    EventName.PASSWORD_RESET_REQUESTED: _USER,
}


def event_category(name: EventName) -> EventCategory:
    return EVENT_TYPES[name][0]


def decode_event_data(name: EventName, raw: dict[str, Any]) -> EventData:
    """Validate a raw payload against the model registered for ``name``.

    Raises:
        ValueError: If the payload does not match.
    """
    model = EVENT_TYPES[name][1]
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid data for {name.value}: {e.errors(include_url=False)}") from e


class NotificationEvent(BaseModel):
    """An immutable domain event. ``id`` is the stream entry id."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: EventName
    source: str
    code: str
    time: datetime
    data: EventData
    user: str = ""

    @property
    def category(self) -> EventCategory:
        return event_category(self.name)

    @classmethod
    def create(
        cls,
        name: EventName,
        code: str,
        data: dict[str, Any],
        *,
        id: str,
        source: str,
        time: datetime,
        user: str = "",
    ) -> NotificationEvent:
        """Build an event, decoding ``data`` for ``name``."""
        return cls(
            id=id,
            name=name,
            source=source,
            code=code,
            time=time,
            data=decode_event_data(name, data),
            user=user,
        )


def synthetic_event_fields(name: EventName, code: str, user: str = "") -> dict[str, Any]:
    """Common fields of an event generated inside this service."""
    return {
        "id": f"synth-event-{uuid.uuid4().hex}",
        "name": name,
        "source": SYNTHETIC_SOURCE,
        "code": code,
        "time": datetime.now(timezone.utc),
        "user": user,
    }
