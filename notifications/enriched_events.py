"""Events together with the entities every channel needs to render them.

Each model extends ``NotificationEvent`` and is frozen, so one instance can be
shared by all bus subscribers.
"""

from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from notifications.events import NotificationEvent
from notifications.resources import (
    Account,
    Currency,
    Group,
    Member,
    Post,
    Transfer,
    UserWithSettings,
)


class TransferParty(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: Account
    member: Member
    users: list[UserWithSettings]


class EnrichedTransferEvent(NotificationEvent):
    group: Group
    currency: Currency
    transfer: Transfer
    payer: TransferParty
    payee: TransferParty


class EnrichedPostEvent(NotificationEvent):
    group: Group
    post: Post
    member: Member
    users: list[UserWithSettings]

    @property
    def post_type(self) -> Literal["offers", "needs"]:
        return self.post.type


class EnrichedMemberEvent(NotificationEvent):
    group: Group
    member: Member
    users: list[UserWithSettings]


class EnrichedMemberRequestedEvent(EnrichedMemberEvent):
    admin_users: list[UserWithSettings] = Field(default_factory=list)


class EnrichedMemberHasExpiredPostsEvent(EnrichedMemberEvent):
    expired_offers: list[Post] = Field(default_factory=list)
    expired_needs: list[Post] = Field(default_factory=list)


class EnrichedGroupEvent(NotificationEvent):
    group: Group
    admin_users: list[UserWithSettings]


class EnrichedDigestEvent(NotificationEvent):
    """PostsPublishedDigest or MembersJoinedDigest for a single user."""

    group: Group
    members: list[Member]
    users: list[UserWithSettings]
    offers: list[Post]
    needs: list[Post]


class EnrichedMemberHasNoPostsEvent(NotificationEvent):
    group: Group
    member: Member
    currency: Currency
    users: list[UserWithSettings]


class EnrichedUserEvent(NotificationEvent):
    target: UserWithSettings
    token: str
    # Not every user event belongs to a group (e.g. validating the e-mail of a new group admin)
    group: Group | None = None


EnrichedEvent = Union[
    EnrichedTransferEvent,
    EnrichedPostEvent,
    EnrichedMemberEvent,
    EnrichedGroupEvent,
    EnrichedDigestEvent,
    EnrichedMemberHasNoPostsEvent,
    EnrichedUserEvent,
]


def enrich(event: NotificationEvent, model: type[NotificationEvent], **entities) -> NotificationEvent:
    """Build ``model`` from the fields of ``event`` plus the resolved entities."""
    return model(**dict(event), **entities)
