"""Plain notification messages built from enriched events.

A builder returns ``None`` when the event no longer warrants a notification
(e.g. a transfer that is not pending any more).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from notifications.enriched_events import (
    EnrichedDigestEvent,
    EnrichedMemberEvent,
    EnrichedMemberHasExpiredPostsEvent,
    EnrichedMemberHasNoPostsEvent,
    EnrichedPostEvent,
    EnrichedTransferEvent,
)
from notifications.events import EventName
from notifications.handlers.post import is_expiring_soon
from notifications.resources import Member, Post, UserWithSettings

EXCERPT_LENGTH = 40


@dataclass(frozen=True)
class Message:
    title: str
    body: str
    route: str
    image: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


Builder = Callable[[Any, datetime], Message | None]
Recipients = Callable[[Any], list[UserWithSettings]]


@dataclass(frozen=True)
class MessageRoute:
    """Who gets which message for an event name."""

    event_name: EventName
    recipients: Recipients
    build: Builder


def excerpt(text: str, length: int = EXCERPT_LENGTH) -> str:
    text = (text or "").strip()
    return text if len(text) <= length else text[: length - 1] + "…"


def _post_label(post_type: str) -> str:
    return "offer" if post_type == "offers" else "need"


def _time_ago(when: datetime, now: datetime) -> str:
    days = int((now - when).total_seconds() // 86400)
    if days < 30:
        return "today" if days == 0 else f"{days} day{'s' if days != 1 else ''} ago"
    if days < 365:
        months = max(1, days // 30)
        return f"{months} month{'s' if months != 1 else ''} ago"
    years = max(1, days // 365)
    return f"{years} year{'s' if years != 1 else ''} ago"


def _sorted_newest(posts: list[Post]) -> list[Post]:
    return sorted(posts, key=lambda p: p.created.timestamp() if p.created else 0, reverse=True)


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


def _transfer_route(event: EnrichedTransferEvent) -> str:
    return f"/groups/{event.code}/transactions/{event.transfer.id}"


def transfer_sent(event: EnrichedTransferEvent, now: datetime) -> Message:
    amount = event.currency.format_amount(event.transfer.amount)
    return Message(
        title="Transfer sent",
        body=f"You sent {amount} to {event.payee.member.name}.",
        image=event.payee.member.image,
        route=_transfer_route(event),
    )


def transfer_received(event: EnrichedTransferEvent, now: datetime) -> Message:
    amount = event.currency.format_amount(event.transfer.amount)
    return Message(
        title="Transfer received",
        body=f"You received {amount} from {event.payer.member.name}.",
        image=event.payer.member.image,
        route=_transfer_route(event),
    )


def transfer_pending(event: EnrichedTransferEvent, now: datetime) -> Message | None:
    if event.transfer.state != "pending":
        return None
    amount = event.currency.format_amount(event.transfer.amount)
    return Message(
        title="Transfer awaiting your approval",
        body=f"{event.payee.member.name} requests {amount} from you.",
        image=event.payee.member.image,
        route=_transfer_route(event),
        data={"transferId": event.transfer.id},
    )


def transfer_still_pending(event: EnrichedTransferEvent, now: datetime) -> Message | None:
    if event.transfer.state != "pending":
        return None
    amount = event.currency.format_amount(event.transfer.amount)
    return Message(
        title="Transfer still pending",
        body=f"The request of {amount} from {event.payee.member.name} is still waiting for you.",
        image=event.payee.member.image,
        route=_transfer_route(event),
        data={"transferId": event.transfer.id},
    )


def transfer_rejected(event: EnrichedTransferEvent, now: datetime) -> Message:
    amount = event.currency.format_amount(event.transfer.amount)
    return Message(
        title="Transfer rejected",
        body=f"{event.payer.member.name} rejected your request of {amount}.",
        image=event.payer.member.image,
        route=_transfer_route(event),
    )


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------


def _single_post(code: str, post: Post, member: Member | None, fallback_image: str | None) -> Message:
    name = member.name if member else ""
    return Message(
        title=f"New {_post_label(post.type)} from {name}".strip(),
        body=excerpt(post.title),
        image=(member.image if member else None) or fallback_image,
        route=f"/groups/{code}/{post.type}/{post.code}",
    )


def post_published(event: EnrichedPostEvent, now: datetime) -> Message:
    return _single_post(event.code, event.post, event.member, event.group.image)


def post_expired(event: EnrichedPostEvent, now: datetime) -> Message:
    label = _post_label(event.post_type)
    return Message(
        title=f"Your {label} has expired",
        body=f"Your {label} “{excerpt(event.post.title)}” is no longer visible. Extend it to show it again.",
        image=event.group.image,
        route=f"/groups/{event.code}/{event.post_type}/{event.post.code}/edit",
        data={"postId": event.post.id},
    )


def post_expires_soon(event: EnrichedPostEvent, now: datetime) -> Message | None:
    if not is_expiring_soon(event.post, now):
        return None
    hours = (event.post.expires - now).total_seconds() / 3600
    left = f"{int(hours)} hours" if hours <= 48 else f"{int(hours // 24)} days"
    label = _post_label(event.post_type)
    return Message(
        title=f"Your {label} expires in {left}",
        body=f"Extend your {label} “{excerpt(event.post.title)}” to keep it visible.",
        image=event.group.image,
        route=f"/groups/{event.code}/{event.post_type}/{event.post.code}/edit",
        data={"postId": event.post.id},
    )


def _featured_posts(posts: list[Post]) -> list[Post]:
    """Pick up to two posts, preferring variety of author and then of type."""
    first = posts[0]
    rest = posts[1:]
    other_member = [p for p in rest if p.member_id != first.member_id]
    other_type = [p for p in rest if p.type != first.type]
    both = [p for p in other_type if p in other_member]

    for candidates in (both, other_member, other_type, rest):
        if candidates:
            return [first, candidates[0]]
    return [first]


def posts_published_digest(event: EnrichedDigestEvent, now: datetime) -> Message | None:
    items = _sorted_newest([*event.offers, *event.needs])
    if not items:
        return None

    members = {m.id: m for m in event.members}
    if len(items) == 1:
        return _single_post(event.code, items[0], members.get(items[0].member_id), event.group.image)

    featured = _featured_posts(items)
    featured_member_ids = list(dict.fromkeys(p.member_id for p in featured))
    names = [members[mid].name for mid in featured_member_ids if mid in members]
    extra_members = len(members) - len(featured_member_ids)
    if extra_members > 0:
        names.append(f"{extra_members} more")

    lines = [f"• {_post_label(p.type).capitalize()} · {excerpt(p.title)}" for p in featured]
    extra_posts = len(items) - len(featured)
    if extra_posts > 0:
        lines.append(f"• and {extra_posts} more")

    first_member = members.get(featured_member_ids[0])
    return Message(
        title=f"New posts from {', '.join(names)}",
        body="\n".join(lines),
        image=(first_member.image if first_member else None) or event.group.image,
        route="/home",
    )


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def member_joined(event: EnrichedMemberEvent, now: datetime) -> Message:
    return Message(
        title=f"Welcome to {event.group.name}",
        body="Your account is ready. Publish your first offer or need.",
        image=event.group.image,
        route=f"/groups/{event.code}/members/{event.member.code}",
    )


def member_has_expired_posts(event: EnrichedMemberHasExpiredPostsEvent, now: datetime) -> Message | None:
    offers = [p for p in event.expired_offers if p.expires and p.expires <= now]
    needs = [p for p in event.expired_needs if p.expires and p.expires <= now]
    if not offers and not needs:
        return None

    # The most recently expired post is the featured one
    featured = max([*offers, *needs], key=lambda p: p.expires)
    remaining_offers = len(offers) - (1 if featured.type == "offers" else 0)
    remaining_needs = len(needs) - (1 if featured.type == "needs" else 0)

    label = _post_label(featured.type)
    ago = _time_ago(featured.expires, now)
    more = remaining_offers + remaining_needs
    title = f"Your {label} expired {ago}"
    if more:
        title += f" (and {more} more)"

    counts = []
    if remaining_offers:
        counts.append(f"{remaining_offers} expired offer{'s' if remaining_offers != 1 else ''}")
    if remaining_needs:
        counts.append(f"{remaining_needs} expired need{'s' if remaining_needs != 1 else ''}")
    body = f"“{excerpt(featured.title)}” expired {ago}."
    if counts:
        body += f" You also have {' and '.join(counts)}."

    return Message(
        title=title,
        body=body,
        image=event.group.image,
        route=f"/groups/{event.code}/{featured.type}/{featured.code}/edit",
        data={
            "postId": featured.id,
            "expiredOffers": remaining_offers,
            "expiredNeeds": remaining_needs,
        },
    )


def members_joined_digest(event: EnrichedDigestEvent, now: datetime) -> Message | None:
    members = event.members
    if not members:
        return None
    by_id = {m.id: m for m in members}

    featured: list[tuple[Member, str, bool]] = []

    def feature(member_id: str | None, text: str, is_post: bool) -> None:
        member = by_id.get(member_id)
        if len(featured) >= 2 or member is None or not text:
            return
        if len(members) > 1 and any(m.id == member.id for m, _, _ in featured):
            return
        featured.append((member, text, is_post))

    for post in [*_sorted_newest(event.offers), *_sorted_newest(event.needs)]:
        feature(post.member_id, f"{_post_label(post.type).capitalize()} · {excerpt(post.title)}", True)
    for member in members:
        feature(member.id, excerpt(member.description, 50), False)

    featured_members = list(dict.fromkeys(m.id for m, _, _ in featured))
    names = [
        f"{by_id[mid].name} from {by_id[mid].city}" if by_id[mid].city else by_id[mid].name
        for mid in featured_members
    ] or [members[0].name]
    extra_members = len(members) - len(names)
    if extra_members > 0:
        names.append(f"{extra_members} more")

    lines = [text for _, text, _ in featured]
    featured_posts = sum(1 for _, _, is_post in featured if is_post)
    extra_posts = len(event.offers) + len(event.needs) - featured_posts
    if extra_posts > 0:
        lines.append(f"and {extra_posts} more posts")
    if not lines:
        lines.append("Check out their profiles.")

    single = len(members) == 1
    return Message(
        title=(
            f"{names[0]} joined {event.group.name}"
            if single
            else f"{', '.join(names)} joined {event.group.name}"
        ),
        body="\n".join(lines),
        image=(members[0].image if single else None) or event.group.image,
        route=f"/groups/{event.code}/members/{members[0].code}" if single else "/home",
    )


def member_has_no_posts(event: EnrichedMemberHasNoPostsEvent, now: datetime) -> Message:
    if event.data.type == "offers":
        title = "What can you offer?"
        body = "Publish an offer so other members know how they can trade with you."
        route = f"/groups/{event.code}/offers/new"
    else:
        title = "What do you need?"
        body = "You have a positive balance. Publish a need and spend it in your community."
        route = f"/groups/{event.code}/needs/new"
    return Message(title=title, body=body, image=event.group.image, route=route)


# ---------------------------------------------------------------------------
# Routing table shared by the in-app and push channels
# ---------------------------------------------------------------------------


def _users(event) -> list[UserWithSettings]:
    return event.users


def _payer_users(event: EnrichedTransferEvent) -> list[UserWithSettings]:
    return event.payer.users


def _payee_users(event: EnrichedTransferEvent) -> list[UserWithSettings]:
    return event.payee.users


MESSAGE_ROUTES: list[MessageRoute] = [
    MessageRoute(EventName.TRANSFER_COMMITTED, _payer_users, transfer_sent),
    MessageRoute(EventName.TRANSFER_COMMITTED, _payee_users, transfer_received),
    MessageRoute(EventName.TRANSFER_PENDING, _payer_users, transfer_pending),
    MessageRoute(EventName.TRANSFER_REJECTED, _payee_users, transfer_rejected),
    MessageRoute(EventName.TRANSFER_STILL_PENDING, _payer_users, transfer_still_pending),
    MessageRoute(EventName.OFFER_PUBLISHED, _users, post_published),
    MessageRoute(EventName.NEED_PUBLISHED, _users, post_published),
    MessageRoute(EventName.OFFER_EXPIRED, _users, post_expired),
    MessageRoute(EventName.NEED_EXPIRED, _users, post_expired),
    MessageRoute(EventName.POST_EXPIRES_SOON, _users, post_expires_soon),
    MessageRoute(EventName.POSTS_PUBLISHED_DIGEST, _users, posts_published_digest),
    MessageRoute(EventName.MEMBER_JOINED, _users, member_joined),
    MessageRoute(EventName.MEMBER_HAS_EXPIRED_POSTS, _users, member_has_expired_posts),
    MessageRoute(EventName.MEMBERS_JOINED_DIGEST, _users, members_joined_digest),
    MessageRoute(EventName.MEMBER_HAS_NO_POSTS, _users, member_has_no_posts),
]
