"""Tests for event enrichment handlers."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from notifications.enriched_events import (
    EnrichedGroupEvent,
    EnrichedMemberHasExpiredPostsEvent,
    EnrichedMemberRequestedEvent,
    EnrichedPostEvent,
    EnrichedTransferEvent,
    EnrichedUserEvent,
)
from notifications.errors import EnrichmentError
from notifications.events import EventName, NotificationEvent
from notifications.handlers import HANDLERS, dispatch_event
from notifications.handlers.post import is_expiring_soon, is_post_urgent
from notifications.resources import MemberWithUsers, Transfer, UserSettings


def _event(name, data, now, code="GRP0"):
    return NotificationEvent.create(name, code, data, id="1-0", source="test", time=now)


def _transfer(state="committed"):
    return Transfer(
        id="t1",
        type="transfers",
        attributes={"amount": 25000, "state": state, "meta": "Bread"},
        relationships={
            "payer": {"data": {"type": "accounts", "id": "account-payer"}},
            "payee": {"data": {"type": "accounts", "id": "account-payee"}},
        },
    )


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


class TestTransferHandler:
    @pytest.mark.asyncio
    async def test_resolves_both_parties(
        self, ctx, now, emitted, make_account, make_member, make_user, make_group, make_currency
    ):
        payer = make_member("payer", account_id="account-payer")
        payee = make_member("payee", account_id="account-payee")
        ctx.client.get_transfer_with_accounts.return_value = (
            _transfer(),
            make_account("account-payer"),
            make_account("account-payee"),
        )
        ctx.client.get_members_by_account.return_value = [payee, payer]
        ctx.client.get_member_users.side_effect = lambda member_id: [make_user(f"u-{member_id}", (member_id,))]
        ctx.client.get_group.return_value = make_group()
        ctx.client.get_currency.return_value = make_currency()

        event = _event(EventName.TRANSFER_COMMITTED, {"transfer": "t1", "payer": "account-payer", "payee": "account-payee"}, now)
        await dispatch_event(ctx, event)

        [enriched] = emitted
        assert isinstance(enriched, EnrichedTransferEvent)
        assert enriched.id == "1-0"
        assert enriched.payer.member.id == "payer"
        assert enriched.payee.member.id == "payee"
        assert [u.user.id for u in enriched.payer.users] == ["u-payer"]
        assert [u.user.id for u in enriched.payee.users] == ["u-payee"]

    @pytest.mark.asyncio
    async def test_missing_member_fails_enrichment(self, ctx, now, emitted, make_account, make_member):
        ctx.client.get_transfer_with_accounts.return_value = (
            _transfer(),
            make_account("account-payer"),
            make_account("account-payee"),
        )
        ctx.client.get_members_by_account.return_value = [make_member("payer", account_id="account-payer")]

        event = _event(EventName.TRANSFER_COMMITTED, {"transfer": "t1", "payer": "a", "payee": "b"}, now)
        with pytest.raises(EnrichmentError):
            await dispatch_event(ctx, event)
        assert emitted == []


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------


class TestPostRules:
    def test_short_lived_post_is_urgent(self, make_post, now):
        assert is_post_urgent(make_post(created=now, expires=now + timedelta(days=3)))
        assert not is_post_urgent(make_post(created=now, expires=now + timedelta(days=30)))
        assert not is_post_urgent(make_post(created=now, expires=None))

    def test_expiring_soon_window(self, make_post, now):
        assert is_expiring_soon(make_post(expires=now + timedelta(days=2)), now)
        assert not is_expiring_soon(make_post(expires=now + timedelta(days=8)), now)
        assert not is_expiring_soon(make_post(expires=now - timedelta(hours=1)), now)


class TestPostHandler:
    @pytest.mark.asyncio
    async def test_regular_post_goes_to_author_users(self, ctx, now, emitted, make_post, make_member, make_user, make_group):
        post = make_post("o1", created=now, expires=now + timedelta(days=60))
        ctx.client.get_post_with_member.return_value = (post, make_member("member-1"))
        ctx.client.get_group.return_value = make_group()
        ctx.client.get_member_users.return_value = [make_user("author", ("member-1",))]

        await dispatch_event(ctx, _event(EventName.OFFER_PUBLISHED, {"offer": "o1"}, now))

        [enriched] = emitted
        assert isinstance(enriched, EnrichedPostEvent)
        assert enriched.post_type == "offers"
        assert [u.user.id for u in enriched.users] == ["author"]
        ctx.client.get_post_with_member.assert_awaited_once_with("GRP0", "offers", "o1")

    @pytest.mark.asyncio
    async def test_urgent_post_goes_to_every_group_user_once(
        self, ctx, now, emitted, make_post, make_member, make_user, make_group
    ):
        post = make_post("n1", "needs", created=now, expires=now + timedelta(days=2))
        ctx.client.get_post_with_member.return_value = (post, make_member("member-1"))
        ctx.client.get_group.return_value = make_group()
        shared_user = make_user("shared", ("member-1", "member-2"))
        ctx.resources.group_members_with_users.return_value = [
            MemberWithUsers(member=make_member("member-1"), users=[shared_user]),
            MemberWithUsers(member=make_member("member-2"), users=[shared_user, make_user("other", ("member-2",))]),
        ]

        await dispatch_event(ctx, _event(EventName.NEED_PUBLISHED, {"need": "n1"}, now))

        [enriched] = emitted
        assert sorted(u.user.id for u in enriched.users) == ["other", "shared"]
        ctx.client.get_member_users.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expires_soon_is_dropped_for_extended_post(self, ctx, now, emitted, make_post, make_member):
        post = make_post("o1", expires=now + timedelta(days=90))
        ctx.client.get_post_with_member.return_value = (post, make_member("member-1"))

        await dispatch_event(ctx, _event(EventName.POST_EXPIRES_SOON, {"offer": "o1"}, now))

        assert emitted == []
        ctx.client.get_group.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_event_without_post_id_fails(self, ctx, now):
        with pytest.raises(EnrichmentError):
            await dispatch_event(ctx, _event(EventName.OFFER_EXPIRED, {}, now))


# ---------------------------------------------------------------------------
# Members, groups and users
# ---------------------------------------------------------------------------


class TestMemberHandler:
    @pytest.mark.asyncio
    async def test_member_requested_includes_admins(self, ctx, now, emitted, make_member, make_user, make_group):
        ctx.client.get_member.return_value = make_member("member-1")
        ctx.client.get_member_users.return_value = [make_user("u1", ("member-1",))]
        ctx.client.get_group.return_value = make_group(admin_ids=("admin-1", "admin-2"))
        ctx.client.get_user_with_settings.side_effect = lambda uid: make_user(uid)

        await dispatch_event(ctx, _event(EventName.MEMBER_REQUESTED, {"member": "member-1"}, now))

        [enriched] = emitted
        assert isinstance(enriched, EnrichedMemberRequestedEvent)
        assert [u.user.id for u in enriched.admin_users] == ["admin-1", "admin-2"]

    @pytest.mark.asyncio
    async def test_expired_posts_are_fetched_for_the_member(
        self, ctx, now, emitted, make_member, make_post, make_group
    ):
        ctx.client.get_member.return_value = make_member("member-1")
        ctx.client.get_member_users.return_value = []
        ctx.client.get_group.return_value = make_group()
        ctx.client.get_offers.return_value = [make_post("o1", expires=now - timedelta(days=3))]
        ctx.client.get_needs.return_value = []

        await dispatch_event(ctx, _event(EventName.MEMBER_HAS_EXPIRED_POSTS, {"member": "member-1"}, now))

        [enriched] = emitted
        assert isinstance(enriched, EnrichedMemberHasExpiredPostsEvent)
        assert [p.id for p in enriched.expired_offers] == ["o1"]
        ctx.client.get_offers.assert_awaited_once_with(
            "GRP0", {"filter[member]": "member-1", "filter[expired]": "true"}
        )


class TestGroupHandler:
    @pytest.mark.asyncio
    async def test_group_event_resolves_admins(self, ctx, now, emitted, make_group, make_user):
        ctx.client.get_group.return_value = make_group(admin_ids=("admin-1",))
        ctx.client.get_user_with_settings.return_value = make_user("admin-1")

        await dispatch_event(ctx, _event(EventName.GROUP_ACTIVATED, {}, now))

        [enriched] = emitted
        assert isinstance(enriched, EnrichedGroupEvent)
        assert [u.user.id for u in enriched.admin_users] == ["admin-1"]


class TestUserHandler:
    @pytest.mark.asyncio
    async def test_user_event_carries_auth_code_and_group(self, ctx, now, emitted, make_user, make_group):
        target = make_user("u1")
        ctx.client.get_user.return_value = target.user
        ctx.client.get_user_settings.return_value = UserSettings(id="s1", attributes={"language": "ca"})
        ctx.client.get_auth_code.return_value = "one-time-code"
        ctx.resources.group.return_value = make_group()

        await dispatch_event(ctx, _event(EventName.PASSWORD_RESET_REQUESTED, {"user": "u1"}, now))

        [enriched] = emitted
        assert isinstance(enriched, EnrichedUserEvent)
        assert enriched.token == "one-time-code"
        assert enriched.target.settings.language == "ca"
        assert enriched.group is not None

    @pytest.mark.asyncio
    async def test_user_event_without_group(self, ctx, now, emitted, make_user):
        ctx.client.get_user.return_value = make_user("u1").user
        ctx.client.get_user_settings.return_value = UserSettings(id="s1")
        ctx.client.get_auth_code.return_value = "code"

        await dispatch_event(ctx, _event(EventName.VALIDATION_EMAIL_REQUESTED, {"user": "u1"}, now, code=""))

        [enriched] = emitted
        assert enriched.group is None
        ctx.resources.group.assert_not_awaited()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_digest_events_have_no_handler(self, ctx, now, emitted):
        event = _event(EventName.POSTS_PUBLISHED_DIGEST, {}, now)
        await dispatch_event(ctx, event)
        assert emitted == []

    def test_every_other_category_has_a_handler(self):
        assert len(HANDLERS) == 5

    @pytest.mark.asyncio
    async def test_handler_errors_propagate(self, ctx, now):
        ctx.client.get_group = AsyncMock(side_effect=RuntimeError("social down"))
        with pytest.raises(RuntimeError):
            await dispatch_event(ctx, _event(EventName.GROUP_REQUESTED, {}, now))
