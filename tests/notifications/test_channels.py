"""Tests for the in-app and push channels."""

from __future__ import annotations

import json
import uuid
from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException

from notifications.channels.app import init_app_channel
from notifications.channels.push import SEND_PUSH_JOB, init_push_channel, process_push_job
from notifications.enriched_events import EnrichedTransferEvent, TransferParty
from notifications.events import EventName, TransferData
from notifications.resources import Transfer
from shared.job_queue import Job
from shared.models.push_subscription import PushSubscription


@pytest.fixture
def transfer_event(now, make_group, make_currency, make_account, make_member, make_user):
    def _make(name=EventName.TRANSFER_COMMITTED, state="committed"):
        return EnrichedTransferEvent(
            id="1-0",
            name=name,
            source="accounting",
            code="GRP0",
            time=now,
            data=TransferData(transfer="t1", payer="a1", payee="a2"),
            group=make_group(),
            currency=make_currency(),
            transfer=Transfer(id="t1", attributes={"amount": 10000, "state": state}),
            payer=TransferParty(account=make_account("a1"), member=make_member("alice"), users=[make_user("u-alice")]),
            payee=TransferParty(account=make_account("a2"), member=make_member("bob"), users=[make_user("u-bob")]),
        )

    return _make


def _subscription(endpoint="https://push.example/abc") -> PushSubscription:
    return PushSubscription(
        id=uuid.uuid4(), tenant_id="GRP0", user_id="u-alice", endpoint=endpoint, p256dh="key", auth="auth"
    )


# ---------------------------------------------------------------------------
# In-app channel
# ---------------------------------------------------------------------------


class TestAppChannel:
    @pytest.mark.asyncio
    async def test_stores_one_notification_per_recipient(self, ctx, transfer_event):
        stop = init_app_channel(ctx)

        await ctx.bus.emit(transfer_event())

        calls = ctx.repository.create_notification.await_args_list
        assert sorted(c.kwargs["user_id"] for c in calls) == ["u-alice", "u-bob"]
        sent = next(c.kwargs for c in calls if c.kwargs["user_id"] == "u-alice")
        assert sent["tenant_id"] == "GRP0"
        assert sent["event_id"] == "1-0"
        assert sent["event_name"] == "TransferCommitted"
        assert sent["title"] == "Transfer sent"
        assert sent["data"]["route"] == "/groups/GRP0/transactions/t1"
        await stop()

    @pytest.mark.asyncio
    async def test_skipped_message_stores_nothing(self, ctx, transfer_event):
        init_app_channel(ctx)

        await ctx.bus.emit(transfer_event(EventName.TRANSFER_PENDING, state="committed"))

        ctx.repository.create_notification.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, ctx):
        stop = init_app_channel(ctx)
        assert ctx.bus.listener_count(EventName.TRANSFER_COMMITTED) == 2

        await stop()

        assert ctx.bus.listener_count(EventName.TRANSFER_COMMITTED) == 0


# ---------------------------------------------------------------------------
# Push channel
# ---------------------------------------------------------------------------


class TestPushListener:
    @pytest.mark.asyncio
    async def test_queues_one_job_per_subscription(self, ctx, transfer_event):
        subscription = _subscription()
        ctx.repository.get_push_subscriptions.side_effect = (
            lambda tenant, user_id: [subscription] if user_id == "u-alice" else []
        )
        stop = init_push_channel(ctx)
        try:
            await ctx.bus.emit(transfer_event())
        finally:
            await stop()

        [job] = ctx.push_queue.jobs.values()
        assert job.name == SEND_PUSH_JOB
        assert job.attempts == ctx.settings.push_max_attempts
        assert job.backoff_seconds == ctx.settings.push_backoff_seconds
        assert job.data["subscription_id"] == str(subscription.id)
        assert job.data["payload"]["title"] == "Transfer sent"
        assert job.data["payload"]["data"]["url"] == "/groups/GRP0/transactions/t1"


def _push_job(ctx, subscription) -> Job:
    return Job(
        queue=ctx.push_queue,
        id="push-1",
        name=SEND_PUSH_JOB,
        data={"subscription_id": str(subscription.id), "payload": {"title": "Hi", "body": "There"}},
        token="tok",
    )


@pytest.fixture
def webpush():
    with patch("notifications.channels.push.webpush") as send:
        yield send


def _push_error(status: int) -> WebPushException:
    return WebPushException(f"Push failed: {status}", response=MagicMock(status_code=status))


class TestProcessPushJob:
    @pytest.mark.asyncio
    async def test_sends_encrypted_payload_with_vapid_claims(self, ctx, webpush):
        ctx.settings.vapid_private_key = "vapid-key"
        ctx.settings.vapid_subject = "mailto:ops@example.com"
        subscription = _subscription()
        ctx.repository.get_push_subscription.return_value = subscription

        await process_push_job(ctx, _push_job(ctx, subscription))

        kwargs = webpush.call_args.kwargs
        assert kwargs["subscription_info"] == {
            "endpoint": subscription.endpoint,
            "keys": {"p256dh": "key", "auth": "auth"},
        }
        assert json.loads(kwargs["data"]) == {"title": "Hi", "body": "There"}
        assert kwargs["vapid_private_key"] == "vapid-key"
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
        ctx.repository.delete_push_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_claims_are_not_shared_between_sends(self, ctx, webpush):
        subscription = _subscription()
        ctx.repository.get_push_subscription.return_value = subscription
        webpush.side_effect = lambda **kwargs: kwargs["vapid_claims"].update(aud="https://push.example")

        await process_push_job(ctx, _push_job(ctx, subscription))
        await process_push_job(ctx, _push_job(ctx, subscription))

        first, second = (c.kwargs["vapid_claims"] for c in webpush.call_args_list)
        assert first is not second
        assert second == {"sub": ctx.settings.vapid_subject, "aud": "https://push.example"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 410])
    async def test_gone_subscription_is_deleted_without_retry(self, ctx, webpush, status):
        subscription = _subscription()
        ctx.repository.get_push_subscription.return_value = subscription
        webpush.side_effect = _push_error(status)

        await process_push_job(ctx, _push_job(ctx, subscription))

        ctx.repository.delete_push_subscription.assert_awaited_once_with(subscription.id)

    @pytest.mark.asyncio
    async def test_server_error_raises_for_retry(self, ctx, webpush):
        subscription = _subscription()
        ctx.repository.get_push_subscription.return_value = subscription
        webpush.side_effect = _push_error(503)

        with pytest.raises(RuntimeError, match="503"):
            await process_push_job(ctx, _push_job(ctx, subscription))

        ctx.repository.delete_push_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_error_raises_for_retry(self, ctx, webpush):
        subscription = _subscription()
        ctx.repository.get_push_subscription.return_value = subscription
        webpush.side_effect = ConnectionError("refused")

        with pytest.raises(ConnectionError):
            await process_push_job(ctx, _push_job(ctx, subscription))

    @pytest.mark.asyncio
    async def test_deleted_subscription_is_ignored(self, ctx, webpush):
        subscription = _subscription()
        ctx.repository.get_push_subscription.return_value = None

        await process_push_job(ctx, _push_job(ctx, subscription))

        webpush.assert_not_called()
