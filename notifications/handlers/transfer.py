"""Enrichment of transfer events."""

from __future__ import annotations

import asyncio

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import EnrichedTransferEvent, TransferParty, enrich
from notifications.errors import EnrichmentError
from notifications.events import NotificationEvent, TransferData

logger = structlog.get_logger()


async def handle_transfer_event(ctx: NotificationContext, event: NotificationEvent) -> None:
    data: TransferData = event.data
    client = ctx.client

    transfer, payer_account, payee_account = await client.get_transfer_with_accounts(
        event.code, data.transfer
    )

    members = await client.get_members_by_account(event.code, [payer_account.id, payee_account.id])
    payer_member = next((m for m in members if m.account_id == payer_account.id), None)
    payee_member = next((m for m in members if m.account_id == payee_account.id), None)
    if payer_member is None or payee_member is None:
        raise EnrichmentError(f"Missing payer or payee member for transfer {transfer.id}")

    payer_users, payee_users, group, currency = await asyncio.gather(
        client.get_member_users(payer_member.id),
        client.get_member_users(payee_member.id),
        client.get_group(event.code),
        client.get_currency(event.code),
    )

    enriched = enrich(
        event,
        EnrichedTransferEvent,
        group=group,
        currency=currency,
        transfer=transfer,
        payer=TransferParty(account=payer_account, member=payer_member, users=payer_users),
        payee=TransferParty(account=payee_account, member=payee_member, users=payee_users),
    )
    logger.debug("transfer_event_enriched", event_id=event.id, transfer_id=transfer.id)
    await ctx.bus.emit(enriched)
