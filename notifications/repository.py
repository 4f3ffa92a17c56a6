"""Persistence of in-app notifications and push subscriptions."""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.models import AppNotification, PushSubscription

logger = structlog.get_logger()


class NotificationRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_notification(
        self,
        *,
        tenant_id: str,
        user_id: str,
        event_id: str,
        event_name: str,
        title: str,
        body: str,
        image: str | None = None,
        data: dict | None = None,
    ) -> AppNotification:
        notification = AppNotification(
            tenant_id=tenant_id,
            user_id=user_id,
            event_id=event_id,
            event_name=event_name,
            title=title,
            body=body,
            image=image,
            data=data or {},
        )
        async with self.session_factory() as session:
            session.add(notification)
            await session.commit()
        return notification

    async def find_last_notification(
        self, tenant_id: str, user_id: str, event_name: str | None = None
    ) -> datetime | None:
        """Timestamp of the most recent notification sent to a user."""
        query = select(func.max(AppNotification.created_at)).where(
            AppNotification.tenant_id == tenant_id,
            AppNotification.user_id == user_id,
        )
        if event_name:
            query = query.where(AppNotification.event_name == event_name)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def last_notification_by_user(
        self, tenant_id: str, event_name: str | None = None
    ) -> dict[str, datetime]:
        """Most recent notification timestamp per user of a tenant."""
        query = (
            select(AppNotification.user_id, func.max(AppNotification.created_at))
            .where(AppNotification.tenant_id == tenant_id)
            .group_by(AppNotification.user_id)
        )
        if event_name:
            query = query.where(AppNotification.event_name == event_name)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return {row[0]: row[1] for row in result.all() if row[1] is not None}

    async def get_push_subscriptions(self, tenant_id: str, user_id: str) -> list[PushSubscription]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PushSubscription).where(
                    PushSubscription.tenant_id == tenant_id,
                    PushSubscription.user_id == user_id,
                )
            )
            return list(result.scalars().all())

    async def get_push_subscription(self, subscription_id: uuid.UUID) -> PushSubscription | None:
        async with self.session_factory() as session:
            return await session.get(PushSubscription, subscription_id)

    async def delete_push_subscription(self, subscription_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(PushSubscription).where(PushSubscription.id == subscription_id)
            )
            await session.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info("push_subscription_deleted", subscription_id=str(subscription_id))
        return deleted
