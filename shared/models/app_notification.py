"""In-app notification model, one row per recipient user."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class AppNotification(Base):
    __tablename__ = "app_notifications"
    __table_args__ = (
        # Serves the last-notification lookups done by the periodic scans
        Index("ix_app_notifications_tenant_user_event", "tenant_id", "user_id", "event_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    tenant_id: Mapped[str] = mapped_column(String)  # group code
    user_id: Mapped[str] = mapped_column(String)

    # Event that produced the notification
    event_id: Mapped[str] = mapped_column(String)
    event_name: Mapped[str] = mapped_column(String)

    title: Mapped[str] = mapped_column(Text)
    body: Mapped[str] = mapped_column(Text)
    image: Mapped[str | None] = mapped_column(Text, default=None)
    data: Mapped[dict] = mapped_column(JSON, default=dict)  # {"route": ...}

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
