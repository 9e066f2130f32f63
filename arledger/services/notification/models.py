"""Notification queue persistence model."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from arledger.common.db import Base, JSONType


class AlertRecord(Base):
    """One notification intent and its delivery state."""

    __tablename__ = "alert_queue"
    __table_args__ = (Index("ix_alert_queue_status_scheduled_for", "status", "scheduled_for"),)

    alert_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    ar_id: Mapped[str] = mapped_column(String, index=True)
    # NULL keys never collide, so callers opt in to deduplication.
    dedup_key: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    alert_type: Mapped[str] = mapped_column(String)
    target_type: Mapped[str] = mapped_column(String)
    priority: Mapped[int] = mapped_column(Integer)
    delivery_platform: Mapped[str] = mapped_column(String)
    delivery_address: Mapped[str] = mapped_column(String)
    message_template: Mapped[str] = mapped_column(Text)
    message_data: Mapped[dict] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, default="QUEUED")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    triggered_by_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
