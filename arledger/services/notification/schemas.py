"""Enqueue request and read model for alert queue rows."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from arledger.common.dates import ensure_utc
from arledger.common.domain import AlertStatus, AlertType, TargetType


class DeliveryAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform: str = Field(min_length=1)
    address: str = Field(min_length=1)


class EnqueueAlertRequest(BaseModel):
    """Intent to notify one recipient about one AR.

    `priority` defaults from `alert_type`; `scheduled_for` defaults to now.
    """

    ar_id: str = Field(min_length=1)
    alert_type: AlertType
    target_type: TargetType
    delivery: DeliveryAddress
    message_template: str = Field(min_length=1)
    message_data: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None
    scheduled_for: datetime | None = None
    dedup_key: str | None = Field(default=None, min_length=1)
    triggered_by_event_id: str | None = None


class AlertView(BaseModel):
    alert_id: str
    ar_id: str
    dedup_key: str | None
    alert_type: AlertType
    target_type: TargetType
    priority: int
    delivery: DeliveryAddress
    message_template: str
    message_data: dict[str, Any]
    status: AlertStatus
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    sent_at: datetime | None = None
    failed_at: datetime | None = None
    error: str | None = None
    triggered_by_event_id: str | None = None

    @classmethod
    def from_record(cls, row) -> "AlertView":
        return cls(
            alert_id=row.alert_id,
            ar_id=row.ar_id,
            dedup_key=row.dedup_key,
            alert_type=AlertType(row.alert_type),
            target_type=TargetType(row.target_type),
            priority=row.priority,
            delivery=DeliveryAddress(platform=row.delivery_platform, address=row.delivery_address),
            message_template=row.message_template,
            message_data=dict(row.message_data or {}),
            status=AlertStatus(row.status),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            scheduled_for=ensure_utc(row.scheduled_for),
            sent_at=ensure_utc(row.sent_at) if row.sent_at else None,
            failed_at=ensure_utc(row.failed_at) if row.failed_at else None,
            error=row.error,
            triggered_by_event_id=row.triggered_by_event_id,
        )


class EnqueueResult(BaseModel):
    alert_id: str
    # False when an existing intent with the same dedup key absorbed the call.
    created: bool
