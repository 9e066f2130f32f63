"""Domain event envelope and the closed set of event kinds.

Every event carries the same envelope fields plus a payload model chosen by
`event_type`. Rows with a kind this build does not know are loaded as
`UnknownEvent` so older readers keep working against newer logs.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from arledger.common.domain import SYSTEM_ACTOR, Actor, AlertType, ArStatus, Money, TargetType


SCHEMA_VERSION = 1


class EventType(str, Enum):
    AR_CREATED = "AR_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    FOLLOW_UP_LOGGED = "FOLLOW_UP_LOGGED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    DUE_DATE_CHANGED = "DUE_DATE_CHANGED"
    ALERT_QUEUED = "ALERT_QUEUED"
    ALERT_SENT = "ALERT_SENT"
    ALERT_FAILED = "ALERT_FAILED"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class ArCreatedPayload(_Payload):
    home_id: str
    zone: str
    customer_name: str
    amount: Money
    invoice_date: date
    due_date: date
    assigned_sales_id: str | None = None
    customer_chat_id: str | None = None
    manager_chat_id: str | None = None


class StatusChangedPayload(_Payload):
    old_status: ArStatus
    new_status: ArStatus
    reason: str


class FollowUpLoggedPayload(_Payload):
    notes: str
    next_action: str | None = None
    next_action_date: date | None = None


class PaymentVerifiedPayload(_Payload):
    paid_amount: Money
    payment_date: date
    verification_method: str
    verified_by: str


class DueDateChangedPayload(_Payload):
    old_due_date: date
    new_due_date: date
    reason: str


class AlertQueuedPayload(_Payload):
    alert_id: str
    alert_type: AlertType
    target_type: TargetType
    priority: int
    scheduled_for: datetime
    dedup_key: str | None = None


class AlertSentPayload(_Payload):
    alert_id: str
    sent_at: datetime
    delivery_platform: str
    delivery_id: str | None = None
    attempts: int


class AlertFailedPayload(_Payload):
    alert_id: str
    failed_at: datetime
    error: str
    attempts: int
    # None when the failure was terminal.
    retry_at: datetime | None = None


class ArEvent(BaseModel):
    """Immutable fact about one AR."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    ar_id: str
    event_type: str
    timestamp: datetime
    actor: Actor = SYSTEM_ACTOR
    schema_version: int = SCHEMA_VERSION
    payload: Any = None

    def payload_json(self) -> dict[str, Any]:
        if isinstance(self.payload, BaseModel):
            return self.payload.model_dump(mode="json")
        return dict(self.payload or {})


class ArCreated(ArEvent):
    event_type: Literal[EventType.AR_CREATED] = EventType.AR_CREATED
    payload: ArCreatedPayload


class StatusChanged(ArEvent):
    event_type: Literal[EventType.STATUS_CHANGED] = EventType.STATUS_CHANGED
    payload: StatusChangedPayload


class FollowUpLogged(ArEvent):
    event_type: Literal[EventType.FOLLOW_UP_LOGGED] = EventType.FOLLOW_UP_LOGGED
    payload: FollowUpLoggedPayload


class PaymentVerified(ArEvent):
    event_type: Literal[EventType.PAYMENT_VERIFIED] = EventType.PAYMENT_VERIFIED
    payload: PaymentVerifiedPayload


class DueDateChanged(ArEvent):
    event_type: Literal[EventType.DUE_DATE_CHANGED] = EventType.DUE_DATE_CHANGED
    payload: DueDateChangedPayload


class AlertQueued(ArEvent):
    event_type: Literal[EventType.ALERT_QUEUED] = EventType.ALERT_QUEUED
    payload: AlertQueuedPayload


class AlertSent(ArEvent):
    event_type: Literal[EventType.ALERT_SENT] = EventType.ALERT_SENT
    payload: AlertSentPayload


class AlertFailed(ArEvent):
    event_type: Literal[EventType.ALERT_FAILED] = EventType.ALERT_FAILED
    payload: AlertFailedPayload


class UnknownEvent(ArEvent):
    """Event kind written by a newer build; payload kept as raw JSON."""

    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)


DomainEvent = Union[
    ArCreated,
    StatusChanged,
    FollowUpLogged,
    PaymentVerified,
    DueDateChanged,
    AlertQueued,
    AlertSent,
    AlertFailed,
    UnknownEvent,
]

EVENT_MODELS: dict[str, type[ArEvent]] = {
    EventType.AR_CREATED.value: ArCreated,
    EventType.STATUS_CHANGED.value: StatusChanged,
    EventType.FOLLOW_UP_LOGGED.value: FollowUpLogged,
    EventType.PAYMENT_VERIFIED.value: PaymentVerified,
    EventType.DUE_DATE_CHANGED.value: DueDateChanged,
    EventType.ALERT_QUEUED.value: AlertQueued,
    EventType.ALERT_SENT.value: AlertSent,
    EventType.ALERT_FAILED.value: AlertFailed,
}


def event_type_name(event: ArEvent) -> str:
    kind = event.event_type
    return kind.value if isinstance(kind, Enum) else str(kind)


def parse_event(data: dict[str, Any]) -> DomainEvent:
    """Build the typed event for a stored row, falling back to `UnknownEvent`."""

    kind = data.get("event_type")
    model = EVENT_MODELS.get(kind.value if isinstance(kind, Enum) else str(kind))
    if model is None:
        return UnknownEvent.model_validate(data)
    # Known kinds take `event_type` from the model default.
    fields = {key: value for key, value in data.items() if key != "event_type"}
    return model.model_validate(fields)
