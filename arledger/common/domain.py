"""Closed vocabularies and value objects shared by events, snapshots and alerts."""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ArStatus(str, Enum):
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    WRITTEN_OFF = "WRITTEN_OFF"


class ActorType(str, Enum):
    SYSTEM = "SYSTEM"
    MANAGER = "MANAGER"
    SALES = "SALES"


class AlertType(str, Enum):
    PRE_ALERT = "PRE_ALERT"
    DUE = "DUE"
    OVERDUE = "OVERDUE"
    ESCALATION = "ESCALATION"


class TargetType(str, Enum):
    CUSTOMER = "CUSTOMER"
    MANAGER = "MANAGER"
    SALES = "SALES"


class AlertStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


# Default queue priority per classification; higher is delivered first.
DEFAULT_ALERT_PRIORITY: dict[AlertType, int] = {
    AlertType.PRE_ALERT: 2,
    AlertType.DUE: 3,
    AlertType.OVERDUE: 4,
    AlertType.ESCALATION: 5,
}


class Money(BaseModel):
    """Decimal amount with an ISO currency code."""

    model_config = ConfigDict(frozen=True)

    value: Decimal
    currency: str = Field(min_length=1)

    def display(self) -> str:
        return f"{self.value} {self.currency}"


class Actor(BaseModel):
    """Who triggered an event."""

    model_config = ConfigDict(frozen=True)

    type: ActorType = ActorType.SYSTEM
    user_id: str | None = None


SYSTEM_ACTOR = Actor(type=ActorType.SYSTEM)
