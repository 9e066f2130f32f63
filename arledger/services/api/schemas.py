"""HTTP request bodies for routes that take the AR id from the path."""

from datetime import date

from pydantic import BaseModel

from arledger.common.domain import SYSTEM_ACTOR, Actor, ActorType, ArStatus, Money


class StatusBody(BaseModel):
    new_status: ArStatus
    reason: str
    actor: Actor = SYSTEM_ACTOR


class FollowUpBody(BaseModel):
    notes: str
    next_action: str | None = None
    next_action_date: date | None = None
    actor_user_id: str
    actor_type: ActorType


class PaymentBody(BaseModel):
    paid_amount: Money
    payment_date: date
    verification_method: str
    verified_by: str


class DueDateBody(BaseModel):
    new_due_date: date
    reason: str
    actor: Actor = SYSTEM_ACTOR
