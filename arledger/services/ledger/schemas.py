"""Command requests and the AR snapshot shape exposed by the ledger."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from arledger.common.domain import SYSTEM_ACTOR, Actor, ActorType, ArStatus, Money


class ArSnapshot(BaseModel):
    """Materialized view of one AR; always re-derivable from its events."""

    ar_id: str
    home_id: str
    zone: str
    customer_name: str
    amount: Money
    current_status: ArStatus
    invoice_date: date
    due_date: date
    paid_date: date | None = None
    assigned_sales_id: str | None = None
    customer_chat_id: str | None = None
    manager_chat_id: str | None = None
    last_event_id: str
    last_event_at: datetime
    event_count: int
    version: int


class _Request(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


def _require_positive(money: Money) -> Money:
    if money.value <= 0:
        raise ValueError("amount must be greater than 0")
    if not money.currency.strip():
        raise ValueError("currency is required")
    return money


class CreateArRequest(_Request):
    """Create a new AR. Optional contacts are delivery addresses only."""

    home_id: str = Field(min_length=1)
    zone: str = ""
    customer_name: str = Field(min_length=1)
    amount: Money
    invoice_date: date
    due_date: date
    assigned_sales_id: str | None = None
    customer_chat_id: str | None = None
    manager_chat_id: str | None = None
    # Reusing a key returns the AR created by the first submission.
    idempotency_key: str | None = Field(default=None, min_length=1)
    actor: Actor = SYSTEM_ACTOR

    @field_validator("amount")
    @classmethod
    def _positive_amount(cls, value: Money) -> Money:
        return _require_positive(value)

    @model_validator(mode="after")
    def _due_after_invoice(self) -> "CreateArRequest":
        if self.due_date < self.invoice_date:
            raise ValueError("due_date cannot be before invoice_date")
        return self


class ChangeStatusRequest(_Request):
    ar_id: str = Field(min_length=1)
    new_status: ArStatus
    reason: str = Field(min_length=1)
    actor: Actor = SYSTEM_ACTOR


class LogFollowUpRequest(_Request):
    ar_id: str = Field(min_length=1)
    notes: str = Field(min_length=1)
    next_action: str | None = None
    next_action_date: date | None = None
    actor_user_id: str = Field(min_length=1)
    actor_type: ActorType

    @field_validator("actor_type")
    @classmethod
    def _human_actor(cls, value: ActorType) -> ActorType:
        if value not in (ActorType.MANAGER, ActorType.SALES):
            raise ValueError("actor_type must be MANAGER or SALES")
        return value


class VerifyPaymentRequest(_Request):
    ar_id: str = Field(min_length=1)
    paid_amount: Money
    payment_date: date
    verification_method: str = Field(min_length=1)
    verified_by: str = Field(min_length=1)

    @field_validator("paid_amount")
    @classmethod
    def _positive_amount(cls, value: Money) -> Money:
        return _require_positive(value)


class ChangeDueDateRequest(_Request):
    ar_id: str = Field(min_length=1)
    new_due_date: date
    reason: str = Field(min_length=1)
    actor: Actor = SYSTEM_ACTOR


class NextArResult(BaseModel):
    """Outcome of the monthly-billing follow-on for a paid AR."""

    ar_id: str
    due_date: date
    created: bool


class ImportLogRequest(_Request):
    """Run summary reported by the ingestion pipeline."""

    import_id: str | None = None
    file_name: str = Field(min_length=1)
    status: str = Field(default="PROCESSING", pattern="^(PROCESSING|COMPLETED|FAILED)$")
    total_rows: int = Field(default=0, ge=0)
    created_count: int = Field(default=0, ge=0)
    updated_count: int = Field(default=0, ge=0)
    skipped_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)
    error_message: str | None = None
    completed_at: datetime | None = None


class VerifyPaymentResult(BaseModel):
    """Paid snapshot plus the outcome of the next-period follow-on.

    `next_ar_error` is set when the follow-on failed; the payment itself
    still stands.
    """

    snapshot: ArSnapshot
    next_ar: NextArResult | None = None
    next_ar_error: str | None = None
