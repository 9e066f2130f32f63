"""Pure fold from an AR's event history to its snapshot.

Given the same ordered events, `replay` always yields an equal snapshot; this
is what makes a full rebuild from the event log safe.
"""

from collections.abc import Sequence

from arledger.common.dates import ensure_utc
from arledger.common.domain import ArStatus
from arledger.common.errors import InvalidEventSequence
from arledger.common.events import (
    ArCreated,
    ArEvent,
    DueDateChanged,
    EventType,
    PaymentVerified,
    StatusChanged,
)
from arledger.common.logging import logger
from arledger.services.ledger.schemas import ArSnapshot


def initial_snapshot(event: ArCreated) -> ArSnapshot:
    """Start a snapshot from the creation event; status is always PENDING."""

    payload = event.payload
    return ArSnapshot(
        ar_id=event.ar_id,
        home_id=payload.home_id,
        zone=payload.zone,
        customer_name=payload.customer_name,
        amount=payload.amount,
        current_status=ArStatus.PENDING,
        invoice_date=payload.invoice_date,
        due_date=payload.due_date,
        assigned_sales_id=payload.assigned_sales_id,
        customer_chat_id=payload.customer_chat_id,
        manager_chat_id=payload.manager_chat_id,
        last_event_id=event.event_id,
        last_event_at=ensure_utc(event.timestamp),
        event_count=1,
        version=1,
    )


def apply_event(state: ArSnapshot, event: ArEvent) -> ArSnapshot:
    """Return a new snapshot with one event folded in.

    Every event advances the bookkeeping fields; `version` tracks
    `event_count` so a live snapshot and a replayed one agree.
    """

    changes = {
        "last_event_id": event.event_id,
        "last_event_at": ensure_utc(event.timestamp),
        "event_count": state.event_count + 1,
        "version": state.version + 1,
    }
    if isinstance(event, StatusChanged):
        changes["current_status"] = event.payload.new_status
    elif isinstance(event, PaymentVerified):
        changes["current_status"] = ArStatus.PAID
        changes["paid_date"] = event.payload.payment_date
    elif isinstance(event, DueDateChanged):
        changes["due_date"] = event.payload.new_due_date
    # FOLLOW_UP_LOGGED, alert lifecycle and unknown kinds only move bookkeeping.
    return state.model_copy(update=changes)


def replay(events: Sequence[ArEvent]) -> ArSnapshot:
    """Fold an ordered, non-empty event sequence that starts with AR_CREATED."""

    if not events:
        raise InvalidEventSequence("Cannot replay from empty event list")
    first = events[0]
    if not isinstance(first, ArCreated):
        raise InvalidEventSequence("First event must be AR_CREATED")

    state = initial_snapshot(first)
    for event in events[1:]:
        state = apply_event(state, event)
    return state


def validate_event_sequence(events: Sequence[ArEvent]) -> bool:
    """Check kind ordering and subject consistency of a candidate history.

    Out-of-order timestamps are tolerated with a warning because concurrent
    appends are not strictly ordered at the store.
    """

    if not events:
        raise InvalidEventSequence("Event sequence cannot be empty")
    if events[0].event_type != EventType.AR_CREATED:
        raise InvalidEventSequence("First event must be AR_CREATED")

    ar_id = events[0].ar_id
    for event in events:
        if event.ar_id != ar_id:
            raise InvalidEventSequence(
                f"Event {event.event_id} has different ar_id: {event.ar_id} != {ar_id}"
            )

    for previous, current in zip(events, events[1:]):
        if ensure_utc(current.timestamp) < ensure_utc(previous.timestamp):
            logger.warning(
                "events_out_of_order ar_id=%s event_id=%s previous_event_id=%s",
                ar_id,
                current.event_id,
                previous.event_id,
            )
            break
    return True
