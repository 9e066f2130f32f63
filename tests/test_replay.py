"""Pure replay: determinism, preconditions and forward compatibility."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from arledger.common.domain import ArStatus, Money
from arledger.common.errors import InvalidEventSequence
from arledger.common.events import (
    ArCreated,
    ArCreatedPayload,
    DueDateChanged,
    DueDateChangedPayload,
    FollowUpLogged,
    FollowUpLoggedPayload,
    PaymentVerified,
    PaymentVerifiedPayload,
    StatusChanged,
    StatusChangedPayload,
    UnknownEvent,
    parse_event,
)
from arledger.services.ledger.replay import replay, validate_event_sequence

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
USD_1000 = Money(value=Decimal("1000"), currency="USD")


def _history(ar_id: str = "ar-1"):
    return [
        ArCreated(
            ar_id=ar_id,
            timestamp=T0,
            payload=ArCreatedPayload(
                home_id="HOME-001",
                zone="north",
                customer_name="Dara Sok",
                amount=USD_1000,
                invoice_date=date(2025, 1, 1),
                due_date=date(2025, 1, 31),
            ),
        ),
        DueDateChanged(
            ar_id=ar_id,
            timestamp=T0 + timedelta(hours=1),
            payload=DueDateChangedPayload(
                old_due_date=date(2025, 1, 31), new_due_date=date(2025, 2, 5), reason="agreed"
            ),
        ),
        StatusChanged(
            ar_id=ar_id,
            timestamp=T0 + timedelta(days=6),
            payload=StatusChangedPayload(
                old_status=ArStatus.PENDING, new_status=ArStatus.OVERDUE, reason="late"
            ),
        ),
        FollowUpLogged(
            ar_id=ar_id,
            timestamp=T0 + timedelta(days=7),
            payload=FollowUpLoggedPayload(notes="called customer"),
        ),
        PaymentVerified(
            ar_id=ar_id,
            timestamp=T0 + timedelta(days=8),
            payload=PaymentVerifiedPayload(
                paid_amount=USD_1000,
                payment_date=date(2025, 2, 9),
                verification_method="bank_transfer",
                verified_by="mgr-1",
            ),
        ),
    ]


def test_replay_is_deterministic():
    """Folding the same history twice yields identical snapshots."""

    events = _history()
    assert replay(events) == replay(events)


def test_replay_folds_every_kind():
    events = _history()
    snapshot = replay(events)

    assert snapshot.current_status == ArStatus.PAID
    assert snapshot.paid_date == date(2025, 2, 9)
    assert snapshot.due_date == date(2025, 2, 5)
    assert snapshot.event_count == 5
    assert snapshot.version == 5
    assert snapshot.last_event_id == events[-1].event_id


def test_replay_rejects_empty_and_headless_histories():
    with pytest.raises(InvalidEventSequence):
        replay([])
    with pytest.raises(InvalidEventSequence):
        replay(_history()[1:])


def test_unknown_event_kind_only_moves_bookkeeping():
    """A kind from a newer writer is loaded as UnknownEvent and still counted."""

    events = _history()[:1]
    raw = {
        "event_id": "evt-future",
        "ar_id": "ar-1",
        "event_type": "INVOICE_DISPUTED",
        "timestamp": T0 + timedelta(hours=2),
        "actor": {"type": "SYSTEM"},
        "payload": {"reason": "amount"},
    }
    unknown = parse_event(raw)
    assert isinstance(unknown, UnknownEvent)

    snapshot = replay(events + [unknown])
    assert snapshot.current_status == ArStatus.PENDING
    assert snapshot.event_count == 2
    assert snapshot.last_event_id == "evt-future"


def test_parse_event_restores_typed_payload():
    original = _history()[2]
    parsed = parse_event(original.model_dump(mode="json"))

    assert isinstance(parsed, StatusChanged)
    assert parsed.payload.new_status == ArStatus.OVERDUE
    assert parsed == original


def test_validate_event_sequence_checks_subject():
    events = _history()
    assert validate_event_sequence(events)

    stray = _history(ar_id="ar-2")[1]
    with pytest.raises(InvalidEventSequence):
        validate_event_sequence(events + [stray])
