"""Append-only event log: identity idempotency and ordered reads."""

from datetime import datetime, timedelta, timezone

from arledger.common.events import EventType, FollowUpLogged, FollowUpLoggedPayload, UnknownEvent
from arledger.services.ledger.event_store import AppendOutcome

T0 = datetime(2025, 1, 20, 8, 0, tzinfo=timezone.utc)


def _follow_up(ar_id: str, at: datetime, notes: str, event_id: str | None = None) -> FollowUpLogged:
    fields = {"ar_id": ar_id, "timestamp": at, "payload": FollowUpLoggedPayload(notes=notes)}
    if event_id:
        fields["event_id"] = event_id
    return FollowUpLogged(**fields)


def test_duplicate_identity_is_absorbed(ledger):
    """Appending the same event id twice keeps exactly one stored copy."""

    event = _follow_up("ar-1", T0, "first", event_id="evt-1")
    assert ledger.events.append(event) is AppendOutcome.APPENDED

    retry = _follow_up("ar-1", T0 + timedelta(minutes=5), "changed", event_id="evt-1")
    assert ledger.events.append(retry) is AppendOutcome.DUPLICATE_IGNORED

    stored = ledger.events.events_for("ar-1")
    assert len(stored) == 1
    assert stored[0].payload.notes == "first"


def test_events_are_read_in_timestamp_then_insertion_order(ledger):
    ledger.events.append(_follow_up("ar-1", T0 + timedelta(hours=2), "late"))
    ledger.events.append(_follow_up("ar-1", T0, "early-a"))
    ledger.events.append(_follow_up("ar-1", T0, "early-b"))
    ledger.events.append(_follow_up("ar-2", T0, "other"))

    notes = [event.payload.notes for event in ledger.events.events_for("ar-1")]
    assert notes == ["early-a", "early-b", "late"]
    assert ledger.events.count_for("ar-1") == 3


def test_events_by_type_honours_time_window(ledger, make_ar):
    make_ar()
    ledger.events.append(_follow_up("ar-1", T0, "inside"))
    ledger.events.append(_follow_up("ar-1", T0 + timedelta(days=2), "outside"))

    found = ledger.events.events_by_type(
        EventType.FOLLOW_UP_LOGGED, from_time=T0 - timedelta(hours=1), to_time=T0 + timedelta(days=1)
    )
    assert [event.payload.notes for event in found] == ["inside"]
    assert len(ledger.events.events_by_type("AR_CREATED")) == 1


def test_stream_all_yields_whole_log_and_unknown_kinds(ledger):
    ledger.events.append(_follow_up("ar-1", T0, "one"))
    ledger.events.append(
        UnknownEvent(ar_id="ar-1", event_type="INVOICE_DISPUTED", timestamp=T0 + timedelta(minutes=1))
    )

    streamed = list(ledger.events.stream_all(batch_size=1))
    assert len(streamed) == 2
    assert isinstance(streamed[1], UnknownEvent)
    assert streamed[1].event_type == "INVOICE_DISPUTED"
