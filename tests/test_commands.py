"""Lifecycle commands against a real (in-memory) store."""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from arledger.common.domain import ActorType, ArStatus, Money
from arledger.common.errors import AlreadyPaid, ArNotFound, CommandValidationError, ConcurrentModification
from arledger.common.events import EventType, StatusChanged
from arledger.services.ledger.schemas import (
    ChangeDueDateRequest,
    ChangeStatusRequest,
    CreateArRequest,
    LogFollowUpRequest,
    VerifyPaymentRequest,
)

USD_1000 = Money(value=Decimal("1000"), currency="USD")


def _pay(ledger, ar_id: str, amount: Money = USD_1000, on: date = date(2025, 1, 31)):
    return ledger.verify_payment(
        VerifyPaymentRequest(
            ar_id=ar_id,
            paid_amount=amount,
            payment_date=on,
            verification_method="bank_transfer",
            verified_by="mgr-1",
        )
    )


def test_create_builds_version_one_snapshot(ledger, make_ar):
    ar_id = make_ar()
    snapshot = ledger.get_snapshot(ar_id)

    assert snapshot.current_status == ArStatus.PENDING
    assert snapshot.amount == USD_1000
    assert snapshot.version == 1
    assert snapshot.event_count == 1
    assert [e.event_type for e in ledger.get_history(ar_id)] == [EventType.AR_CREATED]


def test_create_validation_rejects_bad_input():
    """Malformed commands fail before anything is appended."""

    base = {
        "home_id": "HOME-001",
        "customer_name": "Dara Sok",
        "amount": USD_1000,
        "invoice_date": date(2025, 1, 10),
        "due_date": date(2025, 1, 31),
    }
    CreateArRequest(**base)
    with pytest.raises(ValidationError):
        CreateArRequest(**{**base, "amount": Money(value=Decimal("0"), currency="USD")})
    with pytest.raises(ValidationError):
        CreateArRequest(**{**base, "due_date": date(2025, 1, 1)})
    with pytest.raises(ValidationError):
        CreateArRequest(**{**base, "home_id": "  "})


def test_create_with_idempotency_key_returns_same_ar(ledger, make_ar):
    first = make_ar(idempotency_key="sheet-row-42")
    second = make_ar(idempotency_key="sheet-row-42")

    assert first == second
    assert ledger.events.count_for(first) == 1


def test_change_status_to_current_value_is_noop(ledger, make_ar):
    ar_id = make_ar()
    before = ledger.get_snapshot(ar_id)

    after = ledger.change_status(
        ChangeStatusRequest(ar_id=ar_id, new_status=ArStatus.PENDING, reason="recheck")
    )

    assert after.version == before.version
    assert ledger.events.count_for(ar_id) == 1


def test_change_status_appends_and_bumps_version(ledger, make_ar):
    ar_id = make_ar()
    updated = ledger.change_status(
        ChangeStatusRequest(ar_id=ar_id, new_status=ArStatus.WRITTEN_OFF, reason="uncollectable")
    )

    assert updated.current_status == ArStatus.WRITTEN_OFF
    assert updated.version == 2
    history = ledger.get_history(ar_id)
    assert isinstance(history[-1], StatusChanged)
    assert history[-1].payload.old_status == ArStatus.PENDING


def test_unknown_ar_raises_not_found(ledger):
    with pytest.raises(ArNotFound):
        ledger.change_status(ChangeStatusRequest(ar_id="missing", new_status=ArStatus.PAID, reason="x"))


def test_follow_up_requires_human_actor(ledger, make_ar):
    ar_id = make_ar()
    updated = ledger.log_follow_up(
        LogFollowUpRequest(
            ar_id=ar_id,
            notes="promised to pay Friday",
            next_action="call back",
            next_action_date=date(2025, 1, 24),
            actor_user_id="sales-1",
            actor_type=ActorType.SALES,
        )
    )
    assert updated.current_status == ArStatus.PENDING
    assert updated.event_count == 2
    assert ledger.get_history(ar_id)[-1].actor.user_id == "sales-1"

    with pytest.raises(ValidationError):
        LogFollowUpRequest(ar_id=ar_id, notes="x", actor_user_id="bot", actor_type=ActorType.SYSTEM)


def test_verify_payment_creates_next_month(ledger, make_ar):
    """Paying the Jan 31 AR creates exactly one AR due Feb 28."""

    ar_id = make_ar(invoice_date=date(2025, 1, 1), due_date=date(2025, 1, 31))

    result = _pay(ledger, ar_id)

    assert result.snapshot.current_status == ArStatus.PAID
    assert result.snapshot.paid_date == date(2025, 1, 31)
    assert result.next_ar is not None and result.next_ar.created
    assert result.next_ar_error is None

    records = ledger.snapshots.find_by_home("HOME-001")
    assert len(records) == 2
    follow_on = ledger.get_snapshot(result.next_ar.ar_id)
    assert follow_on.due_date == date(2025, 2, 28)
    assert follow_on.invoice_date == date(2025, 2, 1)
    assert follow_on.amount == USD_1000
    assert follow_on.current_status == ArStatus.PENDING


def test_create_next_ar_is_idempotent(ledger, make_ar):
    ar_id = make_ar()
    first = _pay(ledger, ar_id).next_ar

    again = ledger.create_next_ar(ar_id)

    assert again.created is False
    assert again.ar_id == first.ar_id
    assert len(ledger.snapshots.find_by_home("HOME-001")) == 2


def test_verify_payment_twice_is_rejected(ledger, make_ar):
    ar_id = make_ar()
    _pay(ledger, ar_id)

    with pytest.raises(AlreadyPaid):
        _pay(ledger, ar_id)


def test_next_ar_failure_does_not_fail_payment(ledger, make_ar, monkeypatch):
    ar_id = make_ar()

    def _boom(_):
        raise RuntimeError("storage hiccup")

    monkeypatch.setattr(ledger, "create_next_ar", _boom)
    result = _pay(ledger, ar_id)

    assert result.snapshot.current_status == ArStatus.PAID
    assert result.next_ar is None
    assert "storage hiccup" in result.next_ar_error
    assert ledger.get_snapshot(ar_id).current_status == ArStatus.PAID


def test_change_due_date(ledger, make_ar, clock):
    ar_id = make_ar()

    unchanged = ledger.change_due_date(
        ChangeDueDateRequest(ar_id=ar_id, new_due_date=date(2025, 1, 31), reason="same")
    )
    assert unchanged.version == 1

    moved = ledger.change_due_date(
        ChangeDueDateRequest(ar_id=ar_id, new_due_date=date(2025, 2, 7), reason="customer request")
    )
    assert moved.due_date == date(2025, 2, 7)
    assert moved.version == 2


def test_change_due_date_rejects_dates_far_in_the_past(ledger, make_ar, clock):
    """The clock reads 2025-01-15, so anything before 2024-12-16 is refused."""

    ar_id = make_ar()
    with pytest.raises(CommandValidationError):
        ledger.change_due_date(
            ChangeDueDateRequest(ar_id=ar_id, new_due_date=date(2024, 12, 10), reason="typo")
        )
    ledger.change_due_date(ChangeDueDateRequest(ar_id=ar_id, new_due_date=date(2024, 12, 16), reason="ok"))


def test_stale_writer_gets_concurrent_modification(ledger, make_ar, monkeypatch):
    """The losing writer's event is durable; a rebuild folds it in."""

    ar_id = make_ar()
    stale = ledger.get_snapshot(ar_id)
    ledger.change_status(ChangeStatusRequest(ar_id=ar_id, new_status=ArStatus.OVERDUE, reason="late"))

    monkeypatch.setattr(ledger.snapshots, "get", lambda _: stale)
    with pytest.raises(ConcurrentModification):
        ledger.change_due_date(
            ChangeDueDateRequest(ar_id=ar_id, new_due_date=date(2025, 2, 14), reason="extension")
        )
    monkeypatch.undo()

    assert ledger.events.count_for(ar_id) == 3
    healed = ledger.rebuild_snapshot(ar_id)
    assert healed.due_date == date(2025, 2, 14)
    assert healed.current_status == ArStatus.OVERDUE
    assert healed.event_count == 3
    assert ledger.get_snapshot(ar_id) == healed


def test_rebuild_restores_deleted_snapshot(ledger, make_ar):
    ar_id = make_ar()
    ledger.change_status(ChangeStatusRequest(ar_id=ar_id, new_status=ArStatus.OVERDUE, reason="late"))
    live = ledger.get_snapshot(ar_id)

    ledger.snapshots.delete(ar_id)
    assert ledger.rebuild_snapshot(ar_id) == live
    assert ledger.get_snapshot(ar_id) == live


def test_rebuild_all_reports_counts(ledger, make_ar):
    first = make_ar(home_id="HOME-001")
    make_ar(home_id="HOME-002")
    ledger.snapshots.delete(first)

    counts = ledger.rebuild_all()

    assert counts == {"inserted": 1, "unchanged": 1, "healed": 0, "failed": 0}
    assert ledger.get_snapshot(first).home_id == "HOME-001"


def test_snapshot_queries(ledger, make_ar):
    a = make_ar(home_id="HOME-001", zone="north", due_date=date(2025, 1, 10), assigned_sales_id="s-1")
    b = make_ar(home_id="HOME-002", zone="south", due_date=date(2025, 1, 20), assigned_sales_id="s-2")
    ledger.change_status(ChangeStatusRequest(ar_id=b, new_status=ArStatus.OVERDUE, reason="late"))

    assert [s.ar_id for s in ledger.snapshots.find_by_zone("north")] == [a]
    assert [s.ar_id for s in ledger.snapshots.find_by_sales("s-2")] == [b]
    assert [s.ar_id for s in ledger.snapshots.find_by_status(ArStatus.OVERDUE)] == [b]
    assert [s.ar_id for s in ledger.snapshots.find_overdue(date(2025, 1, 15))] == [a]
    assert ledger.snapshots.find_by_due_date_and_status(date(2025, 1, 10), ArStatus.PENDING)[0].ar_id == a
    assert ledger.snapshots.find_by_home_and_due_date("HOME-002", date(2025, 1, 20)).ar_id == b
    assert len(ledger.snapshots.find_all(limit=1)) == 1
    assert ledger.snapshots.billable_home_ids() == ["HOME-001", "HOME-002"]
