"""Daily sweep: promotion, reminder alerts and future-period generation."""

from datetime import date

from arledger.common.domain import AlertType, ArStatus, TargetType
from arledger.common.events import StatusChanged
from arledger.services.ledger.schemas import ChangeStatusRequest, VerifyPaymentRequest
from arledger.services.scheduler.service import SweepService, dedup_key, seconds_until_next_run

TODAY = date(2025, 1, 11)


def _alerts(notifications, ar_id: str, alert_type: AlertType | None = None):
    alerts = notifications.for_ar(ar_id)
    return [a for a in alerts if alert_type is None or a.alert_type == alert_type]


def test_overdue_promotion_is_idempotent(sweep, ledger, make_ar, clock):
    """Due 2025-01-10 swept on 2025-01-11 becomes OVERDUE once."""

    clock.set_day(TODAY)
    ar_id = make_ar(due_date=date(2025, 1, 10))

    first = sweep.run(TODAY)
    second = sweep.run(TODAY)

    assert ledger.get_snapshot(ar_id).current_status == ArStatus.OVERDUE
    assert first["promoted"] == 1
    assert second["promoted"] == 0
    changes = [e for e in ledger.get_history(ar_id) if isinstance(e, StatusChanged)]
    assert len(changes) == 1


def test_due_today_alerts_customer_and_manager_once(sweep, notifications, make_ar, clock):
    clock.set_day(TODAY)
    ar_id = make_ar(due_date=TODAY)

    first = sweep.run(TODAY)
    second = sweep.run(TODAY)

    alerts = _alerts(notifications, ar_id, AlertType.DUE)
    by_role = {a.target_type: a for a in alerts}
    assert set(by_role) == {TargetType.CUSTOMER, TargetType.MANAGER}
    assert by_role[TargetType.CUSTOMER].priority == 3
    assert by_role[TargetType.MANAGER].priority == 2
    assert by_role[TargetType.CUSTOMER].delivery.address == "cust-chat"
    assert first["alerts_queued"] == 2
    assert second["alerts_queued"] == 0
    assert second["alerts_deduplicated"] == 2


def test_missing_addresses_are_skipped(sweep, notifications, make_ar, clock):
    clock.set_day(TODAY)
    ar_id = make_ar(due_date=TODAY, manager_chat_id=None)

    sweep.run(TODAY)

    assert [a.target_type for a in _alerts(notifications, ar_id)] == [TargetType.CUSTOMER]


def test_five_days_overdue_escalates_once_per_role(sweep, notifications, make_ar, clock):
    clock.set_day(TODAY)
    ar_id = make_ar(due_date=date(2025, 1, 6))

    sweep.run(TODAY)
    sweep.run(TODAY)

    escalations = _alerts(notifications, ar_id, AlertType.ESCALATION)
    assert sorted(a.target_type.value for a in escalations) == ["CUSTOMER", "MANAGER"]
    assert all(a.dedup_key.endswith(":d5") for a in escalations)
    assert all(a.priority == 5 for a in escalations)
    assert _alerts(notifications, ar_id, AlertType.OVERDUE) == []


def test_escalation_repeats_on_each_window_day(sweep, notifications, make_ar, clock):
    clock.set_day(TODAY)
    ar_id = make_ar(due_date=date(2025, 1, 6))

    sweep.run(TODAY)
    clock.set_day(date(2025, 1, 12))
    sweep.run(date(2025, 1, 12))

    keys = sorted(a.dedup_key for a in _alerts(notifications, ar_id, AlertType.ESCALATION))
    assert len(keys) == 4
    assert sum(key.endswith(":d6") for key in keys) == 2


def test_seventh_day_adds_single_overdue_warning(sweep, notifications, make_ar, clock):
    clock.set_day(TODAY)
    ar_id = make_ar(due_date=date(2025, 1, 4))

    sweep.run(TODAY)
    sweep.run(TODAY)

    overdue = _alerts(notifications, ar_id, AlertType.OVERDUE)
    assert sorted(a.target_type.value for a in overdue) == ["CUSTOMER", "MANAGER"]
    snapshot_key = f"{ar_id}:OVERDUE:CUSTOMER:2025-01-04"
    assert snapshot_key in {a.dedup_key for a in overdue}
    assert len(_alerts(notifications, ar_id, AlertType.ESCALATION)) == 2


def test_pre_alert_goes_to_customer_only(sweep, notifications, make_ar, clock):
    clock.set_day(TODAY)
    ar_id = make_ar(due_date=date(2025, 1, 14))

    sweep.run(TODAY)

    alerts = _alerts(notifications, ar_id)
    assert [(a.alert_type, a.target_type) for a in alerts] == [(AlertType.PRE_ALERT, TargetType.CUSTOMER)]
    assert alerts[0].priority == 2
    assert "2025-01-14" in alerts[0].message_data["due_date"]


def test_future_horizon_creates_missing_months_once(sweep, ledger, make_ar, clock):
    clock.set_day(TODAY)
    make_ar(home_id="HOME-009", invoice_date=date(2025, 1, 1), due_date=date(2025, 1, 31))

    first = sweep.run(TODAY)
    second = sweep.run(TODAY)

    due_dates = sorted(s.due_date for s in ledger.snapshots.find_by_home("HOME-009"))
    assert due_dates == [date(2025, 1, 31), date(2025, 2, 28)]
    assert first["periods_created"] == 1
    assert second["periods_created"] == 0


def test_future_horizon_skips_written_off_homes(sweep, ledger, make_ar, clock):
    clock.set_day(TODAY)
    ar_id = make_ar(home_id="HOME-010", due_date=date(2025, 1, 31))
    ledger.change_status(ChangeStatusRequest(ar_id=ar_id, new_status=ArStatus.WRITTEN_OFF, reason="closed"))

    assert sweep.run(TODAY)["periods_created"] == 0
    assert len(ledger.snapshots.find_by_home("HOME-010")) == 1


def test_future_horizon_and_next_ar_share_one_period(sweep, ledger, make_ar, clock):
    """A period created by the sweep is not created again when payment arrives."""

    clock.set_day(TODAY)
    ar_id = make_ar(home_id="HOME-011", due_date=date(2025, 1, 31))
    sweep.run(TODAY)

    snapshot = ledger.get_snapshot(ar_id)
    result = ledger.verify_payment(
        VerifyPaymentRequest(
            ar_id=ar_id,
            paid_amount=snapshot.amount,
            payment_date=TODAY,
            verification_method="cash",
            verified_by="mgr-1",
        )
    )

    assert result.next_ar.created is False
    assert len(ledger.snapshots.find_by_home("HOME-011")) == 2


def test_month_end_period_is_not_duplicated_after_clamping(ledger, notifications, make_ar, clock):
    """Sweep from Jan 31 makes Feb 28 and Mar 31; paying Feb 28 must not add Mar 28."""

    today = date(2025, 1, 31)
    clock.set_day(today)
    make_ar(home_id="HOME-030", due_date=today)
    SweepService(ledger, notifications, timezone_name="UTC", future_months_ahead=2).run(today)

    february = ledger.snapshots.find_by_home_and_due_date("HOME-030", date(2025, 2, 28))
    result = ledger.verify_payment(
        VerifyPaymentRequest(
            ar_id=february.ar_id,
            paid_amount=february.amount,
            payment_date=today,
            verification_method="bank_transfer",
            verified_by="mgr-1",
        )
    )

    assert result.next_ar.created is False
    assert result.next_ar.due_date == date(2025, 3, 31)
    due_dates = sorted(ar.due_date for ar in ledger.snapshots.find_by_home("HOME-030"))
    assert due_dates == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31)]
    assert ledger.snapshots.find_by_home_in_month("HOME-030", 2025, 3).due_date == date(2025, 3, 31)
    assert ledger.snapshots.find_by_home_in_month("HOME-030", 2025, 4) is None


def test_one_failing_ar_does_not_abort_the_sweep(sweep, ledger, make_ar, clock, monkeypatch):
    clock.set_day(TODAY)
    bad = make_ar(home_id="HOME-020", due_date=date(2025, 1, 8))
    good = make_ar(home_id="HOME-021", due_date=date(2025, 1, 9))
    original = ledger.change_status

    def _flaky(req):
        if req.ar_id == bad:
            raise RuntimeError("lock timeout")
        return original(req)

    monkeypatch.setattr(ledger, "change_status", _flaky)
    summary = sweep.run(TODAY)

    assert summary["errors"] == 1
    assert summary["promoted"] == 1
    assert ledger.get_snapshot(good).current_status == ArStatus.OVERDUE
    assert ledger.get_snapshot(bad).current_status == ArStatus.PENDING


def test_dedup_key_format(ledger, make_ar):
    snapshot = ledger.get_snapshot(make_ar(due_date=date(2025, 1, 31)))

    assert dedup_key(snapshot, AlertType.DUE, TargetType.MANAGER) == (
        f"{snapshot.ar_id}:DUE:MANAGER:2025-01-31"
    )
    assert dedup_key(snapshot, AlertType.ESCALATION, TargetType.CUSTOMER, "d4").endswith(":2025-01-31:d4")


def test_next_run_is_the_following_local_sweep_hour(clock):
    clock.set_day(TODAY, hour=1)
    # 01:00 UTC is 08:00 in Phnom Penh, one hour before a 09:00 sweep.
    assert seconds_until_next_run(clock(), "Asia/Phnom_Penh", 9) == 3600
    clock.set_day(TODAY, hour=3)
    assert seconds_until_next_run(clock(), "Asia/Phnom_Penh", 9) == 23 * 3600
