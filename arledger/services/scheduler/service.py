"""Daily sweep: overdue promotion, reminder alerts and future-period generation.

Every step is safe to re-run for the same day: status changes are no-ops once
applied, alerts carry dedup keys and period creation is duplicate-guarded.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from arledger.common.dates import add_months, days_between, ensure_utc, local_today, utcnow
from arledger.common.domain import Actor, ActorType, AlertType, ArStatus, TargetType
from arledger.common.logging import ar_id_ctx, logger
from arledger.common.metrics import sweep_duration_seconds, sweep_items_total
from arledger.services.ledger.schemas import ArSnapshot, ChangeStatusRequest
from arledger.services.notification.schemas import DeliveryAddress, EnqueueAlertRequest

DELIVERY_PLATFORM = "telegram"

TEMPLATES: dict[tuple[AlertType, TargetType], str] = {
    (AlertType.PRE_ALERT, TargetType.CUSTOMER): (
        "Hello {{customer_name}}, a payment of {{amount}} for {{home_id}} is due on {{due_date}}."
    ),
    (AlertType.DUE, TargetType.CUSTOMER): (
        "Hello {{customer_name}}, your payment of {{amount}} for {{home_id}} is due today ({{due_date}})."
    ),
    (AlertType.DUE, TargetType.MANAGER): (
        "{{customer_name}} ({{home_id}}) has {{amount}} due today ({{due_date}})."
    ),
    (AlertType.ESCALATION, TargetType.CUSTOMER): (
        "Hello {{customer_name}}, your payment of {{amount}} for {{home_id}} is "
        "{{days_overdue}} days overdue (due {{due_date}}). Please pay as soon as possible."
    ),
    (AlertType.ESCALATION, TargetType.MANAGER): (
        "Escalation: {{customer_name}} ({{home_id}}) is {{days_overdue}} days overdue on {{amount}} "
        "(due {{due_date}})."
    ),
    (AlertType.OVERDUE, TargetType.CUSTOMER): (
        "Final notice: {{customer_name}}, {{amount}} for {{home_id}} is {{days_overdue}} days overdue."
    ),
    (AlertType.OVERDUE, TargetType.MANAGER): (
        "Overdue warning: {{customer_name}} ({{home_id}}) has {{amount}} outstanding for "
        "{{days_overdue}} days."
    ),
}

_SWEEP_ACTOR = Actor(type=ActorType.SYSTEM, user_id="sweep")


def dedup_key(ar: ArSnapshot, alert_type: AlertType, target: TargetType, suffix: str = "") -> str:
    """Stable key per (AR, classification, role, due date[, day])."""

    key = f"{ar.ar_id}:{alert_type.value}:{target.value}:{ar.due_date.isoformat()}"
    return f"{key}:{suffix}" if suffix else key


class SweepService:
    """Runs the daily time-driven procedure against an explicit calendar day."""

    def __init__(
        self,
        ledger,
        notifications,
        timezone_name: str = "UTC",
        prealert_days: int = 3,
        future_months_ahead: int = 2,
        escalation_min_days: int = 4,
        escalation_max_days: int = 7,
        overdue_warning_day: int = 7,
        service_name: str = "scheduler",
    ) -> None:
        self.ledger = ledger
        self.notifications = notifications
        self.timezone_name = timezone_name
        self.prealert_days = prealert_days
        self.future_months_ahead = future_months_ahead
        self.escalation_min_days = escalation_min_days
        self.escalation_max_days = escalation_max_days
        self.overdue_warning_day = overdue_warning_day
        self.service_name = service_name

    def _count(self, step: str, result: str, amount: int = 1) -> None:
        if amount:
            sweep_items_total.labels(service=self.service_name, step=step, result=result).inc(amount)

    def _message_data(self, ar: ArSnapshot, today: date) -> dict:
        return {
            "customer_name": ar.customer_name,
            "home_id": ar.home_id,
            "amount": ar.amount.display(),
            "due_date": ar.due_date.isoformat(),
            "days_overdue": max(0, days_between(ar.due_date, today)),
        }

    def _targets(self, ar: ArSnapshot, roles: tuple[TargetType, ...]) -> list[tuple[TargetType, str]]:
        addresses = {TargetType.CUSTOMER: ar.customer_chat_id, TargetType.MANAGER: ar.manager_chat_id}
        return [(role, addresses[role]) for role in roles if addresses.get(role)]

    def _enqueue(
        self,
        ar: ArSnapshot,
        today: date,
        alert_type: AlertType,
        roles: tuple[TargetType, ...],
        summary: dict[str, int],
        suffix: str = "",
        priorities: dict[TargetType, int] | None = None,
    ) -> None:
        for role, address in self._targets(ar, roles):
            result = self.notifications.enqueue(
                EnqueueAlertRequest(
                    ar_id=ar.ar_id,
                    alert_type=alert_type,
                    target_type=role,
                    delivery=DeliveryAddress(platform=DELIVERY_PLATFORM, address=address),
                    message_template=TEMPLATES[(alert_type, role)],
                    message_data=self._message_data(ar, today),
                    priority=(priorities or {}).get(role),
                    dedup_key=dedup_key(ar, alert_type, role, suffix),
                    triggered_by_event_id=ar.last_event_id,
                )
            )
            summary["alerts_queued" if result.created else "alerts_deduplicated"] += 1

    def _each(self, step: str, ars: list[ArSnapshot], action: Callable[[ArSnapshot], None]) -> int:
        """Apply `action` per AR; a failing AR is logged and skipped."""

        failures = 0
        for ar in ars:
            token = ar_id_ctx.set(ar.ar_id)
            try:
                action(ar)
                self._count(step, "ok")
            except Exception:
                failures += 1
                self._count(step, "error")
                logger.exception("sweep_item_failed step=%s ar_id=%s", step, ar.ar_id)
            finally:
                ar_id_ctx.reset(token)
        return failures

    def promote_overdue(self, today: date, summary: dict[str, int]) -> None:
        def _promote(ar: ArSnapshot) -> None:
            before = ar.version
            updated = self.ledger.change_status(
                ChangeStatusRequest(
                    ar_id=ar.ar_id,
                    new_status=ArStatus.OVERDUE,
                    reason=f"Past due date {ar.due_date.isoformat()}",
                    actor=_SWEEP_ACTOR,
                )
            )
            if updated.version != before:
                summary["promoted"] += 1

        summary["errors"] += self._each("promote_overdue", self.ledger.snapshots.find_overdue(today), _promote)

    def due_today_alerts(self, today: date, summary: dict[str, int]) -> None:
        ars = self.ledger.snapshots.find_by_due_date_and_status(today, ArStatus.PENDING)
        summary["errors"] += self._each(
            "due_today",
            ars,
            lambda ar: self._enqueue(
                ar,
                today,
                AlertType.DUE,
                (TargetType.CUSTOMER, TargetType.MANAGER),
                summary,
                # The manager copy is informational.
                priorities={TargetType.MANAGER: 2},
            ),
        )

    def overdue_alerts(self, today: date, summary: dict[str, int]) -> None:
        def _alert(ar: ArSnapshot) -> None:
            days = days_between(ar.due_date, today)
            roles = (TargetType.CUSTOMER, TargetType.MANAGER)
            if self.escalation_min_days <= days <= self.escalation_max_days:
                self._enqueue(ar, today, AlertType.ESCALATION, roles, summary, suffix=f"d{days}")
            if days == self.overdue_warning_day:
                self._enqueue(ar, today, AlertType.OVERDUE, roles, summary)

        summary["errors"] += self._each(
            "overdue_alerts", self.ledger.snapshots.find_by_status(ArStatus.OVERDUE), _alert
        )

    def pre_alerts(self, today: date, summary: dict[str, int]) -> None:
        target_day = today + timedelta(days=self.prealert_days)
        ars = self.ledger.snapshots.find_by_due_date_and_status(target_day, ArStatus.PENDING)
        summary["errors"] += self._each(
            "pre_alerts",
            ars,
            lambda ar: self._enqueue(ar, today, AlertType.PRE_ALERT, (TargetType.CUSTOMER,), summary),
        )

    def generate_future_periods(self, today: date, summary: dict[str, int]) -> None:
        """Ensure each billable home has an AR for every month up to the horizon."""

        horizon = add_months(today, self.future_months_ahead)
        for home_id in self.ledger.snapshots.billable_home_ids():
            try:
                candidates = [
                    ar
                    for ar in self.ledger.snapshots.find_by_home(home_id)
                    if ar.current_status != ArStatus.WRITTEN_OFF
                ]
                if not candidates:
                    continue
                latest = max(candidates, key=lambda ar: (ar.due_date, ar.last_event_at))
                # Offsets are taken from the template's own dates so month-end clamping does not drift.
                months = 1
                target = add_months(latest.due_date, months)
                while target <= horizon:
                    if target > today:
                        result = self.ledger.ensure_period(
                            latest, target, add_months(latest.invoice_date, months)
                        )
                        if result.created:
                            summary["periods_created"] += 1
                            logger.info(
                                "future_period_created home_id=%s due_date=%s ar_id=%s",
                                home_id,
                                target.isoformat(),
                                result.ar_id,
                            )
                    months += 1
                    target = add_months(latest.due_date, months)
                self._count("future_periods", "ok")
            except Exception:
                summary["errors"] += 1
                self._count("future_periods", "error")
                logger.exception("sweep_item_failed step=future_periods home_id=%s", home_id)

    def run(self, today: date | datetime) -> dict[str, int]:
        """Run all steps in order for `today` and return a summary of what changed."""

        if isinstance(today, datetime):
            today = local_today(today, self.timezone_name)
        summary = {
            "promoted": 0,
            "alerts_queued": 0,
            "alerts_deduplicated": 0,
            "periods_created": 0,
            "errors": 0,
        }
        started = time.perf_counter()
        logger.info("sweep_started today=%s", today.isoformat())
        # Promotion first so the alert steps see post-promotion statuses.
        self.promote_overdue(today, summary)
        self.due_today_alerts(today, summary)
        self.overdue_alerts(today, summary)
        self.pre_alerts(today, summary)
        self.generate_future_periods(today, summary)
        sweep_duration_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)
        logger.info(
            "sweep_completed today=%s promoted=%s alerts_queued=%s alerts_deduplicated=%s "
            "periods_created=%s errors=%s",
            today.isoformat(),
            summary["promoted"],
            summary["alerts_queued"],
            summary["alerts_deduplicated"],
            summary["periods_created"],
            summary["errors"],
        )
        return summary


def seconds_until_next_run(now: datetime, timezone_name: str, hour: int) -> float:
    """Seconds from `now` until the next local `hour`:00."""

    local_now = ensure_utc(now).astimezone(ZoneInfo(timezone_name))
    next_run = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if next_run <= local_now:
        next_run = next_run + timedelta(days=1)
    return (next_run - local_now).total_seconds()


class SweepWorker:
    """Runs the sweep once at start, then daily at `sweep_hour` local time."""

    def __init__(
        self,
        sweep: SweepService,
        clock: Callable[[], datetime] = utcnow,
        sweep_hour: int = 9,
    ) -> None:
        self.sweep = sweep
        self.clock = clock
        self.sweep_hour = sweep_hour
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self, today: date | None = None) -> dict[str, int]:
        return self.sweep.run(today if today is not None else self.clock())

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("sweep_failed")
            delay = seconds_until_next_run(self.clock(), self.sweep.timezone_name, self.sweep_hour)
            logger.info("sweep_next_run_in seconds=%.0f", delay)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("sweep_worker_started sweep_hour=%s", self.sweep_hour)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("sweep_worker_stopped")
