"""Lifecycle command layer for AR records.

Each command validates its request, loads the current snapshot, appends the
resulting event, then folds that event into the snapshot under optimistic
concurrency. The event is durable before the snapshot write is attempted, so
a failed snapshot write never loses data: `rebuild_snapshot` re-derives it.
"""

from collections.abc import Callable
from datetime import date, datetime, timedelta
from uuid import NAMESPACE_URL, uuid4, uuid5

from sqlalchemy.exc import SQLAlchemyError

from arledger.common.dates import add_months, local_today, utcnow
from arledger.common.domain import SYSTEM_ACTOR, Actor, ActorType, ArStatus
from arledger.common.errors import AlreadyPaid, ArNotFound, CommandValidationError, ConcurrentModification
from arledger.common.events import (
    ArCreated,
    ArCreatedPayload,
    ArEvent,
    DueDateChanged,
    DueDateChangedPayload,
    FollowUpLogged,
    FollowUpLoggedPayload,
    PaymentVerified,
    PaymentVerifiedPayload,
    StatusChanged,
    StatusChangedPayload,
    event_type_name,
)
from arledger.common.logging import logger
from arledger.common.metrics import commands_total, retries_total, snapshot_rebuilds_total
from arledger.services.ledger.event_store import AppendOutcome, EventStore
from arledger.services.ledger.replay import apply_event, replay, validate_event_sequence
from arledger.services.ledger.repository import ArRepository
from arledger.services.ledger.schemas import (
    ArSnapshot,
    ChangeDueDateRequest,
    ChangeStatusRequest,
    CreateArRequest,
    LogFollowUpRequest,
    NextArResult,
    VerifyPaymentRequest,
    VerifyPaymentResult,
)

_ID_NAMESPACE = uuid5(NAMESPACE_URL, "urn:arledger")


def period_key(home_id: str, due_date: date) -> str:
    """Idempotency key shared by every path that generates a billing period."""

    return f"period:{home_id}:{due_date.isoformat()}"


class LedgerService:
    """Owns the event log and the `ar_state` view for every AR."""

    def __init__(
        self,
        session_factory,
        clock: Callable[[], datetime] = utcnow,
        timezone_name: str = "UTC",
        due_date_past_limit_days: int = 30,
        record_retries: int = 3,
        service_name: str = "ledger",
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.timezone_name = timezone_name
        self.due_date_past_limit_days = due_date_past_limit_days
        self.record_retries = record_retries
        self.service_name = service_name
        self.events = EventStore(session_factory, service_name)
        self.snapshots = ArRepository(session_factory, service_name)

    def _count(self, command: str, outcome: str) -> None:
        commands_total.labels(service=self.service_name, command=command, outcome=outcome).inc()

    def _load(self, ar_id: str) -> ArSnapshot:
        snapshot = self.snapshots.get(ar_id)
        if snapshot is None:
            raise ArNotFound(ar_id)
        return snapshot

    def _persist(self, snapshot: ArSnapshot, expected_version: int) -> None:
        """Compare-and-swap the snapshot after its event was appended."""

        try:
            self.snapshots.save(snapshot, expected_version)
        except ConcurrentModification:
            logger.warning(
                "snapshot_conflict ar_id=%s expected_version=%s event_id=%s",
                snapshot.ar_id,
                expected_version,
                snapshot.last_event_id,
            )
            raise
        except SQLAlchemyError:
            logger.exception(
                "snapshot_update_failed ar_id=%s event_id=%s; event is durable, rebuild will heal",
                snapshot.ar_id,
                snapshot.last_event_id,
            )
            raise

    def _apply(self, current: ArSnapshot, event: ArEvent) -> ArSnapshot:
        """Append `event` and fold it into `current`."""

        outcome = self.events.append(event)
        if outcome is AppendOutcome.DUPLICATE_IGNORED:
            return current
        updated = apply_event(current, event)
        self._persist(updated, current.version)
        return updated

    def create_ar(self, req: CreateArRequest) -> str:
        """Append AR_CREATED and insert the version-1 snapshot; returns the AR id."""

        if req.idempotency_key:
            ar_id = str(uuid5(_ID_NAMESPACE, f"ar:{req.idempotency_key}"))
            event_id = str(uuid5(_ID_NAMESPACE, f"ar-created:{req.idempotency_key}"))
        else:
            ar_id = str(uuid4())
            event_id = str(uuid4())

        event = ArCreated(
            event_id=event_id,
            ar_id=ar_id,
            timestamp=self.clock(),
            actor=req.actor,
            payload=ArCreatedPayload(
                home_id=req.home_id,
                zone=req.zone,
                customer_name=req.customer_name,
                amount=req.amount,
                invoice_date=req.invoice_date,
                due_date=req.due_date,
                assigned_sales_id=req.assigned_sales_id,
                customer_chat_id=req.customer_chat_id,
                manager_chat_id=req.manager_chat_id,
            ),
        )
        outcome = self.events.append(event)
        if outcome is AppendOutcome.DUPLICATE_IGNORED:
            if self.snapshots.get(ar_id) is None:
                self.rebuild_snapshot(ar_id)
            self._count("create", "duplicate")
            return ar_id

        if not self.snapshots.insert(replay([event])):
            logger.warning("snapshot_already_exists ar_id=%s event_id=%s", ar_id, event_id)
        self._count("create", "applied")
        logger.info(
            "ar_created ar_id=%s home_id=%s due_date=%s amount=%s",
            ar_id,
            req.home_id,
            req.due_date.isoformat(),
            req.amount.display(),
        )
        return ar_id

    def change_status(self, req: ChangeStatusRequest) -> ArSnapshot:
        """Append STATUS_CHANGED unless the AR already has the requested status."""

        current = self._load(req.ar_id)
        if current.current_status == req.new_status:
            logger.info("status_unchanged ar_id=%s status=%s", req.ar_id, req.new_status.value)
            self._count("change_status", "noop")
            return current

        event = StatusChanged(
            ar_id=req.ar_id,
            timestamp=self.clock(),
            actor=req.actor,
            payload=StatusChangedPayload(
                old_status=current.current_status,
                new_status=req.new_status,
                reason=req.reason,
            ),
        )
        updated = self._apply(current, event)
        self._count("change_status", "applied")
        logger.info(
            "status_changed ar_id=%s from=%s to=%s",
            req.ar_id,
            current.current_status.value,
            req.new_status.value,
        )
        return updated

    def log_follow_up(self, req: LogFollowUpRequest) -> ArSnapshot:
        """Append FOLLOW_UP_LOGGED; only bookkeeping fields of the snapshot move."""

        current = self._load(req.ar_id)
        event = FollowUpLogged(
            ar_id=req.ar_id,
            timestamp=self.clock(),
            actor=Actor(type=req.actor_type, user_id=req.actor_user_id),
            payload=FollowUpLoggedPayload(
                notes=req.notes,
                next_action=req.next_action,
                next_action_date=req.next_action_date,
            ),
        )
        updated = self._apply(current, event)
        self._count("log_follow_up", "applied")
        logger.info(
            "follow_up_logged ar_id=%s actor_type=%s actor_user_id=%s",
            req.ar_id,
            req.actor_type.value,
            req.actor_user_id,
        )
        return updated

    def verify_payment(self, req: VerifyPaymentRequest) -> VerifyPaymentResult:
        """Mark an AR paid, then create the next billing period's AR.

        A failure creating the next AR is logged and reported in the result;
        it never undoes the payment.
        """

        current = self._load(req.ar_id)
        if current.current_status == ArStatus.PAID:
            self._count("verify_payment", "rejected")
            raise AlreadyPaid(req.ar_id)

        event = PaymentVerified(
            ar_id=req.ar_id,
            timestamp=self.clock(),
            actor=Actor(type=ActorType.MANAGER, user_id=req.verified_by),
            payload=PaymentVerifiedPayload(
                paid_amount=req.paid_amount,
                payment_date=req.payment_date,
                verification_method=req.verification_method,
                verified_by=req.verified_by,
            ),
        )
        updated = self._apply(current, event)
        self._count("verify_payment", "applied")
        logger.info(
            "payment_verified ar_id=%s amount=%s method=%s",
            req.ar_id,
            req.paid_amount.display(),
            req.verification_method,
        )

        result = VerifyPaymentResult(snapshot=updated)
        try:
            result.next_ar = self.create_next_ar(req.ar_id)
        except Exception as exc:
            logger.exception("next_ar_creation_failed paid_ar_id=%s", req.ar_id)
            result.next_ar_error = str(exc)
        return result

    def create_next_ar(self, paid_ar_id: str) -> NextArResult:
        """Create the following month's AR for the same billable entity.

        Skipped when the home already has an AR due in that calendar month.
        """

        source = self._load(paid_ar_id)
        return self.ensure_period(source, add_months(source.due_date, 1), add_months(source.invoice_date, 1))

    def ensure_period(self, template: ArSnapshot, due_date: date, invoice_date: date) -> NextArResult:
        """Create an AR copying `template`'s recurring terms unless the period exists."""

        # One AR per home per calendar month; month-end clamping means two paths
        # can land on different days of the same month.
        existing = self.snapshots.find_by_home_and_due_date(template.home_id, due_date)
        if existing is None:
            existing = self.snapshots.find_by_home_in_month(template.home_id, due_date.year, due_date.month)
        if existing is not None:
            logger.info(
                "period_exists home_id=%s due_date=%s ar_id=%s existing_due_date=%s",
                template.home_id,
                due_date.isoformat(),
                existing.ar_id,
                existing.due_date.isoformat(),
            )
            return NextArResult(ar_id=existing.ar_id, due_date=existing.due_date, created=False)

        ar_id = self.create_ar(
            CreateArRequest(
                home_id=template.home_id,
                zone=template.zone,
                customer_name=template.customer_name,
                amount=template.amount,
                invoice_date=min(invoice_date, due_date),
                due_date=due_date,
                assigned_sales_id=template.assigned_sales_id,
                customer_chat_id=template.customer_chat_id,
                manager_chat_id=template.manager_chat_id,
                idempotency_key=period_key(template.home_id, due_date),
                actor=SYSTEM_ACTOR,
            )
        )
        return NextArResult(ar_id=ar_id, due_date=due_date, created=True)

    def change_due_date(self, req: ChangeDueDateRequest) -> ArSnapshot:
        """Append DUE_DATE_CHANGED unless the due date is unchanged."""

        today = local_today(self.clock(), self.timezone_name)
        earliest = today - timedelta(days=self.due_date_past_limit_days)
        if req.new_due_date < earliest:
            self._count("change_due_date", "rejected")
            raise CommandValidationError(
                f"new_due_date cannot be more than {self.due_date_past_limit_days} days in the past"
            )

        current = self._load(req.ar_id)
        if current.due_date == req.new_due_date:
            logger.info("due_date_unchanged ar_id=%s due_date=%s", req.ar_id, req.new_due_date.isoformat())
            self._count("change_due_date", "noop")
            return current

        event = DueDateChanged(
            ar_id=req.ar_id,
            timestamp=self.clock(),
            actor=req.actor,
            payload=DueDateChangedPayload(
                old_due_date=current.due_date,
                new_due_date=req.new_due_date,
                reason=req.reason,
            ),
        )
        updated = self._apply(current, event)
        self._count("change_due_date", "applied")
        logger.info(
            "due_date_changed ar_id=%s from=%s to=%s",
            req.ar_id,
            current.due_date.isoformat(),
            req.new_due_date.isoformat(),
        )
        return updated

    def record_event(self, event: ArEvent) -> AppendOutcome:
        """Append an audit event and fold it into the snapshot's bookkeeping.

        Used by background paths (alert lifecycle). Conflicts are retried by
        reloading; if they persist the snapshot is left for `rebuild_snapshot`.
        """

        outcome = self.events.append(event)
        if outcome is AppendOutcome.DUPLICATE_IGNORED:
            return outcome

        for attempt in range(1, self.record_retries + 1):
            current = self.snapshots.get(event.ar_id)
            if current is None:
                logger.warning(
                    "audit_event_without_snapshot ar_id=%s event_type=%s event_id=%s",
                    event.ar_id,
                    event_type_name(event),
                    event.event_id,
                )
                return outcome
            try:
                self.snapshots.save(apply_event(current, event), current.version)
                return outcome
            except ConcurrentModification:
                retries_total.labels(service=self.service_name, dependency="ar_state").inc()
                logger.info(
                    "audit_event_conflict ar_id=%s attempt=%s/%s",
                    event.ar_id,
                    attempt,
                    self.record_retries,
                )
        logger.error(
            "audit_event_snapshot_deferred ar_id=%s event_id=%s; rebuild will heal",
            event.ar_id,
            event.event_id,
        )
        return outcome

    def get_snapshot(self, ar_id: str) -> ArSnapshot:
        return self._load(ar_id)

    def get_history(self, ar_id: str) -> list[ArEvent]:
        return self.events.events_for(ar_id)

    def _reconcile(self, ar_id: str, events: list[ArEvent]) -> tuple[ArSnapshot, str]:
        validate_event_sequence(events)
        replayed = replay(events)
        stored = self.snapshots.get(ar_id)
        if stored is None:
            if not self.snapshots.insert(replayed):
                raise ConcurrentModification(ar_id, 0)
            return replayed, "inserted"
        # Versions may run ahead of the event count after an earlier heal.
        if stored.model_copy(update={"version": replayed.version}) == replayed:
            return stored, "unchanged"
        # Never move the version backwards; concurrent writers compare against it.
        healed = replayed.model_copy(update={"version": max(replayed.version, stored.version + 1)})
        self.snapshots.save(healed, stored.version)
        logger.warning(
            "snapshot_healed ar_id=%s stored_version=%s event_count=%s",
            ar_id,
            stored.version,
            replayed.event_count,
        )
        return healed, "healed"

    def rebuild_snapshot(self, ar_id: str) -> ArSnapshot:
        """Re-derive one snapshot from its full history and reconcile the stored row."""

        snapshot, result = self._reconcile(ar_id, self.events.events_for(ar_id))
        snapshot_rebuilds_total.labels(service=self.service_name, result=result).inc()
        return snapshot

    def rebuild_all(self) -> dict[str, int]:
        """Stream the whole log and reconcile every snapshot it describes."""

        histories: dict[str, list[ArEvent]] = {}
        for event in self.events.stream_all():
            histories.setdefault(event.ar_id, []).append(event)

        counts = {"inserted": 0, "unchanged": 0, "healed": 0, "failed": 0}
        for ar_id, events in histories.items():
            try:
                _, result = self._reconcile(ar_id, events)
            except Exception:
                logger.exception("snapshot_rebuild_failed ar_id=%s", ar_id)
                result = "failed"
            counts[result] += 1
            snapshot_rebuilds_total.labels(service=self.service_name, result=result).inc()
        logger.info("snapshot_rebuild_complete counts=%s", counts)
        return counts
