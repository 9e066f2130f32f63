"""Notification queue: enqueue with deduplication plus read queries."""

from collections.abc import Callable
from datetime import datetime
from uuid import NAMESPACE_URL, uuid4, uuid5

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from arledger.common.dates import ensure_utc, utcnow
from arledger.common.domain import DEFAULT_ALERT_PRIORITY, AlertStatus
from arledger.common.events import AlertQueued, AlertQueuedPayload
from arledger.common.logging import logger
from arledger.common.metrics import alerts_deduplicated_total, alerts_queued_total
from arledger.services.notification.models import AlertRecord
from arledger.services.notification.schemas import AlertView, EnqueueAlertRequest, EnqueueResult

_AUDIT_NAMESPACE = uuid5(NAMESPACE_URL, "urn:arledger:alerts")


def audit_event_id(kind: str, alert_id: str, attempt: int = 0) -> str:
    """Stable identity for an alert audit event so a retried write is absorbed."""

    return str(uuid5(_AUDIT_NAMESPACE, f"{kind}:{alert_id}:{attempt}"))


class NotificationService:
    """Persists notification intents; delivery lives in `DeliveryService`."""

    def __init__(
        self,
        session_factory,
        ledger,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.clock = clock
        self.max_attempts = max_attempts
        self.service_name = service_name

    def _find_by_dedup_key(self, db, dedup_key: str) -> str | None:
        return db.execute(
            select(AlertRecord.alert_id).where(AlertRecord.dedup_key == dedup_key)
        ).scalar_one_or_none()

    def _deduplicated(self, req: EnqueueAlertRequest, alert_id: str) -> EnqueueResult:
        logger.info("alert_deduplicated dedup_key=%s alert_id=%s", req.dedup_key, alert_id)
        alerts_deduplicated_total.labels(service=self.service_name, alert_type=req.alert_type.value).inc()
        return EnqueueResult(alert_id=alert_id, created=False)

    def enqueue(self, req: EnqueueAlertRequest) -> EnqueueResult:
        """Persist one intent unless its dedup key already exists, then audit it."""

        now = ensure_utc(self.clock())
        priority = req.priority if req.priority is not None else DEFAULT_ALERT_PRIORITY[req.alert_type]
        scheduled_for = ensure_utc(req.scheduled_for) if req.scheduled_for else now
        alert_id = str(uuid4())

        with self.session_factory() as db:
            if req.dedup_key:
                existing = self._find_by_dedup_key(db, req.dedup_key)
                if existing is not None:
                    return self._deduplicated(req, existing)
            db.add(
                AlertRecord(
                    alert_id=alert_id,
                    ar_id=req.ar_id,
                    dedup_key=req.dedup_key,
                    alert_type=req.alert_type.value,
                    target_type=req.target_type.value,
                    priority=priority,
                    delivery_platform=req.delivery.platform,
                    delivery_address=req.delivery.address,
                    message_template=req.message_template,
                    message_data=req.message_data,
                    status=AlertStatus.QUEUED.value,
                    attempts=0,
                    max_attempts=self.max_attempts,
                    scheduled_for=scheduled_for,
                    triggered_by_event_id=req.triggered_by_event_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self._find_by_dedup_key(db, req.dedup_key) if req.dedup_key else None
                if existing is None:
                    raise
                return self._deduplicated(req, existing)

        alerts_queued_total.labels(service=self.service_name, alert_type=req.alert_type.value).inc()
        logger.info(
            "alert_queued alert_id=%s ar_id=%s alert_type=%s target=%s priority=%s scheduled_for=%s",
            alert_id,
            req.ar_id,
            req.alert_type.value,
            req.target_type.value,
            priority,
            scheduled_for.isoformat(),
        )
        self.ledger.record_event(
            AlertQueued(
                event_id=audit_event_id("queued", alert_id),
                ar_id=req.ar_id,
                timestamp=now,
                payload=AlertQueuedPayload(
                    alert_id=alert_id,
                    alert_type=req.alert_type,
                    target_type=req.target_type,
                    priority=priority,
                    scheduled_for=scheduled_for,
                    dedup_key=req.dedup_key,
                ),
            )
        )
        return EnqueueResult(alert_id=alert_id, created=True)

    def _views(self, query) -> list[AlertView]:
        with self.session_factory() as db:
            rows = db.execute(query).scalars().all()
        return [AlertView.from_record(row) for row in rows]

    def get(self, alert_id: str) -> AlertView | None:
        with self.session_factory() as db:
            row = db.get(AlertRecord, alert_id)
            return AlertView.from_record(row) if row else None

    def pending(self, limit: int = 100) -> list[AlertView]:
        """QUEUED alerts in delivery order."""

        return self._views(
            select(AlertRecord)
            .where(AlertRecord.status == AlertStatus.QUEUED.value)
            .order_by(AlertRecord.priority.desc(), AlertRecord.scheduled_for.asc())
            .limit(limit)
        )

    def for_ar(self, ar_id: str) -> list[AlertView]:
        return self._views(
            select(AlertRecord).where(AlertRecord.ar_id == ar_id).order_by(AlertRecord.created_at)
        )

    def failed(self, limit: int = 100) -> list[AlertView]:
        return self._views(
            select(AlertRecord)
            .where(AlertRecord.status == AlertStatus.FAILED.value)
            .order_by(AlertRecord.failed_at.desc())
            .limit(limit)
        )
