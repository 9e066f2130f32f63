"""Polling delivery of queued alerts with exponential-backoff retries."""

import asyncio
import re
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from arledger.common.dates import ensure_utc, utcnow
from arledger.common.domain import AlertStatus
from arledger.common.events import AlertFailed, AlertFailedPayload, AlertSent, AlertSentPayload
from arledger.common.logging import alert_id_ctx, ar_id_ctx, logger
from arledger.common.metrics import (
    alert_delivery_seconds,
    alerts_failed_total,
    alerts_sent_total,
    retries_total,
)
from arledger.common.queue import (
    claim_row,
    requeue_stale_rows,
    select_due_ids,
    select_exhausted_stale_ids,
    update_queue_backlog_metrics,
)
from arledger.common.state_machine import validate_transition
from arledger.services.notification.channels import NotificationChannel
from arledger.services.notification.models import AlertRecord
from arledger.services.notification.service import audit_event_id

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(template: str, data: dict[str, Any]) -> str:
    """Replace `{{key}}` placeholders; unknown keys are left as written."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        return str(data[key]) if key in data else match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def retry_delay(base_delay_seconds: int, attempts: int) -> timedelta:
    """Backoff after the `attempts`-th failed attempt: base * 2^(attempts-1)."""

    return timedelta(seconds=base_delay_seconds * 2 ** (attempts - 1))


class DeliveryService:
    """Claims due alerts, sends them through a channel and records the outcome."""

    def __init__(
        self,
        session_factory,
        ledger,
        channel: NotificationChannel,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 50,
        retry_base_delay_seconds: int = 300,
        send_timeout_seconds: float = 10.0,
        processing_timeout_seconds: int = 300,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.channel = channel
        self.clock = clock
        self.batch_size = batch_size
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self.processing_timeout_seconds = processing_timeout_seconds
        self.service_name = service_name

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _claim(self, alert_id: str) -> AlertRecord | None:
        now = self._now()
        with self.session_factory() as db:
            if not claim_row(db, AlertRecord, alert_id, now):
                db.rollback()
                return None
            db.commit()
            return db.get(AlertRecord, alert_id)

    def _mark_sent(self, row: AlertRecord, delivery_id: str) -> None:
        now = self._now()
        with self.session_factory() as db:
            alert = db.get(AlertRecord, row.alert_id)
            validate_transition(alert.status, AlertStatus.SENT)
            alert.status = AlertStatus.SENT.value
            alert.sent_at = now
            alert.error = None
            alert.processing_started_at = None
            alert.updated_at = now
            db.commit()

        alerts_sent_total.labels(service=self.service_name, alert_type=row.alert_type).inc()
        logger.info(
            "alert_sent alert_id=%s ar_id=%s attempts=%s delivery_id=%s",
            row.alert_id,
            row.ar_id,
            row.attempts,
            delivery_id,
        )
        self.ledger.record_event(
            AlertSent(
                event_id=audit_event_id("sent", row.alert_id),
                ar_id=row.ar_id,
                timestamp=now,
                payload=AlertSentPayload(
                    alert_id=row.alert_id,
                    sent_at=now,
                    delivery_platform=row.delivery_platform,
                    delivery_id=delivery_id,
                    attempts=row.attempts,
                ),
            )
        )

    def _mark_failed(self, row: AlertRecord, error: str) -> bool:
        """Reschedule or terminally fail the alert; returns True when terminal."""

        now = self._now()
        terminal = row.attempts >= row.max_attempts
        retry_at = None if terminal else now + retry_delay(self.retry_base_delay_seconds, row.attempts)
        with self.session_factory() as db:
            alert = db.get(AlertRecord, row.alert_id)
            target = AlertStatus.FAILED if terminal else AlertStatus.QUEUED
            validate_transition(alert.status, target)
            alert.status = target.value
            alert.error = error
            alert.failed_at = now
            alert.processing_started_at = None
            alert.updated_at = now
            if retry_at is not None:
                alert.scheduled_for = retry_at
            db.commit()

        alerts_failed_total.labels(service=self.service_name, terminal=str(terminal).lower()).inc()
        if terminal:
            logger.error(
                "alert_failed_terminal alert_id=%s ar_id=%s attempts=%s error=%s",
                row.alert_id,
                row.ar_id,
                row.attempts,
                error,
            )
        else:
            retries_total.labels(service=self.service_name, dependency="channel").inc()
            logger.warning(
                "alert_retry_scheduled alert_id=%s ar_id=%s attempts=%s/%s retry_at=%s error=%s",
                row.alert_id,
                row.ar_id,
                row.attempts,
                row.max_attempts,
                retry_at.isoformat(),
                error,
            )
        self.ledger.record_event(
            AlertFailed(
                event_id=audit_event_id("failed", row.alert_id, row.attempts),
                ar_id=row.ar_id,
                timestamp=now,
                payload=AlertFailedPayload(
                    alert_id=row.alert_id,
                    failed_at=now,
                    error=error,
                    attempts=row.attempts,
                    retry_at=retry_at,
                ),
            )
        )
        return terminal

    def _expire(self, alert_id: str) -> None:
        """Fail a row whose worker died during its final attempt."""

        with self.session_factory() as db:
            row = db.get(AlertRecord, alert_id)
        alert_token = alert_id_ctx.set(row.alert_id)
        ar_token = ar_id_ctx.set(row.ar_id)
        try:
            self._mark_failed(row, "processing timed out on final attempt")
        finally:
            alert_id_ctx.reset(alert_token)
            ar_id_ctx.reset(ar_token)

    async def deliver(self, alert_id: str) -> AlertStatus | None:
        """Attempt one alert. Returns the new status, or None if it was claimed elsewhere.

        A failed send is recorded as a retry or terminal failure and the
        original error is re-raised.
        """

        row = self._claim(alert_id)
        if row is None:
            return None

        alert_token = alert_id_ctx.set(row.alert_id)
        ar_token = ar_id_ctx.set(row.ar_id)
        try:
            text = render_template(row.message_template, row.message_data or {})
            started = time.perf_counter()
            try:
                delivery_id = await asyncio.wait_for(
                    self.channel.send(row.delivery_address, text),
                    timeout=self.send_timeout_seconds,
                )
            except asyncio.TimeoutError:
                self._mark_failed(row, f"send timed out after {self.send_timeout_seconds}s")
                raise
            except Exception as exc:
                self._mark_failed(row, str(exc) or exc.__class__.__name__)
                raise
            finally:
                alert_delivery_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)
            try:
                self._mark_sent(row, delivery_id)
            except Exception:
                # The message is out but the row is still PROCESSING; stale
                # reclaim will send it again.
                logger.error(
                    "alert_sent_unrecorded alert_id=%s ar_id=%s delivery_id=%s redelivery_after_seconds=%s",
                    row.alert_id,
                    row.ar_id,
                    delivery_id,
                    self.processing_timeout_seconds,
                )
                raise
            return AlertStatus.SENT
        finally:
            alert_id_ctx.reset(alert_token)
            ar_id_ctx.reset(ar_token)

    async def run_once(self) -> dict[str, int]:
        """Process one batch of due alerts; per-alert failures are logged, not raised."""

        now = self._now()
        with self.session_factory() as db:
            exhausted_ids = select_exhausted_stale_ids(db, AlertRecord, now, self.processing_timeout_seconds)
            requeued = requeue_stale_rows(db, AlertRecord, now, self.processing_timeout_seconds)
            alert_ids = select_due_ids(db, AlertRecord, now, self.batch_size)
            db.commit()
        if requeued:
            logger.warning("stale_alerts_requeued count=%s", requeued)

        counts = {"requeued": requeued, "expired": 0, "sent": 0, "failed": 0, "skipped": 0}
        for alert_id in exhausted_ids:
            try:
                self._expire(alert_id)
            except Exception as exc:
                logger.warning("alert_expire_error alert_id=%s error=%r", alert_id, exc)
                continue
            counts["expired"] += 1
        for alert_id in alert_ids:
            try:
                status = await self.deliver(alert_id)
            except Exception as exc:
                logger.warning("alert_delivery_error alert_id=%s error=%r", alert_id, exc)
                counts["failed"] += 1
                continue
            if status is None:
                counts["skipped"] += 1
            else:
                counts["sent"] += 1

        with self.session_factory() as db:
            update_queue_backlog_metrics(db, AlertRecord, self.service_name, self._now())
        return counts


class DeliveryWorker:
    """Runs `DeliveryService.run_once` on a fixed poll interval until stopped."""

    def __init__(self, delivery: DeliveryService, poll_interval_seconds: float = 10.0) -> None:
        self.delivery = delivery
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict[str, int]:
        return await self.delivery.run_once()

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("delivery_poll_failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("delivery_worker_started poll_interval_seconds=%s", self.poll_interval_seconds)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.delivery.channel.close()
        logger.info("delivery_worker_stopped")
