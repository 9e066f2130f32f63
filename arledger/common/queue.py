"""Reusable helpers for claiming and recycling alert queue rows.

These utilities are model-agnostic: they operate on any mapped class with
`alert_id`, `status`, `priority`, `scheduled_for`, `attempts`, `max_attempts`,
`processing_started_at` and `updated_at` columns.
"""

from datetime import datetime, timedelta

from sqlalchemy import func, select, update

from arledger.common.dates import ensure_utc
from arledger.common.domain import AlertStatus
from arledger.common.metrics import alert_queue_oldest_pending_age_seconds, alert_queue_pending_total


def select_due_ids(db, queue_model, now: datetime, limit: int) -> list[str]:
    """Return ids of QUEUED rows due at `now`, highest priority then oldest schedule first."""

    table = queue_model.__table__
    rows = db.execute(
        select(table.c.alert_id)
        .where(table.c.status == AlertStatus.QUEUED.value, table.c.scheduled_for <= now)
        .order_by(table.c.priority.desc(), table.c.scheduled_for.asc())
        .limit(limit)
    ).all()
    return [row.alert_id for row in rows]


def claim_row(db, queue_model, alert_id: str, now: datetime) -> bool:
    """Move one row QUEUED -> PROCESSING and count the attempt.

    Returns False when another poller claimed it first.
    """

    table = queue_model.__table__
    result = db.execute(
        update(table)
        .where(table.c.alert_id == alert_id, table.c.status == AlertStatus.QUEUED.value)
        .values(
            status=AlertStatus.PROCESSING.value,
            attempts=table.c.attempts + 1,
            processing_started_at=now,
            updated_at=now,
        )
    )
    return result.rowcount == 1


def _stale_criteria(table, now: datetime, processing_timeout_seconds: int) -> tuple:
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    return (
        table.c.status == AlertStatus.PROCESSING.value,
        table.c.processing_started_at.is_not(None),
        table.c.processing_started_at < stale_before,
    )


def requeue_stale_rows(db, queue_model, now: datetime, processing_timeout_seconds: int) -> int:
    """Return rows stuck in PROCESSING (crashed worker) to QUEUED.

    Rows that already used their last attempt are left for
    `select_exhausted_stale_ids`.
    """

    table = queue_model.__table__
    result = db.execute(
        update(table)
        .where(
            *_stale_criteria(table, now, processing_timeout_seconds),
            table.c.attempts < table.c.max_attempts,
        )
        .values(status=AlertStatus.QUEUED.value, processing_started_at=None, updated_at=now)
    )
    return result.rowcount or 0


def update_queue_backlog_metrics(db, queue_model, service_name: str, now: datetime) -> None:
    """Update gauges for queue depth and the age of the oldest due alert."""

    table = queue_model.__table__
    pending_statuses = (AlertStatus.QUEUED.value, AlertStatus.PROCESSING.value)
    pending_count = db.execute(
        select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    oldest_due = db.execute(
        select(func.min(table.c.scheduled_for)).where(
            table.c.status == AlertStatus.QUEUED.value, table.c.scheduled_for <= now
        )
    ).scalar_one()
    age_seconds = 0.0
    if oldest_due is not None:
        age_seconds = max(0.0, (now - ensure_utc(oldest_due)).total_seconds())
    alert_queue_pending_total.labels(service=service_name).set(float(pending_count))
    alert_queue_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


def select_exhausted_stale_ids(db, queue_model, now: datetime, processing_timeout_seconds: int) -> list[str]:
    """Ids of stale PROCESSING rows whose crashed attempt was their last one."""

    table = queue_model.__table__
    rows = db.execute(
        select(table.c.alert_id).where(
            *_stale_criteria(table, now, processing_timeout_seconds),
            table.c.attempts >= table.c.max_attempts,
        )
    ).all()
    return [row.alert_id for row in rows]
