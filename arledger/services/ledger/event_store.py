"""Append-only event log backed by the `ar_events` table."""

from collections.abc import Iterator
from datetime import datetime
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from arledger.common.dates import ensure_utc
from arledger.common.events import ArEvent, DomainEvent, EventType, event_type_name, parse_event
from arledger.common.logging import event_id_ctx, logger
from arledger.common.metrics import duplicate_events_skipped_total, events_appended_total
from arledger.services.ledger.models import EventRecord


class AppendOutcome(str, Enum):
    APPENDED = "APPENDED"
    DUPLICATE_IGNORED = "DUPLICATE_IGNORED"


class EventStore:
    """Persists events once per identity and reads them back in timestamp order."""

    def __init__(self, session_factory, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _exists(self, db, event_id: str) -> bool:
        return (
            db.execute(select(EventRecord.position).where(EventRecord.event_id == event_id)).first()
            is not None
        )

    def _record_duplicate(self, event: ArEvent) -> AppendOutcome:
        kind = event_type_name(event)
        logger.info("duplicate event skipped event_type=%s event_id=%s", kind, event.event_id)
        duplicate_events_skipped_total.labels(service=self.service_name, event_type=kind).inc()
        return AppendOutcome.DUPLICATE_IGNORED

    def append(self, event: ArEvent) -> AppendOutcome:
        """Persist `event` unless its identity is already stored.

        A duplicate identity is absorbed and reported as `DUPLICATE_IGNORED`;
        storage errors propagate.
        """

        token = event_id_ctx.set(event.event_id)
        try:
            return self._append(event)
        finally:
            event_id_ctx.reset(token)

    def _append(self, event: ArEvent) -> AppendOutcome:
        kind = event_type_name(event)
        with self.session_factory() as db:
            if self._exists(db, event.event_id):
                return self._record_duplicate(event)
            db.add(
                EventRecord(
                    event_id=event.event_id,
                    ar_id=event.ar_id,
                    event_type=kind,
                    timestamp=ensure_utc(event.timestamp),
                    actor=event.actor.model_dump(mode="json"),
                    schema_version=event.schema_version,
                    payload=event.payload_json(),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # Lost a race with a concurrent append of the same identity.
                db.rollback()
                if self._exists(db, event.event_id):
                    return self._record_duplicate(event)
                raise
        events_appended_total.labels(service=self.service_name, event_type=kind).inc()
        return AppendOutcome.APPENDED

    @staticmethod
    def _to_event(row: EventRecord) -> DomainEvent:
        return parse_event(
            {
                "event_id": row.event_id,
                "ar_id": row.ar_id,
                "event_type": row.event_type,
                "timestamp": ensure_utc(row.timestamp),
                "actor": row.actor,
                "schema_version": row.schema_version,
                "payload": row.payload,
            }
        )

    def events_for(self, ar_id: str) -> list[DomainEvent]:
        """Return one AR's events ordered by timestamp, then insertion."""

        with self.session_factory() as db:
            rows = db.execute(
                select(EventRecord)
                .where(EventRecord.ar_id == ar_id)
                .order_by(EventRecord.timestamp, EventRecord.position)
            ).scalars().all()
        return [self._to_event(row) for row in rows]

    def events_by_type(
        self,
        event_type: EventType | str,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[DomainEvent]:
        """Return events of one kind, optionally bounded by timestamp (inclusive)."""

        kind = event_type.value if isinstance(event_type, EventType) else str(event_type)
        query = select(EventRecord).where(EventRecord.event_type == kind)
        if from_time is not None:
            query = query.where(EventRecord.timestamp >= ensure_utc(from_time))
        if to_time is not None:
            query = query.where(EventRecord.timestamp <= ensure_utc(to_time))
        with self.session_factory() as db:
            rows = db.execute(
                query.order_by(EventRecord.timestamp, EventRecord.position)
            ).scalars().all()
        return [self._to_event(row) for row in rows]

    def stream_all(self, batch_size: int = 500) -> Iterator[DomainEvent]:
        """Lazily yield the whole log in timestamp order.

        Each call starts a fresh pass from the beginning.
        """

        with self.session_factory() as db:
            result = db.execute(
                select(EventRecord)
                .order_by(EventRecord.timestamp, EventRecord.position)
                .execution_options(yield_per=batch_size)
            ).scalars()
            for row in result:
                yield self._to_event(row)

    def count_for(self, ar_id: str) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(EventRecord).where(EventRecord.ar_id == ar_id)
            ).scalar_one()
