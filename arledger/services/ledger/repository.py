"""Snapshot and ingestion-log persistence for the ledger."""

import calendar
from datetime import date, datetime

from sqlalchemy import delete, select, update

from arledger.common.dates import ensure_utc, utcnow
from arledger.common.domain import ArStatus, Money
from arledger.common.errors import ConcurrentModification
from arledger.common.metrics import concurrency_conflicts_total
from arledger.services.ledger.models import ArState, ImportLog
from arledger.services.ledger.schemas import ArSnapshot, ImportLogRequest


def _row_values(snapshot: ArSnapshot) -> dict:
    return {
        "home_id": snapshot.home_id,
        "zone": snapshot.zone,
        "customer_name": snapshot.customer_name,
        "amount_value": snapshot.amount.value,
        "amount_currency": snapshot.amount.currency,
        "current_status": snapshot.current_status.value,
        "invoice_date": snapshot.invoice_date,
        "due_date": snapshot.due_date,
        "paid_date": snapshot.paid_date,
        "assigned_sales_id": snapshot.assigned_sales_id,
        "customer_chat_id": snapshot.customer_chat_id,
        "manager_chat_id": snapshot.manager_chat_id,
        "last_event_id": snapshot.last_event_id,
        "last_event_at": ensure_utc(snapshot.last_event_at),
        "event_count": snapshot.event_count,
        "version": snapshot.version,
    }


def _to_snapshot(row: ArState) -> ArSnapshot:
    return ArSnapshot(
        ar_id=row.ar_id,
        home_id=row.home_id,
        zone=row.zone,
        customer_name=row.customer_name,
        amount=Money(value=row.amount_value, currency=row.amount_currency),
        current_status=ArStatus(row.current_status),
        invoice_date=row.invoice_date,
        due_date=row.due_date,
        paid_date=row.paid_date,
        assigned_sales_id=row.assigned_sales_id,
        customer_chat_id=row.customer_chat_id,
        manager_chat_id=row.manager_chat_id,
        last_event_id=row.last_event_id,
        last_event_at=ensure_utc(row.last_event_at),
        event_count=row.event_count,
        version=row.version,
    )


class ArRepository:
    """Reads and compare-and-swap writes of `ar_state` rows."""

    def __init__(self, session_factory, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _find(self, *criteria, order_by=None) -> list[ArSnapshot]:
        query = select(ArState).where(*criteria)
        query = query.order_by(*(order_by or (ArState.due_date, ArState.ar_id)))
        with self.session_factory() as db:
            rows = db.execute(query).scalars().all()
        return [_to_snapshot(row) for row in rows]

    def get(self, ar_id: str) -> ArSnapshot | None:
        with self.session_factory() as db:
            row = db.get(ArState, ar_id)
            return _to_snapshot(row) if row else None

    def insert(self, snapshot: ArSnapshot) -> bool:
        """Insert a new snapshot; returns False when one already exists."""

        with self.session_factory() as db:
            if db.get(ArState, snapshot.ar_id) is not None:
                return False
            db.add(ArState(ar_id=snapshot.ar_id, **_row_values(snapshot)))
            db.commit()
        return True

    def save(self, snapshot: ArSnapshot, expected_version: int) -> None:
        """Write `snapshot` only if the stored version is still `expected_version`.

        Guarded by `(ar_id, version)` so a stale writer cannot overwrite a
        newer state.
        """

        with self.session_factory() as db:
            result = db.execute(
                update(ArState)
                .where(ArState.ar_id == snapshot.ar_id, ArState.version == expected_version)
                .values(**_row_values(snapshot))
            )
            if result.rowcount != 1:
                db.rollback()
                concurrency_conflicts_total.labels(service=self.service_name).inc()
                raise ConcurrentModification(snapshot.ar_id, expected_version)
            db.commit()

    def delete(self, ar_id: str) -> None:
        """Remove a snapshot (administrative cleanup only)."""

        with self.session_factory() as db:
            db.execute(delete(ArState).where(ArState.ar_id == ar_id))
            db.commit()

    def find_by_home(self, home_id: str) -> list[ArSnapshot]:
        return self._find(ArState.home_id == home_id)

    def find_by_zone(self, zone: str) -> list[ArSnapshot]:
        return self._find(ArState.zone == zone)

    def find_by_status(self, status: ArStatus) -> list[ArSnapshot]:
        return self._find(ArState.current_status == ArStatus(status).value)

    def find_by_due_date_and_status(self, due_date: date, status: ArStatus) -> list[ArSnapshot]:
        return self._find(
            ArState.due_date == due_date,
            ArState.current_status == ArStatus(status).value,
        )

    def find_overdue(self, as_of: date) -> list[ArSnapshot]:
        """PENDING snapshots whose due date is before `as_of`, oldest first."""

        return self._find(
            ArState.current_status == ArStatus.PENDING.value,
            ArState.due_date < as_of,
        )

    def find_by_sales(self, sales_id: str) -> list[ArSnapshot]:
        return self._find(ArState.assigned_sales_id == sales_id)

    def find_by_home_and_due_date(self, home_id: str, due_date: date) -> ArSnapshot | None:
        found = self._find(ArState.home_id == home_id, ArState.due_date == due_date)
        return found[0] if found else None

    def find_by_home_in_month(self, home_id: str, year: int, month: int) -> ArSnapshot | None:
        """Any AR for `home_id` due in the given calendar month."""

        first = date(year, month, 1)
        last = date(year, month, calendar.monthrange(year, month)[1])
        found = self._find(ArState.home_id == home_id, ArState.due_date >= first, ArState.due_date <= last)
        return found[0] if found else None

    def find_all(self, limit: int = 100, offset: int = 0) -> list[ArSnapshot]:
        query = (
            select(ArState)
            .order_by(ArState.created_at.desc(), ArState.ar_id)
            .offset(offset)
            .limit(limit)
        )
        with self.session_factory() as db:
            rows = db.execute(query).scalars().all()
        return [_to_snapshot(row) for row in rows]

    def billable_home_ids(self) -> list[str]:
        """Distinct billable entities with at least one AR not written off."""

        with self.session_factory() as db:
            rows = db.execute(
                select(ArState.home_id)
                .where(ArState.current_status != ArStatus.WRITTEN_OFF.value)
                .distinct()
                .order_by(ArState.home_id)
            ).all()
        return [row.home_id for row in rows]


class ImportLogRepository:
    """Audit sink for bulk-ingestion runs."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def save(self, req: ImportLogRequest) -> ImportLog:
        """Create or update one run record."""

        values = req.model_dump(exclude={"import_id"})
        with self.session_factory() as db:
            log = db.get(ImportLog, req.import_id) if req.import_id else None
            if log is None:
                log = ImportLog(**values, started_at=utcnow())
                if req.import_id:
                    log.import_id = req.import_id
                db.add(log)
            else:
                for key, value in values.items():
                    setattr(log, key, value)
            db.commit()
            return log

    def get(self, import_id: str) -> ImportLog | None:
        with self.session_factory() as db:
            return db.get(ImportLog, import_id)

    def find_by_status(self, status: str) -> list[ImportLog]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(ImportLog).where(ImportLog.status == status).order_by(ImportLog.started_at.desc())
                ).scalars()
            )

    def find_recent(self, limit: int = 20) -> list[ImportLog]:
        with self.session_factory() as db:
            return list(
                db.execute(select(ImportLog).order_by(ImportLog.started_at.desc()).limit(limit)).scalars()
            )

    def find_by_file_name(self, file_name: str) -> list[ImportLog]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(ImportLog)
                    .where(ImportLog.file_name == file_name)
                    .order_by(ImportLog.started_at.desc())
                ).scalars()
            )


def import_log_view(log: ImportLog) -> dict:
    """Plain dict for API responses."""

    def _iso(value: datetime | None) -> str | None:
        return ensure_utc(value).isoformat() if value else None

    return {
        "import_id": log.import_id,
        "file_name": log.file_name,
        "status": log.status,
        "total_rows": log.total_rows,
        "created_count": log.created_count,
        "updated_count": log.updated_count,
        "skipped_count": log.skipped_count,
        "error_count": log.error_count,
        "errors": list(log.errors or []),
        "error_message": log.error_message,
        "started_at": _iso(log.started_at),
        "completed_at": _iso(log.completed_at),
    }
