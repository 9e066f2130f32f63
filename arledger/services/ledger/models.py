"""Ledger database models.

`ar_events` is the source of truth; `ar_state` is the materialized view folded
from it and `import_logs` records bulk-ingestion runs.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Date, DateTime, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from arledger.common.db import Base, JSONType


class EventRecord(Base):
    """Append-only row for one domain event."""

    __tablename__ = "ar_events"
    __table_args__ = (
        Index("ix_ar_events_ar_id_timestamp", "ar_id", "timestamp"),
        Index("ix_ar_events_event_type_timestamp", "event_type", "timestamp"),
    )

    # Insertion order breaks ties between equal timestamps.
    position: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    ar_id: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actor: Mapped[dict] = mapped_column(JSONType, nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ArState(Base):
    """Current state of one AR, guarded by `version` for compare-and-swap writes."""

    __tablename__ = "ar_state"
    __table_args__ = (Index("ix_ar_state_status_due_date", "current_status", "due_date"),)

    ar_id: Mapped[str] = mapped_column(String, primary_key=True)
    home_id: Mapped[str] = mapped_column(String, index=True)
    zone: Mapped[str] = mapped_column(String, index=True)
    customer_name: Mapped[str] = mapped_column(String)
    amount_value: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    amount_currency: Mapped[str] = mapped_column(String(8))
    current_status: Mapped[str] = mapped_column(String)
    invoice_date: Mapped[date] = mapped_column(Date)
    due_date: Mapped[date] = mapped_column(Date)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    assigned_sales_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_chat_id: Mapped[str | None] = mapped_column(String, nullable=True)
    manager_chat_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_event_id: Mapped[str] = mapped_column(String)
    last_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ImportLog(Base):
    """Audit record of one spreadsheet ingestion run."""

    __tablename__ = "import_logs"

    import_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    file_name: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True, default="PROCESSING")
    total_rows: Mapped[int] = mapped_column(Integer, default=0)
    created_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSONType, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
