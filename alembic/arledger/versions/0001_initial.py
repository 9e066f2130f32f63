"""initial receivables schema

Revision ID: 0001_arledger
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_arledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ar_events",
        sa.Column("position", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("ar_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("position"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index("ix_ar_events_ar_id_timestamp", "ar_events", ["ar_id", "timestamp"])
    op.create_index("ix_ar_events_event_type_timestamp", "ar_events", ["event_type", "timestamp"])

    op.create_table(
        "ar_state",
        sa.Column("ar_id", sa.String(), nullable=False),
        sa.Column("home_id", sa.String(), nullable=False),
        sa.Column("zone", sa.String(), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=False),
        sa.Column("amount_value", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_currency", sa.String(8), nullable=False),
        sa.Column("current_status", sa.String(), nullable=False),
        sa.Column("invoice_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_date", sa.Date(), nullable=True),
        sa.Column("assigned_sales_id", sa.String(), nullable=True),
        sa.Column("customer_chat_id", sa.String(), nullable=True),
        sa.Column("manager_chat_id", sa.String(), nullable=True),
        sa.Column("last_event_id", sa.String(), nullable=False),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_count", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("ar_id"),
    )
    op.create_index("ix_ar_state_home_id", "ar_state", ["home_id"])
    op.create_index("ix_ar_state_zone", "ar_state", ["zone"])
    op.create_index("ix_ar_state_assigned_sales_id", "ar_state", ["assigned_sales_id"])
    op.create_index("ix_ar_state_status_due_date", "ar_state", ["current_status", "due_date"])

    op.create_table(
        "alert_queue",
        sa.Column("alert_id", sa.String(), nullable=False),
        sa.Column("ar_id", sa.String(), nullable=False),
        sa.Column("dedup_key", sa.String(), nullable=True),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("delivery_platform", sa.String(), nullable=False),
        sa.Column("delivery_address", sa.String(), nullable=False),
        sa.Column("message_template", sa.Text(), nullable=False),
        sa.Column("message_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("triggered_by_event_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("alert_id"),
        sa.UniqueConstraint("dedup_key"),
    )
    op.create_index("ix_alert_queue_ar_id", "alert_queue", ["ar_id"])
    op.create_index("ix_alert_queue_status_scheduled_for", "alert_queue", ["status", "scheduled_for"])

    op.create_table(
        "import_logs",
        sa.Column("import_id", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_rows", sa.Integer(), nullable=False),
        sa.Column("created_count", sa.Integer(), nullable=False),
        sa.Column("updated_count", sa.Integer(), nullable=False),
        sa.Column("skipped_count", sa.Integer(), nullable=False),
        sa.Column("error_count", sa.Integer(), nullable=False),
        sa.Column("errors", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("import_id"),
    )
    op.create_index("ix_import_logs_file_name", "import_logs", ["file_name"])
    op.create_index("ix_import_logs_status", "import_logs", ["status"])


def downgrade() -> None:
    op.drop_index("ix_import_logs_status", table_name="import_logs")
    op.drop_index("ix_import_logs_file_name", table_name="import_logs")
    op.drop_table("import_logs")
    op.drop_index("ix_alert_queue_status_scheduled_for", table_name="alert_queue")
    op.drop_index("ix_alert_queue_ar_id", table_name="alert_queue")
    op.drop_table("alert_queue")
    op.drop_index("ix_ar_state_status_due_date", table_name="ar_state")
    op.drop_index("ix_ar_state_assigned_sales_id", table_name="ar_state")
    op.drop_index("ix_ar_state_zone", table_name="ar_state")
    op.drop_index("ix_ar_state_home_id", table_name="ar_state")
    op.drop_table("ar_state")
    op.drop_index("ix_ar_events_event_type_timestamp", table_name="ar_events")
    op.drop_index("ix_ar_events_ar_id_timestamp", table_name="ar_events")
    op.drop_table("ar_events")
