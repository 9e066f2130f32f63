"""make ar_events append-only in PostgreSQL

The ledger only ever INSERTs audit and state events; snapshots are rebuilt
from this table, so an edited or deleted row would silently change replayed
balances and statuses. The trigger rejects UPDATE and DELETE at the database.
Test databases are built with `metadata.create_all` and never run this
revision; there the repository simply has no update or delete path for events.

Revision ID: 0002_event_log_immutability
Revises: 0001_arledger
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_event_log_immutability"
down_revision = "0001_arledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # TG_OP names the rejected statement in the error raised to the caller.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_ar_event_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'ar_events is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ar_events_immutable
        BEFORE UPDATE OR DELETE ON ar_events
        FOR EACH ROW
        EXECUTE FUNCTION prevent_ar_event_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ar_events_immutable ON ar_events;")
    op.execute("DROP FUNCTION IF EXISTS prevent_ar_event_mutation();")
