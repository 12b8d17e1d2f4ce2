"""
Bootstrap DDL for the `credit_transactions` table.

Migrations proper belong to the host application; this module only provides
an idempotent schema for development, tests and the `init-db` CLI command.
"""

from __future__ import annotations

from psycopg import Connection

TABLE_NAME = "credit_transactions"

# created_at defaults to clock_timestamp() rather than now(): rows are inserted
# while the owner lock is held, so wall-clock insert time follows id order.
SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id              BIGSERIAL PRIMARY KEY,
    owner_kind      TEXT        NOT NULL,
    owner_id        TEXT        NOT NULL,
    amount          NUMERIC     NOT NULL CHECK (amount >= 0),
    kind            TEXT        NOT NULL CHECK (kind IN ('credit', 'debit')),
    credit_type     TEXT        NULL,
    description     TEXT        NULL,
    metadata        JSONB       NOT NULL DEFAULT '{{}}'::jsonb,
    running_balance NUMERIC     NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);

CREATE INDEX IF NOT EXISTS {TABLE_NAME}_owner_id_idx
    ON {TABLE_NAME} (owner_kind, owner_id, id);

CREATE INDEX IF NOT EXISTS {TABLE_NAME}_owner_created_idx
    ON {TABLE_NAME} (owner_kind, owner_id, created_at, id);

CREATE OR REPLACE FUNCTION {TABLE_NAME}_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION '{TABLE_NAME} is append-only (% rejected)', TG_OP;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS {TABLE_NAME}_append_only ON {TABLE_NAME};
CREATE TRIGGER {TABLE_NAME}_append_only
    BEFORE UPDATE OR DELETE ON {TABLE_NAME}
    FOR EACH ROW EXECUTE FUNCTION {TABLE_NAME}_append_only();
"""


def ensure_schema(conn: Connection) -> None:
    """Create the ledger table, its indexes and the append-only trigger."""
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)


__all__ = ["TABLE_NAME", "SCHEMA_SQL", "ensure_schema"]
