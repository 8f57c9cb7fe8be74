"""
Database migrations for the sync status store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called from init_database() after create_all() so both fresh installs
and status databases created by earlier releases (before remote-sync
tracking and image fields existed) are handled without manual steps.
"""
from sqlalchemy import inspect, text

SYNC_STATUS_TABLES = (
    "productsyncstatus",
    "customersyncstatus",
    "vendorsyncstatus",
    "purchaseordersyncstatus",
    "salesordersyncstatus",
)

# Columns introduced after the first release, per sync status table
SYNC_STATUS_COLUMNS = (
    ("synced_to_target", "BOOLEAN NOT NULL DEFAULT 0"),
    ("last_remote_sync_time", "DATETIME"),
    ("image_url", "VARCHAR"),
    ("image_hash", "VARCHAR(64)"),
    ("image_sync_time", "DATETIME"),
)


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for table in SYNC_STATUS_TABLES:
            for column, col_type in SYNC_STATUS_COLUMNS:
                _add_column_if_missing(conn, table, column, col_type)

        _add_column_if_missing(conn, "executionhistory", "error_message", "VARCHAR")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLModel names it).
        column: Column name to add.
        col_type: SQL type string, e.g. "DATETIME", "VARCHAR(64)".
    """
    existing_columns = {c["name"] for c in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
