"""
Incremental schema migrations.

The business tables predate the ledger integration. Databases created before
the sync columns existed get them added here; create_all() only creates
missing tables, never missing columns.

Each migration is idempotent: columns are only added if absent.
Called from get_engine() after create_all().
"""
from sqlalchemy import inspect, text

SYNCABLE_TABLES = ("client", "vendor", "invoice", "bill", "payment")

SYNC_COLUMNS = (
    ("external_id", "VARCHAR"),
    ("last_synced_at", "DATETIME"),
    ("sync_hash", "VARCHAR"),
    ("sync_snapshot_json", "VARCHAR"),
    ("extensions_json", "VARCHAR"),
)


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for table in SYNCABLE_TABLES:
            for column, col_type in SYNC_COLUMNS:
                _add_column_if_missing(conn, table, column, col_type)

        # SyncLog: link retries back to the entry they re-run
        _add_column_if_missing(conn, "synclog", "retry_of", "INTEGER")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLModel names it).
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "VARCHAR", "DATETIME".
    """
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing_columns = {col["name"] for col in inspector.get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
