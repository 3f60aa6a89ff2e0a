"""
Additive schema migrations.

Databases created before the membership refresh and the incremental
enrollment sync existed lack a few columns. create_all() never alters an
existing table, so each column is added here if absent.

Called automatically from build_engine() after create_all(), so both fresh
installs and existing databases are handled without manual steps.
"""
from sqlalchemy import inspect, text

# (table, column, SQL type) in the order they were introduced
COLUMN_MIGRATIONS = [
    ("lmsuser", "enrollment_synced_at", "TIMESTAMP"),
    ("lmsgroup", "is_active", "BOOLEAN DEFAULT 1"),
    ("lmsgroup", "deleted_at", "TIMESTAMP"),
    ("lmsgroup", "deletion_reason", "VARCHAR"),
    ("lmsgroup", "last_checked_at", "TIMESTAMP"),
    ("lmscourse", "npcu_value", "INTEGER DEFAULT 0"),
    ("lmscourse", "is_certification", "BOOLEAN DEFAULT 0"),
    ("synclog", "mode", "VARCHAR DEFAULT 'full'"),
    ("synclog", "details_json", "TEXT"),
]


def run_migrations(engine) -> None:
    """Apply all pending column migrations.

    Safe to call multiple times: existing columns are left alone.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for table, column, col_type in COLUMN_MIGRATIONS:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if the table exists and lacks it."""
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing_columns = {col["name"] for col in inspector.get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
