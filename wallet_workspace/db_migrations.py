import argparse
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "name", "image", "created_at"},
        "indexes": set(),
    },
    "upload_entries": {
        "columns": {"id", "button_key", "file_name", "description", "file_path", "uploaded_by_user_id", "uploaded_at"},
        "indexes": {
            "idx_upload_entries_button_key",
            "idx_upload_entries_user",
            "idx_upload_entries_uploaded_at",
        },
    },
    "upload_selections": {
        "columns": {"id", "button_key", "upload_id", "user_id", "selected_at"},
        "indexes": {"uq_upload_selections_user_button", "idx_upload_selections_upload_id"},
    },
    "filter_presets": {
        "columns": {"id", "name", "template_json", "created_by_user_id", "created_at"},
        "indexes": {"idx_filter_presets_user", "idx_filter_presets_created_at"},
    },
    "filter_preset_chains": {
        "columns": {"id", "name", "templates_json", "created_by_user_id", "created_at"},
        "indexes": {"idx_filter_preset_chains_user", "idx_filter_preset_chains_created_at"},
    },
    "analysis_presets": {
        "columns": {"id", "name", "template_json", "created_by_user_id", "created_at"},
        "indexes": {"idx_analysis_presets_user", "idx_analysis_presets_created_at"},
    },
    "analysis_preset_chains": {
        "columns": {"id", "name", "chain_json", "created_by_user_id", "created_at"},
        "indexes": {"idx_analysis_preset_chains_user", "idx_analysis_preset_chains_created_at"},
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def column_exists(conn, table, column):
    return table_exists(conn, table) and column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    conn.execute(create_sql)


def _preset_table(conn, table, payload_column):
    ensure_table(
        conn,
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            {payload_column} TEXT NOT NULL,
            created_by_user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (created_by_user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    create_index_if_missing(
        conn,
        f"idx_{table}_user",
        f"CREATE INDEX idx_{table}_user ON {table}(created_by_user_id)",
    )
    create_index_if_missing(
        conn,
        f"idx_{table}_created_at",
        f"CREATE INDEX idx_{table}_created_at ON {table}(created_at)",
    )


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            name TEXT,
            created_at TEXT NOT NULL
        )
        """,
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS upload_entries (
            id TEXT PRIMARY KEY,
            button_key TEXT NOT NULL,
            file_name TEXT NOT NULL,
            description TEXT,
            file_path TEXT NOT NULL,
            uploaded_by_user_id TEXT NOT NULL,
            uploaded_at TEXT NOT NULL,
            FOREIGN KEY (uploaded_by_user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS upload_selections (
            id TEXT PRIMARY KEY,
            button_key TEXT NOT NULL,
            upload_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            selected_at TEXT NOT NULL,
            FOREIGN KEY (upload_id) REFERENCES upload_entries (id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_upload_entries_button_key",
        "CREATE INDEX idx_upload_entries_button_key ON upload_entries(button_key)",
    )
    create_index_if_missing(
        conn,
        "idx_upload_entries_user",
        "CREATE INDEX idx_upload_entries_user ON upload_entries(uploaded_by_user_id)",
    )
    create_index_if_missing(
        conn,
        "idx_upload_entries_uploaded_at",
        "CREATE INDEX idx_upload_entries_uploaded_at ON upload_entries(uploaded_at)",
    )
    create_index_if_missing(
        conn,
        "uq_upload_selections_user_button",
        "CREATE UNIQUE INDEX uq_upload_selections_user_button ON upload_selections(user_id, button_key)",
    )
    create_index_if_missing(
        conn,
        "idx_upload_selections_upload_id",
        "CREATE INDEX idx_upload_selections_upload_id ON upload_selections(upload_id)",
    )


def migration_003(conn):
    _preset_table(conn, "filter_presets", "template_json")
    _preset_table(conn, "filter_preset_chains", "templates_json")


def migration_004(conn):
    _preset_table(conn, "analysis_presets", "template_json")
    _preset_table(conn, "analysis_preset_chains", "chain_json")


def migration_005(conn):
    # Profile images arrived after the first accounts were created.
    add_column_if_missing(conn, "users", "image TEXT")


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
    (5, migration_005),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check wallet workspace DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(get_db_health(args.db_path))


if __name__ == "__main__":
    main()
