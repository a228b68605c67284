import sqlite3

from wallet_workspace.db import parse_database_config, rewrite_sql
from wallet_workspace.db_migrations import MIGRATIONS, apply_migrations, get_db_health, migration_005


class _FakeCursor:
    def __init__(self, one=None, all_rows=None):
        self._one = one
        self._all = all_rows or []

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class _FakePostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        normalized_sql = " ".join(sql.split())
        self.statements.append(normalized_sql)
        if normalized_sql.startswith("ALTER TABLE users ADD COLUMN IF NOT EXISTS image TEXT"):
            return _FakeCursor()
        raise AssertionError(f"Unexpected SQL in migration_005: {sql}")


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    conn.close()
    assert versions == [version for version, _ in MIGRATIONS]


def test_apply_migrations_adds_profile_image_to_existing_users(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE users (
            id TEXT PRIMARY KEY,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            name TEXT,
            created_at TEXT NOT NULL
        );
        INSERT INTO users(id, username, password_hash, name, created_at)
        VALUES ('u1', 'alice', 'legacy-hash', 'Alice', '2025-01-15T00:00:00Z');

        CREATE TABLE schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        );
        INSERT INTO schema_version(version, applied_at) VALUES (1, '2025-01-15T00:00:00Z');
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))
    assert health["ok"] is True

    conn = sqlite3.connect(db_path)
    row = conn.execute("SELECT password_hash, image FROM users WHERE username = 'alice'").fetchone()
    conn.close()
    assert row[0] == "legacy-hash"
    assert row[1] is None


def test_migration_005_uses_if_not_exists_for_postgres():
    conn = _FakePostgresConnection()

    migration_005(conn)

    assert conn.statements == ["ALTER TABLE users ADD COLUMN IF NOT EXISTS image TEXT"]


def test_health_reports_missing_tables(tmp_path):
    db_path = tmp_path / "partial.sqlite"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE users (id TEXT PRIMARY KEY, username TEXT)")
    conn.commit()
    conn.close()

    health = get_db_health(str(db_path))

    assert health["ok"] is False
    assert "upload_entries" in health["missing_tables"]
    assert health["missing_columns"]["users"] == ["created_at", "image", "name", "password_hash"]
    assert "uq_upload_selections_user_button" in health["missing_indexes"]


def test_upload_selection_is_unique_per_user_and_slot(tmp_path):
    db_path = tmp_path / "selections.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    conn.execute(
        "INSERT INTO users (id, username, password_hash, created_at) VALUES ('u1', 'alice', 'hash', 'now')"
    )
    for upload_id in ("a", "b"):
        conn.execute(
            """
            INSERT INTO upload_entries (id, button_key, file_name, file_path, uploaded_by_user_id, uploaded_at)
            VALUES (?, 'dataset', 'data.csv', 'dataset/data.csv', 'u1', 'now')
            """,
            (upload_id,),
        )
    conn.execute(
        "INSERT INTO upload_selections (id, button_key, upload_id, user_id, selected_at) VALUES ('s1', 'dataset', 'a', 'u1', 'now')"
    )
    try:
        conn.execute(
            "INSERT INTO upload_selections (id, button_key, upload_id, user_id, selected_at) VALUES ('s2', 'dataset', 'b', 'u1', 'now')"
        )
        raised = False
    except sqlite3.IntegrityError:
        raised = True
    conn.close()
    assert raised is True


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_parse_database_config_prefers_postgres_url():
    config = parse_database_config("instance/app.sqlite", "postgresql://user:pw@localhost:5432/wallets")

    assert config["backend"] == "postgres"
    assert config["database_name"] == "wallets"

    sqlite_config = parse_database_config("instance/app.sqlite", "")
    assert sqlite_config["backend"] == "sqlite"
    assert sqlite_config["database_name"] == "app.sqlite"


def test_rewrite_sql_switches_placeholders_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT * FROM users WHERE id = ? AND name = ?", ("a", "b"))

    assert sql == "SELECT * FROM users WHERE id = %s AND name = %s"
    assert params == ("a", "b")
    assert rewrite_sql("sqlite", "SELECT ?", (1,)) == ("SELECT ?", (1,))
