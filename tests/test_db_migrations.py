import sqlite3

from finance_assistant.db import rewrite_sql
from finance_assistant.db_migrations import (
    REQUIRED_TABLES,
    apply_migrations,
    get_db_health,
    migration_002,
    migration_004,
)


class _FakeCursor:
    def __init__(self, one=None, all_rows=None):
        self._one = one
        self._all = all_rows or []

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class _RecordingPostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        return _FakeCursor()


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == 5
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"
    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    assert versions == [1, 2, 3, 4, 5]
    conn.close()


def test_apply_migrations_on_legacy_payslips_table(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE payslips (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_name TEXT NOT NULL UNIQUE,
            pay_date TEXT NOT NULL,
            net_pay REAL NOT NULL,
            gross_pay REAL,
            tax_paid REAL,
            ni_paid REAL,
            pension_contribution REAL,
            other_deductions REAL,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO payslips(file_name, pay_date, net_pay) VALUES ('march.pdf', '2024-03-28', 2100.0);
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))
    assert health["ok"] is True

    conn = sqlite3.connect(db_path)
    row = conn.execute("SELECT file_name, net_pay, ytd_taxable_pay FROM payslips WHERE id = 1").fetchone()
    assert row == ("march.pdf", 2100.0, None)
    conn.close()


def test_health_reports_missing_tables_and_columns(tmp_path):
    db_path = tmp_path / "partial.sqlite"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE pensions (id INTEGER PRIMARY KEY, name TEXT)")
    conn.commit()
    conn.close()

    health = get_db_health(str(db_path))

    assert health["ok"] is False
    assert health["schema_version"] == 0
    assert "tax_returns" in health["missing_tables"]
    assert health["missing_columns"]["pensions"] == ["amount", "created_at", "notes", "updated_at", "url"]
    assert "idx_expenses_date" in health["missing_indexes"]


def test_foreign_keys_cascade_after_migrations(tmp_path):
    db_path = tmp_path / "fk.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("INSERT INTO documents (file_name, file_type, assistant_type) VALUES ('r.jpg', 'image/jpeg', 'expenses')")
    conn.execute("INSERT INTO document_content (document_id, content_type, content) VALUES (1, 'extracted_json', '{}')")
    conn.execute(
        "INSERT INTO expenses (document_id, file_name, description, date, amount) VALUES (1, 'r.jpg', 'Taxi', '2025-01-01', 9.0)"
    )
    conn.execute("DELETE FROM documents WHERE id = 1")

    assert conn.execute("SELECT COUNT(*) FROM document_content").fetchone()[0] == 0
    assert conn.execute("SELECT document_id FROM expenses WHERE id = 1").fetchone()[0] is None
    conn.close()


def test_postgres_tables_use_bigserial():
    conn = _RecordingPostgresConnection()

    migration_002(conn)

    creates = [stmt for stmt in conn.statements if stmt.startswith("CREATE TABLE")]
    assert len(creates) == 2
    assert all("BIGSERIAL PRIMARY KEY" in stmt for stmt in creates)
    assert not any("AUTOINCREMENT" in stmt for stmt in creates)


def test_postgres_ytd_columns_use_add_column_if_not_exists():
    conn = _RecordingPostgresConnection()

    migration_004(conn)

    assert conn.statements == [
        "ALTER TABLE payslips ADD COLUMN IF NOT EXISTS ytd_taxable_pay REAL",
        "ALTER TABLE payslips ADD COLUMN IF NOT EXISTS ytd_taxable_ni_pay REAL",
        "ALTER TABLE payslips ADD COLUMN IF NOT EXISTS ytd_paye_tax REAL",
        "ALTER TABLE payslips ADD COLUMN IF NOT EXISTS ytd_ni REAL",
    ]


def test_rewrite_sql_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT last_insert_rowid() AS id", None)
    assert sql == "SELECT lastval() AS id"
    assert params == ()

    sql, params = rewrite_sql("postgres", "SELECT * FROM payslips WHERE pay_date >= ? AND pay_date <= ?", ("a", "b"))
    assert sql == "SELECT * FROM payslips WHERE pay_date >= %s AND pay_date <= %s"
    assert params == ("a", "b")

    assert rewrite_sql("sqlite", "SELECT ?", (1,)) == ("SELECT ?", (1,))


def test_rewrite_sql_skips_quoted_marks_and_escapes_percent():
    sql, params = rewrite_sql(
        "postgres",
        "SELECT * FROM expenses WHERE description = 'why?' AND notes LIKE '10%' AND id = ?",
        5,
    )

    assert sql == "SELECT * FROM expenses WHERE description = 'why?' AND notes LIKE '10%%' AND id = %s"
    assert params == (5,)

    sql, _ = rewrite_sql("postgres", "SELECT amount % 2 FROM expenses", None)
    assert sql == "SELECT amount %% 2 FROM expenses"


def test_table_info_pragma_maps_to_information_schema():
    sql, params = rewrite_sql("postgres", "PRAGMA table_info(payslips)", None)

    assert "information_schema.columns" in sql
    assert params == ("payslips",)


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    assert set(REQUIRED_TABLES) <= {
        r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    }
    conn.close()
