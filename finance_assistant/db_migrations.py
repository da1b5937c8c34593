import argparse
import json
from contextlib import contextmanager
from datetime import datetime

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "documents": {
        "columns": {
            "id",
            "file_name",
            "file_path",
            "file_type",
            "file_size",
            "upload_date",
            "processed_date",
            "assistant_type",
            "status",
            "metadata",
            "created_at",
            "updated_at",
        },
        "indexes": {
            "idx_documents_assistant_type",
            "idx_documents_status",
            "idx_documents_upload_date",
        },
    },
    "document_content": {
        "columns": {"id", "document_id", "content_type", "content", "extracted_data", "created_at"},
        "indexes": {"idx_document_content_document_id"},
    },
    "expenses": {
        "columns": {
            "id",
            "document_id",
            "file_name",
            "description",
            "date",
            "amount",
            "currency",
            "category",
            "notes",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_expenses_date", "idx_expenses_created_at"},
    },
    "expense_reports": {
        "columns": {
            "id",
            "report_name",
            "report_date",
            "total_amount",
            "currency",
            "expense_count",
            "csv_path",
            "zip_path",
            "created_at",
        },
        "indexes": set(),
    },
    "report_expenses": {
        "columns": {"report_id", "expense_id"},
        "indexes": set(),
    },
    "pensions": {
        "columns": {"id", "name", "url", "amount", "notes", "created_at", "updated_at"},
        "indexes": set(),
    },
    "bank_accounts": {
        "columns": {"id", "name", "bank", "interest_rate", "amount", "notes", "created_at", "updated_at"},
        "indexes": set(),
    },
    "payslips": {
        "columns": {
            "id",
            "file_name",
            "pay_date",
            "net_pay",
            "gross_pay",
            "tax_paid",
            "ni_paid",
            "pension_contribution",
            "other_deductions",
            "ytd_taxable_pay",
            "ytd_taxable_ni_pay",
            "ytd_paye_tax",
            "ytd_ni",
            "notes",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_payslips_pay_date"},
    },
    "financial_year_summaries": {
        "columns": {
            "id",
            "financial_year",
            "last_payslip_date",
            "total_taxable_pay",
            "total_taxable_ni_pay",
            "total_paye_tax",
            "total_ni",
            "created_at",
            "updated_at",
        },
        "indexes": set(),
    },
    "tax_returns": {
        "columns": {
            "id",
            "financial_year",
            "total_tax_charge",
            "payment_deadline",
            "paye_tax",
            "savings_tax",
            "child_benefit_payback",
            "payment_reference",
            "personal_allowance_reduction",
            "notes",
            "created_at",
            "updated_at",
        },
        "indexes": set(),
    },
}


# Catalog lookups per backend; each takes one bound name.
_CATALOG_SQL = {
    ("sqlite", "table"): "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
    ("sqlite", "index"): "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
    ("postgres", "table"): (
        "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?"
    ),
    ("postgres", "index"): "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def _catalog_has(conn, kind, name):
    sql = _CATALOG_SQL[(backend_name(conn), kind)]
    return conn.execute(sql, (name,)).fetchone() is not None


def table_exists(conn, name):
    return _catalog_has(conn, "table", name)


def index_exists(conn, index_name):
    return _catalog_has(conn, "index", index_name)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ?",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}
    # PRAGMA rows are (cid, name, type, notnull, default, pk).
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def column_exists(conn, table, column):
    return table_exists(conn, table) and column in get_table_columns(conn, table)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def add_column_if_missing(conn, table, col_def_sql):
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
        return
    if not column_exists(conn, table, col_def_sql.split()[0]):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS documents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_name TEXT NOT NULL,
            file_path TEXT,
            file_type TEXT NOT NULL,
            file_size INTEGER,
            upload_date TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            processed_date TEXT,
            assistant_type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            metadata TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS document_content (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id INTEGER NOT NULL,
            content_type TEXT NOT NULL,
            content TEXT NOT NULL,
            extracted_data TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (document_id) REFERENCES documents (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id INTEGER,
            file_name TEXT NOT NULL,
            description TEXT NOT NULL,
            date TEXT NOT NULL,
            amount REAL NOT NULL,
            currency TEXT NOT NULL DEFAULT 'GBP',
            category TEXT,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (document_id) REFERENCES documents (id) ON DELETE SET NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS expense_reports (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            report_name TEXT NOT NULL,
            report_date TEXT NOT NULL,
            total_amount REAL NOT NULL,
            currency TEXT NOT NULL DEFAULT 'GBP',
            expense_count INTEGER NOT NULL,
            csv_path TEXT,
            zip_path TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS report_expenses (
            report_id INTEGER NOT NULL,
            expense_id INTEGER NOT NULL,
            PRIMARY KEY (report_id, expense_id),
            FOREIGN KEY (report_id) REFERENCES expense_reports (id) ON DELETE CASCADE,
            FOREIGN KEY (expense_id) REFERENCES expenses (id) ON DELETE CASCADE
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_documents_assistant_type",
        "CREATE INDEX idx_documents_assistant_type ON documents(assistant_type)",
    )
    create_index_if_missing(
        conn,
        "idx_documents_status",
        "CREATE INDEX idx_documents_status ON documents(status)",
    )
    create_index_if_missing(
        conn,
        "idx_documents_upload_date",
        "CREATE INDEX idx_documents_upload_date ON documents(upload_date)",
    )
    create_index_if_missing(
        conn,
        "idx_expenses_date",
        "CREATE INDEX idx_expenses_date ON expenses(date)",
    )
    create_index_if_missing(
        conn,
        "idx_expenses_created_at",
        "CREATE INDEX idx_expenses_created_at ON expenses(created_at)",
    )
    create_index_if_missing(
        conn,
        "idx_document_content_document_id",
        "CREATE INDEX idx_document_content_document_id ON document_content(document_id)",
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS pensions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            url TEXT,
            amount REAL NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS bank_accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            bank TEXT NOT NULL,
            interest_rate REAL,
            amount REAL NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS payslips (
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
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS financial_year_summaries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            financial_year TEXT NOT NULL UNIQUE,
            last_payslip_date TEXT NOT NULL,
            total_taxable_pay REAL NOT NULL DEFAULT 0,
            total_taxable_ni_pay REAL NOT NULL DEFAULT 0,
            total_paye_tax REAL NOT NULL DEFAULT 0,
            total_ni REAL NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_payslips_pay_date",
        "CREATE INDEX idx_payslips_pay_date ON payslips(pay_date)",
    )


def migration_004(conn):
    # Year-to-date figures arrived after the first payslip tables shipped.
    for col_def in [
        "ytd_taxable_pay REAL",
        "ytd_taxable_ni_pay REAL",
        "ytd_paye_tax REAL",
        "ytd_ni REAL",
    ]:
        add_column_if_missing(conn, "payslips", col_def)


def migration_005(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS tax_returns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            financial_year TEXT NOT NULL UNIQUE,
            total_tax_charge REAL NOT NULL,
            payment_deadline TEXT NOT NULL,
            paye_tax REAL NOT NULL DEFAULT 0,
            savings_tax REAL NOT NULL DEFAULT 0,
            child_benefit_payback REAL NOT NULL DEFAULT 0,
            payment_reference TEXT,
            personal_allowance_reduction TEXT,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
    (5, migration_005),
]


@contextmanager
def _connection(target):
    """Yield ``target`` itself when it is a connection, else open and close one."""
    if hasattr(target, "execute"):
        yield target
        return
    config = target if isinstance(target, dict) else parse_database_config(target)
    conn = connect_db(config)
    try:
        yield conn
    finally:
        conn.close()


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def applied_versions(conn):
    _ensure_schema_version_table(conn)
    return {int(row[0]) for row in conn.execute("SELECT version FROM schema_version").fetchall()}


def current_schema_version(conn):
    return max(applied_versions(conn), default=0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            f"Schema is incomplete after migrating to version {health['schema_version']}: "
            f"missing tables {health['missing_tables']}, missing columns {health['missing_columns']}"
        )


def _run_migrations(conn):
    done = applied_versions(conn)
    for version, migrate in MIGRATIONS:
        if version in done:
            continue
        try:
            migrate(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.utcnow().isoformat(timespec="seconds") + "Z"),
            )
        except Exception:
            conn.rollback()
            raise
        conn.commit()
    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    """Bring a database up to the latest schema version.

    Accepts an open connection (left open), a config dict from
    ``parse_database_config`` or a SQLite file path.
    """
    with _connection(db_or_config_or_path) as conn:
        _run_migrations(conn)


def inspect_db_health(conn):
    missing_tables = []
    missing_columns = {}
    missing_indexes = set()

    for table_name, required in REQUIRED_TABLES.items():
        if table_exists(conn, table_name):
            present = get_table_columns(conn, table_name)
            missing_columns[table_name] = sorted(required["columns"] - present)
            missing_indexes.update(name for name in required["indexes"] if not index_exists(conn, name))
        else:
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(required["columns"])
            missing_indexes.update(required["indexes"])

    return {
        "ok": not (missing_tables or missing_indexes or any(missing_columns.values())),
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(missing_indexes),
    }


def get_db_health(db_config_or_path):
    with _connection(db_config_or_path) as conn:
        return inspect_db_health(conn)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Migrate or inspect the finance assistant database")
    parser.add_argument("db_path", help="Path to the SQLite database file")
    parser.add_argument("--migrate", action="store_true", help="apply pending migrations first")
    args = parser.parse_args(argv)
    if args.migrate:
        apply_migrations(args.db_path)
    print(json.dumps(get_db_health(args.db_path), indent=2))


if __name__ == "__main__":
    main()
