#!/usr/bin/env python3
"""Copy finance assistant data from a SQLite file into Postgres.

The target schema is migrated first, so an empty Postgres database works.
Rows that already exist in the target are left alone.
"""

import os
import sys
from collections import Counter
from datetime import datetime
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from finance_assistant.db import connect_db, is_postgres_url, parse_database_config
from finance_assistant.db_migrations import apply_migrations, get_table_columns, table_exists

# Parents before children so foreign keys resolve.
TABLE_ORDER = [
    "documents",
    "document_content",
    "pensions",
    "bank_accounts",
    "payslips",
    "financial_year_summaries",
    "expenses",
    "expense_reports",
    "report_expenses",
    "tax_returns",
]
# Older SQLite files predate these tables.
OPTIONAL_SOURCE_TABLES = {"tax_returns", "document_content"}
TIMESTAMP_COLUMNS = {"created_at", "updated_at", "upload_date"}
TEXT_DEFAULTS = {"status": "pending", "currency": "GBP", "assistant_type": "expenses"}
NUMERIC_TYPES = {"smallint", "integer", "bigint", "real", "double precision", "numeric"}


def resolve_sqlite_path():
    env_path = os.environ.get("SQLITE_PATH", "").strip()
    if env_path:
        return Path(env_path)
    for candidate in (Path("/app/instance/finance_assistant.sqlite"), Path("instance/finance_assistant.sqlite")):
        if candidate.exists():
            return candidate
    return Path("instance/finance_assistant.sqlite")


def required_columns(pg, table_name):
    """NOT NULL columns of a Postgres table mapped to their data type."""
    rows = pg.execute(
        "SELECT column_name, data_type FROM information_schema.columns "
        "WHERE table_schema = current_schema() AND table_name = ? AND is_nullable = 'NO'",
        (table_name,),
    ).fetchall()
    return {row[0]: row[1] for row in rows}


def fill_value(column, data_type):
    if column in TIMESTAMP_COLUMNS:
        return datetime.utcnow().isoformat(timespec="seconds")
    if column in TEXT_DEFAULTS:
        return TEXT_DEFAULTS[column]
    if data_type in NUMERIC_TYPES:
        return 0
    return None


def _blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def copy_table(source, pg, table_name):
    if not table_exists(source, table_name):
        if table_name in OPTIONAL_SOURCE_TABLES:
            return {"source_rows": 0, "copied_rows": 0, "status": "skipped (not in SQLite)"}
        raise RuntimeError(f"Required table is missing in SQLite: {table_name}")

    target_columns = get_table_columns(pg, table_name)
    columns = [col for col in sorted(get_table_columns(source, table_name)) if col in target_columns]
    if not columns:
        raise RuntimeError(f"No common columns found for table '{table_name}'")
    not_null = required_columns(pg, table_name)

    insert_sql = (
        f"INSERT INTO {table_name} ({', '.join(columns)}) "
        f"VALUES ({', '.join('?' for _ in columns)}) ON CONFLICT DO NOTHING"
    )
    filled = Counter()
    copied = 0
    source_rows = source.execute(f"SELECT {', '.join(columns)} FROM {table_name}").fetchall()
    with pg.transaction():
        for source_row in source_rows:
            values = list(source_row)
            for position, column in enumerate(columns):
                if column in not_null and _blank(values[position]):
                    values[position] = fill_value(column, not_null[column])
                    if _blank(values[position]):
                        raise RuntimeError(f"Cannot fill NOT NULL column '{column}' in table '{table_name}'")
                    filled[column] += 1
            copied += max(pg.execute(insert_sql, values).rowcount, 0)

    for column, count in sorted(filled.items()):
        print(f"{table_name}: filled {count} missing {column}")
    return {"source_rows": len(source_rows), "copied_rows": copied, "status": "copied"}


def reset_sequence(pg, table_name):
    row = pg.execute("SELECT pg_get_serial_sequence(?, 'id')", (table_name,)).fetchone()
    if not row or not row[0]:
        return
    max_id = int(pg.execute(f"SELECT COALESCE(MAX(id), 0) FROM {table_name}").fetchone()[0])
    with pg.transaction():
        if max_id:
            pg.execute("SELECT setval(?, ?, true)", (row[0], max_id))
        else:
            pg.execute("SELECT setval(?, 1, false)", (row[0],))


def count_rows(conn, table_name):
    return int(conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0])


def verify_counts(source, pg):
    mismatches = []
    for table_name in TABLE_ORDER:
        if not table_exists(source, table_name):
            continue
        source_count, target_count = count_rows(source, table_name), count_rows(pg, table_name)
        if source_count != target_count:
            mismatches.append((table_name, source_count, target_count))
    return mismatches


def print_latest_financial_years(pg, limit=5):
    rows = pg.execute(
        "SELECT financial_year, last_payslip_date FROM financial_year_summaries ORDER BY financial_year DESC LIMIT ?",
        (limit,),
    ).fetchall()
    print(f"Latest financial years in Postgres: {[f'{row[0]} ({row[1]})' for row in rows]}")


def main():
    sqlite_path = resolve_sqlite_path()
    if not sqlite_path.exists():
        raise SystemExit(f"SQLite database not found at {sqlite_path}. Set SQLITE_PATH to the correct source file.")

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not is_postgres_url(database_url):
        raise SystemExit("DATABASE_URL is required and must start with postgres:// or postgresql://")

    print(f"Using SQLite source: {sqlite_path}")
    pg_config = parse_database_config(database_url=database_url)
    apply_migrations(pg_config)

    source = connect_db(parse_database_config(str(sqlite_path), database_url=""))
    pg = connect_db(pg_config)
    try:
        summary = {table_name: copy_table(source, pg, table_name) for table_name in TABLE_ORDER}
        for table_name, result in summary.items():
            if result["status"] == "copied" and table_name != "report_expenses":
                reset_sequence(pg, table_name)

        print("\nMigration summary:")
        for table_name, result in summary.items():
            print(
                f"- {table_name}: source={result['source_rows']} copied={result['copied_rows']} "
                f"status={result['status']}"
            )

        mismatches = verify_counts(source, pg)
        if mismatches:
            print("\nCount verification found differences (expected when Postgres already had data):")
            for table_name, source_count, target_count in mismatches:
                print(f"- {table_name}: sqlite={source_count}, postgres={target_count}")
        else:
            print("\nCount verification passed for migrated tables.")

        print_latest_financial_years(pg)
    finally:
        source.close()
        pg.close()


if __name__ == "__main__":
    main()
