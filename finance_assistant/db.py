import os
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None

if psycopg is not None:
    INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg.IntegrityError)
    DATABASE_ERRORS = (sqlite3.Error, psycopg.Error)
else:
    INTEGRITY_ERRORS = (sqlite3.IntegrityError,)
    DATABASE_ERRORS = (sqlite3.Error,)

# Quoted literals and identifiers keep their ? marks; every % is doubled for psycopg.
_SQL_TOKEN = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|\?|%")
_TABLE_INFO = re.compile(r"\s*PRAGMA\s+table_info\(([^)]+)\)", re.IGNORECASE)


class CompatRow:
    """Tuple row from psycopg that reads like ``sqlite3.Row``."""

    def __init__(self, columns, values):
        self._index = {name: position for position, name in enumerate(columns)}
        self._values = tuple(values)

    def __getitem__(self, key):
        if isinstance(key, str):
            key = self._index[key]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def keys(self):
        return list(self._index)


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    def _columns(self):
        return [getattr(col, "name", None) or col[0] for col in (self._cursor.description or [])]

    def _wrap(self, row):
        if row is None or isinstance(row, sqlite3.Row):
            return row
        return CompatRow(self._columns(), row)

    def fetchone(self):
        return self._wrap(self._cursor.fetchone())

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


class CompatConnection:
    """One connection API over sqlite3 and psycopg.

    SQL is written for SQLite (``?`` placeholders, ``last_insert_rowid()``)
    and rewritten on the way to Postgres.
    """

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        sql, params = rewrite_sql(self.backend, sql, params)
        return CompatCursor(self._conn.execute(sql, params or ()))

    def fetch_one(self, sql, params=()):
        return row_to_dict(self.execute(sql, params).fetchone())

    def fetch_all(self, sql, params=()):
        return rows_to_dicts(self.execute(sql, params).fetchall())

    def insert(self, sql, params=()):
        self.execute(sql, params)
        return self.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]

    @contextmanager
    def transaction(self):
        """Commit on success, roll back and re-raise on failure.

        psycopg's own connection context manager closes the connection,
        so writes go through this instead of ``with conn``.
        """
        try:
            yield self
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def row_to_dict(row):
    if row is None:
        return None
    return dict(zip(row.keys(), row))


def rows_to_dicts(rows):
    return [row_to_dict(row) for row in rows]


def is_postgres_url(value):
    return bool(value) and value.startswith(("postgresql://", "postgres://"))


def _to_pyformat(sql):
    def replace(match):
        token = match.group(0)
        if token == "?":
            return "%s"
        return token.replace("%", "%%")

    return _SQL_TOKEN.sub(replace, sql)


def rewrite_sql(backend, sql, params):
    if backend != "postgres":
        return sql, params

    table_info = _TABLE_INFO.match(sql)
    if table_info:
        return (
            "SELECT column_name AS name "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = %s "
            "ORDER BY ordinal_position",
            (table_info.group(1).strip().strip("'\""),),
        )

    sql = _to_pyformat(sql.replace("last_insert_rowid()", "lastval()"))
    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    return sql, params


def parse_database_config(database_path=None, database_url=None):
    """Pick the backend: a Postgres URL wins, otherwise the SQLite file at ``database_path``.

    ``database_url`` falls back to the ``DATABASE_URL`` environment variable
    only when it is not passed at all.
    """
    if database_url is None:
        database_url = os.environ.get("DATABASE_URL", "")
    database_url = database_url.strip()

    if is_postgres_url(database_url):
        return {
            "backend": "postgres",
            "database_url": database_url,
            "database_name": urlparse(database_url).path.lstrip("/") or "postgres",
            "database_path": database_path,
        }
    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        return CompatConnection(psycopg.connect(config["database_url"], row_factory=tuple_row), backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    for pragma in ("journal_mode = WAL", "foreign_keys = ON", "busy_timeout = 5000"):
        conn.execute(f"PRAGMA {pragma}")
    return CompatConnection(conn, backend="sqlite")
