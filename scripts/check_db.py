#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from finance_assistant.db import parse_database_config
from finance_assistant.db_migrations import apply_migrations, get_db_health


def main(argv=None):
    parser = argparse.ArgumentParser(description="Print the finance assistant schema health report")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/finance_assistant.sqlite",
        help="Path to the SQLite database (ignored when a Postgres URL is given)",
    )
    parser.add_argument("--url", default=None, help="Postgres URL; defaults to $DATABASE_URL")
    parser.add_argument("--migrate", action="store_true", help="Apply pending migrations first")
    args = parser.parse_args(argv)

    config = parse_database_config(args.db_path, args.url)
    if args.migrate:
        apply_migrations(config)

    health = get_db_health(config)
    print(json.dumps(health, indent=2, sort_keys=True))
    return 0 if health["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
