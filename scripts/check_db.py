#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from finance_tracker.db import connect_db, parse_database_config
from finance_tracker.db_migrations import apply_migrations, inspect_db_health
from finance_tracker.import_staging import cleanup_expired_import_staging


def main():
    parser = argparse.ArgumentParser(description="Check finance tracker schema health and staged imports")
    parser.add_argument("db_path", nargs="?", default="instance/finance_tracker.sqlite", help="Path to SQLite DB (ignored when DATABASE_URL is postgres)")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    parser.add_argument("--purge-staging", type=int, metavar="HOURS", help="Delete staged import rows older than HOURS")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    conn = connect_db(config)
    try:
        report = inspect_db_health(conn)
        if args.purge_staging is not None:
            cleanup_expired_import_staging(conn, args.purge_staging)
            conn.commit()
        if "import_staging" not in report["missing_tables"]:
            report["staged_rows"] = conn.execute("SELECT COUNT(*) FROM import_staging").fetchone()[0]
    finally:
        conn.close()

    print(json.dumps(report, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
