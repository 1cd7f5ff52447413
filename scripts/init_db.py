#!/usr/bin/env python3
"""Initialize the shop-tracker database with all migrations."""

import argparse
import logging
import sqlite3
from pathlib import Path

from shop_tracker.migrations import run_migrations


def init_db(db_path: Path) -> None:
    """Create the database (if needed) and apply pending migrations."""
    print(f"Initializing database: {db_path}")

    applied = run_migrations(db_path)
    if applied:
        print(f"Applied {len(applied)} migration(s).")
    else:
        print("Schema already up to date.")

    # Show final state
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.execute(
            "SELECT version, applied_ts FROM schema_migrations ORDER BY version"
        )
        print("\nSchema versions:")
        for row in cursor:
            print(f"  v{row[0]} applied at {row[1]}")

        # Show table list
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        tables = [row[0] for row in cursor if not row[0].startswith("sqlite_")]
        print(f"\nTables: {', '.join(tables)}")
    finally:
        conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize shop-tracker database")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("shop_tracker.db"),
        help="Path to the SQLite database file (default: shop_tracker.db)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    init_db(args.db)


if __name__ == "__main__":
    main()
