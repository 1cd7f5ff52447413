#!/usr/bin/env python3
"""Purge old request logs, resolved errors and shop history."""

import argparse
import logging
from pathlib import Path

from shop_tracker.config import RetentionConfig
from shop_tracker.models import ShopDatabase


def main() -> None:
    defaults = RetentionConfig()
    parser = argparse.ArgumentParser(description="Purge old shop-tracker records")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("shop_tracker.db"),
        help="Path to the SQLite database file (default: shop_tracker.db)",
    )
    parser.add_argument(
        "--api-days",
        type=int,
        default=defaults.api_requests_days,
        help=f"Keep API request logs this many days (default: {defaults.api_requests_days})",
    )
    parser.add_argument(
        "--error-days",
        type=int,
        default=defaults.error_logs_days,
        help=f"Keep resolved error logs this many days (default: {defaults.error_logs_days})",
    )
    parser.add_argument(
        "--history-days",
        type=int,
        default=defaults.shop_history_days,
        help=f"Keep shop history this many days (default: {defaults.shop_history_days})",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    retention = RetentionConfig(
        api_requests_days=args.api_days,
        error_logs_days=args.error_days,
        shop_history_days=args.history_days,
    )
    deleted = ShopDatabase(args.db).purge_old_records(retention)
    for table, count in deleted.items():
        print(f"Deleted {count} row(s) from {table}")


if __name__ == "__main__":
    main()
