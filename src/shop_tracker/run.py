"""
CLI runner for shop-tracker.

Usage:
    python -m shop_tracker.run [OPTIONS]

    # Run the daily shop job once
    python -m shop_tracker.run --once

    # Run as daemon with schedule
    python -m shop_tracker.run --daemon

    # Fetch and summarize the current shop
    python -m shop_tracker.run --fetch
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from .cache import ResultCache
from .catalog import CatalogFetcher
from .config import BotConfig
from .enrichment import ItemHistoryClient
from .errors import CatalogUnavailable, ConfigurationMissing, ShopTrackerError
from .models import ShopDatabase, utc_today
from .notifier import LogNotifier, NotificationMatcher, match_wishlist
from .remote import RemoteClient, RetryPolicy
from .scheduler import Scheduler
from .sessions import SessionStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("shop-tracker")


@dataclass
class App:
    """Everything wired together for one process."""

    config: BotConfig
    db: ShopDatabase
    cache: ResultCache
    fetcher: CatalogFetcher
    matcher: NotificationMatcher
    notifier: LogNotifier
    sessions: SessionStore
    scheduler: Scheduler


def build_app(config: BotConfig) -> App:
    db = ShopDatabase(config.db_path)
    cache = ResultCache(max_stale_age=config.cache.max_stale_age_seconds)

    remote = RemoteClient(
        base_url=config.api.base_url,
        api_key=config.api.get_api_key(),
        timeout_seconds=config.api.timeout_seconds,
        retry_policy=RetryPolicy(
            retries=config.api.retries, backoff_base=config.api.backoff_base
        ),
        telemetry=db,
        user_agent=config.api.user_agent,
    )

    enrichment = None
    try:
        enrichment = ItemHistoryClient.from_config(config.enrichment, cache, telemetry=db)
    except ConfigurationMissing as e:
        logger.info(f"Shop history enrichment off: {e}")

    fetcher = CatalogFetcher(
        remote,
        cache,
        history=db,
        enrichment=enrichment,
        api_config=config.api,
        cache_config=config.cache,
    )
    notifier = LogNotifier()
    matcher = NotificationMatcher(operator=notifier, error_log=db)
    sessions = SessionStore(
        inactivity_timeout=config.sessions.inactivity_timeout_seconds,
        max_sessions=config.sessions.max_sessions,
        items_per_page=config.sessions.items_per_page,
    )
    scheduler = Scheduler(
        config, db, fetcher, matcher, notifier, cache=cache, sessions=sessions
    )
    return App(config, db, cache, fetcher, matcher, notifier, sessions, scheduler)


async def run_once(app: App, force: bool = False) -> bool:
    """Run the daily shop job once, without the retry."""
    try:
        dispatched = await app.scheduler.run_daily_job(force=force)
    except ShopTrackerError as e:
        logger.error(f"Daily shop job failed: {e}")
        return False
    logger.info(f"Daily shop job complete: {dispatched} users notified")
    return True


async def fetch_and_print(app: App) -> bool:
    """Fetch the shop and print its stats as JSON."""
    try:
        await app.fetcher.get_catalog(force=True)
    except CatalogUnavailable as e:
        logger.error(str(e))
        return False
    print(json.dumps(app.fetcher.stats(), indent=2))
    return True


async def dry_run(app: App) -> bool:
    """Show which users would be notified, without sending or marking anything."""
    try:
        snapshot = await app.fetcher.get_catalog(force=True)
    except CatalogUnavailable as e:
        logger.error(str(e))
        return False

    bundles = match_wishlist(snapshot, app.db.get_all(), utc_today())
    logger.info(f"Dry run: would notify {len(bundles)} user(s)")
    for bundle in bundles.values():
        logger.info(f"  - {bundle.user_id}: {', '.join(bundle.item_names)}")
    return True


async def run_daemon(app: App) -> None:
    """Run the scheduler until interrupted."""
    logger.info("Starting shop-tracker daemon")
    logger.info(f"Database: {app.config.db_path}")
    app.scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.scheduler.stop()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="shop-tracker: Daily item shop tracker with wishlist notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run the daily job once (skipped if today was already posted)
    python -m shop_tracker.run --once

    # Run it again even though today was posted
    python -m shop_tracker.run --once --force

    # Run as daemon
    python -m shop_tracker.run --daemon

    # Use a specific config file
    python -m shop_tracker.run --config shop_tracker.yaml --once
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("shop_tracker.yaml"),
        help="Path to config file (default: shop_tracker.yaml)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        help="Override database path from config",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run the daily shop job once and exit",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --once, run even if today's shop was already posted",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run as a daemon, processing on schedule",
    )
    parser.add_argument(
        "--fetch",
        action="store_true",
        help="Fetch the current shop and print a summary",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show which wishlists match without notifying anyone",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load config
    config = BotConfig.from_yaml(args.config)
    if args.db:
        config.db_path = args.db

    logger.info(f"Config loaded from {args.config}")
    logger.info(f"Database: {config.db_path}")

    # Check database exists
    if not config.db_path.exists():
        logger.error(f"Database not found: {config.db_path}")
        logger.error("Run 'python scripts/init_db.py' first to create the database.")
        return 1

    app = build_app(config)

    if args.dry_run:
        return 0 if asyncio.run(dry_run(app)) else 1

    if args.fetch:
        return 0 if asyncio.run(fetch_and_print(app)) else 1

    if args.daemon:
        try:
            asyncio.run(run_daemon(app))
        except KeyboardInterrupt:
            logger.info("Daemon stopped by user")
        return 0

    if args.once:
        return 0 if asyncio.run(run_once(app, force=args.force)) else 1

    # Default: show help
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
