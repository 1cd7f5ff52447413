"""
Job scheduling for shop-tracker.

Runs the daily shop job at a fixed UTC time of day, plus independent
periodic jobs for cache sweeps, session sweeps, and database maintenance.
A failed daily job gets exactly one retry after a fixed delay; the retry
is not persisted across restarts.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .cache import ResultCache
from .catalog import CatalogFetcher
from .config import BotConfig
from .errors import CatalogUnavailable, ShopTrackerError
from .models import CatalogSnapshot, Severity, ShopDatabase, utc_now, utc_today
from .notifier import NotificationMatcher, Notifier
from .sessions import SessionStore

logger = logging.getLogger(__name__)

DAILY_JOB = "daily_shop"
CACHE_SWEEP_JOB = "cache_sweep"
SESSION_SWEEP_JOB = "session_sweep"
MAINTENANCE_JOB = "maintenance"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COOLING_DOWN = "cooling_down"


@dataclass
class JobStatus:
    """Bookkeeping for one job."""

    name: str
    state: JobState = JobState.IDLE
    runs: int = 0
    failures: int = 0
    last_run: str | None = None
    last_success: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run,
            "last_success": self.last_success,
            "last_error": self.last_error,
        }


def parse_daily_time(expression: str) -> tuple[int, int]:
    """
    Parse a daily cron expression ``"M H * * *"`` into (hour, minute).

    Only fixed-minute, fixed-hour, every-day schedules are supported.
    """
    fields = expression.split()
    if len(fields) != 5 or fields[2:] != ["*", "*", "*"]:
        raise ValueError(f"Unsupported daily schedule: {expression!r}")
    try:
        minute, hour = int(fields[0]), int(fields[1])
    except ValueError as e:
        raise ValueError(f"Unsupported daily schedule: {expression!r}") from e
    if not (0 <= minute < 60 and 0 <= hour < 24):
        raise ValueError(f"Schedule time out of range: {expression!r}")
    return hour, minute


def seconds_until_next_run(expression: str, now: datetime | None = None) -> float:
    """Seconds from ``now`` (UTC) until the next daily run."""
    hour, minute = parse_daily_time(expression)
    now = now or datetime.now(UTC)
    next_run = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


class Scheduler:
    """
    Owns the daily shop job and the periodic housekeeping jobs.

    Each job has its own state; periodic jobs never touch the daily job's.
    """

    def __init__(
        self,
        config: BotConfig,
        db: ShopDatabase,
        fetcher: CatalogFetcher,
        matcher: NotificationMatcher,
        notifier: Notifier,
        cache: ResultCache | None = None,
        sessions: SessionStore | None = None,
        today_fn: Callable[[], str] = utc_today,
    ):
        self.config = config
        self.db = db
        self.fetcher = fetcher
        self.matcher = matcher
        self.notifier = notifier
        self.cache = cache
        self.sessions = sessions
        self._today = today_fn

        self.jobs = {
            name: JobStatus(name)
            for name in (DAILY_JOB, CACHE_SWEEP_JOB, SESSION_SWEEP_JOB, MAINTENANCE_JOB)
        }
        self.retry_task: asyncio.Task | None = None
        self._tasks: list[asyncio.Task] = []

    # -------------------------------------------------------------------------
    # Daily job
    # -------------------------------------------------------------------------

    async def run_daily_job(self, force: bool = False) -> int:
        """
        Post the shop to every guild, notify wishlists, and mark today as posted.

        Skips (returning 0) when today was already posted, unless forced.
        A shop with no sections, or a notification run that is already in
        progress, fails the job without marking anything posted.

        Returns:
            Number of users notified
        """
        today = self._today()
        if not force and self.db.was_posted(today):
            logger.info(f"Shop for {today} already posted; skipping daily job")
            return 0

        if self.matcher.is_processing:
            raise ShopTrackerError("Wishlist notification run already in progress")

        snapshot = await self.fetcher.get_catalog(force=True)
        if not snapshot.sections:
            raise CatalogUnavailable("No shop data available for daily post")

        await self.post_shop(snapshot)
        dispatched = await self.matcher.process_snapshot(snapshot, self.db, self.notifier)
        if dispatched is None:
            raise ShopTrackerError("Wishlist notification run already in progress")

        self.db.record_snapshot(
            today,
            snapshot.total_item_count,
            len(snapshot.sections),
            snapshot.sections_to_list(),
            posted=True,
        )
        return dispatched

    async def post_shop(self, snapshot: CatalogSnapshot) -> tuple[int, int]:
        """
        Post the snapshot to each guild's shop channel.

        A failure in one guild is logged and does not stop the others.

        Returns:
            (successful posts, failed posts)
        """
        channels = self.db.get_shop_channels()
        if not channels:
            logger.warning("No guilds configured for daily shop posting")
            return 0, 0

        content = snapshot.to_dict()
        succeeded = failed = 0
        for index, channel in enumerate(channels):
            if index:
                await asyncio.sleep(self.config.scheduler.post_delay_seconds)
            guild = f"{channel.guild_name or channel.guild_id} ({channel.guild_id})"
            try:
                if await self.notifier.post_shop(channel.channel_id, content):
                    logger.info(f"Daily shop posted to channel {channel.channel_id} in {guild}")
                    succeeded += 1
                    continue
                message = f"Could not post to shop channel {channel.channel_id}"
            except Exception as e:
                logger.exception(f"Failed to post daily shop to guild {guild}")
                message = str(e)
            failed += 1
            self.db.log_error(
                "daily_shop_post_guild",
                message,
                context={
                    "guild_id": channel.guild_id,
                    "guild_name": channel.guild_name,
                    "channel_id": channel.channel_id,
                },
                severity=Severity.HIGH,
            )

        logger.info(
            f"Daily shop posting completed. Success: {succeeded}, Failures: {failed}, "
            f"Total guilds: {len(channels)}"
        )
        return succeeded, failed

    async def handle_daily_job(self, force: bool = False) -> bool:
        """
        Run the daily job, scheduling one retry if it fails.

        Returns True on success. A trigger while the job is running or
        waiting for its retry is skipped.
        """
        status = self.jobs[DAILY_JOB]
        if status.state is not JobState.IDLE:
            logger.warning(f"Daily shop job is {status.state.value}; skipping trigger")
            return False

        error = await self._attempt_daily_job(force, attempt=1)
        if error is None:
            return True

        status.state = JobState.COOLING_DOWN
        delay = self.config.scheduler.retry_delay_seconds
        logger.info(f"Retrying daily shop job in {delay:.0f}s")
        self.retry_task = asyncio.create_task(self._retry_daily_job(force, delay, error))
        return False

    async def _retry_daily_job(self, force: bool, delay: float, original: Exception) -> None:
        try:
            await asyncio.sleep(delay)
            logger.info("Retrying daily shop job after failure")
            if await self._attempt_daily_job(force, attempt=2, original=original) is None:
                logger.info("Daily shop job retry successful")
        finally:
            self.jobs[DAILY_JOB].state = JobState.IDLE

    async def _attempt_daily_job(
        self,
        force: bool,
        attempt: int,
        original: Exception | None = None,
    ) -> Exception | None:
        """Run the daily job once. Returns the error, or None on success."""
        status = self.jobs[DAILY_JOB]
        status.state = JobState.RUNNING
        status.runs += 1
        status.last_run = utc_now()
        logger.info(f"Starting daily shop job (attempt {attempt})")

        try:
            dispatched = await self.run_daily_job(force=force)
        except Exception as e:
            logger.exception(f"Daily shop job failed (attempt {attempt})")
            status.failures += 1
            status.last_error = str(e)
            context: dict[str, Any] = {"attempt": attempt}
            if original is not None:
                context["original_error"] = str(original)
            self.db.log_error(
                "scheduled_shop_post" if attempt == 1 else "scheduled_shop_post_retry",
                str(e),
                context=context,
                severity=Severity.CRITICAL,
            )
            return e
        finally:
            if status.state is JobState.RUNNING:
                status.state = JobState.IDLE

        status.last_success = utc_now()
        status.last_error = None
        logger.info(f"Daily shop job completed: {dispatched} users notified")
        return None

    # -------------------------------------------------------------------------
    # Periodic jobs
    # -------------------------------------------------------------------------

    def sweep_cache(self) -> int:
        if self.cache is None:
            return 0
        removed = self.cache.sweep()
        logger.debug(f"Cache sweep removed {removed} entries, {len(self.cache)} remain")
        return removed

    def sweep_sessions(self) -> int:
        if self.sessions is None:
            return 0
        removed = self.sessions.sweep()
        logger.debug(f"Session sweep removed {removed} sessions, {len(self.sessions)} remain")
        return removed

    def run_maintenance(self) -> dict[str, int]:
        logger.info("Starting database maintenance")
        return self.db.purge_old_records(self.config.scheduler.retention)

    async def _run_periodic(self, name: str, interval: float, job: Callable[[], Any]) -> None:
        status = self.jobs[name]
        while True:
            await asyncio.sleep(interval)
            status.state = JobState.RUNNING
            status.runs += 1
            status.last_run = utc_now()
            try:
                job()
                status.last_success = status.last_run
            except Exception as e:
                logger.exception(f"Periodic job {name} failed")
                status.failures += 1
                status.last_error = str(e)
                self.db.log_error(name, str(e), severity=Severity.LOW)
            finally:
                status.state = JobState.IDLE

    async def _run_daily(self) -> None:
        expression = self.config.scheduler.daily_time
        while True:
            delay = seconds_until_next_run(expression)
            logger.info(f"Next daily shop job in {delay / 3600:.1f}h")
            await asyncio.sleep(delay)
            await self.handle_daily_job()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start all jobs on the running event loop."""
        if self._tasks:
            logger.warning("Scheduler already started")
            return

        parse_daily_time(self.config.scheduler.daily_time)
        jobs: list[Coroutine[Any, Any, None]] = [
            self._run_daily(),
            self._run_periodic(
                CACHE_SWEEP_JOB, self.config.cache.sweep_interval_seconds, self.sweep_cache
            ),
            self._run_periodic(
                SESSION_SWEEP_JOB, self.config.sessions.sweep_interval_seconds, self.sweep_sessions
            ),
            self._run_periodic(
                MAINTENANCE_JOB,
                self.config.scheduler.maintenance_interval_seconds,
                self.run_maintenance,
            ),
        ]
        self._tasks = [asyncio.create_task(job) for job in jobs]
        logger.info(
            f"Scheduler started: daily shop at '{self.config.scheduler.daily_time}' UTC, "
            f"cache sweep every {self.config.cache.sweep_interval_seconds:.0f}s, "
            f"session sweep every {self.config.sessions.sweep_interval_seconds:.0f}s"
        )

    async def stop(self) -> None:
        """Cancel all jobs, including a pending retry."""
        tasks = list(self._tasks)
        if self.retry_task is not None:
            tasks.append(self.retry_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self.retry_task = None
        logger.info("Scheduler stopped")

    def job_status(self) -> dict[str, dict[str, Any]]:
        return {name: status.to_dict() for name, status in self.jobs.items()}
