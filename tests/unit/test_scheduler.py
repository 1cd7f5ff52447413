"""Tests for the job scheduler."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shop_tracker.catalog import CatalogFetcher
from shop_tracker.config import BotConfig
from shop_tracker.errors import CatalogUnavailable, ShopTrackerError
from shop_tracker.models import Severity, ShopChannel, ShopDatabase
from shop_tracker.notifier import NotificationMatcher
from shop_tracker.scheduler import (
    CACHE_SWEEP_JOB,
    DAILY_JOB,
    JobState,
    Scheduler,
    parse_daily_time,
    seconds_until_next_run,
)

TODAY = "2026-10-18"
YESTERDAY = "2026-10-17"


@pytest.fixture
def snapshot(snapshot_factory):
    return snapshot_factory(("Featured", ["Raven", "Drift"]), date=TODAY)


@pytest.fixture
def db():
    mock = MagicMock()
    mock.was_posted.return_value = False
    mock.get_shop_channels.return_value = []
    return mock


@pytest.fixture
def fetcher(snapshot):
    mock = AsyncMock(spec=CatalogFetcher)
    mock.get_catalog.return_value = snapshot
    return mock


@pytest.fixture
def matcher():
    mock = AsyncMock(spec=NotificationMatcher)
    mock.is_processing = False
    mock.process_snapshot.return_value = 2
    return mock


@pytest.fixture
def scheduler(db, fetcher, matcher):
    return Scheduler(
        BotConfig(),
        db,
        fetcher,
        matcher,
        notifier=MagicMock(),
        cache=MagicMock(),
        sessions=MagicMock(),
        today_fn=lambda: TODAY,
    )


def posted_records(db):
    return [c for c in db.record_snapshot.call_args_list if c.kwargs.get("posted")]


class TestDailyTime:
    def test_parse(self):
        assert parse_daily_time("30 0 * * *") == (0, 30)
        assert parse_daily_time("5 13 * * *") == (13, 5)

    @pytest.mark.parametrize(
        "expression",
        ["*/15 * * * *", "30 0 * * 0", "30 0", "61 0 * * *", "0 24 * * *", "a b * * *"],
    )
    def test_unsupported(self, expression):
        with pytest.raises(ValueError):
            parse_daily_time(expression)

    def test_seconds_until_next_run(self):
        midnight = datetime(2026, 10, 18, 0, 0, tzinfo=UTC)
        assert seconds_until_next_run("30 0 * * *", midnight) == 30 * 60

    def test_next_run_is_tomorrow_once_passed(self):
        at_run = datetime(2026, 10, 18, 0, 30, tzinfo=UTC)
        assert seconds_until_next_run("30 0 * * *", at_run) == 24 * 60 * 60

        later = datetime(2026, 10, 18, 1, 0, tzinfo=UTC)
        assert seconds_until_next_run("30 0 * * *", later) == 23.5 * 60 * 60


class TestDailyJob:
    async def test_success(self, scheduler, db, fetcher, matcher, snapshot):
        assert await scheduler.handle_daily_job() is True

        fetcher.get_catalog.assert_awaited_once_with(force=True)
        matcher.process_snapshot.assert_awaited_once_with(snapshot, db, scheduler.notifier)
        assert len(posted_records(db)) == 1
        assert posted_records(db)[0].args[:3] == (TODAY, 2, 1)
        assert scheduler.jobs[DAILY_JOB].state is JobState.IDLE
        assert scheduler.retry_task is None

    async def test_already_posted_skips(self, scheduler, db, fetcher):
        db.was_posted.return_value = True

        assert await scheduler.run_daily_job() == 0

        fetcher.get_catalog.assert_not_called()
        db.was_posted.assert_called_once_with(TODAY)

    async def test_force_ignores_posted(self, scheduler, db, fetcher):
        db.was_posted.return_value = True
        await scheduler.run_daily_job(force=True)
        fetcher.get_catalog.assert_awaited_once()

    async def test_failure_then_retry_succeeds(self, scheduler, db, fetcher, snapshot):
        """One failure, one retry five minutes later, one posted record."""
        fetcher.get_catalog.side_effect = [CatalogUnavailable("API down"), snapshot]

        with patch("shop_tracker.scheduler.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await scheduler.handle_daily_job() is False
            assert scheduler.jobs[DAILY_JOB].state is JobState.COOLING_DOWN

            await scheduler.retry_task

        mock_sleep.assert_awaited_once_with(300)
        assert fetcher.get_catalog.await_count == 2
        assert len(posted_records(db)) == 1
        assert scheduler.jobs[DAILY_JOB].state is JobState.IDLE
        assert scheduler.jobs[DAILY_JOB].last_error is None

        db.log_error.assert_called_once()
        assert db.log_error.call_args.args[0] == "scheduled_shop_post"
        assert db.log_error.call_args.kwargs["severity"] is Severity.CRITICAL

    async def test_retry_failure_is_abandoned(self, scheduler, db, fetcher):
        """Exactly one retry; after it fails the job goes back to idle."""
        fetcher.get_catalog.side_effect = CatalogUnavailable("API down")

        with patch("shop_tracker.scheduler.asyncio.sleep", new_callable=AsyncMock):
            await scheduler.handle_daily_job()
            await scheduler.retry_task

        assert fetcher.get_catalog.await_count == 2
        assert posted_records(db) == []
        assert [c.args[0] for c in db.log_error.call_args_list] == [
            "scheduled_shop_post",
            "scheduled_shop_post_retry",
        ]
        status = scheduler.jobs[DAILY_JOB]
        assert status.state is JobState.IDLE
        assert status.failures == 2
        assert status.last_error == "API down"

    async def test_trigger_while_cooling_down_skipped(self, scheduler, fetcher, snapshot):
        fetcher.get_catalog.side_effect = [CatalogUnavailable("API down"), snapshot]
        release = asyncio.Event()

        async def slow_sleep(delay):
            await release.wait()

        with patch("shop_tracker.scheduler.asyncio.sleep", side_effect=slow_sleep):
            await scheduler.handle_daily_job()
            assert await scheduler.handle_daily_job() is False
            assert fetcher.get_catalog.await_count == 1

            release.set()
            await scheduler.retry_task

        assert fetcher.get_catalog.await_count == 2

    async def test_matcher_failure_is_a_job_failure(self, scheduler, db, matcher):
        matcher.process_snapshot.side_effect = RuntimeError("boom")

        with patch("shop_tracker.scheduler.asyncio.sleep", new_callable=AsyncMock):
            assert await scheduler.handle_daily_job() is False
            await scheduler.retry_task

        assert posted_records(db) == []

    async def test_posted_under_today_when_shop_date_differs(
        self, db_path, fetcher, matcher, snapshot_factory
    ):
        """The posted record and the already-posted check use the same day."""
        store = ShopDatabase(db_path)
        fetcher.get_catalog.return_value = snapshot_factory(
            ("Featured", ["Raven"]), date=YESTERDAY
        )
        scheduler = Scheduler(
            BotConfig(), store, fetcher, matcher, notifier=MagicMock(), today_fn=lambda: TODAY
        )

        await scheduler.run_daily_job()
        await scheduler.run_daily_job()

        assert fetcher.get_catalog.await_count == 1
        assert store.was_posted(TODAY)
        assert not store.was_posted(YESTERDAY)

    async def test_empty_shop_is_not_posted(
        self, scheduler, db, fetcher, matcher, snapshot_factory
    ):
        fetcher.get_catalog.return_value = snapshot_factory(date=TODAY)

        with pytest.raises(CatalogUnavailable):
            await scheduler.run_daily_job()

        matcher.process_snapshot.assert_not_called()
        assert posted_records(db) == []

    async def test_empty_shop_gets_the_retry(
        self, scheduler, db, fetcher, snapshot, snapshot_factory
    ):
        fetcher.get_catalog.side_effect = [snapshot_factory(date=TODAY), snapshot]

        with patch("shop_tracker.scheduler.asyncio.sleep", new_callable=AsyncMock):
            assert await scheduler.handle_daily_job() is False
            await scheduler.retry_task

        assert fetcher.get_catalog.await_count == 2
        assert len(posted_records(db)) == 1

    async def test_skipped_notification_run_is_not_posted(self, scheduler, db, matcher):
        matcher.process_snapshot.return_value = None

        with pytest.raises(ShopTrackerError):
            await scheduler.run_daily_job()

        assert posted_records(db) == []

    async def test_busy_matcher_fails_before_fetch(self, scheduler, db, fetcher, matcher):
        matcher.is_processing = True

        with pytest.raises(ShopTrackerError):
            await scheduler.run_daily_job()

        fetcher.get_catalog.assert_not_called()
        assert posted_records(db) == []


class TestShopPosting:
    @pytest.fixture
    def notifier(self):
        return AsyncMock()

    @pytest.fixture
    def poster(self, db, fetcher, matcher, notifier):
        config = BotConfig.from_dict({"scheduler": {"post_delay_seconds": 0}})
        db.get_shop_channels.return_value = [
            ShopChannel("g1", "shop-1", "Guild One"),
            ShopChannel("g2", "shop-2"),
            ShopChannel("g3", "shop-3", "Guild Three"),
        ]
        return Scheduler(config, db, fetcher, matcher, notifier, today_fn=lambda: TODAY)

    async def test_posts_to_every_guild(self, poster, notifier, snapshot):
        notifier.post_shop.return_value = True

        assert await poster.post_shop(snapshot) == (3, 0)

        channels = [c.args[0] for c in notifier.post_shop.await_args_list]
        assert channels == ["shop-1", "shop-2", "shop-3"]
        assert notifier.post_shop.await_args.args[1] == snapshot.to_dict()

    async def test_guild_failures_are_isolated(self, poster, db, notifier, snapshot):
        notifier.post_shop.side_effect = [RuntimeError("Missing Access"), False, True]

        assert await poster.post_shop(snapshot) == (1, 2)

        assert notifier.post_shop.await_count == 3
        assert [c.args[0] for c in db.log_error.call_args_list] == [
            "daily_shop_post_guild",
            "daily_shop_post_guild",
        ]
        first = db.log_error.call_args_list[0]
        assert first.args[1] == "Missing Access"
        assert first.kwargs["context"]["guild_id"] == "g1"
        assert first.kwargs["severity"] is Severity.HIGH

    async def test_daily_job_posts_then_records(self, poster, db, notifier):
        notifier.post_shop.side_effect = [True, RuntimeError("Missing Access"), True]

        assert await poster.run_daily_job() == 2

        assert notifier.post_shop.await_count == 3
        assert len(posted_records(db)) == 1

    async def test_no_guilds_configured(self, scheduler, db, snapshot):
        db.get_shop_channels.return_value = []
        assert await scheduler.post_shop(snapshot) == (0, 0)


class TestPeriodicJobs:
    def test_sweeps(self, scheduler):
        scheduler.cache.sweep.return_value = 3
        scheduler.sessions.sweep.return_value = 1

        assert scheduler.sweep_cache() == 3
        assert scheduler.sweep_sessions() == 1

    def test_sweeps_without_targets(self, db, fetcher, matcher):
        scheduler = Scheduler(BotConfig(), db, fetcher, matcher, notifier=MagicMock())
        assert scheduler.sweep_cache() == 0
        assert scheduler.sweep_sessions() == 0

    def test_maintenance_uses_retention(self, scheduler, db):
        scheduler.run_maintenance()
        db.purge_old_records.assert_called_once_with(scheduler.config.scheduler.retention)

    async def test_periodic_failure_is_logged_and_loop_continues(self, scheduler, db):
        job = MagicMock(side_effect=[RuntimeError("sweep broke"), None])
        sleeps = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with patch("shop_tracker.scheduler.asyncio.sleep", sleeps):
            with pytest.raises(asyncio.CancelledError):
                await scheduler._run_periodic(CACHE_SWEEP_JOB, 60, job)

        assert job.call_count == 2
        status = scheduler.jobs[CACHE_SWEEP_JOB]
        assert status.runs == 2
        assert status.failures == 1
        assert status.state is JobState.IDLE
        db.log_error.assert_called_once_with(
            CACHE_SWEEP_JOB, "sweep broke", severity=Severity.LOW
        )


class TestLifecycle:
    async def test_start_and_stop(self, scheduler):
        scheduler.start()
        assert len(scheduler._tasks) == 4

        scheduler.start()
        assert len(scheduler._tasks) == 4

        await scheduler.stop()
        assert scheduler._tasks == []

    async def test_start_rejects_bad_schedule(self, db, fetcher, matcher):
        config = BotConfig.from_dict({"scheduler": {"daily_time": "*/5 * * * *"}})
        scheduler = Scheduler(config, db, fetcher, matcher, notifier=MagicMock())

        with pytest.raises(ValueError):
            scheduler.start()

    def test_job_status(self, scheduler):
        status = scheduler.job_status()
        assert set(status) == {"daily_shop", "cache_sweep", "session_sweep", "maintenance"}
        assert status["daily_shop"]["state"] == "idle"
