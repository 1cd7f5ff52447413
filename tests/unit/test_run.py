"""Tests for the CLI wiring."""

import sys
from unittest.mock import AsyncMock, patch

import pytest

from shop_tracker import run
from shop_tracker.config import BotConfig
from shop_tracker.errors import CatalogUnavailable
from shop_tracker.models import utc_today


@pytest.fixture
def config(db_path):
    return BotConfig.from_dict({"db_path": str(db_path)})


class TestBuildApp:
    def test_without_enrichment_key(self, config, monkeypatch):
        monkeypatch.delenv("FORTNITE_API_KEY", raising=False)
        app = run.build_app(config)

        assert app.fetcher.enrichment is None
        assert app.fetcher.history is app.db
        assert app.fetcher.remote.telemetry is app.db
        assert app.sessions.max_sessions == 100

    def test_with_enrichment_key(self, config, monkeypatch):
        monkeypatch.setenv("FORTNITE_API_KEY", "key")
        app = run.build_app(config)
        assert app.fetcher.enrichment is not None
        assert app.fetcher.enrichment.cache is app.cache


class TestCommands:
    async def test_dry_run_marks_nothing(self, config, snapshot_factory):
        app = run.build_app(config)
        app.db.add_wishlist_item("u1", "Raven")
        app.fetcher.get_catalog = AsyncMock(
            return_value=snapshot_factory(("Featured", ["Raven Team Leader"]))
        )

        assert await run.dry_run(app) is True

        assert app.db.get_for_user("u1")[0].last_notified_date is None
        assert app.notifier.delivered == []

    async def test_run_once_notifies(self, config, snapshot_factory):
        app = run.build_app(config)
        app.db.add_wishlist_item("u1", "Raven")
        app.db.set_shop_channel("g1", "shop-1", guild_name="Guild One")
        snapshot = snapshot_factory(("Featured", ["Raven"]), date="2026-01-01")
        app.fetcher.get_catalog = AsyncMock(return_value=snapshot)

        assert await run.run_once(app) is True

        assert len(app.notifier.delivered) == 1
        assert [channel for channel, _ in app.notifier.posted] == ["shop-1"]
        assert app.db.was_posted(utc_today())

    async def test_run_once_empty_shop_fails(self, config, snapshot_factory):
        app = run.build_app(config)
        app.fetcher.get_catalog = AsyncMock(return_value=snapshot_factory())

        assert await run.run_once(app) is False
        assert not app.db.was_posted(utc_today())

    async def test_run_once_unavailable(self, config):
        app = run.build_app(config)
        app.fetcher.get_catalog = AsyncMock(side_effect=CatalogUnavailable("down"))
        assert await run.run_once(app) is False


class TestMain:
    def test_missing_database(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            sys, "argv", ["shop-tracker", "--db", str(tmp_path / "missing.db"), "--once"]
        )
        assert run.main() == 1

    def test_once(self, db_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["shop-tracker", "--db", str(db_path), "--once"])
        with patch("shop_tracker.run.run_once", new_callable=AsyncMock) as mock_once:
            mock_once.return_value = True
            assert run.main() == 0
        mock_once.assert_awaited_once()
