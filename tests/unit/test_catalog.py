"""Tests for catalog fetching and item normalization."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from shop_tracker.cache import ResultCache, fingerprint
from shop_tracker.catalog import CatalogFetcher, normalize_item, parse_listing
from shop_tracker.config import ApiConfig, CacheConfig
from shop_tracker.enrichment import ItemHistoryClient
from shop_tracker.errors import CatalogUnavailable, PermanentRemoteError
from shop_tracker.remote import RemoteClient

ITEMS = {
    "id1": {"id": "id1", "name": "Raven", "readableType": "Outfit", "rarity": "Legendary",
            "price": "2,000", "images": {"icon": "https://img/raven.png"}},
    "id2": {"id": "id2", "name": "Raven Team Leader", "type": "outfit", "rarity": "epic",
            "price": "1,500", "images": {"png": "https://img/rtl.png"}},
    "id3": {"id": "id3", "name": "Glider", "type": "glider", "rarity": "rare", "price": "???"},
}

LISTING = {
    "status": 200,
    "data": {
        "date": "2026-10-18T00:00:00.000Z",
        "sections": [
            {"key": "featured", "displayName": "Featured", "items": ["id1", "id2"]},
            {"key": "empty", "displayName": "Empty", "items": []},
            {"key": "daily", "displayName": "Daily", "items": ["id3", "missing"]},
        ],
    },
}


def fake_upstream(listing=LISTING):
    """Build a fetch side effect serving the listing and item details."""

    async def fetch(endpoint, params=None):
        if endpoint == "/shop":
            return listing
        item = ITEMS.get(params["search"])
        return {"status": 200, "data": [item] if item else []}

    return fetch


@pytest.fixture
def remote():
    mock = AsyncMock(spec=RemoteClient)
    mock.fetch.side_effect = fake_upstream()
    return mock


@pytest.fixture
def history():
    return MagicMock()


@pytest.fixture
def fetcher(remote, history, clock):
    return CatalogFetcher(
        remote,
        ResultCache(clock=clock),
        history=history,
        api_config=ApiConfig(batch_size=2, batch_delay_seconds=0),
        cache_config=CacheConfig(),
        clock=clock,
    )


def shop_calls(remote):
    return [c for c in remote.fetch.call_args_list if c.args[0] == "/shop"]


class TestNormalizeItem:
    def test_precedence(self):
        item = normalize_item(ITEMS["id1"])
        assert item.type == "Outfit"
        assert item.rarity == "legendary"
        assert item.price == 2000
        assert item.icon_url == "https://img/raven.png"

    def test_fallbacks(self):
        item = normalize_item(ITEMS["id2"])
        assert item.type == "outfit"
        assert item.icon_url == "https://img/rtl.png"

    def test_unknown_price(self):
        assert normalize_item(ITEMS["id3"]).price is None
        assert normalize_item({"name": "X", "price": -5}).price is None
        assert normalize_item({"name": "X", "price": 800}).price == 800

    def test_featured_icon_last(self):
        raw = {"name": "X", "images": {"icon": None, "png": None, "featured": "https://f"}}
        assert normalize_item(raw).icon_url == "https://f"

    def test_defaults(self):
        item = normalize_item({"name": " Lonely "})
        assert item.name == "Lonely"
        assert item.id == "Lonely"
        assert item.type == "unknown"
        assert item.rarity == "unknown"
        assert item.icon_url is None

    def test_nameless_is_skipped(self):
        assert normalize_item({"id": "x"}) is None


class TestParseListing:
    def test_returns_sections(self):
        assert [s["key"] for s in parse_listing(LISTING)] == ["featured", "empty", "daily"]

    def test_no_sections(self):
        assert parse_listing({"data": {"date": "2026-10-18"}}) == []

    @pytest.mark.parametrize(
        "listing",
        [
            {"data": None},
            {"data": {"sections": "featured"}},
            {"data": {"sections": ["featured"]}},
            {"data": {"sections": [{"key": "daily", "items": {"id1": True}}]}},
        ],
    )
    def test_malformed(self, listing):
        with pytest.raises(PermanentRemoteError):
            parse_listing(listing)
        assert normalize_item({"name": ""}) is None


class TestGetCatalog:
    async def test_builds_snapshot(self, fetcher, history):
        snapshot = await fetcher.get_catalog()

        assert snapshot.date == "2026-10-18"
        assert [s.display_name for s in snapshot.sections] == ["Featured", "Daily"]
        assert [i.name for i in snapshot.sections[0].items] == ["Raven", "Raven Team Leader"]
        assert snapshot.total_item_count == 3

        history.record_snapshot.assert_called_once()
        args = history.record_snapshot.call_args
        assert args.args[:3] == ("2026-10-18", 3, 2)
        assert args.kwargs["posted"] is False

    async def test_snapshot_reused_within_ttl(self, fetcher, remote, clock):
        """Second call an hour later makes no requests and returns the same object."""
        first = await fetcher.get_catalog()
        calls = remote.fetch.await_count

        clock.advance(60 * 60)
        second = await fetcher.get_catalog()

        assert second is first
        assert remote.fetch.await_count == calls

    async def test_force_refetches(self, fetcher, remote):
        await fetcher.get_catalog()
        await fetcher.get_catalog(force=True)
        assert len(shop_calls(remote)) == 2

    async def test_refetch_after_ttl(self, fetcher, remote, clock):
        await fetcher.get_catalog()
        clock.advance(6 * 60 * 60 + 1)
        await fetcher.get_catalog()
        assert len(shop_calls(remote)) == 2

    async def test_details_cached_between_fetches(self, fetcher, remote):
        await fetcher.get_catalog()
        await fetcher.get_catalog(force=True)
        detail_calls = [c for c in remote.fetch.call_args_list if c.args[0] == "/images"]
        assert len(detail_calls) == 4

    async def test_detail_failures_skipped(self, fetcher, remote):
        upstream = fake_upstream()

        async def fetch(endpoint, params=None):
            if endpoint == "/images" and params["search"] == "id2":
                raise PermanentRemoteError("HTTP 500", status_code=500)
            return await upstream(endpoint, params)

        remote.fetch.side_effect = fetch
        snapshot = await fetcher.get_catalog()
        assert [i.name for i in snapshot.iter_items()] == ["Raven", "Glider"]

    async def test_stale_listing_used_on_failure(self, fetcher, remote, clock):
        """A failed forced refresh falls back to the stale cached listing."""
        await fetcher.get_catalog()
        fetcher._snapshot = None
        clock.advance(7 * 60 * 60)
        remote.fetch.side_effect = PermanentRemoteError("HTTP 503 after retries")

        snapshot = await fetcher.get_catalog(force=True)

        assert snapshot.total_item_count == 3

    async def test_stale_listing_too_old(self, fetcher, remote, clock):
        await fetcher.get_catalog()
        fetcher._snapshot = None
        clock.advance(49 * 60 * 60)
        remote.fetch.side_effect = PermanentRemoteError("HTTP 503 after retries")

        with pytest.raises(CatalogUnavailable):
            await fetcher.get_catalog(force=True)

    async def test_previous_snapshot_on_failure(self, remote, history, clock):
        """Without any cached listing the last in-memory snapshot is returned."""
        fetcher = CatalogFetcher(
            remote,
            ResultCache(clock=clock),
            history=history,
            api_config=ApiConfig(batch_delay_seconds=0),
            clock=clock,
        )
        first = await fetcher.get_catalog()
        fetcher.cache.clear()
        remote.fetch.side_effect = PermanentRemoteError("HTTP 404", status_code=404)

        assert await fetcher.get_catalog(force=True) is first
        assert fetcher.stats()["last_error"] == "HTTP 404"

    async def test_unavailable_without_anything(self, fetcher, remote, history):
        remote.fetch.side_effect = PermanentRemoteError("HTTP 503 after retries")

        with pytest.raises(CatalogUnavailable):
            await fetcher.get_catalog()
        history.record_snapshot.assert_not_called()

    async def test_malformed_listing(self, fetcher, remote):
        remote.fetch.side_effect = fake_upstream({"status": 200, "data": None})
        with pytest.raises(CatalogUnavailable):
            await fetcher.get_catalog()

    async def test_malformed_section_falls_back_to_cached_listing(self, fetcher, remote):
        await fetcher.get_catalog()
        bad = {"status": 200, "data": {"sections": ["featured"]}}
        remote.fetch.side_effect = fake_upstream(bad)

        snapshot = await fetcher.get_catalog(force=True)

        assert snapshot.total_item_count == 3
        assert fetcher.cache.get(fingerprint("/shop", None)) == LISTING

    async def test_malformed_section_keeps_previous_snapshot(self, fetcher, remote):
        first = await fetcher.get_catalog()
        fetcher.cache.clear()
        bad = {"status": 200, "data": {"sections": ["featured"]}}
        remote.fetch.side_effect = fake_upstream(bad)

        assert await fetcher.get_catalog(force=True) is first

    async def test_malformed_listing_is_not_cached(self, fetcher, remote):
        bad = {"status": 200, "data": {"sections": [{"key": "daily", "items": "id1"}]}}
        remote.fetch.side_effect = fake_upstream(bad)

        with pytest.raises(CatalogUnavailable):
            await fetcher.get_catalog()
        assert fetcher.cache.get(fingerprint("/shop", None)) is None

        remote.fetch.side_effect = fake_upstream()
        snapshot = await fetcher.get_catalog()
        assert snapshot.total_item_count == 3

    async def test_unresolved_items_keep_previous_snapshot(self, fetcher, remote):
        """A listing whose items all fail to resolve does not replace a good shop."""
        first = await fetcher.get_catalog()
        fetcher.cache.clear()
        upstream = fake_upstream()

        async def fetch(endpoint, params=None):
            if endpoint == "/images":
                raise PermanentRemoteError("HTTP 503 after retries", status_code=503)
            return await upstream(endpoint, params)

        remote.fetch.side_effect = fetch

        assert await fetcher.get_catalog(force=True) is first
        assert "could be resolved" in fetcher.stats()["last_error"]

    async def test_unresolved_items_without_previous_snapshot(self, fetcher, remote, history):
        async def fetch(endpoint, params=None):
            if endpoint == "/shop":
                return LISTING
            return {"status": 200, "data": []}

        remote.fetch.side_effect = fetch

        with pytest.raises(CatalogUnavailable):
            await fetcher.get_catalog()
        history.record_snapshot.assert_not_called()

    async def test_history_failure_does_not_fail_fetch(self, fetcher, history):
        history.record_snapshot.side_effect = RuntimeError("disk full")
        snapshot = await fetcher.get_catalog()
        assert snapshot.total_item_count == 3

    async def test_enrichment_is_applied(self, remote, clock, item_factory):
        enrichment = AsyncMock(spec=ItemHistoryClient)

        async def enrich(items):
            return [item_factory(i.name, item_id=i.id, last_seen="2025-01-01") for i in items]

        enrichment.enrich.side_effect = enrich
        fetcher = CatalogFetcher(
            remote,
            ResultCache(clock=clock),
            enrichment=enrichment,
            api_config=ApiConfig(batch_delay_seconds=0),
            clock=clock,
        )

        snapshot = await fetcher.get_catalog()

        assert all(i.last_seen == "2025-01-01" for i in snapshot.iter_items())

    async def test_enrichment_failure_is_absorbed(self, remote, clock):
        enrichment = AsyncMock(spec=ItemHistoryClient)
        enrichment.enrich.side_effect = RuntimeError("provider down")
        fetcher = CatalogFetcher(
            remote,
            ResultCache(clock=clock),
            enrichment=enrichment,
            api_config=ApiConfig(batch_delay_seconds=0),
            clock=clock,
        )

        snapshot = await fetcher.get_catalog()

        assert snapshot.total_item_count == 3
        assert all(i.last_seen is None for i in snapshot.iter_items())


class TestSearchAndStats:
    async def test_search_items(self, fetcher, remote):
        remote.fetch.side_effect = None
        remote.fetch.return_value = {"status": 200, "data": [ITEMS["id1"], ITEMS["id2"]]}

        items = await fetcher.search_items("raven", item_type="outfit", limit=1)

        assert [i.name for i in items] == ["Raven"]
        remote.fetch.assert_awaited_once_with(
            "/images", {"search": "raven", "limit": 1, "type": "outfit"}
        )
        assert fetcher.cache.get(
            fingerprint("/images", {"search": "raven", "limit": 1, "type": "outfit"})
        )

    async def test_stats(self, fetcher):
        assert fetcher.stats()["has_snapshot"] is False
        await fetcher.get_catalog()

        stats = fetcher.stats()

        assert stats["has_snapshot"] is True
        assert stats["total_items"] == 3
        assert stats["sections"] == [
            {"name": "Featured", "items": 2},
            {"name": "Daily", "items": 1},
        ]
        assert stats["cache"]["total"] > 0
