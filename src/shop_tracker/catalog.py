"""
Catalog fetching for shop-tracker.

Builds a normalized CatalogSnapshot from the upstream shop listing:
the listing gives section layouts with item identifiers, each identifier
is resolved to full item details in small batches, and items are then
enriched with shop history when that provider is configured.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from .cache import ResultCache, fingerprint
from .config import ApiConfig, CacheConfig
from .enrichment import ItemHistoryClient
from .errors import CatalogUnavailable, PermanentRemoteError, RemoteError
from .models import CatalogSnapshot, Item, Section, utc_now, utc_today
from .remote import RemoteClient

logger = logging.getLogger(__name__)

SHOP_ENDPOINT = "/shop"
ITEM_ENDPOINT = "/images"


class HistoryStore(Protocol):
    """Receives one record per successful catalog fetch."""

    def record_snapshot(
        self,
        date: str,
        total_items: int,
        section_count: int,
        raw_sections: list[dict],
        fetch_duration_ms: int | None = None,
        posted: bool = False,
    ) -> None: ...


def _parse_price(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str):
        digits = value.replace(",", "").strip()
        if digits.isdigit():
            return int(digits)
    return None


def normalize_item(raw: dict[str, Any]) -> Item | None:
    """
    Build an Item from one upstream item record.

    Field precedence:
        id: ``id``, then ``_id``, then the name
        type: ``readableType``, then ``type``, else "unknown"
        rarity: ``rarity`` lower-cased, else "unknown"
        price: ``price`` as a non-negative int or digit string ("1,500"),
            anything else (e.g. "???") becomes None
        icon_url: ``images.icon``, then ``images.png``, then ``images.featured``

    Returns None for records without a name.
    """
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        return None

    images = raw.get("images") or {}
    if not isinstance(images, dict):
        images = {}
    icon_url = images.get("icon") or images.get("png") or images.get("featured") or None

    name = name.strip()
    rarity = raw.get("rarity")
    return Item(
        id=str(raw.get("id") or raw.get("_id") or name),
        name=name,
        type=raw.get("readableType") or raw.get("type") or "unknown",
        rarity=rarity.lower() if isinstance(rarity, str) and rarity else "unknown",
        price=_parse_price(raw.get("price")),
        icon_url=icon_url,
    )


def parse_listing(listing: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Check the shape of a shop listing and return its sections.

    Raises PermanentRemoteError unless ``data`` is an object whose
    ``sections`` is a list of objects, each with a list of ``items``.
    """
    shop = listing.get("data")
    if not isinstance(shop, dict):
        raise PermanentRemoteError("Malformed shop listing: missing data")
    sections = shop.get("sections") or []
    if not isinstance(sections, list):
        raise PermanentRemoteError("Malformed shop listing: sections is not a list")
    for section in sections:
        if not isinstance(section, dict):
            raise PermanentRemoteError(f"Malformed shop listing: section {section!r}")
        if not isinstance(section.get("items") or [], list):
            raise PermanentRemoteError(
                f"Malformed shop listing: items of section {section.get('key')!r}"
            )
    return sections


class CatalogFetcher:
    """
    Produces the current CatalogSnapshot.

    Holds the latest snapshot in memory; older ones live only in the
    history store.
    """

    def __init__(
        self,
        remote: RemoteClient,
        cache: ResultCache,
        history: HistoryStore | None = None,
        enrichment: ItemHistoryClient | None = None,
        api_config: ApiConfig | None = None,
        cache_config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the fetcher.

        Args:
            remote: Client for the primary shop provider
            cache: Shared result cache
            history: Optional store for fetched shops
            enrichment: Optional shop history client
            api_config: Batch size and delay for detail lookups
            cache_config: TTLs per endpoint
            clock: Monotonic time source, injectable for tests
        """
        self.remote = remote
        self.cache = cache
        self.history = history
        self.enrichment = enrichment
        self.api_config = api_config or ApiConfig()
        self.cache_config = cache_config or CacheConfig()
        self._clock = clock

        self._snapshot: CatalogSnapshot | None = None
        self._fetched_at: float | None = None
        self._last_duration_ms: int | None = None
        self._last_error: str | None = None

    @property
    def current(self) -> CatalogSnapshot | None:
        """The latest snapshot, if any."""
        return self._snapshot

    async def get_catalog(self, force: bool = False) -> CatalogSnapshot:
        """
        Get the current shop.

        Args:
            force: Skip the in-memory snapshot and the fresh listing cache

        Raises:
            CatalogUnavailable: no fresh, cached, stale or previous snapshot
        """
        if not force and self._snapshot is not None and self._fetched_at is not None:
            if self._clock() - self._fetched_at < self.cache_config.shop_ttl_seconds:
                logger.debug("Using in-memory shop snapshot")
                return self._snapshot

        logger.info(f"Fetching shop data from API (force={force})")
        start = time.monotonic()
        try:
            listing = await self._cached_fetch(
                SHOP_ENDPOINT,
                None,
                self.cache_config.shop_ttl_seconds,
                bypass_fresh=force,
                validate=parse_listing,
            )
            snapshot = await self._build_snapshot(listing)
        except RemoteError as e:
            self._last_error = str(e)
            if self._snapshot is not None:
                logger.warning(f"Shop fetch failed, returning previous snapshot: {e}")
                return self._snapshot
            raise CatalogUnavailable(f"No shop data available: {e}") from e

        duration_ms = int((time.monotonic() - start) * 1000)
        self._snapshot = snapshot
        self._fetched_at = self._clock()
        self._last_duration_ms = duration_ms
        self._last_error = None

        self._record_history(snapshot, duration_ms)
        logger.info(
            f"Shop data fetched: {snapshot.total_item_count} items "
            f"in {len(snapshot.sections)} sections"
        )
        return snapshot

    async def search_items(
        self,
        name: str,
        item_type: str | None = None,
        limit: int = 15,
    ) -> list[Item]:
        """Search the item database by name."""
        params: dict[str, Any] = {"search": name, "limit": limit}
        if item_type:
            params["type"] = item_type
        data = await self._cached_fetch(
            ITEM_ENDPOINT, params, self.cache_config.item_search_ttl_seconds
        )
        items = [normalize_item(raw) for raw in data.get("data") or [] if isinstance(raw, dict)]
        return [item for item in items if item is not None][:limit]

    def stats(self) -> dict[str, Any]:
        """Summary of the current snapshot and the cache."""
        snapshot = self._snapshot
        result: dict[str, Any] = {
            "has_snapshot": snapshot is not None,
            "last_fetch_duration_ms": self._last_duration_ms,
            "last_error": self._last_error,
            "cache": self.cache.stats(),
        }
        if snapshot is not None:
            result["date"] = snapshot.date
            result["fetched_at"] = snapshot.fetched_at
            result["total_items"] = snapshot.total_item_count
            result["sections"] = [
                {"name": s.display_name, "items": len(s.items)} for s in snapshot.sections
            ]
        if self._fetched_at is not None:
            result["age_seconds"] = int(self._clock() - self._fetched_at)
        return result

    async def _cached_fetch(
        self,
        endpoint: str,
        params: dict[str, Any] | None,
        ttl: float,
        bypass_fresh: bool = False,
        validate: Callable[[dict[str, Any]], Any] | None = None,
    ) -> dict[str, Any]:
        """
        Fetch through the cache, falling back to a stale entry on failure.

        ``validate`` runs before the response is cached; a PermanentRemoteError
        from it is handled like a failed fetch.
        """
        key = fingerprint(endpoint, params)
        if not bypass_fresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        try:
            data = await self.remote.fetch(endpoint, params)
            if validate is not None:
                validate(data)
        except RemoteError as e:
            stale = self.cache.get_stale(key)
            if stale is not None:
                logger.warning(f"Returning stale cached data for {endpoint} due to error: {e}")
                return stale
            raise

        self.cache.put(key, data, ttl)
        return data

    async def _build_snapshot(self, listing: dict[str, Any]) -> CatalogSnapshot:
        raw_sections = parse_listing(listing)
        shop = listing["data"]

        sections: list[Section] = []
        listed = 0
        for raw_section in raw_sections:
            item_ids = raw_section.get("items") or []
            if not item_ids:
                continue
            listed += len(item_ids)
            display_name = raw_section.get("displayName") or raw_section.get("key") or "Shop"
            logger.debug(f"Processing section: {display_name} ({len(item_ids)} items)")

            items = await self._fetch_details([str(i) for i in item_ids])
            if self.enrichment is not None and items:
                items = await self._enrich(items)
            if items:
                sections.append(
                    Section(
                        display_name=display_name,
                        items=tuple(items),
                        key=raw_section.get("key"),
                    )
                )

        if listed and not sections:
            raise PermanentRemoteError(f"None of the {listed} listed items could be resolved")

        date = shop.get("date")
        return CatalogSnapshot(
            date=str(date)[:10] if date else utc_today(),
            sections=tuple(sections),
            total_item_count=sum(len(s.items) for s in sections),
            fetched_at=utc_now(),
        )

    async def _fetch_item(self, item_id: str) -> Item | None:
        try:
            data = await self._cached_fetch(
                ITEM_ENDPOINT, {"search": item_id}, self.cache_config.item_details_ttl_seconds
            )
        except RemoteError as e:
            logger.warning(f"Failed to fetch details for item {item_id}: {e}")
            return None

        matches = data.get("data") or []
        if not matches or not isinstance(matches[0], dict):
            logger.debug(f"No details found for item {item_id}")
            return None
        return normalize_item(matches[0])

    async def _fetch_details(self, item_ids: list[str]) -> list[Item]:
        """Resolve item ids to Items, a fixed-size batch at a time."""
        batch_size = max(1, self.api_config.batch_size)
        items: list[Item] = []
        for start in range(0, len(item_ids), batch_size):
            batch = item_ids[start : start + batch_size]
            results = await asyncio.gather(*(self._fetch_item(i) for i in batch))
            items.extend(item for item in results if item is not None)
            if start + batch_size < len(item_ids):
                await asyncio.sleep(self.api_config.batch_delay_seconds)
        return items

    async def _enrich(self, items: list[Item]) -> list[Item]:
        assert self.enrichment is not None
        try:
            return await self.enrichment.enrich(items)
        except Exception as e:
            logger.debug(f"Shop history enrichment skipped: {e}")
            return items

    def _record_history(self, snapshot: CatalogSnapshot, duration_ms: int) -> None:
        if self.history is None:
            return
        try:
            self.history.record_snapshot(
                snapshot.date,
                snapshot.total_item_count,
                len(snapshot.sections),
                snapshot.sections_to_list(),
                fetch_duration_ms=duration_ms,
                posted=False,
            )
        except Exception:
            logger.warning("Failed to record shop history", exc_info=True)
