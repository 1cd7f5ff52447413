"""
Shop history client for shop-tracker.

Looks up when an item was last in the shop using fortnite-api.com's
cosmetics search. Enrichment is advisory: every lookup failure leaves the
item as it was.

API Documentation: https://dash.fortnite-api.com/endpoints/cosmetics
"""

import asyncio
import dataclasses
import logging
from typing import Any

from .cache import ResultCache, fingerprint
from .config import EnrichmentConfig
from .errors import PermanentRemoteError, RemoteError
from .models import Item
from .remote import RemoteClient, RetryPolicy, TelemetrySink

logger = logging.getLogger(__name__)

SEARCH_ENDPOINT = "/v2/cosmetics/br/search"
NOT_FOUND = 404


def parse_last_seen(shop_history: list[Any]) -> str | None:
    """Latest date (YYYY-MM-DD) from a list of ISO timestamps."""
    dates = [str(ts)[:10] for ts in shop_history if ts]
    return max(dates) if dates else None


class ItemHistoryClient:
    """
    Client for the shop history provider.

    Results, including "never seen", are cached per item name.
    """

    def __init__(
        self,
        remote: RemoteClient,
        cache: ResultCache,
        ttl_seconds: float = 12 * 60 * 60,
        batch_size: int = 3,
        batch_delay_seconds: float = 0.3,
    ):
        self.remote = remote
        self.cache = cache
        self.ttl = ttl_seconds
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay_seconds

    @classmethod
    def from_config(
        cls,
        config: EnrichmentConfig,
        cache: ResultCache,
        telemetry: TelemetrySink | None = None,
    ) -> "ItemHistoryClient":
        """
        Build a client from config.

        Raises:
            ConfigurationMissing: enrichment is disabled or has no API key
        """
        api_key = config.require_api_key()
        remote = RemoteClient(
            base_url=config.base_url,
            api_key=api_key,
            api_key_header="Authorization",
            timeout_seconds=config.timeout_seconds,
            retry_policy=RetryPolicy(retries=config.retries),
            telemetry=telemetry,
        )
        return cls(
            remote,
            cache,
            ttl_seconds=config.ttl_seconds,
            batch_size=config.batch_size,
            batch_delay_seconds=config.batch_delay_seconds,
        )

    async def last_seen(self, name: str) -> str | None:
        """
        Date the named item was last in the shop, or None if unknown.

        Raises:
            RemoteError: the provider failed for a reason other than "not found"
        """
        params = {"name": name, "matchMethod": "full"}
        key = fingerprint(SEARCH_ENDPOINT, params)

        cached = self.cache.get(key)
        if cached is not None:
            return cached["last_seen"]

        try:
            data = await self.remote.fetch(SEARCH_ENDPOINT, params)
            cosmetic = data.get("data") or {}
            result = parse_last_seen(cosmetic.get("shopHistory") or [])
        except PermanentRemoteError as e:
            if e.status_code != NOT_FOUND:
                raise
            logger.debug(f"No shop history entry for {name!r}")
            result = None

        self.cache.put(key, {"last_seen": result}, self.ttl)
        return result

    async def _enrich_one(self, item: Item) -> Item:
        try:
            seen = await self.last_seen(item.name)
        except RemoteError as e:
            logger.debug(f"Shop history lookup failed for {item.name!r}: {e}")
            return item
        if seen is None:
            return item
        return dataclasses.replace(item, last_seen=seen)

    async def enrich(self, items: list[Item]) -> list[Item]:
        """Attach last-seen dates to items, in small batches."""
        enriched: list[Item] = []
        for start in range(0, len(items), self.batch_size):
            batch = items[start : start + self.batch_size]
            enriched.extend(await asyncio.gather(*(self._enrich_one(i) for i in batch)))
            if start + self.batch_size < len(items):
                await asyncio.sleep(self.batch_delay)
        return enriched
