"""
Wishlist notifications for shop-tracker.

Matches the current shop against every user's wishlist and sends each
user at most one bundle per day. Delivery goes to the first wishlist
updates channel the user can be reached in, else to a direct message.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import DeliveryFailure
from .models import (
    CatalogSnapshot,
    Item,
    NotificationPreference,
    Severity,
    UpdatesChannel,
    WishlistEntry,
    utc_now,
    utc_today,
)

logger = logging.getLogger(__name__)


class WishlistStore(Protocol):
    def get_all(self) -> list[WishlistEntry]: ...

    def get_for_user(self, user_id: str) -> list[WishlistEntry]: ...

    def mark_notified(self, user_id: str, item_names: list[str], date: str) -> None: ...

    def get_notification_preference(self, user_id: str) -> NotificationPreference: ...

    def get_updates_channels(self) -> list[UpdatesChannel]: ...


class Notifier(Protocol):
    """Delivers pre-rendered payloads. Reports success or failure only."""

    async def is_member(self, guild_id: str, user_id: str) -> bool: ...

    async def can_post(self, guild_id: str, channel_id: str) -> bool: ...

    async def deliver_to_channel(
        self, channel_id: str, user_id: str, content: dict[str, Any]
    ) -> bool: ...

    async def deliver_to_dm(self, user_id: str, content: dict[str, Any]) -> bool: ...

    async def post_shop(self, channel_id: str, content: dict[str, Any]) -> bool: ...


class OperatorAlert(Protocol):
    async def notify_operator(self, message: str) -> None: ...


class ErrorLog(Protocol):
    def log_error(
        self,
        error_type: str,
        message: str,
        context: dict | None = None,
        user_id: str | None = None,
        severity: Severity = Severity.MEDIUM,
    ) -> None: ...


def items_match(wishlist_name: str, shop_name: str) -> bool:
    """
    Whether a wishlist name matches a shop item name.

    Case-insensitive exact match, or either name contained in the other.
    "Raven" matches "Raven Team Leader", and "Ravenous" matches "Raven".
    """
    wishlist_name = wishlist_name.lower()
    shop_name = shop_name.lower()
    if not wishlist_name or not shop_name:
        return False
    if wishlist_name == shop_name:
        return True
    if wishlist_name in shop_name:
        return True
    return shop_name in wishlist_name


@dataclass
class WishlistMatch:
    """One wishlist entry and the shop item it matched."""

    entry: WishlistEntry
    item: Item

    def to_dict(self) -> dict[str, Any]:
        result = self.entry.to_dict()
        result["shop_item"] = self.item.to_dict()
        return result


@dataclass
class NotificationBundle:
    """Everything one user is told about in one run."""

    user_id: str
    matches: list[WishlistMatch] = field(default_factory=list)

    @property
    def item_names(self) -> list[str]:
        return [m.entry.item_name for m in self.matches]

    def to_dict(self) -> dict[str, Any]:
        """Payload handed to the notifier."""
        return {
            "type": "wishlist_notification",
            "user_id": self.user_id,
            "item_count": len(self.matches),
            "items": [m.to_dict() for m in self.matches],
        }


def match_wishlist(
    snapshot: CatalogSnapshot,
    entries: list[WishlistEntry],
    today: str,
) -> dict[str, NotificationBundle]:
    """
    Group wishlist matches against a snapshot by user.

    Entries already notified today are dropped before matching. Each entry
    matches at most once: the first shop item, in section order, that
    satisfies ``items_match``.
    """
    if not snapshot.item_names():
        return {}

    shop_items = [item for item in snapshot.iter_items() if item.name]
    bundles: dict[str, NotificationBundle] = {}

    for entry in entries:
        if entry.last_notified_date == today:
            continue
        for item in shop_items:
            if items_match(entry.item_name, item.name):
                bundle = bundles.setdefault(entry.user_id, NotificationBundle(entry.user_id))
                bundle.matches.append(WishlistMatch(entry=entry, item=item))
                break

    return bundles


class NotificationMatcher:
    """
    Dispatches wishlist notifications for a snapshot.

    Only one run may be in flight; a trigger that arrives during a run is
    skipped, not queued.
    """

    def __init__(
        self,
        operator: OperatorAlert | None = None,
        error_log: ErrorLog | None = None,
        today_fn: Callable[[], str] = utc_today,
    ):
        self.operator = operator
        self.error_log = error_log
        self._today = today_fn
        self._lock = asyncio.Lock()
        self.last_run: str | None = None

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    async def process_snapshot(
        self,
        snapshot: CatalogSnapshot,
        wishlist_store: WishlistStore,
        notifier: Notifier,
    ) -> int | None:
        """
        Notify every user with new matches in the snapshot.

        Returns:
            Number of users successfully notified, or None when the run was
            skipped because another one is in progress
        """
        if self._lock.locked():
            logger.warning("Wishlist notification processing already in progress; skipping")
            return None

        async with self._lock:
            today = self._today()
            if not snapshot.item_names():
                logger.warning("No item names found in shop data for wishlist notifications")
                return 0

            logger.info("Starting wishlist notification processing")
            bundles = match_wishlist(snapshot, wishlist_store.get_all(), today)
            if not bundles:
                logger.info("No wishlist items match current shop items")
                self.last_run = utc_now()
                return 0

            logger.info(f"Found wishlist matches for {len(bundles)} users")
            channels = wishlist_store.get_updates_channels()

            dispatched = 0
            for bundle in bundles.values():
                try:
                    if await self._process_user(bundle, wishlist_store, notifier, channels, today):
                        dispatched += 1
                except Exception as e:
                    logger.exception(f"Failed to send notification to user {bundle.user_id}")
                    self._log_error(
                        "wishlist_notification_failed",
                        f"Failed to send wishlist notification to user {bundle.user_id}: {e}",
                        bundle,
                    )

            self.last_run = utc_now()
            logger.info(f"Wishlist notification processing complete. Sent {dispatched}.")
            return dispatched

    async def _process_user(
        self,
        bundle: NotificationBundle,
        store: WishlistStore,
        notifier: Notifier,
        channels: list[UpdatesChannel],
        today: str,
    ) -> bool:
        preference = store.get_notification_preference(bundle.user_id)
        if not preference.enabled:
            logger.info(f"Skipping notification for user {bundle.user_id}: notifications disabled")
            return False

        try:
            target = await self._deliver(bundle, notifier, channels)
        except DeliveryFailure as e:
            logger.warning(str(e))
            self._log_error("wishlist_notification_undeliverable", str(e), bundle)
            await self._alert_operator(bundle)
            return False

        store.mark_notified(bundle.user_id, bundle.item_names, today)
        logger.info(
            f"Sent wishlist notification to user {bundle.user_id} "
            f"({target}, {len(bundle.matches)} items)"
        )
        return True

    async def _deliver(
        self,
        bundle: NotificationBundle,
        notifier: Notifier,
        channels: list[UpdatesChannel],
    ) -> str:
        """
        Send to the first usable updates channel, else by DM.

        Returns the target used. Raises DeliveryFailure when neither worked.
        """
        content = bundle.to_dict()
        user_id = bundle.user_id

        for channel in channels:
            if not channel.notifications_enabled:
                continue
            try:
                if not await notifier.is_member(channel.guild_id, user_id):
                    continue
                if not await notifier.can_post(channel.guild_id, channel.channel_id):
                    logger.warning(
                        f"Cannot post in channel {channel.channel_id} for guild {channel.guild_id}"
                    )
                    continue
            except Exception as e:
                logger.warning(f"Could not check guild {channel.guild_id} for {user_id}: {e}")
                continue

            # First qualifying channel is the only one tried
            try:
                if await notifier.deliver_to_channel(channel.channel_id, user_id, content):
                    return f"channel {channel.channel_id}"
            except Exception as e:
                logger.warning(f"Channel delivery to {channel.channel_id} failed: {e}")
            logger.warning(f"Channel delivery failed for user {user_id}; trying DM")
            break

        try:
            if await notifier.deliver_to_dm(user_id, content):
                return "dm"
        except Exception as e:
            logger.warning(f"Cannot send DM to user {user_id}: {e}")
        raise DeliveryFailure(user_id, f"No reachable channel or DM for user {user_id}")

    async def _alert_operator(self, bundle: NotificationBundle) -> None:
        if self.operator is None:
            return
        message = (
            f"Wishlist notification failed for user {bundle.user_id}: "
            f"no accessible notification channel and DMs unavailable. "
            f"Items: {', '.join(bundle.item_names)}"
        )
        try:
            await self.operator.notify_operator(message)
        except Exception:
            logger.error("Failed to notify operator of notification failure", exc_info=True)

    def _log_error(self, error_type: str, message: str, bundle: NotificationBundle) -> None:
        if self.error_log is None:
            return
        self.error_log.log_error(
            error_type,
            message,
            context={"item_count": len(bundle.matches), "items": bundle.item_names},
            user_id=bundle.user_id,
            severity=Severity.MEDIUM,
        )


class LogNotifier:
    """
    Notifier that writes bundles to the log.

    Used by the CLI when no chat integration is attached. Knows no guilds,
    so every bundle goes to "DM".
    """

    def __init__(self) -> None:
        self.delivered: list[dict[str, Any]] = []
        self.posted: list[tuple[str, dict[str, Any]]] = []

    async def is_member(self, guild_id: str, user_id: str) -> bool:
        return False

    async def can_post(self, guild_id: str, channel_id: str) -> bool:
        return False

    async def deliver_to_channel(
        self, channel_id: str, user_id: str, content: dict[str, Any]
    ) -> bool:
        logger.info(f"[channel {channel_id}] {user_id}: {content['item_count']} wishlist items")
        self.delivered.append(content)
        return True

    async def deliver_to_dm(self, user_id: str, content: dict[str, Any]) -> bool:
        names = ", ".join(m["item_name"] for m in content["items"])
        logger.info(f"[dm {user_id}] wishlist items in shop: {names}")
        self.delivered.append(content)
        return True

    async def post_shop(self, channel_id: str, content: dict[str, Any]) -> bool:
        logger.info(
            f"[channel {channel_id}] daily shop for {content['date']}: "
            f"{content['total_item_count']} items"
        )
        self.posted.append((channel_id, content))
        return True

    async def notify_operator(self, message: str) -> None:
        logger.error(f"[operator] {message}")
