"""
Data models and database operations for shop-tracker.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .config import RetentionConfig

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def utc_today() -> str:
    return datetime.now(UTC).date().isoformat()


class Severity(str, Enum):
    """Severity of an error log entry."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Item:
    """A single catalog entry, normalized from the upstream API."""

    id: str
    name: str
    type: str
    rarity: str
    price: int | None = None
    icon_url: str | None = None
    last_seen: str | None = None  # ISO date, from shop history enrichment

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "rarity": self.rarity,
        }
        if self.price is not None:
            result["price"] = self.price
        if self.icon_url:
            result["icon_url"] = self.icon_url
        if self.last_seen:
            result["last_seen"] = self.last_seen
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Item":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            type=data.get("type", "unknown"),
            rarity=data.get("rarity", "unknown"),
            price=data.get("price"),
            icon_url=data.get("icon_url"),
            last_seen=data.get("last_seen"),
        )


@dataclass(frozen=True)
class Section:
    """A named grouping of catalog items."""

    display_name: str
    items: tuple[Item, ...] = ()
    key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "display_name": self.display_name,
            "items": [item.to_dict() for item in self.items],
        }
        if self.key:
            result["key"] = self.key
        return result


@dataclass(frozen=True)
class CatalogSnapshot:
    """One immutable point-in-time view of the whole shop."""

    date: str  # calendar day the shop is for, YYYY-MM-DD
    sections: tuple[Section, ...] = ()
    total_item_count: int = 0
    fetched_at: str = field(default_factory=utc_now)

    def iter_items(self) -> Iterator[Item]:
        """Yield every item in section order (an item may repeat across sections)."""
        for section in self.sections:
            yield from section.items

    def item_names(self) -> set[str]:
        """Lower-cased set of all item names."""
        return {item.name.lower() for item in self.iter_items() if item.name}

    def sections_to_list(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.sections]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "date": self.date,
            "fetched_at": self.fetched_at,
            "total_item_count": self.total_item_count,
            "sections": self.sections_to_list(),
        }


@dataclass
class WishlistEntry:
    """A user's standing request to hear about an item."""

    user_id: str
    item_name: str
    item_type: str | None = None
    item_rarity: str | None = None
    item_price: int | None = None
    item_icon_url: str | None = None
    added_at: str | None = None
    last_notified_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "item_name": self.item_name,
            "item_type": self.item_type,
            "item_rarity": self.item_rarity,
            "item_price": self.item_price,
            "item_icon_url": self.item_icon_url,
        }


@dataclass
class NotificationPreference:
    """Whether a user wants wishlist notifications."""

    user_id: str
    enabled: bool = True


@dataclass
class UpdatesChannel:
    """A guild channel configured to receive wishlist updates."""

    guild_id: str
    channel_id: str
    guild_name: str | None = None
    notifications_enabled: bool = True


@dataclass
class ShopChannel:
    """A guild channel that receives the daily shop post."""

    guild_id: str
    channel_id: str
    guild_name: str | None = None


@dataclass
class ShopHistoryRecord:
    """One stored day of shop history."""

    date: str
    total_items: int
    sections_count: int
    fetch_ts: str
    posted: bool = False
    post_ts: str | None = None
    fetch_duration_ms: int | None = None
    sections_json: str | None = None

    @property
    def sections(self) -> list[dict] | None:
        """Parse sections_json."""
        if self.sections_json:
            return json.loads(self.sections_json)
        return None


class ShopDatabase:
    """
    Database operations for shop-tracker.

    Serves as the wishlist store, the shop history store, and the request
    telemetry sink.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # -------------------------------------------------------------------------
    # Wishlists
    # -------------------------------------------------------------------------

    def add_wishlist_item(
        self,
        user_id: str,
        item_name: str,
        item_type: str | None = None,
        item_rarity: str | None = None,
        item_price: int | None = None,
        item_icon_url: str | None = None,
    ) -> bool:
        """Add an item to a user's wishlist. Returns False if already present."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO wishlist_items
                    (user_id, item_name, item_type, item_rarity, item_price,
                     item_icon_url, added_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, item_name, item_type, item_rarity, item_price, item_icon_url, utc_now()),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def remove_wishlist_item(self, user_id: str, item_name: str) -> bool:
        """Remove an item (matched case-insensitively) from a user's wishlist."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM wishlist_items WHERE user_id = ? AND item_name = ? COLLATE NOCASE",
                (user_id, item_name),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get_all(self) -> list[WishlistEntry]:
        """Get every wishlist entry across all users."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM wishlist_items ORDER BY user_id ASC, added_at ASC"
            )
            return [WishlistEntry(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_for_user(self, user_id: str) -> list[WishlistEntry]:
        """Get one user's wishlist."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM wishlist_items WHERE user_id = ? ORDER BY added_at ASC",
                (user_id,),
            )
            return [WishlistEntry(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def mark_notified(self, user_id: str, item_names: list[str], date: str) -> None:
        """Set last_notified_date for several of a user's items in one transaction."""
        if not item_names:
            return

        conn = self._connect()
        try:
            with conn:
                conn.executemany(
                    """
                    UPDATE wishlist_items SET last_notified_date = ?
                    WHERE user_id = ? AND item_name = ?
                    """,
                    [(date, user_id, name) for name in item_names],
                )
        finally:
            conn.close()

    def get_notification_preference(self, user_id: str) -> NotificationPreference:
        """Get a user's notification preference. Defaults to enabled."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT wishlist_notifications_enabled FROM notification_preferences "
                "WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return NotificationPreference(user_id=user_id, enabled=True)
        return NotificationPreference(user_id=user_id, enabled=bool(row[0]))

    def set_notification_preference(self, user_id: str, enabled: bool) -> None:
        """Turn a user's wishlist notifications on or off."""
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO notification_preferences
                    (user_id, wishlist_notifications_enabled, updated_ts)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    wishlist_notifications_enabled = excluded.wishlist_notifications_enabled,
                    updated_ts = excluded.updated_ts
                """,
                (user_id, 1 if enabled else 0, utc_now()),
            )
            conn.commit()
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Guild configuration
    # -------------------------------------------------------------------------

    def set_shop_channel(
        self,
        guild_id: str,
        channel_id: str,
        guild_name: str | None = None,
        daily_updates_enabled: bool = True,
        configured_by: str | None = None,
    ) -> None:
        """Configure the channel a guild's daily shop post goes to."""
        now = utc_now()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO guild_configs
                    (guild_id, guild_name, shop_channel_id, daily_updates_enabled,
                     configured_by, configured_ts, updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id) DO UPDATE SET
                    guild_name = COALESCE(excluded.guild_name, guild_name),
                    shop_channel_id = excluded.shop_channel_id,
                    daily_updates_enabled = excluded.daily_updates_enabled,
                    updated_ts = excluded.updated_ts
                """,
                (
                    guild_id,
                    guild_name,
                    channel_id,
                    1 if daily_updates_enabled else 0,
                    configured_by,
                    now,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_shop_channels(self) -> list[ShopChannel]:
        """Get shop channels of guilds with daily updates enabled, in guild order."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT guild_id, guild_name, shop_channel_id
                FROM guild_configs
                WHERE shop_channel_id IS NOT NULL AND daily_updates_enabled = 1
                ORDER BY guild_id ASC
                """
            )
            return [
                ShopChannel(
                    guild_id=row["guild_id"],
                    channel_id=row["shop_channel_id"],
                    guild_name=row["guild_name"],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def set_updates_channel(
        self,
        guild_id: str,
        channel_id: str,
        guild_name: str | None = None,
        notifications_enabled: bool = True,
        configured_by: str | None = None,
    ) -> None:
        """Configure the wishlist updates channel for a guild."""
        now = utc_now()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO guild_configs
                    (guild_id, guild_name, updates_channel_id, notifications_enabled,
                     configured_by, configured_ts, updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id) DO UPDATE SET
                    guild_name = COALESCE(excluded.guild_name, guild_name),
                    updates_channel_id = excluded.updates_channel_id,
                    notifications_enabled = excluded.notifications_enabled,
                    updated_ts = excluded.updated_ts
                """,
                (
                    guild_id,
                    guild_name,
                    channel_id,
                    1 if notifications_enabled else 0,
                    configured_by,
                    now,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_updates_channels(self) -> list[UpdatesChannel]:
        """Get configured wishlist updates channels in guild order."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT guild_id, guild_name, updates_channel_id, notifications_enabled
                FROM guild_configs
                WHERE updates_channel_id IS NOT NULL
                ORDER BY guild_id ASC
                """
            )
            return [
                UpdatesChannel(
                    guild_id=row["guild_id"],
                    channel_id=row["updates_channel_id"],
                    guild_name=row["guild_name"],
                    notifications_enabled=bool(row["notifications_enabled"]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Shop history
    # -------------------------------------------------------------------------

    def record_snapshot(
        self,
        date: str,
        total_items: int,
        section_count: int,
        raw_sections: list[dict],
        fetch_duration_ms: int | None = None,
        posted: bool = False,
    ) -> None:
        """
        Record a fetched shop for a date.

        One row per date: later fetches overwrite the counts and data, but
        never clear a posted flag that was already set.
        """
        now = utc_now()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO shop_history
                    (date, total_items, sections_count, sections_json,
                     fetch_duration_ms, fetch_ts, posted, post_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    total_items = excluded.total_items,
                    sections_count = excluded.sections_count,
                    sections_json = excluded.sections_json,
                    fetch_duration_ms = COALESCE(excluded.fetch_duration_ms, fetch_duration_ms),
                    fetch_ts = excluded.fetch_ts,
                    posted = MAX(posted, excluded.posted),
                    post_ts = COALESCE(post_ts, excluded.post_ts)
                """,
                (
                    date,
                    total_items,
                    section_count,
                    json.dumps(raw_sections),
                    fetch_duration_ms,
                    now,
                    1 if posted else 0,
                    now if posted else None,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_history(self, date: str) -> ShopHistoryRecord | None:
        """Get the stored shop for a date."""
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM shop_history WHERE date = ?", (date,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        data = dict(row)
        data["posted"] = bool(data["posted"])
        return ShopHistoryRecord(**data)

    def was_posted(self, date: str) -> bool:
        """Whether the daily job already completed for a date."""
        record = self.get_history(date)
        return record is not None and record.posted

    # -------------------------------------------------------------------------
    # Telemetry and error logs
    # -------------------------------------------------------------------------

    def record_request(
        self,
        endpoint: str,
        method: str,
        duration_ms: int,
        status_code: int,
        success: bool,
        error_message: str | None = None,
        request_bytes: int = 0,
        response_bytes: int = 0,
    ) -> None:
        """Log one upstream request. Never raises."""
        try:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO api_requests
                        (ts, endpoint, method, duration_ms, status_code, success,
                         error_message, request_bytes, response_bytes)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        utc_now(),
                        endpoint,
                        method,
                        duration_ms,
                        status_code,
                        1 if success else 0,
                        error_message,
                        request_bytes,
                        response_bytes,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.warning("Failed to log API request to database", exc_info=True)

    def log_error(
        self,
        error_type: str,
        message: str,
        context: dict | None = None,
        user_id: str | None = None,
        severity: Severity = Severity.MEDIUM,
    ) -> None:
        """Add an error to the error log. Never raises."""
        try:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO error_logs
                        (ts, error_type, error_message, context_json, user_id, severity)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        utc_now(),
                        error_type,
                        message,
                        json.dumps(context) if context else None,
                        user_id,
                        severity.value,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.warning(f"Failed to log {error_type} error to database", exc_info=True)

    def count_rows(self, table: str) -> int:
        """Row count for one of the log tables."""
        if table not in ("api_requests", "error_logs", "shop_history"):
            raise ValueError(f"Unknown table: {table}")
        conn = self._connect()
        try:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def purge_old_records(self, retention: RetentionConfig) -> dict[str, int]:
        """Delete log and history rows past their retention, then VACUUM."""
        now = datetime.now(UTC)
        api_cutoff = (now - timedelta(days=retention.api_requests_days)).isoformat()
        error_cutoff = (now - timedelta(days=retention.error_logs_days)).isoformat()
        history_cutoff = (now - timedelta(days=retention.shop_history_days)).date().isoformat()

        conn = self._connect()
        try:
            with conn:
                deleted = {
                    "api_requests": conn.execute(
                        "DELETE FROM api_requests WHERE ts < ?", (api_cutoff,)
                    ).rowcount,
                    "error_logs": conn.execute(
                        "DELETE FROM error_logs WHERE ts < ? AND resolved = 1", (error_cutoff,)
                    ).rowcount,
                    "shop_history": conn.execute(
                        "DELETE FROM shop_history WHERE date < ?", (history_cutoff,)
                    ).rowcount,
                }
            conn.execute("VACUUM")
        finally:
            conn.close()

        logger.info(
            f"Purged {deleted['api_requests']} API requests, "
            f"{deleted['error_logs']} error logs, {deleted['shop_history']} history rows"
        )
        return deleted
