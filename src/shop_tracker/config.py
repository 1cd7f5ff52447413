"""
Configuration for shop-tracker.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationMissing


@dataclass
class ApiConfig:
    """Primary item shop API configuration."""

    base_url: str = "https://fnbr.co/api"
    api_key: str | None = None
    api_key_env: str | None = "FNBR_API_KEY"
    timeout_seconds: float = 30.0
    retries: int = 3
    backoff_base: float = 2.0
    batch_size: int = 5
    batch_delay_seconds: float = 0.1
    user_agent: str = "shop-tracker"

    def get_api_key(self) -> str | None:
        """Get API key from config or environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class CacheConfig:
    """Result cache lifetimes, in seconds."""

    shop_ttl_seconds: float = 6 * 60 * 60
    item_search_ttl_seconds: float = 30 * 60
    item_details_ttl_seconds: float = 60 * 60
    max_stale_age_seconds: float = 48 * 60 * 60
    sweep_interval_seconds: float = 60 * 60


@dataclass
class SessionConfig:
    """Interactive browsing session limits."""

    inactivity_timeout_seconds: float = 30 * 60
    sweep_interval_seconds: float = 5 * 60
    max_sessions: int = 100
    items_per_page: int = 6


@dataclass
class EnrichmentConfig:
    """Shop history ("last seen") provider configuration.

    Enrichment is optional: without an API key it is switched off.
    """

    enabled: bool = True
    base_url: str = "https://fortnite-api.com"
    api_key: str | None = None
    api_key_env: str | None = "FORTNITE_API_KEY"
    timeout_seconds: float = 10.0
    retries: int = 1
    batch_size: int = 3
    batch_delay_seconds: float = 0.3
    ttl_seconds: float = 12 * 60 * 60

    def get_api_key(self) -> str | None:
        """Get API key from config or environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None

    def require_api_key(self) -> str:
        """Get the API key or raise ConfigurationMissing."""
        key = self.get_api_key()
        if not self.enabled:
            raise ConfigurationMissing("enrichment disabled in config")
        if not key:
            raise ConfigurationMissing(
                f"no enrichment API key (set {self.api_key_env or 'enrichment.api_key'})"
            )
        return key


@dataclass
class RetentionConfig:
    """How long maintenance keeps rows, in days."""

    api_requests_days: int = 7
    error_logs_days: int = 30
    shop_history_days: int = 365


@dataclass
class SchedulerConfig:
    """Job schedule configuration."""

    daily_time: str = "30 0 * * *"  # 00:30 UTC
    retry_delay_seconds: float = 5 * 60
    post_delay_seconds: float = 0.5  # between guild shop posts
    maintenance_interval_seconds: float = 7 * 24 * 60 * 60
    retention: RetentionConfig = field(default_factory=RetentionConfig)


@dataclass
class BotConfig:
    """Complete shop-tracker configuration."""

    db_path: Path = field(default_factory=lambda: Path("shop_tracker.db"))

    api: ApiConfig = field(default_factory=ApiConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BotConfig":
        """Create config from a dictionary (e.g., from YAML)."""
        config = cls()

        if "db_path" in data:
            config.db_path = Path(data["db_path"])

        if "api" in data:
            api = data["api"]
            config.api = ApiConfig(
                base_url=api.get("base_url", config.api.base_url),
                api_key=api.get("api_key"),
                api_key_env=api.get("api_key_env", config.api.api_key_env),
                timeout_seconds=api.get("timeout_seconds", 30.0),
                retries=api.get("retries", 3),
                backoff_base=api.get("backoff_base", 2.0),
                batch_size=api.get("batch_size", 5),
                batch_delay_seconds=api.get("batch_delay_seconds", 0.1),
                user_agent=api.get("user_agent", config.api.user_agent),
            )

        if "cache" in data:
            cache = data["cache"]
            defaults = CacheConfig()
            config.cache = CacheConfig(
                shop_ttl_seconds=cache.get("shop_ttl_seconds", defaults.shop_ttl_seconds),
                item_search_ttl_seconds=cache.get(
                    "item_search_ttl_seconds", defaults.item_search_ttl_seconds
                ),
                item_details_ttl_seconds=cache.get(
                    "item_details_ttl_seconds", defaults.item_details_ttl_seconds
                ),
                max_stale_age_seconds=cache.get(
                    "max_stale_age_seconds", defaults.max_stale_age_seconds
                ),
                sweep_interval_seconds=cache.get(
                    "sweep_interval_seconds", defaults.sweep_interval_seconds
                ),
            )

        if "sessions" in data:
            sessions = data["sessions"]
            defaults = SessionConfig()
            config.sessions = SessionConfig(
                inactivity_timeout_seconds=sessions.get(
                    "inactivity_timeout_seconds", defaults.inactivity_timeout_seconds
                ),
                sweep_interval_seconds=sessions.get(
                    "sweep_interval_seconds", defaults.sweep_interval_seconds
                ),
                max_sessions=sessions.get("max_sessions", defaults.max_sessions),
                items_per_page=sessions.get("items_per_page", defaults.items_per_page),
            )

        if "enrichment" in data:
            en = data["enrichment"]
            defaults = EnrichmentConfig()
            config.enrichment = EnrichmentConfig(
                enabled=en.get("enabled", True),
                base_url=en.get("base_url", defaults.base_url),
                api_key=en.get("api_key"),
                api_key_env=en.get("api_key_env", defaults.api_key_env),
                timeout_seconds=en.get("timeout_seconds", defaults.timeout_seconds),
                retries=en.get("retries", defaults.retries),
                batch_size=en.get("batch_size", defaults.batch_size),
                batch_delay_seconds=en.get("batch_delay_seconds", defaults.batch_delay_seconds),
                ttl_seconds=en.get("ttl_seconds", defaults.ttl_seconds),
            )

        if "scheduler" in data:
            sched = data["scheduler"]
            defaults = SchedulerConfig()
            retention = sched.get("retention", {})
            config.scheduler = SchedulerConfig(
                daily_time=sched.get("daily_time", defaults.daily_time),
                retry_delay_seconds=sched.get("retry_delay_seconds", defaults.retry_delay_seconds),
                post_delay_seconds=sched.get("post_delay_seconds", defaults.post_delay_seconds),
                maintenance_interval_seconds=sched.get(
                    "maintenance_interval_seconds", defaults.maintenance_interval_seconds
                ),
                retention=RetentionConfig(
                    api_requests_days=retention.get("api_requests_days", 7),
                    error_logs_days=retention.get("error_logs_days", 30),
                    shop_history_days=retention.get("shop_history_days", 365),
                ),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "BotConfig":
        """Load config from a YAML file.

        Settings may sit at the top level or under a ``shop_tracker`` key.
        """
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data.get("shop_tracker", data))

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization (no secrets)."""
        return {
            "db_path": str(self.db_path),
            "api": {
                "base_url": self.api.base_url,
                "timeout_seconds": self.api.timeout_seconds,
                "retries": self.api.retries,
                "batch_size": self.api.batch_size,
            },
            "cache": {
                "shop_ttl_seconds": self.cache.shop_ttl_seconds,
                "item_details_ttl_seconds": self.cache.item_details_ttl_seconds,
                "max_stale_age_seconds": self.cache.max_stale_age_seconds,
            },
            "sessions": {
                "inactivity_timeout_seconds": self.sessions.inactivity_timeout_seconds,
                "max_sessions": self.sessions.max_sessions,
            },
            "enrichment": {
                "enabled": self.enrichment.enabled,
                "base_url": self.enrichment.base_url,
                "configured": self.enrichment.get_api_key() is not None,
            },
            "scheduler": {
                "daily_time": self.scheduler.daily_time,
                "retry_delay_seconds": self.scheduler.retry_delay_seconds,
                "post_delay_seconds": self.scheduler.post_delay_seconds,
            },
        }
