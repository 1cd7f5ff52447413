"""Shared pytest fixtures for shop-tracker tests."""

from unittest.mock import MagicMock

import pytest

from shop_tracker.migrations import run_migrations
from shop_tracker.models import CatalogSnapshot, Item, Section, ShopDatabase


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_shop.db"
    run_migrations(db_file)
    return db_file


@pytest.fixture
def db(db_path):
    return ShopDatabase(db_path)


@pytest.fixture
def make_response():
    """Build a fake httpx.Response."""

    def _make(data=None, status_code=200, content=b"{}"):
        response = MagicMock()
        response.status_code = status_code
        response.content = content
        if isinstance(data, Exception):
            response.json.side_effect = data
        else:
            response.json.return_value = data if data is not None else {"status": 200}
        return response

    return _make


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_item(name: str, item_id: str | None = None, **kwargs) -> Item:
    return Item(
        id=item_id or name.lower().replace(" ", "_"),
        name=name,
        type=kwargs.pop("type", "outfit"),
        rarity=kwargs.pop("rarity", "epic"),
        **kwargs,
    )


def make_snapshot(*sections: tuple[str, list[str]], date: str = "2026-10-18") -> CatalogSnapshot:
    """Build a snapshot from (section name, [item names]) pairs."""
    built = tuple(
        Section(display_name=name, items=tuple(make_item(n) for n in names))
        for name, names in sections
    )
    return CatalogSnapshot(
        date=date,
        sections=built,
        total_item_count=sum(len(s.items) for s in built),
    )


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def snapshot_factory():
    return make_snapshot
