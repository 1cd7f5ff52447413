"""
Interactive shop browsing sessions.

A session remembers which section and page of a snapshot one user is
looking at. Sessions live only in memory, expire after a period of
inactivity, and are capped in number.
"""

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .models import CatalogSnapshot, Item, Section

logger = logging.getLogger(__name__)

DEFAULT_ITEMS_PER_PAGE = 6


class NavAction(str, Enum):
    """Navigation buttons."""

    FIRST_SECTION = "firstsec"
    PREV_SECTION = "prevsec"
    NEXT_SECTION = "nextsec"
    LAST_SECTION = "lastsec"
    FIRST_PAGE = "firstpage"
    PREV_PAGE = "prevpage"
    NEXT_PAGE = "nextpage"
    LAST_PAGE = "lastpage"


@dataclass
class PageView:
    """What a session currently shows."""

    section_index: int
    section_count: int
    page: int
    page_count: int
    section: Section | None
    items: list[Item] = field(default_factory=list)


@dataclass
class Session:
    """Pagination state for one user."""

    owner_id: str
    snapshot: CatalogSnapshot
    created_at: float
    last_touched_at: float
    section_index: int = 0
    page: int = 0

    def page_count(self, items_per_page: int) -> int:
        section = self.current_section
        if section is None or not section.items:
            return 1
        return math.ceil(len(section.items) / items_per_page)

    @property
    def current_section(self) -> Section | None:
        if not self.snapshot.sections:
            return None
        return self.snapshot.sections[self.section_index]

    def view(self, items_per_page: int) -> PageView:
        section = self.current_section
        start = self.page * items_per_page
        items = list(section.items[start : start + items_per_page]) if section else []
        return PageView(
            section_index=self.section_index,
            section_count=len(self.snapshot.sections),
            page=self.page,
            page_count=self.page_count(items_per_page),
            section=section,
            items=items,
        )

    def apply(self, action: NavAction, items_per_page: int) -> None:
        """Move to another section or page. Changing section resets the page."""
        last_section = max(0, len(self.snapshot.sections) - 1)
        section_index = self.section_index
        page = self.page

        if action is NavAction.FIRST_SECTION:
            section_index = 0
        elif action is NavAction.PREV_SECTION:
            section_index = max(0, section_index - 1)
        elif action is NavAction.NEXT_SECTION:
            section_index = min(last_section, section_index + 1)
        elif action is NavAction.LAST_SECTION:
            section_index = last_section
        elif action is NavAction.FIRST_PAGE:
            page = 0
        elif action is NavAction.PREV_PAGE:
            page = max(0, page - 1)
        elif action is NavAction.NEXT_PAGE:
            page = min(self.page_count(items_per_page) - 1, page + 1)
        elif action is NavAction.LAST_PAGE:
            page = self.page_count(items_per_page) - 1

        if section_index != self.section_index:
            page = 0
        self.section_index = section_index
        self.page = page


class SessionStore:
    """
    Thread-safe store of browsing sessions keyed by owner.

    Args:
        inactivity_timeout: Seconds without a touch before a session expires
        max_sessions: Ceiling on the number of live sessions
        items_per_page: Items per page when navigating
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        inactivity_timeout: float = 30 * 60,
        max_sessions: int = 100,
        items_per_page: int = DEFAULT_ITEMS_PER_PAGE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inactivity_timeout = inactivity_timeout
        self.max_sessions = max_sessions
        self.items_per_page = items_per_page
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, owner_id: str) -> bool:
        with self._lock:
            return owner_id in self._sessions

    def get(self, owner_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(owner_id)

    def get_or_create(self, owner_id: str, snapshot: CatalogSnapshot) -> Session:
        """
        Get the owner's session, or start one at the first section.

        An existing session keeps its snapshot and is touched. Creating a
        session when the store is full first evicts the least recently
        touched ones.
        """
        now = self._clock()
        with self._lock:
            session = self._sessions.get(owner_id)
            if session is not None:
                session.last_touched_at = now
                return session

            if len(self._sessions) >= self.max_sessions:
                self._evict_lru(max(0, self.max_sessions - 1))
            session = Session(
                owner_id=owner_id,
                snapshot=snapshot,
                created_at=now,
                last_touched_at=now,
            )
            self._sessions[owner_id] = session
        logger.debug(f"Started shop session for {owner_id}")
        return session

    def touch(self, owner_id: str) -> bool:
        """Mark a session as active. Returns False if there is none."""
        with self._lock:
            session = self._sessions.get(owner_id)
            if session is None:
                return False
            session.last_touched_at = self._clock()
            return True

    def navigate(self, owner_id: str, action: NavAction | str) -> PageView | None:
        """Apply a navigation action and return the new view, or None without a session."""
        action = NavAction(action)
        with self._lock:
            session = self._sessions.get(owner_id)
            if session is None:
                return None
            session.apply(action, self.items_per_page)
            session.last_touched_at = self._clock()
            return session.view(self.items_per_page)

    def end(self, owner_id: str) -> bool:
        """Drop a session explicitly."""
        with self._lock:
            return self._sessions.pop(owner_id, None) is not None

    def evict_expired(self) -> int:
        """Remove sessions idle longer than the inactivity timeout. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [
                owner_id
                for owner_id, session in self._sessions.items()
                if now - session.last_touched_at > self.inactivity_timeout
            ]
            for owner_id in expired:
                del self._sessions[owner_id]

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired shop sessions")
        return len(expired)

    def evict_over_capacity(self, max_sessions: int | None = None) -> int:
        """Remove least recently touched sessions until at most ``max_sessions`` remain."""
        limit = self.max_sessions if max_sessions is None else max_sessions
        with self._lock:
            removed = self._evict_lru(limit)
        if removed:
            logger.debug(f"Enforced session limit, removed {removed} oldest sessions")
        return removed

    def sweep(self) -> int:
        """Time-based eviction, then the capacity ceiling."""
        return self.evict_expired() + self.evict_over_capacity()

    def clear(self) -> int:
        with self._lock:
            size = len(self._sessions)
            self._sessions.clear()
        return size

    def _evict_lru(self, limit: int) -> int:
        # Caller holds the lock
        excess = len(self._sessions) - limit
        if excess <= 0:
            return 0
        oldest = sorted(self._sessions.values(), key=lambda s: s.last_touched_at)[:excess]
        for session in oldest:
            del self._sessions[session.owner_id]
        return len(oldest)
