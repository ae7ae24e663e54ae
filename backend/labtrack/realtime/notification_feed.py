"""Receiving side of notification fan-out for one session.

Rows may reach a session more than once: a reconnect replays, redelivery is
at-least-once, and an optimistic local notification is later confirmed by the
feed. :class:`NotificationFeed` keeps the unread counter exact by counting an
id only when it is new to local state, and :class:`RecentIds` suppresses
repeats inside a short window without a background timer.
"""

# purpose: per-session dedup, unread counter and read state for pushed notifications
# status: active

from __future__ import annotations

import os
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from ..store import row_to_dict

DEDUP_SECONDS = float(os.getenv("NOTIFICATION_DEDUP_SECONDS", "30"))
DEDUP_SIZE = int(os.getenv("NOTIFICATION_DEDUP_SIZE", "512"))


class RecentIds:
    """Bounded LRU of recently processed ids, evicted by size and age on insert."""

    def __init__(
        self,
        max_size: int = DEDUP_SIZE,
        max_age: float = DEDUP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.max_age = max_age
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        stamp = self._entries.get(str(key))
        return stamp is not None and self._clock() - stamp < self.max_age

    def _evict(self, now: float) -> None:
        while self._entries:
            oldest_key, stamp = next(iter(self._entries.items()))
            if len(self._entries) > self.max_size or now - stamp >= self.max_age:
                self._entries.pop(oldest_key)
            else:
                break

    def add(self, key: Any) -> bool:
        """Record ``key``; return ``False`` when it was already seen inside the window."""

        now = self._clock()
        key = str(key)
        self._evict(now)
        if key in self._entries:
            self._entries.move_to_end(key)
            return False
        self._entries[key] = now
        self._evict(now)
        return True


def _as_dict(notification: Any) -> dict[str, Any]:
    if isinstance(notification, Mapping):
        return dict(notification)
    return row_to_dict(notification)


def _sort_key(item: Mapping[str, Any]) -> str:
    created = item.get("created_at")
    if isinstance(created, datetime):
        return created.isoformat()
    return str(created or "")


class NotificationFeed:
    def __init__(self, recipient_id: Any, recent: RecentIds | None = None):
        self.recipient_id = str(recipient_id)
        self.recent = recent or RecentIds()
        self._items: dict[str, dict[str, Any]] = {}
        self._unread = 0

    def load(self, notifications: Iterable[Any]) -> None:
        """Replace local state with a fresh read from the store."""

        self._items = {}
        for notification in notifications:
            item = _as_dict(notification)
            key = str(item["id"])
            self._items[key] = item
            self.recent.add(key)
        self._unread = sum(1 for item in self._items.values() if not item.get("is_read"))

    def _accept(self, item: dict[str, Any]) -> bool:
        key = str(item["id"])
        first_time = self.recent.add(key)
        if key in self._items:
            # confirmation of something already shown: refresh fields, keep read state
            item["is_read"] = bool(self._items[key].get("is_read")) or bool(item.get("is_read"))
            self._items[key].update(item)
            return False
        if not first_time:
            return False
        item.setdefault("is_read", False)
        self._items[key] = item
        if not item["is_read"]:
            self._unread += 1
        return True

    def receive(self, payload: Mapping[str, Any]) -> bool:
        """Apply a pushed notification; return ``True`` only when it was new."""

        item = _as_dict(payload)
        item.pop("type", None)
        item["pending_confirmation"] = False
        if item.get("id") is None:
            return False
        recipient = item.get("user_id")
        if recipient is not None and str(recipient) != self.recipient_id:
            return False
        return self._accept(item)

    def add_local(self, notification: Mapping[str, Any]) -> bool:
        """Show a notification before the feed confirms it."""

        item = _as_dict(notification)
        item.setdefault("user_id", self.recipient_id)
        item.setdefault("created_at", datetime.now(timezone.utc))
        item["pending_confirmation"] = True
        return self._accept(item)

    def notifications(self) -> list[dict[str, Any]]:
        return sorted(self._items.values(), key=_sort_key, reverse=True)

    def unread_count(self) -> int:
        return self._unread

    def mark_read(self, notification_id: Any) -> bool:
        item = self._items.get(str(notification_id))
        if item is None or item.get("is_read"):
            return False
        item["is_read"] = True
        self._unread -= 1
        return True

    def mark_all_read(self) -> int:
        changed = 0
        for item in self._items.values():
            if not item.get("is_read"):
                item["is_read"] = True
                changed += 1
        self._unread = 0
        return changed


def relative_age(created_at: datetime | str | None, now: datetime | None = None) -> str:
    """Render ``created_at`` as "just now", "5m ago", "3h ago", "2d ago" or a date."""

    if created_at is None:
        return ""
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    seconds = int((now - created_at).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    if seconds < 7 * 86400:
        return f"{seconds // 86400}d ago"
    return created_at.date().isoformat()
