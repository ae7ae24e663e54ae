"""Per-session change reconciliation.

A :class:`ReconciliationEngine` belongs to exactly one connected session. For
every pushed mutation event it decides whether the session's cached result
set may be stale and, if so, re-fetches the whole filtered list from the
store. Pushed payloads are never merged into the cache: they lack joined
display data and may arrive out of commit order, while a re-fetch always
reflects the latest committed state.
"""

# purpose: decide refresh-or-ignore for pushed row mutations and own the session's result sets
# status: active

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Union

from prometheus_client import Counter

from .filters import FilterPredicate, matches

logger = logging.getLogger(__name__)

RECONCILIATION_DECISIONS = Counter(
    "reconciliation_decisions_total",
    "Refresh decisions taken for pushed change events",
    ["table", "decision"],
)

Fetcher = Callable[[str, FilterPredicate], Union[Awaitable[list[Any]], list[Any]]]
Callback = Callable[[str, list[Any]], Union[Awaitable[None], None]]

EVENT_TYPES = ("insert", "update", "delete")


def event_type_of(event: Mapping[str, Any]) -> str:
    value = event.get("event_type") or event.get("eventType") or event.get("type") or ""
    return str(value).lower()


def record_of(event: Mapping[str, Any]) -> Mapping[str, Any] | None:
    record = event.get("record")
    if record is None:
        record = event.get("new") or event.get("row")
    return record


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ReconciliationEngine:
    def __init__(self, fetcher: Fetcher, tables: Iterable[str] = ()):
        self._fetcher = fetcher
        self._filters: dict[str, FilterPredicate] = {}
        self._results: dict[str, list[Any]] = {}
        self._callbacks: dict[str, list[Callback]] = defaultdict(list)
        self.refresh_count: dict[str, int] = defaultdict(int)
        for table in tables:
            self.watch(table)

    @property
    def tables(self) -> list[str]:
        return list(self._filters)

    def watch(self, table: str, predicate: FilterPredicate | None = None) -> None:
        self._filters[table] = predicate or self._filters.get(table) or FilterPredicate()

    def current_filter(self, table: str) -> FilterPredicate:
        return self._filters.get(table) or FilterPredicate()

    def results(self, table: str) -> list[Any]:
        return list(self._results.get(table, []))

    def on_reconciliation_event(self, table: str, callback: Callback) -> Callable[[], None]:
        """Register ``callback(table, rows)`` for every completed refresh of ``table``.

        Returns a function that removes the registration.
        """

        self.watch(table)
        self._callbacks[table].append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks[table]:
                self._callbacks[table].remove(callback)

        return unsubscribe

    def decide(self, table: str, event: Mapping[str, Any]) -> bool:
        """Return ``True`` when ``event`` requires the cached view to be re-fetched."""

        kind = event_type_of(event)
        if kind == "delete":
            # the removed row may have been visible and cannot be matched any more
            decision = True
        elif kind in ("insert", "update"):
            decision = matches(table, self.current_filter(table), record_of(event))
        else:
            logger.debug("Ignoring %s event of unknown type %r", table, kind)
            decision = False
        RECONCILIATION_DECISIONS.labels(table, "refresh" if decision else "ignore").inc()
        return decision

    async def handle_event(self, table: str, event: Mapping[str, Any]) -> bool:
        if table not in self._filters:
            return False
        if not self.decide(table, event):
            return False
        await self.refresh(table)
        return True

    async def refresh(self, table: str) -> list[Any]:
        """Re-fetch ``table`` under its current filter; the last refresh to finish wins."""

        predicate = self.current_filter(table)
        rows = list(await _maybe_await(self._fetcher(table, predicate)))
        if self.current_filter(table) != predicate:
            # superseded by a filter change while in flight
            return self.results(table)
        self._results[table] = rows
        self.refresh_count[table] += 1
        for callback in list(self._callbacks.get(table, [])):
            await _maybe_await(callback(table, rows))
        return rows

    async def set_filter(self, table: str, predicate: FilterPredicate) -> list[Any]:
        self._filters[table] = predicate
        return await self.refresh(table)

    async def reconnect(self) -> None:
        """After a dropped feed: one unconditional refresh per watched table, no gap filling."""

        for table in self.tables:
            await self.refresh(table)

    async def run(self, table: str, stream: AsyncIterator[Mapping[str, Any]]) -> None:
        async for event in stream:
            await self.handle_event(table, event)
