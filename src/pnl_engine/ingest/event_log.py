"""Append-only, deduplicating in-memory event log for one account."""

from datetime import date
from typing import Iterable, Iterator

from pnl_engine.logging import get_logger
from pnl_engine.models import Event

logger = get_logger(__name__)


class EventLog:
    """Ordered view over an account's events with dedupe-on-append.

    Appending an event whose dedupe key is already present is a no-op,
    so replayed or overlapping ingestion batches are harmless.

    Usage:
        log = EventLog()
        added = log.extend(events)
        for event in log.ordered():
            ...
    """

    def __init__(self, events: Iterable[Event] = ()) -> None:
        self._events: list[Event] = []
        self._keys: set[str] = set()
        self.extend(events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.ordered())

    def append(self, event: Event) -> bool:
        """Add an event; returns False if its dedupe key was already seen."""
        key = event.dedupe_key
        if key in self._keys:
            return False
        self._keys.add(key)
        self._events.append(event)
        return True

    def extend(self, events: Iterable[Event]) -> int:
        """Add many events; returns how many were new."""
        total = 0
        added = 0
        for event in events:
            total += 1
            if self.append(event):
                added += 1
        if total and added < total:
            logger.debug("duplicate_events_ignored", total=total, duplicates=total - added)
        return added

    def ordered(
        self,
        start: date | None = None,
        end: date | None = None,
    ) -> list[Event]:
        """Events in timestamp order, optionally limited to [start, end] days.

        The sort is stable: events sharing a timestamp keep arrival order.
        """
        events = sorted(self._events, key=lambda e: e.ts)
        if start is not None:
            events = [e for e in events if e.day >= start]
        if end is not None:
            events = [e for e in events if e.day <= end]
        return events
