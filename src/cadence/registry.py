"""Entry registry: the scheduler's single piece of shared mutable state.

Entries are frozen; every time change swaps in a new Entry under the lock, so
a snapshot never observes a half-applied update.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import NewType

from cadence.handlers import HandlerOptions, Invoker
from cadence.parser import Schedule, as_utc, utcnow

EntryID = NewType("EntryID", int)


@dataclass(frozen=True)
class Entry:
    """A registered schedule and handler with its fire-time bookkeeping."""

    id: EntryID
    schedule: Schedule
    invoker: Invoker
    options: HandlerOptions
    next_run: datetime
    prev_run: datetime | None = None

    @property
    def name(self) -> str:
        return self.options.name or self.invoker.name

    def is_due(self, now: datetime) -> bool:
        return self.next_run <= now


class EntryRegistry:
    """Thread-safe mapping of EntryID to Entry."""

    def __init__(self) -> None:
        self._entries: dict[EntryID, Entry] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def insert(
        self,
        schedule: Schedule,
        invoker: Invoker,
        options: HandlerOptions,
        now: datetime | None = None,
    ) -> EntryID:
        """Store a new entry and return its ID.

        The first fire time is ``schedule.next(now)``.
        """
        first_run = schedule.next(as_utc(now) if now else utcnow())
        with self._lock:
            entry_id = EntryID(next(self._ids))
            self._entries[entry_id] = Entry(
                id=entry_id,
                schedule=schedule,
                invoker=invoker,
                options=options,
                next_run=first_run,
            )
        return entry_id

    def remove(self, entry_id: EntryID) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def get(self, entry_id: EntryID) -> Entry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def snapshot(self) -> list[Entry]:
        """Return all entries ordered by next fire time."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda e: (e.next_run, e.id))

    def next_wake(self) -> datetime | None:
        with self._lock:
            if not self._entries:
                return None
            return min(e.next_run for e in self._entries.values())

    def update_next_run(
        self,
        entry_id: EntryID,
        next_run: datetime,
        prev_run: datetime | None = None,
    ) -> bool:
        """Set an entry's next fire time after it fired.

        Returns:
            False if the entry was removed in the meantime.
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            self._entries[entry_id] = replace(
                entry,
                next_run=next_run,
                prev_run=prev_run if prev_run is not None else entry.prev_run,
            )
            return True

    def rebase(self, now: datetime) -> None:
        """Recompute every entry's next fire time relative to ``now``."""
        now = as_utc(now)
        with self._lock:
            for entry_id, entry in self._entries.items():
                self._entries[entry_id] = replace(
                    entry, next_run=entry.schedule.next(now)
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        with self._lock:
            return entry_id in self._entries
