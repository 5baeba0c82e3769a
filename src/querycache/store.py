"""In-memory cache store.

This is the single source of truth for per-key query state. Entries are
frozen; the only way to change one is :meth:`CacheStore.upsert`, which
swaps in a new version under the store lock. Payloads never leave the
store by reference: entries are copied on the way in and on the way out.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from querycache.endpoints import NormalizedTag
from querycache.keys import NO_ARGS
from querycache.models.results import ErrorInfo, QuerySnapshot, QueryStatus

_logger = logging.getLogger(__name__)

TransitionListener = Callable[[str, QuerySnapshot], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GcTimer:
    """A scheduled cleanup for one key.

    Identity matters: a firing timer only collects the entry if the entry
    still references this exact instance, so a cancelled-then-rearmed key
    is never collected by the earlier timer.
    """

    __slots__ = ("handle",)

    def __init__(self) -> None:
        self.handle: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()


class CacheEntry(BaseModel):
    """Per-key query state. Immutable; replaced wholesale on every change."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    key: str
    endpoint_name: str
    args: Any = NO_ARGS
    status: QueryStatus = QueryStatus.IDLE
    data: Any = None
    error: ErrorInfo | None = None
    request_id: int = 0
    subscriber_count: int = Field(default=0, ge=0)
    gc_timer: GcTimer | None = None
    invalidated: bool = False
    provided_tags: frozenset[NormalizedTag] = frozenset()
    started_at: datetime | None = None
    fulfilled_at: datetime | None = None

    def snapshot(self) -> QuerySnapshot:
        return QuerySnapshot(
            key=self.key,
            endpoint_name=self.endpoint_name,
            status=self.status,
            data=copy.deepcopy(self.data),
            error=self.error,
            request_id=self.request_id,
            started_at=self.started_at,
            fulfilled_at=self.fulfilled_at,
        )


def _detached(entry: CacheEntry) -> CacheEntry:
    """Copy of *entry* whose payload and args share nothing with it.

    The GC timer is kept by identity.
    """
    return entry.model_copy(update={"data": copy.deepcopy(entry.data), "args": copy.deepcopy(entry.args)})


class CacheStore:
    """Key -> :class:`CacheEntry` mapping with transition notifications.

    Listeners registered with :meth:`add_listener` receive ``(key, snapshot)``
    after every upsert made with ``notify=True``. They run after the store
    lock is released, so a listener may safely call back into the store.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._listeners: list[TransitionListener] = []
        self._lock = threading.RLock()

    def now(self) -> datetime:
        return self._clock()

    def get(self, key: str) -> CacheEntry | None:
        """Return a detached copy of the entry for *key*, if any."""
        with self._lock:
            entry = self._entries.get(key)
            return _detached(entry) if entry is not None else None

    def snapshot(self, key: str) -> QuerySnapshot | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry.snapshot() if entry is not None else None

    def upsert(
        self,
        key: str,
        mutator: Callable[[CacheEntry | None], CacheEntry],
        *,
        notify: bool = False,
    ) -> CacheEntry:
        """Atomically replace the entry for *key* with ``mutator(current)``.

        *mutator* receives a detached copy and the store keeps its own copy
        of the result, so neither side can reach the stored payload later.
        Exceptions raised by *mutator* leave the entry untouched.
        """
        with self._lock:
            current = self._entries.get(key)
            updated = mutator(_detached(current) if current is not None else None)
            if updated.key != key:
                raise ValueError(f"mutator returned entry for {updated.key!r}, expected {key!r}")
            stored = _detached(updated)
            self._entries[key] = stored
            snapshot = stored.snapshot() if notify else None

        if snapshot is not None:
            self._emit(key, snapshot)
        return updated

    def notify(self, key: str) -> None:
        """Emit the current state of *key* to listeners."""
        snapshot = self.snapshot(key)
        if snapshot is not None:
            self._emit(key, snapshot)

    def remove(self, key: str) -> CacheEntry | None:
        with self._lock:
            removed = self._entries.pop(key, None)
        if removed is not None:
            _logger.debug("Removed cache entry %s", key)
        return removed

    def clear(self) -> list[CacheEntry]:
        with self._lock:
            removed = list(self._entries.values())
            self._entries.clear()
        return removed

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return [_detached(entry) for entry in self._entries.values()]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def add_listener(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a transition listener; returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, key: str, snapshot: QuerySnapshot) -> None:
        for listener in list(self._listeners):
            listener(key, snapshot)
