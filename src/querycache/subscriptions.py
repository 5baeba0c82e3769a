"""Subscription bookkeeping and garbage collection of unused entries."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Self

from querycache.coordinator import RequestCoordinator
from querycache.endpoints import EndpointDefinition, EndpointRegistry
from querycache.keys import normalize_args
from querycache.models.results import QuerySnapshot, QueryStatus
from querycache.store import CacheEntry, CacheStore, GcTimer

_logger = logging.getLogger(__name__)

OnChange = Callable[[QuerySnapshot], None]


@dataclass(eq=False, slots=True)
class ObserverHandle:
    """One live subscription to a cache key.

    Returned by :meth:`SubscriptionManager.subscribe`; pass it back to
    ``unsubscribe`` (or call :meth:`unsubscribe` on it) when the consumer
    goes away.
    """

    key: str
    endpoint_name: str
    handle_id: int
    _manager: SubscriptionManager = field(repr=False)

    @property
    def active(self) -> bool:
        return self._manager.is_active(self)

    def unsubscribe(self) -> None:
        self._manager.unsubscribe(self)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class SubscriptionManager:
    """Track observers per key, trigger fetches, and reclaim unused entries.

    ``subscriber_count`` on each entry always equals the number of active
    handles for that key. When it drops to zero a GC timer is armed; the
    entry is removed when the timer fires unless a subscriber arrived in
    the meantime.
    """

    def __init__(
        self,
        store: CacheStore,
        coordinator: RequestCoordinator,
        registry: EndpointRegistry,
        *,
        gc_delay: float,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._registry = registry
        self._gc_delay = gc_delay
        self._observers: dict[str, dict[int, OnChange]] = {}
        self._handle_ids = itertools.count(1)
        self._detach_listener = store.add_listener(self._on_transition)

    # ------------------------------------------------------------------
    # Subscribe / unsubscribe
    # ------------------------------------------------------------------

    def subscribe(
        self,
        key: str,
        endpoint: EndpointDefinition,
        args: Any,
        on_change: OnChange,
    ) -> ObserverHandle:
        """Register *on_change* for *key* and make sure the key is fetched.

        *on_change* is called once right away with the current snapshot,
        then on every transition of the entry.
        """
        self._coordinator.owner_loop()
        self._coordinator.require_transport()
        args = normalize_args(args)

        def _attach(current: CacheEntry | None) -> CacheEntry:
            base = current or CacheEntry(key=key, endpoint_name=endpoint.name, args=args)
            if base.gc_timer is not None:
                base.gc_timer.cancel()
            return base.model_copy(update={"subscriber_count": base.subscriber_count + 1, "gc_timer": None})

        entry = self._store.upsert(key, _attach)
        handle = ObserverHandle(
            key=key,
            endpoint_name=endpoint.name,
            handle_id=next(self._handle_ids),
            _manager=self,
        )
        self._observers.setdefault(key, {})[handle.handle_id] = on_change
        _logger.debug("Subscribed %s (handle %d, %d subscribers)", key, handle.handle_id, entry.subscriber_count)

        try:
            self._deliver(key, on_change, entry.snapshot())
            if entry.subscriber_count == 1 or entry.invalidated or entry.status == QueryStatus.IDLE:
                self._coordinator.ensure_fetched(key, endpoint, args)
        except BaseException:
            self.unsubscribe(handle)
            raise
        return handle

    def unsubscribe(self, handle: ObserverHandle) -> None:
        """Detach *handle*. Unsubscribing twice is a no-op."""
        observers = self._observers.get(handle.key)
        if observers is None or observers.pop(handle.handle_id, None) is None:
            return
        if not observers:
            del self._observers[handle.key]

        if handle.key not in self._store:
            return

        def _detach(current: CacheEntry | None) -> CacheEntry:
            assert current is not None  # noqa: S101
            return current.model_copy(update={"subscriber_count": max(current.subscriber_count - 1, 0)})

        entry = self._store.upsert(handle.key, _detach)
        _logger.debug(
            "Unsubscribed %s (handle %d, %d subscribers)", handle.key, handle.handle_id, entry.subscriber_count
        )
        if entry.subscriber_count == 0:
            self.schedule_gc(handle.key)

    def is_active(self, handle: ObserverHandle) -> bool:
        return handle.handle_id in self._observers.get(handle.key, {})

    def subscriber_count(self, key: str) -> int:
        return len(self._observers.get(key, {}))

    # ------------------------------------------------------------------
    # Unsubscribed reads
    # ------------------------------------------------------------------

    def read(self, key: str, endpoint: EndpointDefinition, args: Any) -> asyncio.Task[QuerySnapshot] | None:
        """Fetch *key* if needed without holding a subscription.

        An entry created this way has no subscribers, so it is put on the
        GC clock straight away.
        """
        task = self._coordinator.ensure_fetched(key, endpoint, args)
        entry = self._store.get(key)
        if entry is not None and entry.subscriber_count == 0 and entry.gc_timer is None:
            self.schedule_gc(key)
        return task

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def _delay_for(self, entry: CacheEntry) -> float:
        endpoint = self._registry.get(entry.endpoint_name)
        if endpoint is not None and endpoint.keep_unused_data_for is not None:
            return endpoint.keep_unused_data_for
        return self._gc_delay

    def schedule_gc(self, key: str) -> None:
        """(Re-)arm the cleanup timer for an unobserved entry."""
        loop = self._coordinator.owner_loop()
        timer = GcTimer()

        def _arm(current: CacheEntry | None) -> CacheEntry:
            assert current is not None  # noqa: S101
            if current.gc_timer is not None:
                current.gc_timer.cancel()
            timer.handle = loop.call_later(self._delay_for(current), self._collect, key, timer)
            return current.model_copy(update={"gc_timer": timer})

        if key not in self._store:
            return
        self._store.upsert(key, _arm)
        _logger.debug("Scheduled GC for %s", key)

    def _collect(self, key: str, timer: GcTimer) -> None:
        entry = self._store.get(key)
        if entry is None or entry.gc_timer is not timer or entry.subscriber_count != 0:
            return
        if self._coordinator.is_in_flight(key):
            # Let the pending request land before the entry goes away.
            self.schedule_gc(key)
            return
        self._store.remove(key)
        self._observers.pop(key, None)
        _logger.debug("Collected unused entry %s", key)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _on_transition(self, key: str, snapshot: QuerySnapshot) -> None:
        for on_change in list(self._observers.get(key, {}).values()):
            # Observers never share a payload.
            self._deliver(key, on_change, snapshot.model_copy(deep=True))

    def _deliver(self, key: str, on_change: OnChange, snapshot: QuerySnapshot) -> None:
        try:
            on_change(snapshot)
        except Exception:
            _logger.exception("Observer callback for %s raised", key)

    def clear(self) -> None:
        """Drop every observer and cancel every pending GC timer."""
        for entry in self._store.entries():
            if entry.gc_timer is not None:
                entry.gc_timer.cancel()
        self._observers.clear()

    def close(self) -> None:
        self.clear()
        self._detach_listener()
