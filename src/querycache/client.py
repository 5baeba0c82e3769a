"""High-level async query client."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import aiohttp

from querycache.config import QueryCacheConfig
from querycache.coordinator import RequestCoordinator
from querycache.endpoints import EndpointKind, EndpointRegistry, Tag, normalize_tag, tag_matches
from querycache.exceptions import QueryCacheError, UnknownQueryError
from querycache.keys import NO_ARGS, build_key
from querycache.models.requests import RequestDescriptor
from querycache.models.results import MutationResult, QuerySnapshot
from querycache.store import CacheEntry, CacheStore
from querycache.subscriptions import ObserverHandle, OnChange, SubscriptionManager
from querycache.transport import HttpTransport, Transport, as_transport

_logger = logging.getLogger(__name__)


class QueryClient:
    """Async client that caches declared endpoints.

    Usage::

        async with QueryClient(registry) as client:
            handle = client.subscribe("getAllProducts", None, print)
            ...
            client.unsubscribe(handle)

    Each client owns exactly one :class:`CacheStore`; independent clients
    never share state. When no *transport* is given, entering the context
    manager creates an :class:`HttpTransport` on an aiohttp session.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        transport: Transport | Callable[[RequestDescriptor], Awaitable[Any]] | None = None,
        *,
        config: QueryCacheConfig | None = None,
        session: aiohttp.ClientSession | None = None,
        store: CacheStore | None = None,
    ) -> None:
        self._config = config or QueryCacheConfig()
        self._registry = registry
        self._external_session = session is not None
        self._http_session = session
        self._owns_transport = transport is None
        self.store = store or CacheStore()
        self._coordinator = RequestCoordinator(
            self.store,
            as_transport(transport) if transport is not None else None,
        )
        self._subscriptions = SubscriptionManager(
            self.store,
            self._coordinator,
            registry,
            gc_delay=self._config.gc_delay,
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> QueryClient:
        self._coordinator.owner_loop()
        if self._owns_transport:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._coordinator.transport = HttpTransport(
                self._http_session,
                base_url=self._config.base_url,
                timeout=self._config.request_timeout,
                default_headers=self._config.default_headers,
            )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Drop all state and close the HTTP session if this client opened it."""
        self.reset()
        if self._owns_transport:
            self._coordinator.transport = None
            if not self._external_session and self._http_session is not None:
                await self._http_session.close()
                self._http_session = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> QueryCacheConfig:
        return self._config

    @property
    def registry(self) -> EndpointRegistry:
        return self._registry

    def endpoint(self, name: str) -> EndpointHandle:
        """Return a handle bound to one endpoint (raises for unknown names)."""
        self._registry[name]  # raises UnknownEndpointError
        return EndpointHandle(self, name)

    def key_for(self, endpoint_name: str, args: Any = NO_ARGS) -> str:
        self._registry[endpoint_name]  # raises UnknownEndpointError
        return build_key(endpoint_name, args)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def subscribe(self, endpoint_name: str, args: Any, on_change: OnChange) -> ObserverHandle:
        """Observe ``endpoint_name(args)``; fetches on first subscribe."""
        endpoint = self._registry.require(endpoint_name, EndpointKind.QUERY)
        key = build_key(endpoint_name, args)
        return self._subscriptions.subscribe(key, endpoint, args, on_change)

    def unsubscribe(self, handle: ObserverHandle) -> None:
        self._subscriptions.unsubscribe(handle)

    async def query(self, endpoint_name: str, args: Any = NO_ARGS) -> QuerySnapshot:
        """Read ``endpoint_name(args)`` once, fetching only if needed.

        Serves a cached success without a transport call and joins a request
        already in flight. The returned snapshot reflects the settled state.
        """
        endpoint = self._registry.require(endpoint_name, EndpointKind.QUERY)
        key = build_key(endpoint_name, args)
        task = self._subscriptions.read(key, endpoint, args)
        if task is None:
            return self._snapshot_or_idle(key, endpoint_name)
        return await asyncio.shield(task)

    def get_snapshot(self, endpoint_name: str, args: Any = NO_ARGS) -> QuerySnapshot:
        """Current state of ``endpoint_name(args)``; never fetches."""
        self._registry.require(endpoint_name, EndpointKind.QUERY)
        return self._snapshot_or_idle(build_key(endpoint_name, args), endpoint_name)

    def _snapshot_or_idle(self, key: str, endpoint_name: str) -> QuerySnapshot:
        snapshot = self.store.snapshot(key)
        if snapshot is None:
            return QuerySnapshot(key=key, endpoint_name=endpoint_name)
        return snapshot

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    def refetch(self, key: str) -> asyncio.Task[QuerySnapshot]:
        """Issue a new request for an existing entry, even if it succeeded."""
        entry = self.store.get(key)
        if entry is None:
            raise UnknownQueryError(key)
        endpoint = self._registry.require(entry.endpoint_name, EndpointKind.QUERY)
        task = self._coordinator.ensure_fetched(key, endpoint, entry.args, force=True)
        assert task is not None  # noqa: S101
        return task

    def invalidate(self, endpoint_name: str, args: Any = NO_ARGS) -> asyncio.Task[QuerySnapshot] | None:
        """Mark ``endpoint_name(args)`` stale.

        The next subscribe or read refetches it. If it currently has
        subscribers and ``refetch_on_invalidate`` is enabled, it is refetched
        right away and the refetch task is returned. When a request for the
        key is already in flight, nothing new is sent until it settles; the
        refetch follows then and ``None`` is returned.
        """
        self._registry.require(endpoint_name, EndpointKind.QUERY)
        return self._invalidate_key(build_key(endpoint_name, args))

    def _invalidate_key(self, key: str) -> asyncio.Task[QuerySnapshot] | None:
        if key not in self.store:
            return None

        def _mark(current: CacheEntry | None) -> CacheEntry:
            assert current is not None  # noqa: S101
            return current.model_copy(update={"invalidated": True})

        entry = self.store.upsert(key, _mark)
        _logger.debug("Invalidated %s", key)
        if entry.subscriber_count == 0 or not self._config.refetch_on_invalidate:
            return None
        pending = self._coordinator.in_flight_task(key)
        if pending is not None:
            _logger.debug("Refetch of %s deferred until request in flight settles", key)
            pending.add_done_callback(functools.partial(self._refetch_if_stale, key))
            return None
        return self.refetch(key)

    def _refetch_if_stale(self, key: str, task: asyncio.Task[QuerySnapshot]) -> None:
        if task.cancelled() or self._coordinator.is_in_flight(key):
            return
        entry = self.store.get(key)
        if entry is None or not entry.invalidated or entry.subscriber_count == 0:
            return
        try:
            self.refetch(key)
        except QueryCacheError:
            _logger.warning("Deferred refetch of %s could not start", key, exc_info=True)

    def invalidate_tags(self, tags: Iterable[Tag]) -> list[str]:
        """Invalidate every entry providing one of *tags*; returns their keys."""
        wanted = [normalize_tag(tag) for tag in tags]
        matched: list[str] = []
        for entry in self.store.entries():
            if any(tag_matches(w, provided) for w in wanted for provided in entry.provided_tags):
                matched.append(entry.key)
        for key in matched:
            self._invalidate_key(key)
        return matched

    async def mutate(self, endpoint_name: str, args: Any = NO_ARGS) -> MutationResult:
        """Run a mutation endpoint; on success invalidate the tags it names."""
        endpoint = self._registry.require(endpoint_name, EndpointKind.MUTATION)
        result = await self._coordinator.run_mutation(endpoint, args)
        if result.is_success:
            try:
                tags = endpoint.invalidated_tags(result.data, None, args)
            except QueryCacheError:
                raise
            except Exception:
                _logger.warning("invalidates_tags for %s raised", endpoint_name, exc_info=True)
                tags = frozenset()
            if tags:
                self.invalidate_tags(tags)
        return result

    def reset(self) -> None:
        """Drop every entry, observer, timer, and in-flight request."""
        self._subscriptions.clear()
        cancelled = self._coordinator.cancel_all()
        removed = self.store.clear()
        _logger.debug("Reset cache: %d entries removed, %d requests cancelled", len(removed), cancelled)


class EndpointHandle:
    """A :class:`QueryClient` view bound to one endpoint name."""

    def __init__(self, client: QueryClient, name: str) -> None:
        self._client = client
        self.name = name

    def __repr__(self) -> str:
        return f"EndpointHandle({self.name!r})"

    def key(self, args: Any = NO_ARGS) -> str:
        return build_key(self.name, args)

    def subscribe(self, args: Any, on_change: OnChange) -> ObserverHandle:
        return self._client.subscribe(self.name, args, on_change)

    async def query(self, args: Any = NO_ARGS) -> QuerySnapshot:
        return await self._client.query(self.name, args)

    def select(self, args: Any = NO_ARGS) -> QuerySnapshot:
        return self._client.get_snapshot(self.name, args)

    def refetch(self, args: Any = NO_ARGS) -> asyncio.Task[QuerySnapshot]:
        return self._client.refetch(self.key(args))

    def invalidate(self, args: Any = NO_ARGS) -> asyncio.Task[QuerySnapshot] | None:
        return self._client.invalidate(self.name, args)

    async def mutate(self, args: Any = NO_ARGS) -> MutationResult:
        return await self._client.mutate(self.name, args)
