"""Request coordination: cache hits, in-flight deduplication, stale guards.

Every fetch is identified by a request id drawn from one monotonically
increasing counter. The id is stamped on the cache entry when the fetch
starts, and a result is only applied if the entry still carries that id.
A result for a superseded request is discarded.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from dataclasses import dataclass
from typing import Any

from querycache._redact import describe_request
from querycache.endpoints import EndpointDefinition
from querycache.exceptions import DecodeError, QueryCacheError, StaleResponseDiscarded
from querycache.keys import normalize_args
from querycache.models.results import ErrorInfo, MutationResult, QuerySnapshot, QueryStatus
from querycache.store import CacheEntry, CacheStore
from querycache.transport import Transport

_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _InFlight:
    """A transport call issued for a key whose result has not arrived."""

    request_id: int
    task: asyncio.Task[QuerySnapshot]
    joiners: int = 0


class RequestCoordinator:
    """Decide, per key, whether to serve cache, join a fetch, or issue one.

    The coordinator is bound to the first event loop that uses it. All
    decisions happen synchronously on that loop, so the check for an
    in-flight request and the registration of a new one cannot interleave
    with another caller.
    """

    def __init__(self, store: CacheStore, transport: Transport | None = None) -> None:
        self._store = store
        self.transport = transport
        self._in_flight: dict[str, _InFlight] = {}
        self._request_ids = itertools.count(1)
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Loop ownership
    # ------------------------------------------------------------------

    def owner_loop(self) -> asyncio.AbstractEventLoop:
        """Return the owning loop, binding to the running loop on first use."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise QueryCacheError("querycache operations must run inside the owning event loop") from None
        if self._loop is None or self._loop.is_closed():
            self._loop = loop
        elif loop is not self._loop:
            raise QueryCacheError("querycache client is bound to a different event loop")
        return loop

    def require_transport(self) -> Transport:
        if self.transport is None:
            raise QueryCacheError("No transport configured. Use 'async with QueryClient(...) as client:'")
        return self.transport

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_in_flight(self, key: str) -> bool:
        pending = self._in_flight.get(key)
        return pending is not None and not pending.task.done()

    def in_flight_task(self, key: str) -> asyncio.Task[QuerySnapshot] | None:
        pending = self._in_flight.get(key)
        if pending is None or pending.task.done():
            return None
        return pending.task

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def ensure_fetched(
        self,
        key: str,
        endpoint: EndpointDefinition,
        args: Any,
        *,
        force: bool = False,
    ) -> asyncio.Task[QuerySnapshot] | None:
        """Make sure *key* has, or is getting, data.

        Returns ``None`` on a cache hit, otherwise the task that resolves to
        the snapshot once the (new or joined) request settles. With
        ``force=True`` a new request is always issued and supersedes any
        request already in flight.
        """
        loop = self.owner_loop()
        entry = self._store.get(key)

        if not force:
            if entry is not None and entry.status == QueryStatus.SUCCESS and not entry.invalidated:
                _logger.debug("Cache hit for %s", key)
                return None

            pending = self._in_flight.get(key)
            if (
                pending is not None
                and not pending.task.done()
                and entry is not None
                and entry.request_id == pending.request_id
            ):
                pending.joiners += 1
                _logger.debug("Joined request %d for %s (%d joiners)", pending.request_id, key, pending.joiners)
                return pending.task

        return self._issue(loop, key, endpoint, args)

    def _issue(
        self,
        loop: asyncio.AbstractEventLoop,
        key: str,
        endpoint: EndpointDefinition,
        args: Any,
    ) -> asyncio.Task[QuerySnapshot]:
        self.require_transport()

        request_id = next(self._request_ids)
        started_at = self._store.now()
        args = normalize_args(args)

        def _start(current: CacheEntry | None) -> CacheEntry:
            base = current or CacheEntry(key=key, endpoint_name=endpoint.name, args=args)
            return base.model_copy(
                update={
                    "status": QueryStatus.LOADING,
                    "error": None,
                    "request_id": request_id,
                    "invalidated": False,
                    "started_at": started_at,
                }
            )

        self._store.upsert(key, _start)

        task = loop.create_task(
            self._run(key, endpoint, args, request_id),
            name=f"querycache:{key}#{request_id}",
        )
        self._in_flight[key] = _InFlight(request_id=request_id, task=task)
        task.add_done_callback(functools.partial(self._release, key, request_id))
        _logger.debug("Issued request %d for %s", request_id, key)
        # Observers may re-enter; the request must already be registered.
        self._store.notify(key)
        return task

    def _release(self, key: str, request_id: int, task: asyncio.Task[QuerySnapshot]) -> None:
        pending = self._in_flight.get(key)
        if pending is not None and pending.request_id == request_id:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            _logger.error("Request %d for %s crashed", request_id, key, exc_info=task.exception())

    async def _call_transport(self, endpoint: EndpointDefinition, args: Any) -> Any:
        transport = self.transport
        if transport is None:
            raise QueryCacheError("Transport was removed while a request was pending")
        request = endpoint.request_for(args)
        _logger.debug("%s: %s", endpoint.name, describe_request(request))
        payload = await transport.execute(request)
        try:
            return endpoint.transform(payload, args)
        except QueryCacheError:
            raise
        except Exception as exc:
            raise DecodeError(
                f"transform_response for {endpoint.name} failed: {exc}",
                endpoint=endpoint.name,
                data=payload,
            ) from exc

    async def _run(
        self,
        key: str,
        endpoint: EndpointDefinition,
        args: Any,
        request_id: int,
    ) -> QuerySnapshot:
        try:
            data = await self._call_transport(endpoint, args)
            tags = endpoint.provided_tags(data, None, args)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = ErrorInfo.from_exception(exc)
            if isinstance(exc, QueryCacheError):
                _logger.warning("Request %d for %s failed: %s", request_id, key, exc)
            else:
                _logger.warning("Request %d for %s failed", request_id, key, exc_info=True)
            return await self._settle(key, endpoint, args, request_id, error=error)
        return await self._settle(key, endpoint, args, request_id, data=data, tags=tags)

    async def _settle(
        self,
        key: str,
        endpoint: EndpointDefinition,
        args: Any,
        request_id: int,
        *,
        data: Any = None,
        error: ErrorInfo | None = None,
        tags: frozenset[Any] | None = None,
    ) -> QuerySnapshot:
        if error is not None:
            try:
                tags = endpoint.provided_tags(None, error, args)
            except Exception:
                _logger.warning("provides_tags for %s raised on error result", endpoint.name, exc_info=True)
                tags = frozenset()
        fulfilled_at = self._store.now()

        def _apply(current: CacheEntry | None) -> CacheEntry:
            if current is None or current.request_id != request_id:
                raise StaleResponseDiscarded(key, request_id, current.request_id if current else None)
            if error is None:
                update = {
                    "status": QueryStatus.SUCCESS,
                    "data": data,
                    "error": None,
                    "provided_tags": tags or frozenset(),
                    "fulfilled_at": fulfilled_at,
                }
            else:
                # Last good data is kept for stale-while-error display.
                update = {
                    "status": QueryStatus.ERROR,
                    "error": error,
                    "provided_tags": tags or frozenset(),
                    "fulfilled_at": fulfilled_at,
                }
            return current.model_copy(update=update)

        try:
            entry = self._store.upsert(key, _apply, notify=True)
        except StaleResponseDiscarded as exc:
            _logger.debug("%s", exc)
            return await self._latest(key, endpoint, request_id)
        return entry.snapshot()

    async def _latest(self, key: str, endpoint: EndpointDefinition, request_id: int) -> QuerySnapshot:
        """Resolve a superseded request to the outcome of its successor."""
        pending = self._in_flight.get(key)
        if pending is not None and pending.request_id > request_id and not pending.task.done():
            return await asyncio.shield(pending.task)
        snapshot = self._store.snapshot(key)
        if snapshot is not None:
            return snapshot
        return QuerySnapshot(key=key, endpoint_name=endpoint.name)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def run_mutation(self, endpoint: EndpointDefinition, args: Any) -> MutationResult:
        """Execute a mutation. Mutations are neither cached nor deduplicated."""
        self.owner_loop()
        args = normalize_args(args)
        try:
            data = await self._call_transport(endpoint, args)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = ErrorInfo.from_exception(exc)
            _logger.warning("Mutation %s failed: %s", endpoint.name, error.message)
            return MutationResult(endpoint_name=endpoint.name, status=QueryStatus.ERROR, error=error)
        return MutationResult(endpoint_name=endpoint.name, status=QueryStatus.SUCCESS, data=data)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, key: str) -> bool:
        """Cancel the in-flight request for *key*, if any."""
        pending = self._in_flight.pop(key, None)
        if pending is None or pending.task.done():
            return False
        pending.task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for key in list(self._in_flight):
            if self.cancel(key):
                cancelled += 1
        return cancelled
