from __future__ import annotations

import asyncio
import logging

import pytest
from fakes import ControlledTransport, StaticTransport, settle

from querycache.coordinator import RequestCoordinator
from querycache.endpoints import EndpointRegistry
from querycache.exceptions import QueryCacheError
from querycache.keys import NO_ARGS, build_key
from querycache.models.results import QuerySnapshot, QueryStatus
from querycache.store import CacheStore
from querycache.subscriptions import SubscriptionManager

GC_DELAY = 0.05


def _manager(
    registry: EndpointRegistry,
    transport: StaticTransport | ControlledTransport,
    *,
    gc_delay: float = GC_DELAY,
) -> tuple[CacheStore, RequestCoordinator, SubscriptionManager]:
    store = CacheStore()
    coordinator = RequestCoordinator(store, transport)
    return store, coordinator, SubscriptionManager(store, coordinator, registry, gc_delay=gc_delay)


@pytest.mark.asyncio
async def test_first_subscribe_fetches_and_notifies(
    registry: EndpointRegistry, static_transport: StaticTransport
) -> None:
    store, coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")
    seen: list[QuerySnapshot] = []

    handle = manager.subscribe(key, registry["getAllProducts"], NO_ARGS, seen.append)
    task = coordinator.in_flight_task(key)
    assert task is not None
    await task

    assert [s.status for s in seen] == [QueryStatus.IDLE, QueryStatus.LOADING, QueryStatus.SUCCESS]
    assert handle.active
    entry = store.get(key)
    assert entry is not None
    assert entry.subscriber_count == 1
    assert entry.gc_timer is None


@pytest.mark.asyncio
async def test_late_subscriber_gets_current_snapshot_without_fetch(
    registry: EndpointRegistry, static_transport: StaticTransport
) -> None:
    _store, coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")
    manager.subscribe(key, registry["getAllProducts"], NO_ARGS, lambda _s: None)
    task = coordinator.in_flight_task(key)
    assert task is not None
    await task

    late: list[QuerySnapshot] = []
    manager.subscribe(key, registry["getAllProducts"], NO_ARGS, late.append)
    await settle()

    assert [s.status for s in late] == [QueryStatus.SUCCESS]
    assert static_transport.count("products") == 1


@pytest.mark.asyncio
async def test_subscriber_count_tracks_live_handles(
    registry: EndpointRegistry, static_transport: StaticTransport
) -> None:
    store, _coordinator, manager = _manager(registry, static_transport)
    key = build_key("getProduct", "iphone")
    endpoint = registry["getProduct"]

    handles = [manager.subscribe(key, endpoint, "iphone", lambda _s: None) for _ in range(3)]
    await settle()
    entry = store.get(key)
    assert entry is not None
    assert entry.subscriber_count == 3 == manager.subscriber_count(key)

    manager.unsubscribe(handles[0])
    manager.unsubscribe(handles[0])
    handles[1].unsubscribe()

    entry = store.get(key)
    assert entry is not None
    assert entry.subscriber_count == 1 == manager.subscriber_count(key)
    assert entry.gc_timer is None
    assert not handles[0].active
    assert handles[2].active


@pytest.mark.asyncio
async def test_entry_collected_after_gc_delay(registry: EndpointRegistry, static_transport: StaticTransport) -> None:
    store, _coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")

    handle = manager.subscribe(key, registry["getAllProducts"], NO_ARGS, lambda _s: None)
    await settle()
    manager.unsubscribe(handle)

    entry = store.get(key)
    assert entry is not None
    assert entry.subscriber_count == 0
    assert entry.gc_timer is not None

    await asyncio.sleep(GC_DELAY / 2)
    assert key in store

    await asyncio.sleep(GC_DELAY * 2)
    assert key not in store


@pytest.mark.asyncio
async def test_resubscribe_before_gc_reuses_cached_data(
    registry: EndpointRegistry, static_transport: StaticTransport
) -> None:
    store, _coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")
    endpoint = registry["getAllProducts"]

    handle = manager.subscribe(key, endpoint, NO_ARGS, lambda _s: None)
    await settle()
    manager.unsubscribe(handle)
    await asyncio.sleep(GC_DELAY / 2)

    seen: list[QuerySnapshot] = []
    manager.subscribe(key, endpoint, NO_ARGS, seen.append)
    await asyncio.sleep(GC_DELAY * 2)

    assert key in store
    entry = store.get(key)
    assert entry is not None
    assert entry.gc_timer is None
    assert [s.status for s in seen] == [QueryStatus.SUCCESS]
    assert static_transport.count("products") == 1


@pytest.mark.asyncio
async def test_rearmed_timer_does_not_fire_early(registry: EndpointRegistry, static_transport: StaticTransport) -> None:
    store, _coordinator, manager = _manager(registry, static_transport, gc_delay=0.08)
    key = build_key("getAllProducts")
    endpoint = registry["getAllProducts"]

    handle = manager.subscribe(key, endpoint, NO_ARGS, lambda _s: None)
    await settle()
    manager.unsubscribe(handle)
    await asyncio.sleep(0.05)
    manager.unsubscribe(manager.subscribe(key, endpoint, NO_ARGS, lambda _s: None))

    # The first timer's deadline has passed; only the second one counts.
    await asyncio.sleep(0.05)
    assert key in store

    await asyncio.sleep(0.1)
    assert key not in store


@pytest.mark.asyncio
async def test_endpoint_override_of_gc_delay(registry: EndpointRegistry, static_transport: StaticTransport) -> None:
    store, _coordinator, manager = _manager(registry, static_transport, gc_delay=60.0)
    key = build_key("productTitles")

    handle = manager.subscribe(key, registry["productTitles"], NO_ARGS, lambda _s: None)
    await settle()
    manager.unsubscribe(handle)
    await asyncio.sleep(0.05)

    assert key not in store


@pytest.mark.asyncio
async def test_gc_waits_for_pending_request(
    registry: EndpointRegistry, controlled_transport: ControlledTransport
) -> None:
    store, coordinator, manager = _manager(registry, controlled_transport, gc_delay=0.01)
    key = build_key("getAllProducts")

    handle = manager.subscribe(key, registry["getAllProducts"], NO_ARGS, lambda _s: None)
    manager.unsubscribe(handle)
    await asyncio.sleep(0.05)

    assert key in store
    assert coordinator.is_in_flight(key)

    controlled_transport.resolve(0, {"products": []})
    await settle()
    entry = store.get(key)
    assert entry is not None
    assert entry.status == QueryStatus.SUCCESS

    await asyncio.sleep(0.05)
    assert key not in store


@pytest.mark.asyncio
async def test_unsubscribed_read_is_put_on_gc_clock(
    registry: EndpointRegistry, static_transport: StaticTransport
) -> None:
    store, _coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")

    task = manager.read(key, registry["getAllProducts"], NO_ARGS)
    assert task is not None
    await task

    entry = store.get(key)
    assert entry is not None
    assert entry.subscriber_count == 0
    assert entry.gc_timer is not None

    await asyncio.sleep(GC_DELAY * 2)
    assert key not in store


@pytest.mark.asyncio
async def test_failing_observer_does_not_block_others(
    registry: EndpointRegistry, static_transport: StaticTransport, caplog: pytest.LogCaptureFixture
) -> None:
    _store, coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")
    endpoint = registry["getAllProducts"]
    seen: list[QueryStatus] = []

    def _broken(_snapshot: QuerySnapshot) -> None:
        raise RuntimeError("render failed")

    with caplog.at_level(logging.ERROR, logger="querycache.subscriptions"):
        manager.subscribe(key, endpoint, NO_ARGS, _broken)
        manager.subscribe(key, endpoint, NO_ARGS, lambda s: seen.append(s.status))
        task = coordinator.in_flight_task(key)
        assert task is not None
        await task

    assert seen == [QueryStatus.LOADING, QueryStatus.SUCCESS]
    assert "Observer callback" in caplog.text


@pytest.mark.asyncio
async def test_handle_as_context_manager(registry: EndpointRegistry, static_transport: StaticTransport) -> None:
    store, _coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")

    with manager.subscribe(key, registry["getAllProducts"], NO_ARGS, lambda _s: None) as handle:
        await settle()
        assert handle.active

    assert not handle.active
    entry = store.get(key)
    assert entry is not None
    assert entry.subscriber_count == 0


@pytest.mark.asyncio
async def test_subscribe_without_transport_registers_nothing(registry: EndpointRegistry) -> None:
    store = CacheStore()
    coordinator = RequestCoordinator(store)
    manager = SubscriptionManager(store, coordinator, registry, gc_delay=GC_DELAY)
    key = build_key("getAllProducts")

    with pytest.raises(QueryCacheError):
        manager.subscribe(key, registry["getAllProducts"], NO_ARGS, lambda _s: None)

    assert key not in store
    assert manager.subscriber_count(key) == 0


@pytest.mark.asyncio
async def test_failed_fetch_start_rolls_back_subscription(
    registry: EndpointRegistry, static_transport: StaticTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    store, coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")

    def _fail(*_args: object, **_kwargs: object) -> None:
        raise QueryCacheError("cannot start request")

    monkeypatch.setattr(coordinator, "ensure_fetched", _fail)

    with pytest.raises(QueryCacheError):
        manager.subscribe(key, registry["getAllProducts"], NO_ARGS, lambda _s: None)

    entry = store.get(key)
    assert entry is not None
    assert entry.subscriber_count == 0 == manager.subscriber_count(key)
    assert entry.gc_timer is not None

    await asyncio.sleep(GC_DELAY * 2)
    assert key not in store


@pytest.mark.asyncio
async def test_observers_get_independent_payloads(
    registry: EndpointRegistry, static_transport: StaticTransport
) -> None:
    store, coordinator, manager = _manager(registry, static_transport)
    key = build_key("getAllProducts")
    endpoint = registry["getAllProducts"]
    seen: list[QuerySnapshot] = []

    def _greedy(snapshot: QuerySnapshot) -> None:
        if snapshot.data is not None:
            snapshot.data["products"].clear()

    manager.subscribe(key, endpoint, NO_ARGS, _greedy)
    manager.subscribe(key, endpoint, NO_ARGS, seen.append)
    task = coordinator.in_flight_task(key)
    assert task is not None
    await task

    assert seen[-1].status == QueryStatus.SUCCESS
    assert seen[-1].data["products"] == [{"id": 1, "title": "iPhone 9", "price": 549}]
    snapshot = store.snapshot(key)
    assert snapshot is not None
    assert snapshot.data["products"] != []
