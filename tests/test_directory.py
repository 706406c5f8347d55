"""
Cluster directory tests.

Covers the location and placement contract:
- cache hit routes without touching any node
- miss, stale and corrupt entries fall through to scatter search
- TTL expiry re-triggers scatter search
- remove/remove_data invalidate before the node call
- add places on the least-loaded node, or resumes an existing owner
"""

from __future__ import annotations

import json
from typing import List

import pytest

from ucluster.cache import LocationCache
from ucluster.directory import ClusterDirectory
from ucluster.exceptions import (
    CacheUnavailableError,
    DescriptorInvalidError,
    NoNodesAvailableError,
    RemoteOperationError,
)
from ucluster.metrics import ClusterMetrics
from tests.nodes.mock_node import make_node, unreachable
from tests.nodes.mock_store import MockStore

pytestmark = pytest.mark.asyncio

X = "aaf4c61ddcc5e8a2dabede0f3b482cd9aea9434d"
Y = "9d5ed678fe57bcca610140957afab571e9d5a1f0"


# =============================================================================
# TEST HELPERS
# =============================================================================


def make_directory(*nodes, **kwargs):
    store = MockStore()
    metrics = ClusterMetrics()
    cache = LocationCache(store, metrics=metrics)
    directory = ClusterDirectory(tuple(nodes), cache, metrics=metrics, **kwargs)
    return directory, store


def reset_calls(directory: ClusterDirectory) -> None:
    for node in directory.fleet:
        node.client.calls.clear()


def node_calls(directory: ClusterDirectory) -> List[str]:
    return [op for node in directory.fleet for op in node.client.operations()]


def key(info_hash: str) -> str:
    return f"utorrent:{info_hash}"


# =============================================================================
# LOCATE
# =============================================================================


async def test_unknown_hash_has_no_owner_and_no_cache_entry():
    directory, store = make_directory(make_node("10.0.0.1"), make_node("10.0.0.2"))

    assert await directory.locate_owner(X) is None
    await directory.cache.flush()

    assert store.keys() == []


async def test_second_locate_is_a_cache_hit():
    a = make_node("10.0.0.1")
    b = make_node("10.0.0.2", tasks=[X])
    directory, _ = make_directory(a, b)

    assert await directory.locate_owner(X) is b
    await directory.cache.flush()
    reset_calls(directory)

    assert await directory.locate_owner(X) is b
    assert node_calls(directory) == []
    assert directory.metrics.cache_hits.get() == 1


async def test_expired_entry_triggers_new_scatter():
    b = make_node("10.0.0.2", tasks=[X])
    directory, store = make_directory(make_node("10.0.0.1"), b)

    await directory.locate_owner(X)
    await directory.cache.flush()
    store.advance(301)
    reset_calls(directory)

    assert await directory.locate_owner(X) is b
    assert "has_task" in node_calls(directory)


async def test_stale_identifier_falls_through_to_scatter():
    b = make_node("10.0.0.2", tasks=[Y])
    directory, store = make_directory(make_node("10.0.0.1"), b)
    store.put_raw(key(Y), json.dumps({"host": "10.9.9.9"}).encode())

    assert await directory.locate_owner(Y) is b
    await directory.cache.flush()

    assert directory.metrics.cache_stale.get() == 1
    assert json.loads(store._live(key(Y))) == {"host": "10.0.0.2"}


async def test_corrupt_entry_falls_through_to_scatter():
    b = make_node("10.0.0.2", tasks=[Y])
    directory, store = make_directory(make_node("10.0.0.1"), b)
    store.put_raw(key(Y), b"{broken")

    assert await directory.locate_owner(Y) is b
    assert directory.metrics.cache_corrupt.get() == 1


async def test_cache_outage_is_not_a_miss():
    directory, store = make_directory(make_node("10.0.0.1", tasks=[X]))
    store.down = True

    with pytest.raises(CacheUnavailableError):
        await directory.locate_owner(X)
    assert node_calls(directory) == []


async def test_duplicate_identifiers_resolve_to_first():
    first = make_node("10.0.0.1")
    second = make_node("10.0.0.1")
    directory, store = make_directory(first, second)
    store.put_raw(key(X), b'{"host": "10.0.0.1"}')

    assert await directory.locate_owner(X) is first


async def test_hash_is_normalized_to_lowercase():
    b = make_node("10.0.0.2", tasks=[X])
    directory, _ = make_directory(b)

    assert await directory.locate_owner(X.upper()) is b


async def test_cache_hit_is_advisory():
    a = make_node("10.0.0.1")
    directory, store = make_directory(a)
    store.put_raw(key(X), b'{"host": "10.0.0.1"}')

    # Node dropped the task out of band; the hit still routes to it
    assert await directory.locate_owner(X) is a
    assert await directory.get(X) is None


# =============================================================================
# GET
# =============================================================================


async def test_get_unknown_returns_none():
    directory, _ = make_directory(make_node("10.0.0.1"))

    assert await directory.get(X) is None


async def test_get_delegates_to_owner():
    b = make_node("10.0.0.2", tasks=[X])
    directory, _ = make_directory(make_node("10.0.0.1"), b)

    status = await directory.get(X)

    assert status is not None
    assert status.hash == X
    assert b.client.operations()[-1] == "get_task"


async def test_get_propagates_node_errors():
    b = make_node("10.0.0.2")
    directory, store = make_directory(b)
    store.put_raw(key(X), b'{"host": "10.0.0.2"}')
    b.client.fail = RemoteOperationError("disk full", node="10.0.0.2")

    with pytest.raises(RemoteOperationError):
        await directory.get(X)


# =============================================================================
# ADD
# =============================================================================


async def test_add_places_on_least_loaded_and_records():
    a = make_node("10.0.0.1", load=1)
    b = make_node("10.0.0.2", load=0)
    directory, store = make_directory(a, b)

    result = await directory.add(f"magnet:?xt=urn:btih:{X}&dn=file")
    await directory.cache.flush()

    assert result.hash == X
    assert result.node == "10.0.0.2"
    assert not result.resumed
    assert result.task is not None
    assert "add_task" not in a.client.operations()
    assert json.loads(store._live(key(X))) == {"host": "10.0.0.2"}
    assert directory.metrics.placements.get() == {"10.0.0.2": 1}


async def test_locate_after_add_is_a_cache_hit():
    b = make_node("10.0.0.2", load=0)
    directory, _ = make_directory(make_node("10.0.0.1", load=3), b)

    await directory.add(X)
    await directory.cache.flush()
    reset_calls(directory)

    assert await directory.locate_owner(X) is b
    assert node_calls(directory) == []


async def test_add_twice_resumes_existing_owner():
    a = make_node("10.0.0.1", load=1)
    b = make_node("10.0.0.2", load=0)
    directory, _ = make_directory(a, b)

    first = await directory.add(X)
    await directory.cache.flush()
    b.client.load = 10
    second = await directory.add(f"magnet:?xt=urn:btih:{X.upper()}")

    assert first.node == second.node == "10.0.0.2"
    assert second.resumed
    assert b.client.operations().count("add_task") == 1
    assert b.client.operations()[-1] == "resume_task"
    assert "add_task" not in a.client.operations()
    assert directory.metrics.resumes.get() == 1


async def test_add_resumes_owner_found_by_scatter():
    a = make_node("10.0.0.1", load=0)
    b = make_node("10.0.0.2", load=5, tasks=[X])
    directory, _ = make_directory(a, b)

    result = await directory.add(X)

    assert result.resumed
    assert result.node == "10.0.0.2"
    assert "get_active_task_count" not in node_calls(directory)


async def test_add_with_stale_hint_places_instead_of_resuming():
    a = make_node("10.0.0.1", load=3)
    b = make_node("10.0.0.2", load=0)
    directory, store = make_directory(a, b)
    # The task was removed from 10.0.0.1 behind the directory's back
    store.put_raw(key(X), b'{"host": "10.0.0.1"}')

    result = await directory.add(X)
    await directory.cache.flush()

    assert not result.resumed
    assert result.node == "10.0.0.2"
    assert "resume_task" not in node_calls(directory)
    assert b.client.operations().count("add_task") == 1
    assert json.loads(store._live(key(X))) == {"host": "10.0.0.2"}
    assert directory.metrics.cache_stale.get() == 1
    assert directory.metrics.cache_hits.get() == 0


async def test_add_keeps_hint_when_cached_owner_cannot_answer():
    a = make_node("10.0.0.1", tasks=[X], fail=ConnectionResetError("peer reset"))
    b = make_node("10.0.0.2", load=0)
    directory, store = make_directory(a, b)
    store.put_raw(key(X), b'{"host": "10.0.0.1"}')

    # Scatter and placement both see 10.0.0.1 failing
    with pytest.raises(NoNodesAvailableError):
        await directory.add(X)

    assert "add_task" not in node_calls(directory)
    assert store._live(key(X)) == b'{"host": "10.0.0.1"}'


async def test_add_invalid_descriptor():
    directory, _ = make_directory(make_node("10.0.0.1"))

    with pytest.raises(DescriptorInvalidError) as exc_info:
        await directory.add("definitely not a torrent")
    assert exc_info.value.descriptor == "definitely not a torrent"
    assert node_calls(directory) == []


async def test_add_with_empty_fleet():
    directory, _ = make_directory()

    with pytest.raises(NoNodesAvailableError):
        await directory.add(X)


async def test_add_node_failure_propagates_without_cache_write():
    b = make_node("10.0.0.2", load=0)
    directory, store = make_directory(b)
    original = b.client.add_task

    async def refuse(descriptor, info_hash):
        raise RemoteOperationError("disk full", node="10.0.0.2")

    b.client.add_task = refuse

    with pytest.raises(RemoteOperationError):
        await directory.add(X)
    await directory.cache.flush()

    assert store.keys() == []
    b.client.add_task = original


async def test_add_excluding_failed_nodes():
    a = make_node("10.0.0.1", load=0, fail=unreachable("10.0.0.1"))
    b = make_node("10.0.0.2", load=4)
    directory, _ = make_directory(a, b, exclude_failed_nodes=True)
    # Scatter also hits the failing node; it counts as "no"
    result = await directory.add(X)

    assert result.node == "10.0.0.2"


# =============================================================================
# REMOVE
# =============================================================================


async def test_remove_invalidates_then_removes():
    b = make_node("10.0.0.2", tasks=[X])
    directory, store = make_directory(make_node("10.0.0.1"), b)
    await directory.locate_owner(X)
    await directory.cache.flush()

    seen_keys = []
    b.client.on_call = lambda op, arg: seen_keys.append((op, store.keys()))

    await directory.remove(X)

    assert ("remove_task", []) in seen_keys
    assert X not in b.client.tasks


async def test_locate_after_remove_never_returns_old_owner():
    b = make_node("10.0.0.2", tasks=[X])
    directory, _ = make_directory(make_node("10.0.0.1"), b)
    await directory.locate_owner(X)
    await directory.cache.flush()

    await directory.remove(X)

    assert await directory.locate_owner(X) is None


async def test_remove_data_uses_data_removal():
    b = make_node("10.0.0.2", tasks=[X])
    directory, store = make_directory(b)

    await directory.remove_data(X)

    assert "remove_task_and_data" in b.client.operations()
    assert "remove_task" not in b.client.operations()
    assert store.keys() == []


async def test_remove_unknown_is_noop():
    a = make_node("10.0.0.1")
    directory, store = make_directory(a)

    await directory.remove(X)
    await directory.remove_data(X)

    assert a.client.operations() == ["has_task", "has_task"]


async def test_remove_failure_after_invalidation_propagates():
    b = make_node("10.0.0.2", tasks=[X])
    directory, store = make_directory(b)
    await directory.locate_owner(X)
    await directory.cache.flush()

    original_remove = b.client.remove_task

    async def broken(info_hash):
        raise RemoteOperationError("locked", node="10.0.0.2")

    b.client.remove_task = broken
    with pytest.raises(RemoteOperationError):
        await directory.remove(X)
    b.client.remove_task = original_remove

    assert store.keys() == []
    # Still owned, so the next lookup repopulates the cache
    assert await directory.locate_owner(X) is b


# =============================================================================
# LIFECYCLE
# =============================================================================


async def test_directories_are_independent():
    first, _ = make_directory(make_node("10.0.0.1", tasks=[X]))
    second, _ = make_directory(make_node("10.0.0.2"))

    assert (await first.locate_owner(X)).identifier == "10.0.0.1"
    assert await second.locate_owner(X) is None


async def test_loads_reports_counts_and_errors():
    directory, _ = make_directory(
        make_node("10.0.0.1", load=3),
        make_node("10.0.0.2", fail=unreachable("10.0.0.2")),
    )

    report = await directory.loads()

    assert report["10.0.0.1"] == 3
    assert report["10.0.0.2"]["error"] == "node_unavailable"


async def test_loads_reports_foreign_client_errors():
    directory, _ = make_directory(
        make_node("10.0.0.1", fail=ConnectionResetError("peer reset")),
    )

    report = await directory.loads()

    assert report["10.0.0.1"]["error"] == "node_unavailable"
    assert "peer reset" in report["10.0.0.1"]["message"]


async def test_context_manager_closes_everything():
    a = make_node("10.0.0.1")
    directory, store = make_directory(a)

    async with directory:
        pass

    assert store.closed
    assert a.client.closed


async def test_stats_includes_fleet_and_metrics():
    directory, _ = make_directory(make_node("10.0.0.1"))
    await directory.locate_owner(X)

    stats = directory.stats()

    assert stats["nodes"] == ["10.0.0.1"]
    assert stats["cache_ttl_seconds"] == 300
    assert stats["metrics"]["scatter"]["not_found"] == 1


async def test_from_settings_builds_fleet_from_env(monkeypatch):
    monkeypatch.setenv(
        "UCLUSTER_NODES",
        json.dumps([{"host": "10.0.0.1"}, {"host": "10.0.0.2", "port": 9090}]),
    )
    monkeypatch.setenv("UCLUSTER_CACHE_TTL_SECONDS", "60")
    monkeypatch.setenv("UCLUSTER_STRICT_SCATTER", "true")

    directory = ClusterDirectory.from_settings()
    try:
        stats = directory.stats()
        assert stats["nodes"] == ["10.0.0.1", "10.0.0.2"]
        assert stats["cache_ttl_seconds"] == 60
        assert directory.fleet[1].client.config.base_url == "http://10.0.0.2:9090"
    finally:
        await directory.aclose()
