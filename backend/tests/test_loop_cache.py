from __future__ import annotations

import trail_router.loop_cache as loop_cache
from trail_router.loop_cache import LoopCacheStore, loop_cache_key
from trail_router.loop_generator import GeneratedLoop, LoopGenerationOptions, LoopGenerationResult


def _result(tag: str) -> LoopGenerationResult:
    loop = GeneratedLoop(loop=("a", "b", "a"), path_edges=("a->b", "b->a"), distance=200.0, quality_score=0.5)
    return LoopGenerationResult(loops=(loop,), debug={"warnings": [tag]})


def test_cache_key_depends_on_graph_version_and_options() -> None:
    options = LoopGenerationOptions(start_node_id="a", target_distance=5000)

    assert loop_cache_key("v1", options) == loop_cache_key("v1", LoopGenerationOptions(start_node_id="a", target_distance=5000))
    assert loop_cache_key("v1", options) != loop_cache_key("v2", options)
    assert loop_cache_key("v1", options) != loop_cache_key(
        "v1", LoopGenerationOptions(start_node_id="a", target_distance=5000, num_variants=4)
    )


def test_cache_hit_miss_and_counters() -> None:
    cache = LoopCacheStore(ttl_s=60, max_entries=4)
    result = _result("x")

    assert cache.get("k") is None
    cache.set("k", result)
    hit = cache.get("k")
    assert hit is not None
    assert hit.loops == result.loops
    assert hit.debug == result.debug

    snap = cache.snapshot()
    assert snap["hits"] == 1
    assert snap["misses"] == 1
    assert snap["size"] == 1


def test_cache_evicts_least_recently_used() -> None:
    cache = LoopCacheStore(ttl_s=60, max_entries=2)
    cache.set("a", _result("a"))
    cache.set("b", _result("b"))
    assert cache.get("a") is not None
    cache.set("c", _result("c"))

    assert cache.get("b") is None
    assert cache.get("a") is not None
    assert cache.get("c") is not None
    assert cache.snapshot()["evictions"] == 1


def test_cache_entries_expire(monkeypatch) -> None:
    now = {"t": 1_000.0}
    monkeypatch.setattr(loop_cache.time, "time", lambda: now["t"])
    cache = LoopCacheStore(ttl_s=10, max_entries=4)
    cache.set("k", _result("k"))

    now["t"] += 5
    assert cache.get("k") is not None
    now["t"] += 11
    assert cache.get("k") is None
    assert cache.snapshot()["size"] == 0


def test_clear_reports_removed_count() -> None:
    cache = LoopCacheStore(ttl_s=60, max_entries=4)
    cache.set("a", _result("a"))
    cache.set("b", _result("b"))

    assert cache.clear() == 2
    assert cache.snapshot()["size"] == 0


def test_cached_debug_is_isolated_from_callers() -> None:
    cache = LoopCacheStore(ttl_s=60, max_entries=4)
    original = _result("first")
    cache.set("k", original)
    original.debug["warnings"].append("added after set")

    hit = cache.get("k")
    assert hit is not None
    hit.debug["warnings"].append("added by caller")
    hit.debug["elapsed_ms"] = -1

    again = cache.get("k")
    assert again is not None
    assert again.warnings == ["first"]
    assert "elapsed_ms" not in again.debug
    assert again.loops[0] is original.loops[0]
