import json
import logging
import threading
import time

import numpy as np
import pytest

import numdef
from numdef import CacheError, CacheManager
from numdef.core.cache import CACHE_VERSION, CompilationCache, build_cache_key

_traces = []


@numdef.deftransform
def slow_marker(x):
    _traces.append(threading.get_ident())
    time.sleep(0.05)
    return x


@numdef.defn
def slow_square(x):
    y = slow_marker(x)
    return y * y


def test_hits_and_misses_are_counted():
    @numdef.defn
    def inc(x):
        return x + 1

    f32 = np.zeros(3, dtype=np.float32)
    inc(f32)
    inc(f32 + 1)
    inc(np.zeros(3, dtype=np.float64))
    inc(np.zeros(4, dtype=np.float32))

    info = inc.cache_info()
    assert (info.hits, info.misses, info.compiles, info.size) == (1, 3, 3, 3)

    inc.clear_cache()
    assert inc.cache_info() == numdef.CacheInfo(0, 0, 0, 0)


def test_argument_structure_and_options_are_part_of_the_key():
    @numdef.defn
    def total(xs):
        return numdef.sum(xs[0]) + numdef.sum(xs[1])

    a = np.ones(2, dtype=np.float32)
    total((a, a))
    total({0: a, 1: a})
    numdef.jit(total, explain_timings=True)((a, a))
    assert total.cache_info().compiles == 3


def test_cache_hit_is_logged(caplog):
    @numdef.defn
    def neg(x):
        return -x

    x = np.ones(2, dtype=np.float32)
    with caplog.at_level(logging.DEBUG, logger="numdef"):
        neg(x)
        neg(x)
    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("Compiled ") and "neg" in message for message in messages)
    assert any(message.startswith("Cache hit for") for message in messages)


def test_concurrent_first_calls_compile_once():
    slow_square.clear_cache()
    _traces.clear()
    barrier = threading.Barrier(6)
    results = [None] * 6
    errors = []

    def worker(index):
        try:
            barrier.wait(5)
            results[index] = slow_square(np.full(3, index, dtype=np.float32) + 2)
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert not errors
    assert len(_traces) == 1
    info = slow_square.cache_info()
    assert info.compiles == 1
    assert info.size == 1
    for index, result in enumerate(results):
        np.testing.assert_allclose(result, np.full(3, (index + 2) ** 2))


def test_failed_build_wakes_waiters_which_retry():
    cache = CompilationCache()
    started = threading.Event()
    release = threading.Event()
    calls = []
    errors = []
    results = []

    def failing():
        calls.append("fail")
        started.set()
        release.wait(5)
        raise RuntimeError("boom")

    def succeeding():
        calls.append("ok")
        return "artifact"

    def first():
        try:
            cache.get_or_compile("key", failing)
        except RuntimeError as exc:
            errors.append(exc)

    owner = threading.Thread(target=first)
    owner.start()
    assert started.wait(5)
    waiter = threading.Thread(target=lambda: results.append(cache.get_or_compile("key", succeeding)))
    waiter.start()
    time.sleep(0.05)
    release.set()
    owner.join(5)
    waiter.join(5)

    assert [str(e) for e in errors] == ["boom"]
    assert results == ["artifact"]
    assert calls == ["fail", "ok"]
    assert cache.info() == numdef.CacheInfo(hits=0, misses=2, compiles=1, size=1)
    assert "key" in cache


def test_failing_transform_leaves_cache_empty():
    @numdef.deftransform
    def refuse(x):
        raise RuntimeError(f"refusing shape {x.shape}")

    @numdef.defn
    def guarded(x):
        return refuse(x)

    for _ in range(2):
        with pytest.raises(RuntimeError, match="refusing shape"):
            guarded(np.zeros(2, dtype=np.float32))
    info = guarded.cache_info()
    assert info.size == 0
    assert info.compiles == 0


def test_compilation_records_are_written_to_cache_dir(tmp_path):
    @numdef.defn
    def affine(x, w):
        return x @ w + 1.0

    fn = numdef.jit(affine, cache_dir=str(tmp_path))
    fn(np.ones((2, 3), dtype=np.float32), np.ones((3, 4), dtype=np.float32))

    records = list((tmp_path / "evaluator").glob("*.json"))
    assert len(records) == 1
    payload = json.loads(records[0].read_text(encoding="utf-8"))
    assert payload["cache_version"] == CACHE_VERSION
    metadata = payload["metadata"]
    assert metadata["definition"].endswith("affine")
    assert metadata["compiler"] == "evaluator"
    assert metadata["shapes"] == [[2, 3], [3, 4]]
    assert metadata["dtypes"] == ["float32", "float32"]
    assert metadata["versions"]["numpy"] == np.__version__

    manager = CacheManager(str(tmp_path))
    record = manager.load("evaluator", records[0].stem)
    assert record is not None
    assert record.metadata["graph_digest"] == metadata["graph_digest"]


def test_cache_manager_validates_keys_and_versions(tmp_path):
    manager = CacheManager(str(tmp_path))
    with pytest.raises(CacheError, match="Invalid cache key"):
        manager.path_for("evaluator", "../escape")

    key = build_cache_key(graph_digest="0" * 64, compiler="evaluator", signature=(((2,), "float32"),))
    assert len(key) == 64
    assert key == build_cache_key(
        graph_digest="0" * 64, compiler="evaluator", signature=(((2,), "float32"),)
    )
    assert key != build_cache_key(graph_digest="1" * 64, compiler="evaluator")

    path = manager.write_metadata("evaluator", key, {"note": np.float32(1.5), "dims": (1, 2)})
    assert manager.load("evaluator", key).metadata == {"note": 1.5, "dims": [1, 2]}

    stale = json.loads(path.read_text(encoding="utf-8"))
    stale["cache_version"] = "0"
    path.write_text(json.dumps(stale), encoding="utf-8")
    assert manager.load("evaluator", key) is None
    assert manager.load("evaluator", "f" * 64) is None
