from __future__ import annotations

import threading

import pytest

from nr_log_audit.util.concurrency import parallel_map_ordered


def test_parallel_map_ordered_preserves_order() -> None:
    results = parallel_map_ordered(lambda x: x * 2, range(6), max_workers=3)

    assert results == [0, 2, 4, 6, 8, 10]


def test_parallel_map_ordered_handles_empty_input() -> None:
    assert parallel_map_ordered(lambda x: x, [], max_workers=4) == []


def test_parallel_map_ordered_propagates_and_stops_submitting() -> None:
    started = []
    lock = threading.Lock()

    def work(x: int) -> int:
        with lock:
            started.append(x)
        if x == 0:
            raise RuntimeError("boom")
        return x

    with pytest.raises(RuntimeError):
        parallel_map_ordered(work, range(50), max_workers=1)

    # With a single worker the failure is seen before anything else is queued.
    assert started == [0]
