from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from itertools import islice
from typing import Callable, Dict, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def parallel_map_ordered(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int,
    *,
    thread_name_prefix: str = "nr-audit",
) -> List[R]:
    """
    Run func over items on a bounded thread pool; results keep input order.

    No more than max_workers calls are submitted at a time, so a worker error
    stops the map quickly: calls not yet started are cancelled, nothing new is
    submitted, and the error is re-raised once running calls return.
    """
    workers = max(1, max_workers)
    indexed = enumerate(items)
    results: Dict[int, R] = {}

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=thread_name_prefix) as pool:
        window: Dict[Future[R], int] = {pool.submit(func, item): idx for idx, item in islice(indexed, workers)}
        while window:
            done, _ = wait(window, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = window.pop(fut)
                error = fut.exception()
                if error is not None:
                    for queued in window:
                        queued.cancel()
                    raise error
                results[idx] = fut.result()
            for idx, item in islice(indexed, len(done)):
                window[pool.submit(func, item)] = idx

    return [results[idx] for idx in range(len(results))]
