from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_MAX_WORKERS = min(8, os.cpu_count() or 1)


def fan_out(func: Callable[[T], R], items: Iterable[T], *, max_workers: int = DEFAULT_MAX_WORKERS) -> list[R]:
    """
    Run `func` over `items` on a bounded thread pool and return results in input order.

    Every task finishes before this returns; the first failure (in input order) is then re-raised.
    """
    work = list(items)
    if not work:
        return []
    if max_workers <= 1 or len(work) == 1:
        return [func(item) for item in work]

    with ThreadPoolExecutor(max_workers=min(max_workers, len(work)), thread_name_prefix="wharf") as pool:
        futures = [pool.submit(func, item) for item in work]
        wait(futures)
    return [f.result() for f in futures]
