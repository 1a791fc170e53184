from __future__ import annotations

from typing import Callable, Iterable, List, Optional, TypeVar
from concurrent.futures import ThreadPoolExecutor
import time


T = TypeVar("T")
R = TypeVar("R")


def parallel_map(fn: Callable[[T], R], items: Iterable[T], workers: Optional[int] = 1) -> List[R]:
    """
    Order-preserving map; runs on a thread pool when workers > 1.

    OpenCV releases the GIL inside detectors/matchers, so threads are enough.
    Exceptions from fn propagate to the caller.
    """
    seq = list(items)
    n = int(workers or 1)
    if n <= 1 or len(seq) <= 1:
        return [fn(x) for x in seq]
    with ThreadPoolExecutor(max_workers=min(n, len(seq))) as pool:
        return list(pool.map(fn, seq))


def timer_ms(func):
    """
    Decorator that returns (result, elapsed_ms) for benchmarking small functions.
    """
    def wrapper(*args, **kwargs):
        t0 = time.perf_counter()
        out = func(*args, **kwargs)
        dt_ms = (time.perf_counter() - t0) * 1e3
        return out, dt_ms
    return wrapper
