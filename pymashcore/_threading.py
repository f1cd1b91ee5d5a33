from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
import os
import sys
from typing import TypeVar

T = TypeVar("T")

NUM_THREADS_ENV = "PYMASHCORE_NUM_THREADS"

# Below this many effects per worker the pool costs more than it saves.
MIN_EFFECTS_PER_THREAD = 64


def resolve_n_threads(n_threads: int | None = None) -> int:
    """Resolve the worker count from the argument or ``PYMASHCORE_NUM_THREADS``."""
    if n_threads is None:
        raw = os.environ.get(NUM_THREADS_ENV, "").strip()
        if not raw:
            return 1
        try:
            n_threads = int(raw)
        except ValueError as exc:
            raise ValueError(f"{NUM_THREADS_ENV} must be a positive integer, got {raw!r}") from exc
    if n_threads == 0:
        return os.cpu_count() or 1
    if n_threads < 0:
        raise ValueError("n_threads must be a positive integer (or 0 for all cores)")
    return int(n_threads)


def effect_blocks(J: int, n_threads: int) -> list[tuple[int, int]]:
    n_blocks = max(1, min(n_threads, J // MIN_EFFECTS_PER_THREAD))
    edges = [round(i * J / n_blocks) for i in range(n_blocks + 1)]
    return [(edges[i], edges[i + 1]) for i in range(n_blocks) if edges[i + 1] > edges[i]]


def map_effect_blocks(fn: Callable[[int, int], T], J: int, n_threads: int) -> list[T]:
    """Run ``fn(start, stop)`` over contiguous blocks of the effect axis.

    Each call must only write to rows ``start:stop`` of shared outputs;
    anything it needs to reduce across effects goes into its return value.
    Results come back in block order.
    """
    blocks = effect_blocks(J, n_threads)
    if len(blocks) <= 1:
        return [fn(0, J)]
    with ThreadPoolExecutor(max_workers=len(blocks)) as pool:
        futures = [pool.submit(fn, start, stop) for start, stop in blocks]
        return [f.result() for f in futures]


def check_threading(verbose: bool = False) -> dict:
    """Report how many worker threads pymashcore will use.

    Returns
    -------
    dict
        Dictionary with keys:
        - ``"n_threads"``: int, resolved default worker count
        - ``"env_var"``: str, name of the configuring environment variable
        - ``"env_value"``: str or None, its current value
        - ``"cpu_count"``: int or None, cores reported by the OS
        - ``"platform"``: str, operating system
    """
    info = {
        "n_threads": resolve_n_threads(None),
        "env_var": NUM_THREADS_ENV,
        "env_value": os.environ.get(NUM_THREADS_ENV),
        "cpu_count": os.cpu_count(),
        "platform": sys.platform,
    }
    if verbose:
        print("pymashcore threading status:")
        print(f"  Platform: {info['platform']}")
        print(f"  Worker threads: {info['n_threads']}")
        print(f"  {NUM_THREADS_ENV}: {info['env_value'] if info['env_value'] is not None else 'unset'}")
        print(f"  CPU count: {info['cpu_count']}")
    return info


__all__ = ["resolve_n_threads", "effect_blocks", "map_effect_blocks", "check_threading"]
