"""Thread-pool map used to compute per-shard partials."""

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, List, Sequence, Tuple


def resolve_workers(n_jobs: int) -> int:
    """Number of worker threads for an n_jobs setting (-1 = all cores)."""
    if n_jobs == -1:
        return os.cpu_count() or 1
    return n_jobs


def parallel_map(
    func: Callable[..., Any],
    args_list: Sequence[Tuple],
    n_jobs: int = 1,
) -> List[Any]:
    """Execute func(*args) for each args in args_list, optionally in parallel.

    Threads are used rather than processes: the per-shard work is dominated by
    torch kernels that release the GIL, and shards stay in shared memory
    instead of being pickled to subprocesses.

    Args:
        func: Function to call for each set of arguments
        args_list: Arguments for each call
        n_jobs: 1 = sequential (default), -1 = all cores, >1 = that many threads

    Returns:
        Results in the same order as args_list, regardless of completion order
    """
    max_workers = resolve_workers(n_jobs)
    if max_workers == 1 or len(args_list) <= 1:
        return [func(*args) for args in args_list]

    results: List[Any] = [None] * len(args_list)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_idx = {
            executor.submit(func, *args): i for i, args in enumerate(args_list)
        }
        for future in as_completed(future_to_idx):
            results[future_to_idx[future]] = future.result()
    return results
