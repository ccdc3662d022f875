"""Bounded worker pool for data-parallel loops."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Sequence, TypeVar

from tqdm import tqdm

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def default_workers() -> int:
    return max(1, min(32, os.cpu_count() or 1))


def parallel_map(
    func: Callable[[T], R],
    items: Sequence[T],
    desc: str = "Processing",
    num_workers: Optional[int] = None,
) -> List[R]:
    """Apply ``func`` to every item on a bounded thread pool.

    Each task writes only its own result slot, so the returned list is in
    input order regardless of completion order. The progress bar is purely
    informational.

    Args:
        func: Function applied to each item
        items: Input items
        desc: Progress bar label
        num_workers: Pool size, defaults to the CPU count

    Returns:
        List of results, index-aligned with ``items``
    """
    n_items = len(items)
    results: List[Optional[R]] = [None] * n_items
    if n_items == 0:
        return []

    workers = num_workers or default_workers()
    if workers == 1 or n_items == 1:
        for i, item in enumerate(tqdm(items, desc=desc, leave=False)):
            results[i] = func(item)
        return results

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(func, item): i for i, item in enumerate(items)}
        with tqdm(total=n_items, desc=desc, leave=False) as pbar:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                pbar.update(1)

    return results
