"""Bounded parallel execution that collects per-item failures."""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TypeVar

from driverstage.core.errors import BatchError

LOGGER = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def run_batch(
    operation: str,
    func: Callable[[K], V],
    keys: Sequence[K],
    *,
    max_workers: int,
) -> dict[K, V]:
    """Run func for every key, at most max_workers at a time.

    A failing key never cancels its siblings; once all keys finish, any
    failures are raised together as a BatchError.
    """
    results: dict[K, V] = {}
    failures: dict[str, Exception] = {}
    if not keys:
        return results

    workers = max(1, min(max_workers, len(keys)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=operation) as executor:
        futures = {executor.submit(func, key): key for key in keys}
        for future in as_completed(futures):
            key = futures[future]
            try:
                results[key] = future.result()
            except Exception as exc:
                LOGGER.error("%s failed for %s: %s", operation, key, exc)
                failures[str(key)] = exc

    if failures:
        raise BatchError(operation, failures)
    return results
