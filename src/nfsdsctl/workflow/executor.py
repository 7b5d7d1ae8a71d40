"""Bounded fan-out helper shared by diagnostics and per-host mounts."""

from __future__ import annotations

import concurrent.futures
from collections.abc import Callable, Sequence
from typing import TypeVar, cast

T = TypeVar("T")
R = TypeVar("R")


def run_bounded(
    func: Callable[[T], R],
    items: Sequence[T],
    max_workers: int,
) -> list[R]:
    """Apply *func* to every item with bounded concurrency.

    Results are returned in the order of *items*, regardless of completion
    order. Each worker writes only its own slot.
    """
    if not items:
        return []

    workers = max(1, min(max_workers, len(items)))
    if workers == 1:
        return [func(item) for item in items]

    slots: list[R | None] = [None] * len(items)
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_index: dict[concurrent.futures.Future[R], int] = {}
        for index, item in enumerate(items):
            future = executor.submit(func, item)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            slots[index] = future.result()

    return cast(list[R], slots)


__all__ = ["run_bounded"]
