"""Cooperative cancellation and index-keyed parallel execution.

Robustness loops, node-splitting and sampler chains are independent per
item; ``map_indexed`` runs them sequentially or on a thread pool and merges
results back by input position.
"""

import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional, TypeVar

from netsynth.exceptions import AnalysisCancelledError

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Thread-safe flag checked between iterations of long-running fits."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str) -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(operation)


def map_indexed(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 1,
    token: Optional[CancellationToken] = None,
    operation: str = "analysis",
) -> list[R]:
    """Apply ``func`` to every item, returning results in input order.

    Args:
        func: Per-item computation; must not share mutable state
        items: Inputs
        max_workers: Thread pool size (1 runs sequentially)
        token: Cancellation token checked before each item
        operation: Name used in the cancellation error

    Raises:
        AnalysisCancelledError: If the token is cancelled
    """
    items = list(items)

    def guarded(item: T) -> R:
        if token is not None:
            token.raise_if_cancelled(operation)
        return func(item)

    if max_workers <= 1 or len(items) <= 1:
        return [guarded(item) for item in items]

    results: list[Optional[R]] = [None] * len(items)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(guarded, item): i for i, item in enumerate(items)}
        try:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return results  # type: ignore[return-value]
