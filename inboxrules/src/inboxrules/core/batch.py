"""Bounded-width batch runner for bulk thread operations."""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")

DEFAULT_BATCH_WIDTH = 10


@dataclass(frozen=True)
class BatchItemResult(Generic[T]):
    """Outcome of one item; ``error`` is set when it failed or never started."""

    item: T
    ok: bool
    error: Optional[str] = None


def run_in_batches(
    items: Sequence[T],
    func: Callable[[T], object],
    *,
    width: int = DEFAULT_BATCH_WIDTH,
    cancel: Optional[threading.Event] = None,
) -> List[BatchItemResult[T]]:
    """Apply ``func`` to ``items`` in batches of at most ``width`` concurrent calls.

    Batches run one after another; a batch starts only when the previous one
    finished. Once ``cancel`` is set, items that have not started are reported
    as ``cancelled``. Results follow input order.
    """

    width = max(1, width)
    results: List[BatchItemResult[T]] = []
    for start in range(0, len(items), width):
        chunk = items[start : start + width]
        if cancel is not None and cancel.is_set():
            results.extend(BatchItemResult(item, False, "cancelled") for item in chunk)
            continue
        with ThreadPoolExecutor(max_workers=len(chunk)) as pool:
            futures = [pool.submit(_guarded, func, item, cancel) for item in chunk]
            results.extend(future.result() for future in futures)
    return results


def _guarded(
    func: Callable[[T], object], item: T, cancel: Optional[threading.Event]
) -> BatchItemResult[T]:
    if cancel is not None and cancel.is_set():
        return BatchItemResult(item, False, "cancelled")
    try:
        func(item)
    except Exception as exc:
        return BatchItemResult(item, False, str(exc) or type(exc).__name__)
    return BatchItemResult(item, True)
