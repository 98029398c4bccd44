"""Bounded waiting for blocking collaborator calls.

What:
  Run a callable (a provider request, a reasoning call) with a deadline and
  raise :class:`DeadlineExceeded` when it does not return in time.

Why:
  Every call into the mail capability or the reasoning capability is a
  suspension point. A hung provider must turn into a failed action or an
  indeterminate condition instead of stalling the pipeline, while the call
  itself is left to complete so no half-applied mutation is interrupted.

How:
  The callable runs in a daemon thread and the caller joins with a timeout.
  The worker is never killed; its late result is discarded.

Interfaces:
  :class:`DeadlineExceeded`, :func:`call_with_timeout`.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


class DeadlineExceeded(TimeoutError):
    """Raised when a guarded call does not finish before its deadline."""


def call_with_timeout(
    func: Callable[..., T],
    *args: Any,
    timeout_s: Optional[float],
    **kwargs: Any,
) -> T:
    """Invoke ``func(*args, **kwargs)`` and wait at most ``timeout_s`` seconds.

    Args:
      func: Blocking callable to run.
      *args: Positional arguments forwarded to ``func``.
      timeout_s: Deadline in seconds; ``None`` or a non-positive value calls
        ``func`` inline without a watchdog.
      **kwargs: Keyword arguments forwarded to ``func``.

    Returns:
      Whatever ``func`` returned.

    Raises:
      DeadlineExceeded: If ``func`` is still running at the deadline.
      Exception: Anything ``func`` raised, re-raised in the caller's thread.
    """

    if timeout_s is None or timeout_s <= 0:
        return func(*args, **kwargs)

    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = func(*args, **kwargs)
        except BaseException as exc:  # re-raised in the caller's thread
            outcome["error"] = exc

    worker = threading.Thread(target=_target, daemon=True)
    worker.start()
    worker.join(timeout_s)
    if worker.is_alive():
        name = getattr(func, "__qualname__", repr(func))
        raise DeadlineExceeded(f"{name} did not finish within {timeout_s:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
