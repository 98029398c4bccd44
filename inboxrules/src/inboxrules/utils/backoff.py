"""Exponential backoff and retry for idempotent provider operations.

What:
  Compute capped exponential delays and retry a callable while it raises a
  retryable error type.

Why:
  Label, archive, and flag changes can be repeated safely, so a rate-limit or
  timeout response from the provider is worth another attempt. Sending mail is
  not; callers decide eligibility and this module only implements the loop.

How:
  :func:`exponential_backoff` returns ``base * factor**failures`` clamped to
  ``[base, cap]``. :func:`retry` calls the function up to ``attempts`` times,
  sleeping the computed delay between attempts and re-raising the last error.

Interfaces:
  :func:`exponential_backoff`, :func:`retry`.
"""
from __future__ import annotations

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


def exponential_backoff(
    *,
    base: float = 1.0,
    factor: float = 2.0,
    cap: float = 30.0,
    failures: int = 0,
) -> float:
    """Return the delay in seconds before retry number ``failures + 1``.

    Args:
      base: Smallest delay returned.
      factor: Multiplicative growth factor.
      cap: Maximum delay permitted.
      failures: Number of consecutive failures so far (zero-indexed).

    Returns:
      Delay in seconds.
    """

    delay = base * (factor ** max(failures, 0))
    if delay < base:
        delay = base
    if delay > cap:
        delay = cap
    return delay


def retry(
    func: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    attempts: int = 3,
    base: float = 1.0,
    factor: float = 2.0,
    cap: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Call ``func`` until it succeeds, retrying on ``retry_on`` errors.

    What:
      Runs ``func`` at most ``attempts`` times. Errors outside ``retry_on``
      propagate immediately.

    Args:
      func: Zero-argument callable to run.
      retry_on: Exception types that warrant another attempt.
      attempts: Total number of attempts (at least one).
      base: Backoff base in seconds.
      factor: Backoff growth factor.
      cap: Backoff cap in seconds.
      sleep: Sleep function, injectable for tests.
      on_retry: Optional hook called with ``(attempt, error, delay)`` before
        each sleep.

    Returns:
      The value returned by the first successful call.

    Raises:
      BaseException: The last ``retry_on`` error once attempts are exhausted.
    """

    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            delay = exponential_backoff(base=base, factor=factor, cap=cap, failures=attempt - 1)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
