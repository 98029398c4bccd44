"""Expose the public utility surface for inboxrules.

What:
  Re-export logging, identifier, timeout, and backoff helpers that other
  packages import without knowing the underlying module layout.

Interfaces:
  ``get_logger``, ``JsonLogger``, ``new_run_id``, ``checksum``,
  ``call_with_timeout``, ``DeadlineExceeded``, ``exponential_backoff``.

Invariants & Safety:
  - Only side-effect-free callables are re-exported so import order stays
    predictable.
"""

from .backoff import exponential_backoff
from .deadline import DeadlineExceeded, call_with_timeout
from .ids import checksum, new_run_id
from .logging import JsonLogger, get_logger

__all__ = [
    "get_logger",
    "JsonLogger",
    "new_run_id",
    "checksum",
    "call_with_timeout",
    "DeadlineExceeded",
    "exponential_backoff",
]
