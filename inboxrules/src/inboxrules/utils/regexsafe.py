"""Regular expression helpers with soft timeouts for user-authored patterns.

What:
  Offer a wrapper around :func:`re.search` that enforces an execution time
  limit, plus the translation from the rule language's ``*`` wildcards into
  anchored-free regular expressions.

Why:
  Static rule conditions are written by users and evaluated against
  attacker-controlled headers. Python's backtracking engine can hang on
  crafted inputs, so every pattern search runs behind a watchdog and a
  timeout counts as "no match".

How:
  Compile in the caller, then hand the bound ``search`` to
  :func:`~inboxrules.utils.deadline.call_with_timeout`.
  Wildcards are produced by escaping every regex metacharacter and turning
  each ``*`` into ``.*``.

Interfaces:
  :class:`RegexResult`, :func:`search`, :func:`wildcard_to_regex`,
  :func:`wildcard_search`.

Invariants & Safety:
  - A timed-out search returns a negative :class:`RegexResult` and never
    raises; the worker thread finishes on its own.
  - :func:`wildcard_to_regex` never lets user text act as regex syntax other
    than ``*``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .deadline import DeadlineExceeded, call_with_timeout


@dataclass
class RegexResult:
    """Outcome of a guarded regex search.

    Attributes:
      matched: Whether the pattern matched before the deadline.
      timed_out: Whether the watchdog gave up on the search.
      match: The :class:`re.Match` when ``matched`` is true.
    """

    matched: bool
    timed_out: bool = False
    match: Optional[re.Match[str]] = None


def search(pattern: str, text: str, *, timeout_ms: int = 50, flags: int = 0) -> RegexResult:
    """Run ``pattern`` over ``text``, giving up after ``timeout_ms``.

    The pattern is compiled in the caller's thread so syntax errors surface
    immediately; only the search itself goes behind the watchdog.

    Args:
      pattern: Regular expression source.
      text: Haystack, usually a header value or a rendered body.
      timeout_ms: Search budget in milliseconds.
      flags: :mod:`re` compilation flags.

    Returns:
      :class:`RegexResult`; ``matched`` is ``False`` on timeout.

    Raises:
      re.error: When ``pattern`` does not compile.
    """

    if timeout_ms <= 1:
        return RegexResult(matched=False, timed_out=True)
    compiled = re.compile(pattern, flags)
    try:
        found = call_with_timeout(compiled.search, text, timeout_s=timeout_ms / 1000)
    except DeadlineExceeded:
        return RegexResult(matched=False, timed_out=True)
    return RegexResult(matched=found is not None, match=found)


def wildcard_to_regex(pattern: str) -> str:
    """Translate a ``*`` wildcard pattern into an equivalent regex.

    ``"*@newsletter.*"`` becomes ``".*@newsletter\\..*"``.
    """

    return ".*".join(re.escape(chunk) for chunk in pattern.split("*"))


def wildcard_search(pattern: str, text: str, *, timeout_ms: int = 50) -> RegexResult:
    """Case-insensitively look for wildcard ``pattern`` anywhere in ``text``."""

    return search(wildcard_to_regex(pattern), text, timeout_ms=timeout_ms, flags=re.IGNORECASE)
