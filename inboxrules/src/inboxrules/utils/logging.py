"""Structured JSON logging with redaction of message content.

What:
  Offer a tiny facade over Python streams so every inboxrules component can
  emit JSON log lines with consistent fields while never leaking message
  bodies, subjects, or generated reply text.

Why:
  Rule runs touch personal correspondence. Operators still need to grep logs
  for rule ids, action outcomes, and provider failures, so the layout must be
  machine friendly while content-bearing fields stay masked.

How:
  Provide a :class:`JsonLogger` dataclass that accepts a target stream and
  enforces uppercase severity levels. ``extra`` dictionaries are scrubbed via
  a recursive redaction helper before being serialised with ``json.dump``.

Interfaces:
  :class:`JsonLogger`, :func:`get_logger`.

Invariants & Safety:
  - Every payload includes an ISO8601 timestamp, severity, and component name.
  - Sensitive keys (``subject``, ``body``, ``content``, ``preview``,
    ``snippet``) are replaced with ``[redacted]`` even inside nested
    dictionaries and lists of dictionaries.
  - Streams are flushed after every write; concurrent writers are serialised
    with a lock so lines never interleave.
"""
from __future__ import annotations

import json
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset({"subject", "body", "content", "preview", "snippet"})

_WRITE_LOCK = threading.Lock()


@dataclass
class JsonLogger:
    """Structured JSON logger with automatic redaction.

    What:
      Emit single-line JSON log entries that include timestamps, severity, a
      component tag, and optional supplemental fields.

    Why:
      Centralising structured logging avoids duplicating the redaction logic
      and guarantees a uniform schema for log shipping and test assertions.

    How:
      Stores the destination stream and component label, then exposes helper
      methods (:meth:`log`, :meth:`debug`, :meth:`info`, :meth:`warning`,
      :meth:`error`) that merge a canonical payload with redacted extras.
    """

    stream: Any = field(default_factory=lambda: sys.stdout)
    component: str = "inboxrules"

    def log(self, level: str, message: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        """Emit a structured JSON log entry.

        What:
          Serialises ``message`` and ``extra`` metadata to the configured
          stream using the ``ts``/``lvl``/``msg``/``component`` schema.

        Why:
          A predictable contract lets dashboards and tests parse entries
          without ad-hoc heuristics.

        How:
          Builds the core payload, merges a redacted copy of ``extra``, and
          writes one line under a module-level lock before flushing.

        Args:
          level: Human-readable severity (e.g., ``"info"``).
          message: Event name.
          extra: Optional context dictionary, redacted recursively.
        """

        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": level.upper(),
            "msg": message,
            "component": self.component,
        }
        if extra:
            payload.update(self._redact(extra))
        line = json.dumps(payload, separators=(",", ":"), default=str)
        with _WRITE_LOCK:
            self.stream.write(line)
            self.stream.write("\n")
            self.stream.flush()

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log a ``DEBUG`` entry."""

        self.log("DEBUG", message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an informational message with structured context.

        Args:
          message: Event name.
          **kwargs: Structured fields to attach to the log payload.
        """

        self.log("INFO", message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log a ``WARN`` entry for recoverable conditions.

        What:
          Used for contained failures such as an indeterminate AI verdict or a
          single action that failed while its siblings continued.

        Args:
          message: Event name.
          **kwargs: Structured metadata describing the context.
        """

        self.log("WARN", message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log an ``ERROR`` entry suitable for alerting.

        Args:
          message: Summary of the failure condition.
          **kwargs: Additional fields for troubleshooting.
        """

        self.log("ERROR", message, extra=kwargs)

    @staticmethod
    def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``data`` with sensitive values masked.

        What:
          Replaces the values of :data:`SENSITIVE_KEYS` with ``[redacted]``.

        Why:
          Callers frequently pass whole action or email summaries as context;
          masking at the sink keeps that safe by default.

        How:
          Walks the dictionary, recursing into nested dictionaries and into
          dictionaries held in lists or tuples.

        Args:
          data: Arbitrary metadata to sanitise.

        Returns:
          A sanitised copy of ``data``.
        """

        result: Dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS:
                result[key] = REDACTED
            elif isinstance(value, dict):
                result[key] = JsonLogger._redact(value)
            elif isinstance(value, (list, tuple)):
                result[key] = [
                    JsonLogger._redact(item) if isinstance(item, dict) else item for item in value
                ]
            else:
                result[key] = value
        return result


def get_logger(component: str, *, stream: Any = None) -> JsonLogger:
    """Construct a :class:`JsonLogger` for the requested component.

    What:
      Returns a ready-to-use :class:`JsonLogger` bound to ``component``.

    Why:
      Call sites should avoid instantiating :class:`JsonLogger` directly so
      shared invariants (redaction keys, default stream) evolve centrally.

    Args:
      component: Logical subsystem name to include in log payloads.
      stream: Optional destination; defaults to ``stdout``.

    Returns:
      Configured :class:`JsonLogger` instance.
    """

    if stream is None:
        return JsonLogger(component=component)
    return JsonLogger(stream=stream, component=component)
