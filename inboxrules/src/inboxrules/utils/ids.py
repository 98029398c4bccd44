"""Generate run identifiers, approval identifiers, and stable checksums.

What:
  Provide minimal helpers for creating unique run IDs, opaque approval IDs, and
  SHA-256 checksums used for logging and rule document change detection.

Why:
  Centralising the formats avoids subtle inconsistencies (timestamp formats,
  hash prefixes) that would otherwise complicate audits.

How:
  Combines ISO8601 timestamps with random suffixes for run IDs, uses
  :func:`secrets.token_urlsafe` for approval IDs, and wraps ``hashlib`` with a
  ``sha256:`` prefix for checksums.

Interfaces:
  :func:`new_run_id`, :func:`new_approval_id`, :func:`new_schedule_id`,
  :func:`checksum`.
"""
from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timezone


def new_run_id() -> str:
    """Return a sortable identifier for one pipeline run.

    Returns:
      Identifier such as ``2024-01-01T00:00:00+00:00#1a2b3c``.
    """

    timestamp = datetime.now(timezone.utc).isoformat()
    suffix = secrets.token_hex(3)
    return f"{timestamp}#{suffix}"


def new_approval_id() -> str:
    """Return an unguessable identifier for a pending approval."""

    return f"apr_{secrets.token_urlsafe(12)}"


def new_schedule_id() -> str:
    """Return an identifier for a scheduled (delayed) action."""

    return f"sch_{secrets.token_urlsafe(12)}"


def checksum(data: bytes) -> str:
    """Compute a namespaced SHA-256 digest for ``data``.

    What:
      Wraps :func:`hashlib.sha256` and adds a ``sha256:`` prefix.

    Why:
      The prefix signals which hash algorithm was used, enabling future
      upgrades without ambiguity.

    Args:
      data: Bytes to hash.

    Returns:
      Hex-encoded digest string prefixed with ``sha256:``.
    """

    return f"sha256:{hashlib.sha256(data).hexdigest()}"
