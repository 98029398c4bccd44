"""Label name validation shared by mailbox adapters.

What:
  Check candidate label names before they are created: the rules every
  provider shares, the reserved system names of label-based (Gmail-style)
  providers, and the keyword syntax of IMAP servers.

Why:
  AI-authored label names can be anything. Rejecting a bad name up front
  turns it into a resolution error for that one action instead of a
  created-but-broken label or a provider 400 halfway through a rule.

How:
  Each validator returns ``None`` for an acceptable name or a human-readable
  reason. Adapters call :func:`validate_label_name` first and then add their
  own provider-specific check in ``MailCapability.validate_label_name``.

Interfaces:
  :func:`validate_label_name`, :func:`validate_gmail_label_name`,
  :func:`validate_imap_keyword`, :data:`MAX_LABEL_LENGTH`.
"""
from __future__ import annotations

import re
from typing import Optional

MAX_LABEL_LENGTH = 225

_FORBIDDEN_CHARACTERS = ("\\", "*", "+", "`")

GMAIL_RESERVED_LABELS = frozenset(
    {
        "INBOX",
        "SPAM",
        "TRASH",
        "UNREAD",
        "STARRED",
        "IMPORTANT",
        "SENT",
        "DRAFT",
        "ALL_MAIL",
        "ALLMAIL",
        "PERSONAL",
        "SOCIAL",
        "PROMOTIONS",
        "UPDATES",
        "FORUMS",
        "TRAVEL",
        "FINANCE",
        "CHAT",
        "VOICEMAIL",
        "SCHEDULED",
        "MUTED",
    }
)

# RFC 3501 atom-specials plus the flag prefix.
_IMAP_KEYWORD_RE = re.compile(r"^[^\s(){%*\"\\\]\x00-\x1f\x7f]+$")


def validate_label_name(name: str) -> Optional[str]:
    """Apply the naming rules every provider shares.

    Nested names such as ``"Work/Projects"`` are allowed.
    """

    if not name or not name.strip():
        return "Label name cannot be empty"
    if name != name.strip():
        return "Label name cannot have leading or trailing spaces"
    if len(name) > MAX_LABEL_LENGTH:
        return f"Label name cannot exceed {MAX_LABEL_LENGTH} characters"
    if "  " in name:
        return "Label name cannot contain double spaces"
    for character in _FORBIDDEN_CHARACTERS:
        if character in name:
            return f"Label name cannot contain {character!r}"
    return None


def validate_gmail_label_name(name: str) -> Optional[str]:
    """Shared rules plus Gmail's reserved system label names (case-insensitive).

    ``CATEGORY_*`` names are accepted because they address existing system
    categories rather than creating a clashing user label.
    """

    problem = validate_label_name(name)
    if problem:
        return problem
    if name.upper() in GMAIL_RESERVED_LABELS:
        return f"{name!r} is a reserved Gmail system label"
    return None


def validate_imap_keyword(name: str) -> Optional[str]:
    """Shared rules plus the IMAP keyword atom syntax (no spaces, no ``\\`` prefix)."""

    problem = validate_label_name(name)
    if problem:
        return problem
    if not _IMAP_KEYWORD_RE.match(name):
        return "IMAP keywords cannot contain spaces or any of (){%*\"]"
    return None
