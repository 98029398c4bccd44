"""Substitution of ``{{...}}`` markers in action fields.

A marker names an attribute of the triggering email, for example
``"Re: {{subject}}"`` or ``"Hello {{from_name}}"``. Names are matched
case-insensitively with surrounding whitespace ignored; anything else is
reported back to the caller as unresolved.
"""
from __future__ import annotations

import re
from typing import Dict, List, Mapping, Tuple

from .email import NormalizedEmail

TEMPLATE_PATTERN = re.compile(r"\{\{([\s\S]*?)\}\}")


def email_variables(email: NormalizedEmail) -> Dict[str, str]:
    """Return the substitution table for ``email``."""

    date = email.internal_date.isoformat() if email.internal_date else email.headers.get("date", "")
    return {
        "from": email.from_,
        "from_name": email.sender_name,
        "from_email": email.sender_address,
        "to": ", ".join(email.to),
        "cc": ", ".join(email.cc),
        "subject": email.subject,
        "date": date,
        "thread_id": email.thread_id,
        "message_id": email.message_id_header,
    }


def expand(text: str, variables: Mapping[str, str]) -> Tuple[str, List[str]]:
    """Replace known markers in ``text``.

    Returns:
      The substituted text and the names of markers that were left untouched.
    """

    unresolved: List[str] = []

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1).strip().lower()
        if name in variables:
            return variables[name]
        unresolved.append(match.group(1).strip())
        return match.group(0)

    return TEMPLATE_PATTERN.sub(_replace, text), unresolved
