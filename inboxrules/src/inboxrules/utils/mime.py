"""MIME parsing helpers feeding the normalized email model.

What:
  Turn raw RFC 822 payloads into their header map, bounded plain-text and HTML
  bodies, and attachment descriptors.

Why:
  Provider adapters (IMAP fetches, ``.eml`` files handed to the CLI) deliver
  raw bytes whose structure is outside our control. The engine needs a
  predictable view regardless of multipart layout or declared charsets, and
  must not hold megabytes of body text in memory per rule evaluation.

How:
  Use the ``email`` package's :class:`~email.parser.BytesParser` with the
  default policy, walk the MIME tree once, keep the first ``text/plain`` and
  ``text/html`` leaves that are not attachments, and truncate decoded text on
  encoded byte boundaries.

Interfaces:
  :class:`ParsedMessage`, :class:`AttachmentInfo`, :func:`parse_message`.

Invariants & Safety:
  - Body text is always valid UTF-8; undecodable bytes are dropped.
  - Truncation happens on encoded bytes so multi-byte characters are never
    split.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Dict, List


MAX_BODY_BYTES = 1_000_000
"""Soft upper bound for a decoded body part in bytes."""


@dataclass(frozen=True)
class AttachmentInfo:
    """Name, content type, and size of one attachment part."""

    filename: str
    content_type: str
    size: int


@dataclass
class ParsedMessage:
    """Decomposed RFC 822 message."""

    message: EmailMessage
    headers: Dict[str, str]
    text_plain: str = ""
    text_html: str = ""
    attachments: List[AttachmentInfo] = field(default_factory=list)


def parse_message(raw: bytes) -> ParsedMessage:
    """Parse raw message bytes into a :class:`ParsedMessage`.

    What:
      Produces the parsed :class:`EmailMessage`, a lower-cased header mapping
      (first occurrence wins), truncated text bodies, and attachment metadata.

    How:
      Parses with :class:`BytesParser` and the default policy, then walks the
      leaves once via :func:`_collect_parts`.

    Args:
      raw: Raw message bytes (IMAP ``BODY[]`` or file contents).

    Returns:
      The decomposed message.
    """

    parser = BytesParser(policy=policy.default)
    message = parser.parsebytes(raw)
    headers: Dict[str, str] = {}
    for name, value in message.items():
        headers.setdefault(name.lower(), str(value))
    parsed = ParsedMessage(message=message, headers=headers)
    _collect_parts(message, parsed)
    return parsed


def _collect_parts(message: EmailMessage, parsed: ParsedMessage) -> None:
    for part in message.walk():
        if part.is_multipart():
            continue
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        if disposition == "attachment" or (filename and disposition != "inline"):
            payload = part.get_payload(decode=True) or b""
            parsed.attachments.append(
                AttachmentInfo(
                    filename=filename or "",
                    content_type=part.get_content_type(),
                    size=len(payload),
                )
            )
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and not parsed.text_plain:
            parsed.text_plain = _truncate(_decode_text(part))
        elif content_type == "text/html" and not parsed.text_html:
            parsed.text_html = _truncate(_decode_text(part))


def _decode_text(part: EmailMessage) -> str:
    try:
        payload = part.get_content()
    except (LookupError, UnicodeDecodeError):
        raw = part.get_payload(decode=True) or b""
        return raw.decode("utf-8", errors="ignore")
    if isinstance(payload, bytes):
        return payload.decode(part.get_content_charset("utf-8"), errors="ignore")
    return str(payload)


def _truncate(text: str) -> str:
    """Clamp ``text`` to :data:`MAX_BODY_BYTES` when encoded in UTF-8."""

    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_BODY_BYTES:
        return text
    return encoded[:MAX_BODY_BYTES].decode("utf-8", errors="ignore")
