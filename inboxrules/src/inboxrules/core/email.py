"""inboxrules.core.email

What:
  Define :class:`NormalizedEmail`, the provider-independent, immutable view of
  a message that every engine component reads, plus its attachment record and
  a read-only case-insensitive header mapping.

Why:
  Gmail, Outlook, and IMAP adapters expose messages in very different shapes.
  Evaluating conditions, expanding templates, and building webhook payloads
  against one canonical record keeps provider knowledge out of the engine and
  makes the pipeline trivially testable with hand-built emails.

How:
  A frozen dataclass whose ``__post_init__`` coerces list-like inputs into
  tuples and headers into :class:`HeaderMap`, so an instance cannot be mutated
  after construction. :meth:`NormalizedEmail.from_bytes` builds one from raw
  RFC 822 bytes through :func:`inboxrules.utils.mime.parse_message`.

Interfaces:
  :class:`NormalizedEmail`, :class:`Attachment`, :class:`HeaderMap`.

Invariants & Safety:
  - Instances are immutable for the lifetime of a pipeline run.
  - Header lookups are case-insensitive; the map cannot be modified.
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import formataddr, getaddresses, parseaddr, parsedate_to_datetime
from typing import Any, Iterable, Iterator, Mapping, Optional, Tuple

from ..utils.mime import parse_message

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"[ \t\r\f\v]+")


class HeaderMap(Mapping[str, str]):
    """Read-only header mapping with case-insensitive keys."""

    __slots__ = ("_items",)

    def __init__(self, items: Optional[Mapping[str, str]] = None) -> None:
        self._items = {str(k).lower(): str(v) for k, v in (items or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._items[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"HeaderMap({self._items!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return self._items == {str(k).lower(): v for k, v in other.items()}
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._items.items())))


@dataclass(frozen=True)
class Attachment:
    """Metadata of one attachment; content is never loaded into the model."""

    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0


@dataclass(frozen=True)
class NormalizedEmail:
    """Canonical, immutable representation of one message.

    What:
      Carries identifiers, addresses, subject, bodies, headers, attachments,
      and label/category membership for a single message.

    Why:
      All engine layers depend on this type rather than on provider payloads,
      so adding a backend never touches condition or action code.

    How:
      Sequence fields are normalised to tuples and headers to
      :class:`HeaderMap` during ``__post_init__`` using
      ``object.__setattr__`` (the dataclass is frozen).

    Attributes:
      id: Provider message id.
      thread_id: Provider thread/conversation id.
      from_: Raw ``From`` value, e.g. ``"Ann <ann@example.com>"``.
      to: Recipient addresses.
      cc: Carbon-copy addresses.
      bcc: Blind-copy addresses (known only for sent mail).
      subject: Decoded subject line.
      text_plain: Plain-text body.
      text_html: HTML body.
      headers: Case-insensitive header map.
      attachments: Attachment metadata.
      label_ids: Labels or categories the message currently carries.
      internal_date: Provider receive time, if known.
    """

    id: str
    thread_id: str
    from_: str
    to: Tuple[str, ...] = ()
    cc: Tuple[str, ...] = ()
    bcc: Tuple[str, ...] = ()
    subject: str = ""
    text_plain: str = ""
    text_html: str = ""
    headers: Mapping[str, str] = field(default_factory=HeaderMap)
    attachments: Tuple[Attachment, ...] = ()
    label_ids: Tuple[str, ...] = ()
    internal_date: Optional[datetime] = None

    def __post_init__(self) -> None:
        for name in ("to", "cc", "bcc", "attachments", "label_ids"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = (value,)
            object.__setattr__(self, name, tuple(value or ()))
        if not isinstance(self.headers, HeaderMap):
            object.__setattr__(self, "headers", HeaderMap(self.headers))

    @property
    def sender_name(self) -> str:
        """Display name of the sender, falling back to the address local part."""

        name, address = parseaddr(self.from_)
        if name:
            return name
        return address.split("@", 1)[0] if address else ""

    @property
    def sender_address(self) -> str:
        """Bare sender address in lower case."""

        return parseaddr(self.from_)[1].lower()

    @property
    def is_thread_reply(self) -> bool:
        """Whether the message answers an earlier message of its thread."""

        return bool(self.headers.get("in-reply-to") or self.headers.get("references"))

    @property
    def message_id_header(self) -> str:
        """RFC 822 ``Message-ID`` header value (may be empty)."""

        return self.headers.get("message-id", "")

    @property
    def body_text(self) -> str:
        """Plain-text body, or the HTML body with markup stripped."""

        if self.text_plain:
            return self.text_plain
        if not self.text_html:
            return ""
        stripped = html.unescape(_TAG_RE.sub(" ", self.text_html))
        return _SPACE_RE.sub(" ", stripped).strip()

    def summary(self) -> dict[str, Any]:
        """Return identifiers suitable for structured logging (no content)."""

        return {"email_id": self.id, "thread_id": self.thread_id}

    @classmethod
    def from_bytes(
        cls,
        raw: bytes,
        *,
        id: str,
        thread_id: Optional[str] = None,
        label_ids: Iterable[str] = (),
        internal_date: Optional[datetime] = None,
    ) -> "NormalizedEmail":
        """Build an instance from raw RFC 822 bytes.

        What:
          Parses headers, bodies, and attachments with
          :func:`~inboxrules.utils.mime.parse_message`.

        Args:
          raw: Message bytes.
          id: Provider message id to assign.
          thread_id: Provider thread id; defaults to ``id``.
          label_ids: Labels the provider reports for the message.
          internal_date: Receive time; defaults to the ``Date`` header.

        Returns:
          The normalized email.
        """

        parsed = parse_message(raw)
        headers = parsed.headers
        received = internal_date
        if received is None and headers.get("date"):
            try:
                received = parsedate_to_datetime(headers["date"])
            except (TypeError, ValueError):
                received = None
        return cls(
            id=id,
            thread_id=thread_id or id,
            from_=headers.get("from", ""),
            to=_addresses(parsed.message.get_all("to", [])),
            cc=_addresses(parsed.message.get_all("cc", [])),
            bcc=_addresses(parsed.message.get_all("bcc", [])),
            subject=headers.get("subject", ""),
            text_plain=parsed.text_plain,
            text_html=parsed.text_html,
            headers=headers,
            attachments=tuple(
                Attachment(filename=item.filename, content_type=item.content_type, size=item.size)
                for item in parsed.attachments
            ),
            label_ids=tuple(label_ids),
            internal_date=received,
        )


def _addresses(values: Iterable[Any]) -> Tuple[str, ...]:
    return tuple(
        formataddr((name, address)) for name, address in getaddresses([str(v) for v in values]) if address
    )
