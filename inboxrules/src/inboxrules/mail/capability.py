"""The mail capability contract consumed by the engine.

What:
  Declare :class:`MailCapability`, the structural protocol every mailbox
  backend implements, the small value types exchanged through it, and the
  provider error hierarchy.

Why:
  The engine must work unchanged against label-based and folder-based
  providers. Everything provider-specific (label vs. folder semantics, naming
  rules, thread emulation) lives behind this boundary; the engine never asks
  which provider it talks to.

How:
  A :class:`typing.Protocol` lists the read and mutate operations. Failures
  are reported with exceptions whose type tells the caller whether a retry
  may help: :class:`TransientProviderError` (timeouts, 5xx, rate limits),
  :class:`PermanentProviderError` (permission, invalid argument),
  :class:`MessageNotFoundError`, and the fatal
  :class:`MailboxUnavailableError`.

Interfaces:
  :class:`MailCapability`, :class:`Label`, :class:`Folder`,
  :class:`OutgoingMessage`, :class:`ProviderError` and subclasses.

Invariants & Safety:
  - ``create_label`` and ``create_folder`` are idempotent by name and safe
    under concurrent callers; creating an existing name returns it.
  - Thread-level mutations are idempotent (archiving an archived thread is a
    no-op), which is what makes them eligible for retries.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

from ..core.email import NormalizedEmail


class ProviderError(Exception):
    """Base class for failures reported by a mail capability."""


class TransientProviderError(ProviderError):
    """Retryable failure: timeout, 5xx, rate limit, dropped connection."""


class PermanentProviderError(ProviderError):
    """Non-retryable failure: permission denied, invalid argument, precondition."""


class MessageNotFoundError(PermanentProviderError):
    """The message or thread no longer exists."""


class MailboxUnavailableError(ProviderError):
    """The mailbox cannot be reached at all; aborts the whole pipeline run."""


@dataclass(frozen=True)
class Label:
    """A provider label (or category/keyword) identified by ``id``."""

    id: str
    name: str


@dataclass(frozen=True)
class Folder:
    """A provider folder identified by ``id``."""

    id: str
    name: str


@dataclass(frozen=True)
class OutgoingMessage:
    """Recipients and text of a message to send, draft, reply, or forward."""

    to: Tuple[str, ...] = ()
    cc: Tuple[str, ...] = ()
    bcc: Tuple[str, ...] = ()
    subject: str = ""
    content: str = ""


class MailCapability(Protocol):
    """Operations the engine needs from a mailbox backend.

    What:
      Formalises every provider call made by the resolver and executor so
      alternative implementations (IMAP, dry-run, fakes in tests) type-check.

    Why:
      A structural protocol decouples the engine from concrete clients and
      keeps provider branching inside the implementations.

    How:
      Each method documents its contract; implementations raise the
      :class:`ProviderError` subclasses declared above.
    """

    def get_message(self, message_id: str) -> NormalizedEmail:
        """Return the message, raising :class:`MessageNotFoundError` if gone."""

    def get_thread_messages(self, thread_id: str) -> List[NormalizedEmail]:
        """Return the messages of a thread in chronological order."""

    def archive_thread(self, thread_id: str) -> None:
        """Remove the thread from the inbox."""

    def label_thread(self, thread_id: str, label_id: str) -> None:
        """Attach ``label_id`` to every message of the thread."""

    def remove_label(self, thread_id: str, label_id: str) -> None:
        """Detach ``label_id`` from the thread."""

    def move_to_folder(self, thread_id: str, folder_id: str) -> None:
        """Move the thread into ``folder_id``."""

    def get_label_by_name(self, name: str) -> Optional[Label]:
        """Look a label up by exact name; ``None`` when absent."""

    def create_label(self, name: str) -> Label:
        """Create ``name`` or return the existing label of that name."""

    def get_folder_by_name(self, name: str) -> Optional[Folder]:
        """Look a folder up by exact name; ``None`` when absent."""

    def create_folder(self, name: str) -> Folder:
        """Create ``name`` or return the existing folder of that name."""

    def validate_label_name(self, name: str) -> Optional[str]:
        """Return why ``name`` is not acceptable to this provider, else ``None``."""

    def send_email(self, message: OutgoingMessage) -> str:
        """Send a new message and return its provider id."""

    def draft_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        """Create a draft (a reply draft when recipients are empty); return its id."""

    def reply_to_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        """Send a reply within the original thread; return the sent id."""

    def forward_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        """Forward ``original`` with optional comment; return the sent id."""

    def bulk_archive_by_sender(self, sender: str) -> Sequence[str]:
        """Archive every inbox thread from ``sender``; return the thread ids."""

    def mark_read(self, thread_id: str) -> None:
        """Mark every message of the thread as read."""

    def mark_spam(self, thread_id: str) -> None:
        """Report the thread as spam."""
