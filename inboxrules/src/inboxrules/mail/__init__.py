"""Mailbox capability contract and adapters.

Interfaces:
  ``MailCapability`` and the provider error types from :mod:`.capability`,
  ``DryRunMailbox`` and label validation helpers. The IMAP adapter lives in
  :mod:`inboxrules.mail.imap` and is imported explicitly by callers that need
  it.
"""

from .capability import (
    Folder,
    Label,
    MailboxUnavailableError,
    MailCapability,
    MessageNotFoundError,
    OutgoingMessage,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from .dry_run import DryRunMailbox
from .labels import validate_gmail_label_name, validate_imap_keyword, validate_label_name

__all__ = [
    "Folder",
    "Label",
    "MailboxUnavailableError",
    "MailCapability",
    "MessageNotFoundError",
    "OutgoingMessage",
    "PermanentProviderError",
    "ProviderError",
    "TransientProviderError",
    "DryRunMailbox",
    "validate_gmail_label_name",
    "validate_imap_keyword",
    "validate_label_name",
]
