"""Folder-based mail capability over IMAP and SMTP.

What:
  Implement :class:`~inboxrules.mail.capability.MailCapability` for plain IMAP
  accounts with ``imapclient`` for mailbox access and :mod:`smtplib` for
  outbound mail.

Why:
  IMAP is the lowest common denominator: every provider speaks it, but it has
  no server-side threads and no labels. This adapter is where those gaps are
  bridged, so the engine never needs to know.

How:
  - All mailbox operations are UID-based. IMAP has no thread ids, so a thread
    id is the message UID (as a string) and thread operations touch that one
    message.
  - Labels are IMAP keywords set with ``STORE +FLAGS``; a keyword exists once
    it is first used, so ``create_label`` only records the name.
  - Archive and spam are moves to the configured folders; folders are created
    on demand, idempotently by name. A moved message is remembered by folder
    and Message-ID so later flag changes in the same session still reach it.
  - Drafts are ``APPEND``-ed to the drafts folder with ``\\Draft``; send,
    reply, and forward go through SMTP.
  - Library errors are mapped onto the provider error hierarchy: dropped
    connections and 4xx SMTP replies are transient, everything else is
    permanent, and a failed login makes the mailbox unavailable.

Interfaces:
  :class:`ImapMailbox`, :func:`compose_reply`, :func:`compose_forward`.

Invariants & Safety:
  - Never operates on sequence numbers.
  - ``create_folder`` returns the existing folder when another caller created
    it first.
"""
from __future__ import annotations

import contextlib
import os
import smtplib
import threading
from email import message_from_bytes
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from imapclient import DRAFT, SEEN, IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from ..config.schema import ImapSettings, SmtpSettings
from ..core.email import NormalizedEmail
from ..utils.logging import JsonLogger, get_logger
from .capability import (
    Folder,
    Label,
    MailboxUnavailableError,
    MessageNotFoundError,
    OutgoingMessage,
    PermanentProviderError,
    TransientProviderError,
)
from .labels import validate_imap_keyword

SmtpFactory = Callable[[], Any]


def _reply_subject(subject: str, prefix: str) -> str:
    if subject.lower().startswith(prefix.lower()):
        return subject
    return f"{prefix} {subject}".strip()


def compose_reply(original: NormalizedEmail, message: OutgoingMessage, *, sender: str) -> EmailMessage:
    """Build a reply to ``original`` threaded with ``In-Reply-To``/``References``."""

    reply_to = original.headers.get("reply-to") or original.from_
    out = EmailMessage()
    out["From"] = sender
    out["To"] = ", ".join(message.to) if message.to else reply_to
    if message.cc:
        out["Cc"] = ", ".join(message.cc)
    if message.bcc:
        out["Bcc"] = ", ".join(message.bcc)
    out["Subject"] = message.subject or _reply_subject(original.subject, "Re:")
    out["Date"] = formatdate(localtime=False)
    out["Message-ID"] = make_msgid()
    if original.message_id_header:
        out["In-Reply-To"] = original.message_id_header
        references = original.headers.get("references", "")
        out["References"] = f"{references} {original.message_id_header}".strip()
    out.set_content(message.content)
    return out


def compose_forward(original: NormalizedEmail, message: OutgoingMessage, *, sender: str) -> EmailMessage:
    """Build a forward of ``original`` with an optional leading comment."""

    out = EmailMessage()
    out["From"] = sender
    out["To"] = ", ".join(message.to)
    if message.cc:
        out["Cc"] = ", ".join(message.cc)
    if message.bcc:
        out["Bcc"] = ", ".join(message.bcc)
    out["Subject"] = message.subject or _reply_subject(original.subject, "Fwd:")
    out["Date"] = formatdate(localtime=False)
    out["Message-ID"] = make_msgid()
    quoted = "\n".join(
        [
            "---------- Forwarded message ---------",
            f"From: {original.from_}",
            f"Subject: {original.subject}",
            f"To: {', '.join(original.to)}",
            "",
            original.body_text,
        ]
    )
    out.set_content(f"{message.content}\n\n{quoted}" if message.content else quoted)
    return out


def compose_new(message: OutgoingMessage, *, sender: str) -> EmailMessage:
    out = EmailMessage()
    out["From"] = sender
    out["To"] = ", ".join(message.to)
    if message.cc:
        out["Cc"] = ", ".join(message.cc)
    if message.bcc:
        out["Bcc"] = ", ".join(message.bcc)
    out["Subject"] = message.subject
    out["Date"] = formatdate(localtime=False)
    out["Message-ID"] = make_msgid()
    out.set_content(message.content)
    return out


class ImapMailbox:
    """Mail capability for an IMAP account with an SMTP relay.

    What:
      Owns one ``IMAPClient`` connection (opened lazily) and sends outbound
      mail through short-lived SMTP sessions.

    Why:
      Keeps every IMAP/SMTP quirk behind the capability protocol.

    How:
      Each public method runs inside :meth:`_errors`, which translates
      library exceptions into provider errors. A lock serialises use of the
      single IMAP connection, which is not thread-safe.

    Args:
      settings: IMAP connection and folder layout.
      smtp: SMTP relay settings; required for send, reply, and forward.
      password: IMAP password; read from ``settings.password_env`` if omitted.
      client: Pre-built ``IMAPClient`` (tests inject a fake).
      smtp_factory: Returns a connected SMTP session; defaults to
        :mod:`smtplib` according to ``smtp``.
      logger: Structured logger.
    """

    def __init__(
        self,
        settings: ImapSettings,
        *,
        smtp: Optional[SmtpSettings] = None,
        password: Optional[str] = None,
        client: Optional[Any] = None,
        smtp_factory: Optional[SmtpFactory] = None,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        self._settings = settings
        self._smtp = smtp
        self._password = password
        self._client = client
        self._smtp_factory = smtp_factory
        self._logger = logger or get_logger("inboxrules.imap")
        self._lock = threading.RLock()
        self._keywords: Set[str] = set()
        self._selected: Optional[str] = None
        self._relocated: Dict[str, Tuple[str, str]] = {}

    # Connection -----------------------------------------------------------------

    def connect(self) -> Any:
        """Open and authenticate the IMAP connection if needed."""

        if self._client is not None:
            return self._client
        password = self._password or os.environ.get(self._settings.password_env, "")
        try:
            client = IMAPClient(self._settings.host, port=self._settings.port, ssl=self._settings.ssl)
            client.login(self._settings.username, password)
        except LoginError as exc:
            raise MailboxUnavailableError(f"IMAP login failed for {self._settings.username}") from exc
        except (OSError, IMAPClientError) as exc:
            raise MailboxUnavailableError(f"cannot reach IMAP server {self._settings.host}: {exc}") from exc
        self._client = client
        return client

    def close(self) -> None:
        if self._client is None:
            return
        try:
            self._client.logout()
        except (OSError, IMAPClientError) as exc:
            self._logger.warning("imap_logout_failed", error=str(exc))
        finally:
            self._client = None
            self._selected = None

    def __enter__(self) -> "ImapMailbox":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextlib.contextmanager
    def _errors(self, operation: str) -> Iterator[Any]:
        with self._lock:
            client = self.connect()
            try:
                yield client
            except (MessageNotFoundError, PermanentProviderError, TransientProviderError):
                raise
            except (IMAPClientAbortError, TimeoutError, ConnectionError) as exc:
                self._client = None
                self._selected = None
                raise TransientProviderError(f"{operation}: {exc}") from exc
            except IMAPClientError as exc:
                raise PermanentProviderError(f"{operation}: {exc}") from exc

    def _select(self, client: Any, folder: str) -> None:
        if self._selected == folder:
            return
        response = client.select_folder(folder)
        for flag in response.get(b"FLAGS", ()):
            name = flag.decode() if isinstance(flag, bytes) else str(flag)
            if not name.startswith("\\"):
                self._keywords.add(name)
        self._selected = folder

    def _ensure_folder(self, client: Any, name: str) -> str:
        if not client.folder_exists(name):
            try:
                client.create_folder(name)
            except IMAPClientError:
                if not client.folder_exists(name):
                    raise
        return name

    @staticmethod
    def _uid(message_id: str) -> int:
        try:
            return int(message_id)
        except ValueError as exc:
            raise MessageNotFoundError(f"invalid IMAP UID {message_id!r}") from exc

    # Reads ------------------------------------------------------------------------

    def get_message(self, message_id: str) -> NormalizedEmail:
        uid = self._uid(message_id)
        with self._errors("get_message") as client:
            self._select(client, self._settings.mailbox)
            response = client.fetch([uid], ["RFC822", "FLAGS", "INTERNALDATE"])
        data = response.get(uid)
        if not data or b"RFC822" not in data:
            raise MessageNotFoundError(f"message {message_id} not found in {self._settings.mailbox}")
        keywords = [
            flag.decode() if isinstance(flag, bytes) else str(flag)
            for flag in data.get(b"FLAGS", ())
        ]
        return NormalizedEmail.from_bytes(
            data[b"RFC822"],
            id=message_id,
            thread_id=message_id,
            label_ids=[flag for flag in keywords if not flag.startswith("\\")],
            internal_date=data.get(b"INTERNALDATE"),
        )

    def get_thread_messages(self, thread_id: str) -> List[NormalizedEmail]:
        return [self.get_message(thread_id)]

    def list_message_ids(
        self, *, since_uid: Optional[int] = None, unseen_only: bool = True, limit: int = 50
    ) -> List[str]:
        """UIDs of inbox messages to triage, oldest first, at most ``limit``."""

        criteria: List[Any] = ["UNSEEN"] if unseen_only else ["ALL"]
        if since_uid is not None:
            criteria += ["UID", f"{since_uid + 1}:*"]
        with self._errors("list_message_ids") as client:
            self._select(client, self._settings.mailbox)
            uids = sorted(int(uid) for uid in client.search(criteria))
        if since_uid is not None:
            uids = [uid for uid in uids if uid > since_uid]
        return [str(uid) for uid in uids[:limit]]

    # Thread mutations -------------------------------------------------------------

    def archive_thread(self, thread_id: str) -> None:
        self._move(thread_id, self._settings.archive_folder, "archive_thread")

    def mark_spam(self, thread_id: str) -> None:
        self._move(thread_id, self._settings.spam_folder, "mark_spam")

    def move_to_folder(self, thread_id: str, folder_id: str) -> None:
        self._move(thread_id, folder_id, "move_to_folder")

    def _move(self, thread_id: str, folder: str, operation: str) -> None:
        with self._errors(operation) as client:
            destination = self._ensure_folder(client, folder)
            uid = self._locate(client, thread_id)
            header = client.fetch([uid], ["RFC822.HEADER"]).get(uid, {}).get(b"RFC822.HEADER", b"")
            client.move([uid], destination)
            message_id = message_from_bytes(header).get("Message-ID")
            if message_id:
                self._relocated[thread_id] = (destination, str(message_id).strip())

    def _locate(self, client: Any, thread_id: str) -> int:
        """Select the folder holding ``thread_id`` and return its current UID.

        A message moved earlier in this session gets a new UID in its new
        folder; it is found again by Message-ID.
        """

        uid = self._uid(thread_id)
        if thread_id not in self._relocated:
            self._select(client, self._settings.mailbox)
            return uid
        folder, message_id = self._relocated[thread_id]
        self._select(client, folder)
        found = client.search(["HEADER", "Message-ID", message_id])
        if not found:
            raise MessageNotFoundError(f"message {thread_id} is no longer in {folder}")
        return int(found[0])

    def label_thread(self, thread_id: str, label_id: str) -> None:
        with self._errors("label_thread") as client:
            client.add_flags([self._locate(client, thread_id)], [label_id])
            self._keywords.add(label_id)

    def remove_label(self, thread_id: str, label_id: str) -> None:
        with self._errors("remove_label") as client:
            client.remove_flags([self._locate(client, thread_id)], [label_id])

    def mark_read(self, thread_id: str) -> None:
        with self._errors("mark_read") as client:
            client.add_flags([self._locate(client, thread_id)], [SEEN])

    def bulk_archive_by_sender(self, sender: str) -> Sequence[str]:
        with self._errors("bulk_archive_by_sender") as client:
            destination = self._ensure_folder(client, self._settings.archive_folder)
            self._select(client, self._settings.mailbox)
            uids = list(client.search(["FROM", sender]))
            if uids:
                client.move(uids, destination)
        return [str(uid) for uid in uids]

    # Labels and folders -------------------------------------------------------------

    def validate_label_name(self, name: str) -> Optional[str]:
        return validate_imap_keyword(name)

    def get_label_by_name(self, name: str) -> Optional[Label]:
        with self._errors("get_label_by_name") as client:
            self._select(client, self._settings.mailbox)
        if name in self._keywords:
            return Label(id=name, name=name)
        return None

    def create_label(self, name: str) -> Label:
        with self._lock:
            self._keywords.add(name)
        return Label(id=name, name=name)

    def get_folder_by_name(self, name: str) -> Optional[Folder]:
        with self._errors("get_folder_by_name") as client:
            exists = client.folder_exists(name)
        return Folder(id=name, name=name) if exists else None

    def create_folder(self, name: str) -> Folder:
        with self._errors("create_folder") as client:
            self._ensure_folder(client, name)
        self._logger.info("imap_folder_ready", folder=name)
        return Folder(id=name, name=name)

    # Outbound -------------------------------------------------------------------

    @property
    def sender(self) -> str:
        if self._smtp is not None:
            return self._smtp.from_address
        return self._settings.username

    def draft_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        draft = compose_reply(original, message, sender=self.sender)
        with self._errors("draft_email") as client:
            folder = self._ensure_folder(client, self._settings.drafts_folder)
            client.append(folder, draft.as_bytes(), flags=[DRAFT])
        return str(draft["Message-ID"])

    def reply_to_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        return self._deliver(compose_reply(original, message, sender=self.sender))

    def forward_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        return self._deliver(compose_forward(original, message, sender=self.sender))

    def send_email(self, message: OutgoingMessage) -> str:
        return self._deliver(compose_new(message, sender=self.sender))

    def _open_smtp(self) -> Any:
        if self._smtp_factory is not None:
            return self._smtp_factory()
        if self._smtp is None:
            raise PermanentProviderError("no SMTP relay is configured for outbound mail")
        settings = self._smtp
        if settings.ssl:
            session: smtplib.SMTP = smtplib.SMTP_SSL(settings.host, settings.port)
        else:
            session = smtplib.SMTP(settings.host, settings.port)
            if settings.starttls:
                session.starttls()
        password = os.environ.get(settings.password_env, "")
        if password:
            session.login(settings.username, password)
        return session

    def _deliver(self, message: EmailMessage) -> str:
        try:
            with self._open_smtp() as session:
                session.send_message(message)
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                raise TransientProviderError(f"SMTP {exc.smtp_code}: {exc.smtp_error!r}") from exc
            raise PermanentProviderError(f"SMTP {exc.smtp_code}: {exc.smtp_error!r}") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentProviderError(f"SMTP refused recipients {sorted(exc.recipients)}") from exc
        except smtplib.SMTPServerDisconnected as exc:
            raise TransientProviderError(f"SMTP delivery failed: {exc}") from exc
        except smtplib.SMTPException as exc:
            raise PermanentProviderError(f"SMTP delivery failed: {exc}") from exc
        except OSError as exc:
            raise TransientProviderError(f"SMTP delivery failed: {exc}") from exc
        self._logger.info("smtp_sent", message_id=str(message["Message-ID"]))
        return str(message["Message-ID"])
