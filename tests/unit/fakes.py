"""In-memory doubles used by the unit tests.

What:
  Provide a recording mailbox, a scripted reasoning capability, a recording
  scheduler and sinks, plus an ``IMAPClient`` stand-in and an SMTP session
  stand-in for the IMAP adapter tests.

Why:
  The engine only talks to capabilities through protocols, so the tests can
  drive every branch (lookups, failures, timeouts, retries) deterministically
  and without network access.

How:
  Every double appends ``(operation, args)`` tuples to a ``calls`` list and
  consults a ``failures`` mapping of operation name to a list of exceptions
  raised one per call, in order.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from inboxrules.config.schema import Rule
from inboxrules.core.email import NormalizedEmail
from inboxrules.core.reasoning import ConditionVerdict, ReasoningError
from inboxrules.mail.capability import Folder, Label, MessageNotFoundError, OutgoingMessage
from inboxrules.mail.labels import validate_label_name


def make_email(**overrides: Any) -> NormalizedEmail:
    """Build a :class:`NormalizedEmail` with sensible defaults."""

    fields: Dict[str, Any] = {
        "id": "m1",
        "thread_id": "t1",
        "from_": "Ann Smith <ann@example.com>",
        "to": ("me@example.com",),
        "subject": "Hello",
        "text_plain": "Just saying hi.",
        "headers": {"message-id": "<m1@example.com>"},
        "internal_date": datetime(2024, 5, 6, 8, 30, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return NormalizedEmail(**fields)


def make_rule(rule_id: str, **overrides: Any) -> Rule:
    """Validate a rule from document-shaped keyword arguments."""

    payload: Dict[str, Any] = {"id": rule_id, "name": rule_id.title()}
    payload.update(overrides)
    return Rule.model_validate(payload)


def raw_email(
    *,
    sender: str = "Ann Smith <ann@example.com>",
    to: str = "me@example.com",
    subject: str = "Hello",
    body: str = "Just saying hi.",
    message_id: str = "<m1@example.com>",
) -> bytes:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message["Message-ID"] = message_id
    message["Date"] = "Mon, 06 May 2024 08:30:00 +0000"
    message.set_content(body)
    return message.as_bytes()


class _Recorder:
    def __init__(self, failures: Optional[Dict[str, List[BaseException]]] = None) -> None:
        self._lock = threading.Lock()
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.failures: Dict[str, List[BaseException]] = failures or {}

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))
            pending = self.failures.get(name)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def called(self, name: str) -> List[Tuple[Any, ...]]:
        with self._lock:
            return [args for op, args in self.calls if op == name]


class FakeMailbox(_Recorder):
    """Recording :class:`~inboxrules.mail.capability.MailCapability`."""

    def __init__(
        self,
        messages: Iterable[NormalizedEmail] = (),
        *,
        labels: Iterable[str] = (),
        folders: Iterable[str] = (),
        failures: Optional[Dict[str, List[BaseException]]] = None,
        latency_s: float = 0.0,
    ) -> None:
        super().__init__(failures)
        self.messages = {message.id: message for message in messages}
        self.labels: Dict[str, Label] = {name: Label(id=f"L-{name}", name=name) for name in labels}
        self.folders: Dict[str, Folder] = {name: Folder(id=f"F-{name}", name=name) for name in folders}
        self.latency_s = latency_s
        self._sent = 0

    def _next_id(self, prefix: str) -> str:
        with self._lock:
            self._sent += 1
            return f"{prefix}-{self._sent}"

    def get_message(self, message_id: str) -> NormalizedEmail:
        self._record("get_message", message_id)
        if message_id not in self.messages:
            raise MessageNotFoundError(message_id)
        return self.messages[message_id]

    def get_thread_messages(self, thread_id: str) -> List[NormalizedEmail]:
        self._record("get_thread_messages", thread_id)
        return [message for message in self.messages.values() if message.thread_id == thread_id]

    def archive_thread(self, thread_id: str) -> None:
        if self.latency_s:
            time.sleep(self.latency_s)
        self._record("archive_thread", thread_id)

    def label_thread(self, thread_id: str, label_id: str) -> None:
        self._record("label_thread", thread_id, label_id)

    def remove_label(self, thread_id: str, label_id: str) -> None:
        self._record("remove_label", thread_id, label_id)

    def move_to_folder(self, thread_id: str, folder_id: str) -> None:
        self._record("move_to_folder", thread_id, folder_id)

    def get_label_by_name(self, name: str) -> Optional[Label]:
        self._record("get_label_by_name", name)
        return self.labels.get(name)

    def create_label(self, name: str) -> Label:
        self._record("create_label", name)
        with self._lock:
            return self.labels.setdefault(name, Label(id=f"L-{name}", name=name))

    def get_folder_by_name(self, name: str) -> Optional[Folder]:
        self._record("get_folder_by_name", name)
        return self.folders.get(name)

    def create_folder(self, name: str) -> Folder:
        self._record("create_folder", name)
        with self._lock:
            return self.folders.setdefault(name, Folder(id=f"F-{name}", name=name))

    def validate_label_name(self, name: str) -> Optional[str]:
        return validate_label_name(name)

    def send_email(self, message: OutgoingMessage) -> str:
        self._record("send_email", message)
        return self._next_id("sent")

    def draft_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        self._record("draft_email", original.id, message)
        return self._next_id("draft")

    def reply_to_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        self._record("reply_to_email", original.id, message)
        return self._next_id("sent")

    def forward_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        self._record("forward_email", original.id, message)
        return self._next_id("sent")

    def bulk_archive_by_sender(self, sender: str) -> Sequence[str]:
        self._record("bulk_archive_by_sender", sender)
        return [f"thread-of-{sender}"]

    def mark_read(self, thread_id: str) -> None:
        self._record("mark_read", thread_id)

    def mark_spam(self, thread_id: str) -> None:
        self._record("mark_spam", thread_id)


Scripted = Union[bool, ConditionVerdict, str, BaseException]


class FakeReasoner(_Recorder):
    """Reasoning capability answering from scripted tables.

    ``conditions`` maps an instruction to a verdict (or an exception to raise);
    unknown instructions do not match. ``fields`` maps an instruction to the
    authored text. ``delay_s`` makes every call slow, to exercise timeouts.
    """

    def __init__(
        self,
        conditions: Optional[Dict[str, Scripted]] = None,
        fields: Optional[Dict[str, Scripted]] = None,
        *,
        delay_s: float = 0.0,
    ) -> None:
        super().__init__()
        self.conditions = conditions or {}
        self.fields = fields or {}
        self.delay_s = delay_s

    def evaluate_condition(self, instruction: str, email: NormalizedEmail) -> Any:
        self._record("evaluate_condition", instruction, email.id)
        if self.delay_s:
            time.sleep(self.delay_s)
        answer = self.conditions.get(instruction, False)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def complete_field(self, instruction: str, email: NormalizedEmail) -> Any:
        self._record("complete_field", instruction, email.id)
        if self.delay_s:
            time.sleep(self.delay_s)
        if instruction not in self.fields:
            raise ReasoningError(f"no scripted completion for {instruction!r}")
        answer = self.fields[instruction]
        if isinstance(answer, BaseException):
            raise answer
        return answer


class RecordingScheduler(_Recorder):
    """Scheduler that only remembers what it was asked to schedule."""

    def __init__(self) -> None:
        super().__init__()
        self.entries: List[Tuple[Any, datetime, NormalizedEmail]] = []

    def schedule_at(self, action: Any, when_utc: datetime, *, email: NormalizedEmail) -> str:
        self._record("schedule_at", action.action_id, when_utc)
        self.entries.append((action, when_utc, email))
        return f"sch-{len(self.entries)}"


class RecordingSinks(_Recorder):
    """Digest sink, thread tracker, and webhook client in one object."""

    def __init__(self, *, status: int = 200, failures: Optional[Dict[str, List[BaseException]]] = None) -> None:
        super().__init__(failures)
        self.status = status

    def add_to_digest(self, email: NormalizedEmail, rule_id: str, summary: Optional[str]) -> None:
        self._record("add_to_digest", email.id, rule_id, summary)

    def track_thread(self, email: NormalizedEmail, rule_id: str) -> None:
        self._record("track_thread", email.thread_id, rule_id)

    def post(self, url: str, payload: Dict[str, Any]) -> int:
        self._record("post", url, payload)
        return self.status


class FakeImapClient(_Recorder):
    """Subset of ``imapclient.IMAPClient`` backed by dictionaries.

    ``folders`` maps a folder name to ``{uid: (raw bytes, flags)}``.
    """

    def __init__(self, folders: Optional[Dict[str, Dict[int, Tuple[bytes, List[bytes]]]]] = None) -> None:
        super().__init__()
        self.folders: Dict[str, Dict[int, Tuple[bytes, List[bytes]]]] = folders or {"INBOX": {}}
        self.selected: Optional[str] = None
        self.appended: List[Tuple[str, bytes, Tuple[Any, ...]]] = []
        self.logged_out = False

    def login(self, username: str, password: str) -> None:
        self._record("login", username)

    def logout(self) -> None:
        self._record("logout")
        self.logged_out = True

    def select_folder(self, folder: str) -> Dict[bytes, Any]:
        self._record("select_folder", folder)
        self.selected = folder
        keywords = {
            flag for _, flags in self.folders.get(folder, {}).values() for flag in flags
            if not flag.startswith(b"\\")
        }
        return {b"FLAGS": (b"\\Seen", b"\\Draft", *sorted(keywords)), b"EXISTS": len(self.folders.get(folder, {}))}

    def folder_exists(self, folder: str) -> bool:
        return folder in self.folders

    def create_folder(self, folder: str) -> None:
        self._record("create_folder", folder)
        self.folders.setdefault(folder, {})

    def _current(self) -> Dict[int, Tuple[bytes, List[bytes]]]:
        assert self.selected is not None, "no folder selected"
        return self.folders[self.selected]

    def search(self, criteria: Any) -> List[int]:
        self._record("search", tuple(criteria))
        messages = self._current()
        if criteria and criteria[0] == "FROM":
            needle = criteria[1].lower()
            return [
                uid for uid, (raw, _) in messages.items()
                if needle in str(message_from_bytes(raw)["From"]).lower()
            ]
        if criteria and criteria[0] == "HEADER":
            name, value = criteria[1], criteria[2]
            return [uid for uid, (raw, _) in messages.items() if message_from_bytes(raw)[name] == value]
        uids = list(messages)
        if criteria and criteria[0] == "UNSEEN":
            uids = [uid for uid in uids if b"\\Seen" not in messages[uid][1]]
        return uids

    def fetch(self, uids: Sequence[int], data: Sequence[str]) -> Dict[int, Dict[bytes, Any]]:
        self._record("fetch", tuple(uids))
        messages = self._current()
        return {
            uid: {
                b"RFC822": messages[uid][0],
                b"RFC822.HEADER": messages[uid][0].split(b"\n\n", 1)[0] + b"\n\n",
                b"FLAGS": tuple(messages[uid][1]),
                b"INTERNALDATE": datetime(2024, 5, 6, 8, 30, tzinfo=timezone.utc),
            }
            for uid in uids
            if uid in messages
        }

    def move(self, uids: Sequence[int], folder: str) -> None:
        self._record("move", tuple(uids), folder)
        messages = self._current()
        destination = self.folders[folder]
        for uid in uids:
            # Servers assign a fresh UID in the destination folder.
            destination[max(destination, default=0) + 1000] = messages.pop(uid)

    def add_flags(self, uids: Sequence[int], flags: Sequence[Any]) -> None:
        self._record("add_flags", tuple(uids), tuple(flags))
        messages = self._current()
        for uid in uids:
            raw, current = messages[uid]
            encoded = [flag.encode() if isinstance(flag, str) else flag for flag in flags]
            messages[uid] = (raw, current + [flag for flag in encoded if flag not in current])

    def remove_flags(self, uids: Sequence[int], flags: Sequence[Any]) -> None:
        self._record("remove_flags", tuple(uids), tuple(flags))
        messages = self._current()
        encoded = {flag.encode() if isinstance(flag, str) else flag for flag in flags}
        for uid in uids:
            raw, current = messages[uid]
            messages[uid] = (raw, [flag for flag in current if flag not in encoded])

    def append(self, folder: str, msg: bytes, flags: Sequence[Any] = (), msg_time: Any = None) -> None:
        self._record("append", folder)
        self.appended.append((folder, msg, tuple(flags)))


class FakeSmtp(_Recorder):
    """Context-managed SMTP session recording sent messages."""

    def __init__(self, failures: Optional[Dict[str, List[BaseException]]] = None) -> None:
        super().__init__(failures)
        self.sent: List[EmailMessage] = []

    def __enter__(self) -> "FakeSmtp":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def send_message(self, message: EmailMessage) -> None:
        self._record("send_message", str(message["To"]))
        self.sent.append(message)
