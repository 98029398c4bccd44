"""Mail capability that records operations instead of performing them.

Used by ``inboxrules dry-run`` to show what a rule set would do to an email
without a mailbox. Lookups find nothing, so every label and folder a rule
names is reported as created; outbound calls return synthetic ids.
"""
from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..core.email import NormalizedEmail
from .capability import Folder, Label, MessageNotFoundError, OutgoingMessage
from .labels import validate_label_name


@dataclass(frozen=True)
class RecordedOperation:
    operation: str
    args: Dict[str, Any] = field(default_factory=dict)


class DryRunMailbox:
    """In-memory stand-in holding the messages it was seeded with."""

    def __init__(self, messages: Sequence[NormalizedEmail] = ()) -> None:
        self._messages = {message.id: message for message in messages}
        self._labels: Dict[str, Label] = {}
        self._folders: Dict[str, Folder] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.operations: List[RecordedOperation] = []

    def _record(self, operation: str, **args: Any) -> None:
        with self._lock:
            self.operations.append(RecordedOperation(operation, args))

    def _next_id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}-{next(self._ids)}"

    def get_message(self, message_id: str) -> NormalizedEmail:
        try:
            return self._messages[message_id]
        except KeyError:
            raise MessageNotFoundError(f"message {message_id} not found") from None

    def get_thread_messages(self, thread_id: str) -> List[NormalizedEmail]:
        return [message for message in self._messages.values() if message.thread_id == thread_id]

    def archive_thread(self, thread_id: str) -> None:
        self._record("archive_thread", thread_id=thread_id)

    def label_thread(self, thread_id: str, label_id: str) -> None:
        self._record("label_thread", thread_id=thread_id, label_id=label_id)

    def remove_label(self, thread_id: str, label_id: str) -> None:
        self._record("remove_label", thread_id=thread_id, label_id=label_id)

    def move_to_folder(self, thread_id: str, folder_id: str) -> None:
        self._record("move_to_folder", thread_id=thread_id, folder_id=folder_id)

    def get_label_by_name(self, name: str) -> Optional[Label]:
        return self._labels.get(name)

    def create_label(self, name: str) -> Label:
        with self._lock:
            label = self._labels.setdefault(name, Label(id=f"label-{len(self._labels) + 1}", name=name))
        self._record("create_label", name=name, label_id=label.id)
        return label

    def get_folder_by_name(self, name: str) -> Optional[Folder]:
        return self._folders.get(name)

    def create_folder(self, name: str) -> Folder:
        with self._lock:
            folder = self._folders.setdefault(name, Folder(id=f"folder-{len(self._folders) + 1}", name=name))
        self._record("create_folder", name=name, folder_id=folder.id)
        return folder

    def validate_label_name(self, name: str) -> Optional[str]:
        return validate_label_name(name)

    def send_email(self, message: OutgoingMessage) -> str:
        self._record("send_email", to=list(message.to))
        return self._next_id("sent")

    def draft_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        self._record("draft_email", email_id=original.id, to=list(message.to))
        return self._next_id("draft")

    def reply_to_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        self._record("reply_to_email", email_id=original.id)
        return self._next_id("sent")

    def forward_email(self, original: NormalizedEmail, message: OutgoingMessage) -> str:
        self._record("forward_email", email_id=original.id, to=list(message.to))
        return self._next_id("sent")

    def bulk_archive_by_sender(self, sender: str) -> Sequence[str]:
        self._record("bulk_archive_by_sender", sender=sender)
        return []

    def mark_read(self, thread_id: str) -> None:
        self._record("mark_read", thread_id=thread_id)

    def mark_spam(self, thread_id: str) -> None:
        self._record("mark_spam", thread_id=thread_id)

    # Side channels, so a dry run records digest, tracking, and webhook actions too.

    def add_to_digest(self, email: NormalizedEmail, rule_id: str, summary: Optional[str]) -> None:
        self._record("add_to_digest", email_id=email.id, rule_id=rule_id)

    def track_thread(self, email: NormalizedEmail, rule_id: str) -> None:
        self._record("track_thread", thread_id=email.thread_id, rule_id=rule_id)

    def post(self, url: str, payload: Dict[str, Any]) -> int:
        self._record("call_webhook", url=url)
        return 200

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [{"operation": op.operation, **op.args} for op in self.operations]
