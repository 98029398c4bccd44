"""Delayed action hand-off.

What:
  Declare the :class:`Scheduler` contract the executor uses for actions with
  ``delay_in_minutes > 0`` and provide two implementations:
  :class:`InMemoryScheduler` for long-running processes and tests, and
  :class:`FileScheduler`, which keeps entries in a YAML file so a later
  ``inboxrules once`` run can execute them.

Why:
  Durable delayed execution is usually the caller's infrastructure (a job
  queue, a cron table). The engine only needs to hand over "run this at that
  time" and expose a callback for when the time comes. Single-pass commands
  still need somewhere to leave the work for the next pass.

How:
  ``schedule_at`` stores the resolved action, the email snapshot, and the due
  time. :meth:`InMemoryScheduler.run_due` pops entries that are due and feeds
  them to ``ActionExecutor.run_scheduled``. :class:`FileScheduler` loads the
  file when created and rewrites it atomically after every change.

Invariants & Safety:
  - The file holds message ids, never the messages themselves; the executor
    fetches the message again before running an entry.
  - A due entry is removed (and the file rewritten) before it runs, so a crash
    mid-run never executes it twice.
"""
from __future__ import annotations

import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

import yaml

from ..config.schema import ActionType
from ..utils.ids import new_schedule_id
from .email import NormalizedEmail
from .errors import InboxRulesError
from .resolver import ResolvedAction

if TYPE_CHECKING:
    from .executor import ActionExecutor, ExecutionResult


class Scheduler(Protocol):
    def schedule_at(self, action: ResolvedAction, when_utc: datetime, *, email: NormalizedEmail) -> str:
        """Persist ``action`` for execution at ``when_utc``; return a schedule id."""


class ScheduleStoreError(InboxRulesError):
    """The schedule file cannot be read or written."""


@dataclass(frozen=True)
class ScheduledEntry:
    schedule_id: str
    action: ResolvedAction
    email: NormalizedEmail
    when_utc: datetime

    def summary(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "email_id": self.email.id,
            "scheduled_for": self.when_utc.isoformat(),
            **self.action.summary(),
        }


class InMemoryScheduler:
    """Process-local scheduler; entries are lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, ScheduledEntry] = {}

    def _save(self) -> None:
        """Called with the lock held after every change."""

    def schedule_at(self, action: ResolvedAction, when_utc: datetime, *, email: NormalizedEmail) -> str:
        entry = ScheduledEntry(new_schedule_id(), action, email, when_utc)
        with self._lock:
            self._entries[entry.schedule_id] = entry
            try:
                self._save()
            except Exception:
                del self._entries[entry.schedule_id]
                raise
        return entry.schedule_id

    def cancel(self, schedule_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(schedule_id, None) is not None
            if removed:
                self._save()
            return removed

    def entries(self) -> List[ScheduledEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda item: item.when_utc)

    def due(self, now: Optional[datetime] = None) -> List[ScheduledEntry]:
        """Remove and return the entries due at ``now``."""

        now = now or datetime.now(timezone.utc)
        with self._lock:
            ready = [entry for entry in self._entries.values() if entry.when_utc <= now]
            for entry in ready:
                del self._entries[entry.schedule_id]
            if ready:
                self._save()
        return sorted(ready, key=lambda item: item.when_utc)

    def run_due(self, executor: "ActionExecutor", now: Optional[datetime] = None) -> List["ExecutionResult"]:
        return [executor.run_scheduled(entry.action, entry.email) for entry in self.due(now)]


def _action_to_dict(action: ResolvedAction) -> Dict[str, Any]:
    data = asdict(action)
    data["type"] = action.type.value
    for name in ("to", "cc", "bcc"):
        data[name] = list(data[name])
    data["ai_fields"] = sorted(action.ai_fields)
    return data


def _action_from_dict(data: Dict[str, Any]) -> ResolvedAction:
    fields = dict(data)
    fields["type"] = ActionType(fields["type"])
    for name in ("to", "cc", "bcc"):
        fields[name] = tuple(fields.get(name) or ())
    fields["ai_fields"] = frozenset(fields.get("ai_fields") or ())
    return ResolvedAction(**fields)


class FileScheduler(InMemoryScheduler):
    """Scheduler persisted to a YAML file.

    Args:
      path: Location of the schedule file; created on the first write.

    Raises:
      ScheduleStoreError: The existing file is unreadable or malformed.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path).expanduser()
        self._entries = self._load()

    def _load(self) -> Dict[str, ScheduledEntry]:
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, yaml.YAMLError) as exc:
            raise ScheduleStoreError(f"cannot read schedule file {self.path}: {exc}") from exc
        if payload is None:
            return {}
        try:
            entries = {}
            for item in payload["entries"]:
                email = NormalizedEmail(id=item["email_id"], thread_id=item["thread_id"], from_="")
                entry = ScheduledEntry(
                    schedule_id=item["schedule_id"],
                    action=_action_from_dict(item["action"]),
                    email=email,
                    when_utc=datetime.fromisoformat(item["when_utc"]),
                )
                entries[entry.schedule_id] = entry
        except (KeyError, TypeError, ValueError) as exc:
            raise ScheduleStoreError(f"malformed schedule file {self.path}: {exc}") from exc
        return entries

    def _save(self) -> None:
        payload = {
            "version": 1,
            "entries": [
                {
                    "schedule_id": entry.schedule_id,
                    "when_utc": entry.when_utc.isoformat(),
                    "email_id": entry.email.id,
                    "thread_id": entry.email.thread_id,
                    "action": _action_to_dict(entry.action),
                }
                for entry in sorted(self._entries.values(), key=lambda item: item.when_utc)
            ],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(self.path.name + ".tmp")
        try:
            staging.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
            os.replace(staging, self.path)
        except OSError as exc:
            raise ScheduleStoreError(f"cannot write schedule file {self.path}: {exc}") from exc
