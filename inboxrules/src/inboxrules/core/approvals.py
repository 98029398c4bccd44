"""inboxrules.core.approvals

What:
  Hold resolved actions that need a human decision and record that decision
  exactly once.

Why:
  An approval link can be clicked twice, or approved in one tab and denied in
  another. The gate is the single place that serialises those decisions so a
  gated email is never sent twice and a denied one is never sent at all.

How:
  Pending approvals live in a dictionary guarded by a lock. :meth:`decide`
  swaps the stored record for a decided copy inside the lock, so exactly one
  caller observes the ``pending -> approved|denied`` transition; everyone else
  gets :class:`~inboxrules.core.errors.ApprovalConflictError`. Only the
  newest ``max_decided`` decided records are kept; pending ones never expire.

Interfaces:
  :class:`ApprovalStatus`, :class:`PendingApproval`, :class:`ApprovalGate`.

Invariants & Safety:
  - Records are immutable snapshots; the stored action and email cannot be
    edited after the approval is created.
  - ``denied`` is terminal. ``approved`` is terminal once the action ran;
    :meth:`ApprovalGate.reopen` returns it to ``pending`` when the action
    could not be attempted at all.
"""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Union

from ..utils.ids import new_approval_id
from ..utils.logging import JsonLogger, get_logger
from .email import NormalizedEmail
from .errors import ApprovalConflictError
from .resolver import ResolvedAction


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


Decision = Union[ApprovalStatus, str, bool]


def _coerce_decision(decision: Decision) -> ApprovalStatus:
    if isinstance(decision, bool):
        return ApprovalStatus.APPROVED if decision else ApprovalStatus.DENIED
    status = ApprovalStatus(decision)
    if status is ApprovalStatus.PENDING:
        raise ValueError("a decision must be 'approved' or 'denied'")
    return status


@dataclass(frozen=True)
class PendingApproval:
    """Snapshot of an action awaiting (or having received) a decision."""

    approval_id: str
    action: ResolvedAction
    email: NormalizedEmail
    status: ApprovalStatus
    created_at: datetime
    decided_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status is ApprovalStatus.PENDING


class ApprovalGate:
    """In-memory, thread-safe approval registry.

    Args:
      logger: Structured logger; defaults to ``inboxrules.approvals``.
      clock: Returns the current UTC time; injectable for tests.
      max_decided: How many decided records to remember for conflict
        reporting and :meth:`get`.
    """

    def __init__(
        self,
        *,
        max_decided: int = 1000,
        logger: Optional[JsonLogger] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, PendingApproval] = {}
        self._decided: Deque[str] = deque()
        self._max_decided = max_decided
        self._logger = logger or get_logger("inboxrules.approvals")
        self._clock = clock

    def create(self, action: ResolvedAction, email: NormalizedEmail) -> str:
        """Register ``action`` for approval and return its approval id."""

        record = PendingApproval(
            approval_id=new_approval_id(),
            action=action,
            email=email,
            status=ApprovalStatus.PENDING,
            created_at=self._clock(),
        )
        with self._lock:
            self._items[record.approval_id] = record
        self._logger.info("approval_requested", approval_id=record.approval_id, **action.summary())
        return record.approval_id

    def decide(self, approval_id: str, decision: Decision) -> PendingApproval:
        """Record a decision for a pending approval.

        Args:
          approval_id: Id returned by :meth:`create`.
          decision: ``"approved"``/``"denied"``, an :class:`ApprovalStatus`, or
            a boolean (``True`` approves).

        Returns:
          The decided record.

        Raises:
          ApprovalConflictError: The id is unknown or already decided.
        """

        status = _coerce_decision(decision)
        with self._lock:
            current = self._items.get(approval_id)
            if current is None:
                raise ApprovalConflictError(
                    f"approval {approval_id!r} does not exist", approval_id=approval_id
                )
            if not current.is_pending:
                raise ApprovalConflictError(
                    f"approval {approval_id!r} was already {current.status.value}",
                    approval_id=approval_id,
                )
            decided = replace(current, status=status, decided_at=self._clock())
            self._items[approval_id] = decided
            self._decided.append(approval_id)
            while len(self._decided) > self._max_decided:
                self._items.pop(self._decided.popleft(), None)
        self._logger.info("approval_decided", approval_id=approval_id, status=status.value)
        return decided

    def get(self, approval_id: str) -> Optional[PendingApproval]:
        with self._lock:
            return self._items.get(approval_id)

    def pending(self) -> List[PendingApproval]:
        """Undecided approvals, oldest first."""

        with self._lock:
            items = [item for item in self._items.values() if item.is_pending]
        return sorted(items, key=lambda item: item.created_at)

    def reopen(self, approval_id: str) -> PendingApproval:
        """Return an approved record to ``pending`` so it can be decided again.

        Used when the approved action never reached the mailbox.

        Raises:
          ApprovalConflictError: The id is unknown or not approved.
        """

        with self._lock:
            current = self._items.get(approval_id)
            if current is None or current.status is not ApprovalStatus.APPROVED:
                raise ApprovalConflictError(
                    f"approval {approval_id!r} is not approved", approval_id=approval_id
                )
            reopened = replace(current, status=ApprovalStatus.PENDING, decided_at=None)
            self._items[approval_id] = reopened
            self._decided.remove(approval_id)
        self._logger.warning("approval_reopened", approval_id=approval_id)
        return reopened
