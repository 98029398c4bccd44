"""inboxrules.core.executor

What:
  Run resolved actions against the mailbox and side-channel sinks, producing
  one :class:`ExecutionResult` per input action, in input order.

Why:
  A rule's actions must not be all-or-nothing: a failed label should not stop
  the archive that follows it. At the same time risky actions must pause for
  approval, delayed actions must be handed to the scheduler, and nothing that
  sends mail may be silently repeated.

How:
  - Each action first passes the policy: ``block`` and ``require_approval``
    short-circuit into ``blocked`` and ``requires_approval`` results (the
    latter registered with the :class:`~inboxrules.core.approvals.ApprovalGate`).
  - Allowed actions with ``delay_in_minutes > 0`` go to
    :meth:`Scheduler.schedule_at`; the rest run immediately, sequentially or
    on a small pool (``engine.max_parallel_actions``).
  - Every provider call runs under ``engine.provider_timeout_s``. Idempotent
    thread mutations are retried on transient provider errors with
    exponential backoff; outbound mail, webhooks, and sinks are attempted
    once.
  - :meth:`ActionExecutor._dispatch` maps each action type onto the mailbox
    protocol, mirroring a plain ``if`` chain per type.

Interfaces:
  :class:`Outcome`, :class:`ExecutionResult`, :class:`DigestSink`,
  :class:`ThreadTracker`, :class:`ActionExecutor`.

Invariants & Safety:
  - Exactly one result per input action; only
    :class:`~inboxrules.mail.capability.MailboxUnavailableError` escapes.
  - Once ``cancel`` is set no further action starts; unstarted actions are
    reported as failed with ``cancelled``.
  - An approved action executes at most once because the gate only lets one
    decision through.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union

from ..config.schema import ActionType, EngineSettings, RetrySettings
from ..mail.capability import (
    MailboxUnavailableError,
    MailCapability,
    MessageNotFoundError,
    OutgoingMessage,
    TransientProviderError,
)
from ..utils.backoff import retry
from ..utils.deadline import DeadlineExceeded, call_with_timeout
from ..utils.logging import JsonLogger, get_logger
from .approvals import ApprovalGate, ApprovalStatus, Decision
from .batch import BatchItemResult, run_in_batches
from .email import NormalizedEmail
from .errors import ExecutionError, ResolutionError
from .policy import Policy, PolicyVerdict, allow_all
from .resolver import ResolvedAction
from .scheduling import Scheduler
from .webhook import WebhookClient, webhook_payload

IDEMPOTENT_TYPES = frozenset(
    {
        ActionType.ARCHIVE,
        ActionType.LABEL,
        ActionType.MOVE_FOLDER,
        ActionType.MARK_READ,
        ActionType.MARK_SPAM,
    }
)

CANCELLED = "cancelled"


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_APPROVAL = "requires_approval"
    SCHEDULED = "scheduled"
    BLOCKED = "blocked"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal outcome of one action.

    Attributes:
      action_id: Id of the action the result belongs to.
      rule_id: Rule that produced the action.
      action_type: Type of the action, ``None`` if it never resolved to a type.
      outcome: What happened.
      approval_id: Set when the action waits for approval.
      schedule_id: Set when the action was handed to the scheduler.
      scheduled_for: Due time of a scheduled action.
      reason: Why the action was blocked, skipped, or gated.
      error: Failure description.
      provider_id: Id returned by the provider (sent or drafted message).
    """

    action_id: str
    rule_id: str
    action_type: Optional[ActionType]
    outcome: Outcome
    approval_id: Optional[str] = None
    schedule_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    provider_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED

    @property
    def requires_approval(self) -> bool:
        return self.outcome is Outcome.REQUIRES_APPROVAL

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action_id": self.action_id,
            "rule_id": self.rule_id,
            "action_type": self.action_type.value if self.action_type else None,
            "outcome": self.outcome.value,
            "success": self.success,
            "requires_approval": self.requires_approval,
        }
        for name in ("approval_id", "schedule_id", "reason", "error", "provider_id"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.scheduled_for is not None:
            data["scheduled_for"] = self.scheduled_for.isoformat()
        return data


def _result(action: ResolvedAction, outcome: Outcome, **fields: Any) -> ExecutionResult:
    return ExecutionResult(action.action_id, action.rule_id, action.type, outcome, **fields)


def _resolution_failure(error: ResolutionError) -> ExecutionResult:
    action_type = ActionType(error.action_type) if error.action_type else None
    return ExecutionResult(
        action_id=error.action_id or "",
        rule_id=error.rule_id or "",
        action_type=action_type,
        outcome=Outcome.FAILED,
        error=str(error),
    )


class DigestSink(Protocol):
    def add_to_digest(self, email: NormalizedEmail, rule_id: str, summary: Optional[str]) -> None:
        """Queue ``email`` for the account's next digest."""


class ThreadTracker(Protocol):
    def track_thread(self, email: NormalizedEmail, rule_id: str) -> None:
        """Watch the thread of ``email`` for follow-ups."""


class ActionExecutor:
    """Execute resolved actions with isolation, gating, and scheduling.

    Args:
      mailbox: Mail capability the actions run against.
      approvals: Gate used for actions the policy gates; without one, gated
        actions are blocked.
      scheduler: Receives delayed actions; without one, delayed actions fail.
      webhook: Client for ``call_webhook`` actions.
      digest: Sink for ``digest`` actions.
      tracker: Sink for ``track_thread`` actions.
      settings: Timeouts, parallelism, and batch width.
      retry: Backoff parameters for idempotent actions.
      logger: Structured logger.
      clock: Current UTC time; injectable for tests.
      sleep: Sleep used between retries; injectable for tests.
    """

    def __init__(
        self,
        mailbox: MailCapability,
        *,
        approvals: Optional[ApprovalGate] = None,
        scheduler: Optional[Scheduler] = None,
        webhook: Optional[WebhookClient] = None,
        digest: Optional[DigestSink] = None,
        tracker: Optional[ThreadTracker] = None,
        settings: Optional[EngineSettings] = None,
        retry: Optional[RetrySettings] = None,
        logger: Optional[JsonLogger] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._mailbox = mailbox
        self._approvals = approvals
        self._scheduler = scheduler
        self._webhook = webhook
        self._digest = digest
        self._tracker = tracker
        self._settings = settings or EngineSettings()
        self._retry = retry or RetrySettings()
        self._logger = logger or get_logger("inboxrules.executor")
        self._clock = clock
        self._sleep = sleep

    # Rule actions ------------------------------------------------------------

    def execute(
        self,
        actions: Sequence[Union[ResolvedAction, ResolutionError]],
        email: NormalizedEmail,
        policy: Optional[Policy] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> List[ExecutionResult]:
        """Execute a rule's actions.

        What:
          Applies policy, approval, scheduling, and immediate execution to each
          action.

        Args:
          actions: Resolved actions; :class:`ResolutionError` entries are
            reported as failed in place.
          email: The triggering email.
          policy: Approval policy; every action is allowed when omitted.
          cancel: Event that stops further actions from starting.

        Returns:
          One result per input action, in input order.

        Raises:
          MailboxUnavailableError: The mailbox cannot be reached at all.
        """

        policy = policy or allow_all
        results: List[Optional[ExecutionResult]] = [None] * len(actions)
        immediate: List[tuple[int, ResolvedAction]] = []
        for index, item in enumerate(actions):
            if isinstance(item, ResolutionError):
                results[index] = _resolution_failure(item)
                continue
            if cancel is not None and cancel.is_set():
                results[index] = _result(item, Outcome.FAILED, error=CANCELLED)
                continue
            gated = self._apply_policy(policy, item, email)
            if gated is not None:
                results[index] = gated
            elif item.is_delayed:
                results[index] = self._schedule(item, email)
            else:
                immediate.append((index, item))

        workers = min(self._settings.max_parallel_actions, len(immediate))
        if workers <= 1:
            for index, item in immediate:
                results[index] = self._run_unless_cancelled(item, email, cancel)
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    index: pool.submit(self._run_unless_cancelled, item, email, cancel)
                    for index, item in immediate
                }
                for index, future in futures.items():
                    results[index] = future.result()

        return [result for result in results if result is not None]

    def run_scheduled(self, action: ResolvedAction, email: NormalizedEmail) -> ExecutionResult:
        """Scheduler callback: execute a delayed action now.

        The message is fetched again first; if it no longer exists the action
        is reported as skipped instead of failed.
        """

        try:
            current = call_with_timeout(
                self._mailbox.get_message, email.id, timeout_s=self._settings.provider_timeout_s
            )
        except MessageNotFoundError:
            self._logger.info("scheduled_action_skipped", reason="message_missing", **action.summary())
            return _result(action, Outcome.SKIPPED, reason="message no longer exists")
        except MailboxUnavailableError:
            raise
        except Exception as exc:
            self._logger.error("scheduled_action_failed", error=str(exc), **action.summary())
            return _result(action, Outcome.FAILED, error=str(exc))
        return self._run(action, current)

    def apply_decision(self, approval_id: str, decision: Decision) -> ExecutionResult:
        """Record a decision and, when approved, run the stored action once.

        The gate claims the decision before the action runs, so concurrent
        approvals cannot both execute it. When the mailbox turns out to be
        unreachable the approval is reopened, and deciding it again retries.

        Raises:
          ApprovalConflictError: The approval is unknown or already decided.
          ExecutionError: No approval gate is configured.
          MailboxUnavailableError: The mailbox could not be reached; the
            approval is pending again.
        """

        if self._approvals is None:
            raise ExecutionError("no approval gate is configured")
        record = self._approvals.decide(approval_id, decision)
        action = record.action
        if record.status is ApprovalStatus.DENIED:
            return _result(action, Outcome.SKIPPED, approval_id=approval_id, reason="approval denied")
        if action.is_delayed:
            result = self._schedule(action, record.email)
        else:
            try:
                result = self._run(action, record.email)
            except MailboxUnavailableError:
                self._approvals.reopen(approval_id)
                raise
        return replace(result, approval_id=approval_id)

    # Bulk thread operations ----------------------------------------------------

    def bulk_archive(
        self, thread_ids: Sequence[str], *, cancel: Optional[threading.Event] = None
    ) -> List[BatchItemResult[str]]:
        return run_in_batches(
            thread_ids,
            lambda thread_id: self._with_retry(self._mailbox.archive_thread, thread_id),
            width=self._settings.batch_width,
            cancel=cancel,
        )

    def bulk_mark_read(
        self, thread_ids: Sequence[str], *, cancel: Optional[threading.Event] = None
    ) -> List[BatchItemResult[str]]:
        return run_in_batches(
            thread_ids,
            lambda thread_id: self._with_retry(self._mailbox.mark_read, thread_id),
            width=self._settings.batch_width,
            cancel=cancel,
        )

    def bulk_archive_senders(
        self, senders: Sequence[str], *, cancel: Optional[threading.Event] = None
    ) -> List[BatchItemResult[str]]:
        return run_in_batches(
            senders,
            lambda sender: self._with_retry(self._mailbox.bulk_archive_by_sender, sender),
            width=self._settings.batch_width,
            cancel=cancel,
        )

    # Internals -----------------------------------------------------------------

    def _apply_policy(
        self, policy: Policy, action: ResolvedAction, email: NormalizedEmail
    ) -> Optional[ExecutionResult]:
        try:
            decision = policy(action, email)
        except Exception as exc:
            self._logger.error("policy_failed", error=str(exc), **action.summary())
            return _result(action, Outcome.FAILED, error=f"policy failed: {exc}")
        if decision.verdict is PolicyVerdict.BLOCK:
            self._logger.info("action_blocked", reason=decision.reason, **action.summary())
            return _result(action, Outcome.BLOCKED, reason=decision.reason)
        if decision.verdict is PolicyVerdict.REQUIRE_APPROVAL:
            if self._approvals is None:
                return _result(
                    action, Outcome.BLOCKED, reason="approval required but no approval gate is configured"
                )
            approval_id = self._approvals.create(action, email)
            return _result(
                action, Outcome.REQUIRES_APPROVAL, approval_id=approval_id, reason=decision.reason
            )
        return None

    def _schedule(self, action: ResolvedAction, email: NormalizedEmail) -> ExecutionResult:
        if self._scheduler is None:
            return _result(action, Outcome.FAILED, error="delayed action but no scheduler is configured")
        when = self._clock() + timedelta(minutes=action.delay_in_minutes or 0)
        try:
            schedule_id = self._scheduler.schedule_at(action, when, email=email)
        except Exception as exc:
            self._logger.error("schedule_failed", error=str(exc), **action.summary())
            return _result(action, Outcome.FAILED, error=f"scheduling failed: {exc}")
        self._logger.info("action_scheduled", schedule_id=schedule_id, when=when, **action.summary())
        return _result(action, Outcome.SCHEDULED, schedule_id=schedule_id, scheduled_for=when)

    def _run_unless_cancelled(
        self, action: ResolvedAction, email: NormalizedEmail, cancel: Optional[threading.Event]
    ) -> ExecutionResult:
        if cancel is not None and cancel.is_set():
            return _result(action, Outcome.FAILED, error=CANCELLED)
        return self._run(action, email)

    def _run(self, action: ResolvedAction, email: NormalizedEmail) -> ExecutionResult:
        try:
            if action.type in IDEMPOTENT_TYPES:
                provider_id = self._with_retry(self._dispatch, action, email)
            else:
                provider_id = self._guarded(self._dispatch, action, email)
        except MailboxUnavailableError:
            raise
        except Exception as exc:
            self._logger.error("action_failed", error=str(exc), **action.summary(), **email.summary())
            return _result(action, Outcome.FAILED, error=str(exc) or type(exc).__name__)
        self._logger.info("action_executed", **action.summary(), **email.summary())
        return _result(action, Outcome.SUCCEEDED, provider_id=provider_id)

    def _guarded(self, func: Callable[..., Any], *args: Any) -> Any:
        return call_with_timeout(func, *args, timeout_s=self._settings.provider_timeout_s)

    def _with_retry(self, func: Callable[..., Any], *args: Any) -> Any:
        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._logger.warning(
                "provider_retry", attempt=attempt, delay_s=delay, error=str(error) or type(error).__name__
            )

        return retry(
            lambda: self._guarded(func, *args),
            retry_on=(TransientProviderError, DeadlineExceeded),
            attempts=self._retry.max_attempts,
            base=self._retry.base_s,
            factor=self._retry.factor,
            cap=self._retry.cap_s,
            sleep=self._sleep,
            on_retry=_on_retry,
        )

    def _dispatch(self, action: ResolvedAction, email: NormalizedEmail) -> Optional[str]:
        """Perform ``action`` on the mailbox or sink; return a provider id if any."""

        mailbox = self._mailbox
        kind = action.type
        if kind is ActionType.ARCHIVE:
            mailbox.archive_thread(email.thread_id)
            return None
        if kind is ActionType.LABEL:
            mailbox.label_thread(email.thread_id, action.label_id or "")
            return None
        if kind is ActionType.MOVE_FOLDER:
            mailbox.move_to_folder(email.thread_id, action.folder_id or "")
            return None
        if kind is ActionType.MARK_READ:
            mailbox.mark_read(email.thread_id)
            return None
        if kind is ActionType.MARK_SPAM:
            mailbox.mark_spam(email.thread_id)
            return None
        if kind is ActionType.DRAFT_EMAIL:
            return mailbox.draft_email(email, _outgoing(action))
        if kind is ActionType.REPLY:
            return mailbox.reply_to_email(email, _outgoing(action))
        if kind is ActionType.SEND_EMAIL:
            return mailbox.send_email(_outgoing(action))
        if kind is ActionType.FORWARD:
            return mailbox.forward_email(email, _outgoing(action))
        if kind is ActionType.CALL_WEBHOOK:
            if self._webhook is None:
                raise ExecutionError("no webhook client is configured")
            self._webhook.post(action.url or "", webhook_payload(action, email, self._clock()))
            return None
        if kind is ActionType.DIGEST:
            if self._digest is None:
                raise ExecutionError("no digest sink is configured")
            self._digest.add_to_digest(email, action.rule_id, action.content)
            return None
        if kind is ActionType.TRACK_THREAD:
            if self._tracker is None:
                raise ExecutionError("no thread tracker is configured")
            self._tracker.track_thread(email, action.rule_id)
            return None
        raise ExecutionError(f"unsupported action type {kind.value!r}")


def _outgoing(action: ResolvedAction) -> OutgoingMessage:
    return OutgoingMessage(
        to=action.to,
        cc=action.cc,
        bcc=action.bcc,
        subject=action.subject or "",
        content=action.content or "",
    )
