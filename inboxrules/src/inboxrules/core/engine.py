"""inboxrules.core.engine

What:
  Wire the rule pipeline for one account: select the rule(s) matching an
  email, resolve their actions, and execute them, returning a report per
  email and aggregated statistics per batch.

Why:
  Queue workers, the CLI, and tests all need the same pipeline with the same
  invariants (fresh resolution cache per email, fail-closed AI conditions,
  per-action isolation). Building it in one class keeps every entry point
  consistent.

How:
  - :class:`~inboxrules.core.selector.RuleSelector` evaluates the enabled
    rules and picks the single best match, or every match in multi-rule mode.
  - For each chosen rule, :class:`~inboxrules.core.resolver.ActionResolver`
    resolves its actions against a :class:`ResolutionCache` shared by all
    rules of that email, then :class:`~inboxrules.core.executor.ActionExecutor`
    runs them under the approval policy.
  - Counters are collected in :class:`RuleStats` / :class:`EngineStats`.

Interfaces:
  :class:`RuleRun`, :class:`EmailReport`, :class:`RuleStats`,
  :class:`EngineStats`, :class:`Engine`.

Invariants & Safety:
  - Resolution state never outlives one :meth:`Engine.process_email` call.
  - An error in one rule's evaluation or one action never prevents the
    others; only a lost mailbox aborts the run.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from ..config.schema import Rule, RulesDocument, RuntimeConfig
from ..mail.capability import MailCapability
from ..utils.ids import new_run_id
from ..utils.logging import JsonLogger, get_logger
from .approvals import ApprovalGate, Decision
from .conditions import ConditionEvaluator, ConditionOutcome
from .context import AccountContext
from .email import NormalizedEmail
from .executor import ActionExecutor, DigestSink, ExecutionResult, Outcome, ThreadTracker
from .policy import Policy, build_policy
from .reasoning import ReasoningCapability
from .resolver import ActionResolver, ResolutionCache, ResolvedAction
from .rulebook import RuleBook
from .scheduling import Scheduler
from .selector import RuleSelector
from .webhook import WebhookClient

RuleSource = Union[RulesDocument, RuleBook, Sequence[Rule]]


@dataclass
class RuleRun:
    """Actions executed for one chosen rule."""

    rule_id: str
    rule_name: str
    outcome: ConditionOutcome
    results: List[ExecutionResult] = field(default_factory=list)


@dataclass
class EmailReport:
    """Everything the pipeline decided and did for one email.

    Attributes:
      run_id: Identifier of the pipeline run.
      email_id: Message id.
      thread_id: Thread id.
      evaluations: One outcome per enabled rule, in stored order.
      runs: Chosen rules with their execution results.
    """

    run_id: str
    email_id: str
    thread_id: str
    evaluations: List[ConditionOutcome] = field(default_factory=list)
    runs: List[RuleRun] = field(default_factory=list)

    @property
    def results(self) -> List[ExecutionResult]:
        return [result for run in self.runs for result in run.results]

    @property
    def matched_rule_ids(self) -> List[str]:
        return [run.rule_id for run in self.runs]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "email_id": self.email_id,
            "thread_id": self.thread_id,
            "evaluations": [
                {
                    "rule_id": outcome.rule_id,
                    "verdict": outcome.verdict.value,
                    "static_matched": outcome.static_matched,
                    "ai_matched": outcome.ai_matched,
                    "learned_pattern": outcome.learned_pattern,
                    "reason": outcome.reason,
                }
                for outcome in self.evaluations
            ],
            "runs": [
                {
                    "rule_id": run.rule_id,
                    "rule_name": run.rule_name,
                    "results": [result.to_dict() for result in run.results],
                }
                for run in self.runs
            ],
        }


@dataclass
class RuleStats:
    """Per-rule counters: matches, executed actions, and failed actions."""

    matches: int = 0
    actions: int = 0
    errors: int = 0


@dataclass
class EngineStats:
    """Summary of a batch run.

    Attributes:
      scanned_emails: Emails processed.
      matched_emails: Emails with at least one chosen rule.
      actions_applied: Actions that executed successfully.
      pending_approvals: Actions waiting for a decision.
      scheduled_actions: Actions handed to the scheduler.
      rule_stats: Counters keyed by rule id.
    """

    scanned_emails: int = 0
    matched_emails: int = 0
    actions_applied: int = 0
    pending_approvals: int = 0
    scheduled_actions: int = 0
    rule_stats: Dict[str, RuleStats] = field(default_factory=dict)

    def record(self, report: EmailReport) -> None:
        self.scanned_emails += 1
        if report.runs:
            self.matched_emails += 1
        for run in report.runs:
            rule_stats = self.rule_stats.setdefault(run.rule_id, RuleStats())
            rule_stats.matches += 1
            for result in run.results:
                if result.success:
                    self.actions_applied += 1
                    rule_stats.actions += 1
                elif result.outcome is Outcome.FAILED:
                    rule_stats.errors += 1
                elif result.outcome is Outcome.REQUIRES_APPROVAL:
                    self.pending_approvals += 1
                elif result.outcome is Outcome.SCHEDULED:
                    self.scheduled_actions += 1


class Engine:
    """Coordinate rule selection, action resolution, and execution.

    What:
      Owns the selector, resolver, and executor configured for one account.

    Why:
      Callers hand over emails and receive reports; they never assemble the
      pipeline stages themselves.

    How:
      Components are built from :class:`RuntimeConfig` in ``__init__``.
      ``rules`` may be a :class:`RuleBook`, in which case every email sees the
      book's current rules.

    Attributes:
      context: Account the engine works for.
      run_id: Identifier included in every log line and report.
      multi_rule: Whether every match acts, rather than only the best one.
    """

    def __init__(
        self,
        rules: RuleSource,
        *,
        mailbox: MailCapability,
        reasoner: ReasoningCapability,
        context: AccountContext,
        config: Optional[RuntimeConfig] = None,
        approvals: Optional[ApprovalGate] = None,
        scheduler: Optional[Scheduler] = None,
        policy: Optional[Policy] = None,
        webhook: Optional[WebhookClient] = None,
        digest: Optional[DigestSink] = None,
        tracker: Optional[ThreadTracker] = None,
        logger: Optional[JsonLogger] = None,
        run_id: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        config = config or RuntimeConfig()
        settings = config.engine
        self._rules = rules
        self.context = context
        self.run_id = run_id or new_run_id()
        self.logger = logger or get_logger("inboxrules.engine")
        self.multi_rule = context.multi_rule_selection or settings.multi_rule_selection
        self.approvals = approvals if approvals is not None else ApprovalGate(logger=self.logger, clock=clock)
        self.policy = policy or build_policy(config.approvals)
        self.selector = RuleSelector(
            ConditionEvaluator(reasoner, timeout_s=settings.reasoning_timeout_s, logger=self.logger),
            max_workers=settings.max_parallel_evaluations,
            tie_break=settings.tie_break,
            logger=self.logger,
        )
        self.resolver = ActionResolver(
            mailbox,
            reasoner,
            completion_timeout_s=settings.reasoning_timeout_s,
            provider_timeout_s=settings.provider_timeout_s,
            logger=self.logger,
        )
        self.executor = ActionExecutor(
            mailbox,
            approvals=self.approvals,
            scheduler=scheduler,
            webhook=webhook,
            digest=digest,
            tracker=tracker,
            settings=settings,
            retry=config.retry,
            logger=self.logger,
            clock=clock,
            sleep=sleep,
        )

    @property
    def rules(self) -> List[Rule]:
        if isinstance(self._rules, RuleBook):
            return self._rules.list()
        if isinstance(self._rules, RulesDocument):
            return list(self._rules.rules)
        return list(self._rules)

    def process_email(
        self,
        email: NormalizedEmail,
        *,
        applied_in_thread: Iterable[str] = (),
        cancel: Optional[threading.Event] = None,
    ) -> EmailReport:
        """Run the pipeline for one email.

        Args:
          email: The email to triage.
          applied_in_thread: Ids of rules that already acted in the email's
            thread; lets those rules follow up on replies.
          cancel: Stops further actions from starting once set.

        Returns:
          The :class:`EmailReport` for ``email``.
        """

        report = EmailReport(run_id=self.run_id, email_id=email.id, thread_id=email.thread_id)
        selection = self.selector.select(self.rules, email, applied_in_thread=applied_in_thread)
        report.evaluations = list(selection.evaluations)
        cache = ResolutionCache()
        for match in selection.chosen(self.multi_rule):
            rule = match.rule
            resolved = self.resolver.resolve_all(
                rule.actions, email, self.context, rule_id=rule.id, cache=cache
            )
            results = self.executor.execute(resolved, email, self.policy, cancel=cancel)
            report.runs.append(RuleRun(rule.id, rule.name, match.outcome, results))
        self.logger.info(
            "email_processed",
            run_id=self.run_id,
            rules=report.matched_rule_ids,
            outcomes=[result.outcome.value for result in report.results],
            **self.context.summary(),
            **email.summary(),
        )
        return report

    def process(self, emails: Iterable[NormalizedEmail]) -> EngineStats:
        """Process a batch of emails and aggregate statistics."""

        stats = EngineStats()
        for email in emails:
            stats.record(self.process_email(email))
        return stats

    def decide(self, approval_id: str, decision: Decision) -> ExecutionResult:
        """Approve or deny a pending action; approved actions run once."""

        return self.executor.apply_decision(approval_id, decision)

    def run_scheduled(self, action: ResolvedAction, email: NormalizedEmail) -> ExecutionResult:
        """Scheduler callback for a delayed action."""

        return self.executor.run_scheduled(action, email)
