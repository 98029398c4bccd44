"""inboxrules.core.selector

What:
  Evaluate every enabled rule of an account against one email and choose
  which matching rule (or rules) will act.

Why:
  Several rules can match the same email. Users expect a precise static rule
  ("from: boss@corp.com") to win over a fuzzy AI rule, and they expect the
  same email to pick the same rule on every run.

How:
  - The first enabled ``cold_email`` system rule is checked before anything
    else. When it matches, it is the only match and no other rule runs.
  - Learned patterns are checked next, ahead of the thread filter. A rule
    whose learned pattern matches is decided without evaluation; when any
    rule matched that way, the others are evaluated without AI calls.
  - Thread replies are only offered to rules that opted in with
    ``run_on_threads`` or already acted earlier in the same thread.
  - ``to_reply`` system rules never see no-reply senders.
  - The remaining rules are evaluated concurrently on a bounded thread pool;
    results are reassembled in stored order.
  - :meth:`Selection.best` prefers static and learned-pattern matches, then
    applies the configured tie-break (stored order, or most recently updated).
    Multi-rule mode keeps every ordinary match but only one system rule.

Interfaces:
  :class:`RuleMatch`, :class:`Selection`, :class:`RuleSelector`.

Invariants & Safety:
  - A rule whose evaluation raises is recorded as not matched; the other
    rules are unaffected.
  - Selection is deterministic for deterministic verdicts.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..config.schema import Rule, SystemType
from ..utils.logging import JsonLogger, get_logger
from .conditions import ConditionEvaluator, ConditionOutcome, MatchVerdict, match_learned_patterns
from .email import NormalizedEmail
from .errors import ConditionEvaluationError

NOREPLY_PREFIXES = (
    "noreply",
    "no-reply",
    "no_reply",
    "donotreply",
    "do-not-reply",
    "do_not_reply",
    "mailer-daemon",
)

TIE_BREAKS = ("stored_order", "most_recently_updated")


def is_noreply_sender(address: str) -> bool:
    local = address.split("@", 1)[0].lower()
    return local.startswith(NOREPLY_PREFIXES)


@dataclass(frozen=True)
class RuleMatch:
    """A matching rule with its outcome and stored position."""

    rule: Rule
    outcome: ConditionOutcome
    position: int


def _recency_key(match: RuleMatch) -> Tuple[float, int]:
    updated = match.rule.updated_at
    stamp = updated.timestamp() if updated is not None else float("-inf")
    return (-stamp, match.position)


@dataclass
class Selection:
    """Evaluations of every enabled rule for one email.

    Attributes:
      evaluations: One outcome per enabled rule, in stored order.
      matches: The matching subset, in stored order.
      tie_break: Ordering among equally preferred matches.
    """

    evaluations: List[ConditionOutcome] = field(default_factory=list)
    matches: List[RuleMatch] = field(default_factory=list)
    tie_break: str = "stored_order"

    def _preferred(self, pool: List[RuleMatch]) -> RuleMatch:
        deterministic = [item for item in pool if item.outcome.matched_deterministically]
        pool = deterministic or pool
        if self.tie_break == "most_recently_updated":
            return min(pool, key=_recency_key)
        return min(pool, key=lambda item: item.position)

    def best(self) -> Optional[RuleMatch]:
        """Return the single preferred match, or ``None``."""

        if not self.matches:
            return None
        return self._preferred(self.matches)

    def chosen(self, multi_rule: bool) -> List[RuleMatch]:
        """Matches that will act: all of them, or only the best one.

        In multi-rule mode every ordinary rule that matched acts, but at most
        one system rule does: the preferred one among those that matched.
        """

        if not multi_rule:
            winner = self.best()
            return [winner] if winner is not None else []
        system = [item for item in self.matches if item.rule.system_type is not None]
        if len(system) <= 1:
            return list(self.matches)
        keep = self._preferred(system)
        return [item for item in self.matches if item.rule.system_type is None or item is keep]


class RuleSelector:
    """Evaluate an account's rules and build a :class:`Selection`.

    What:
      Wraps :class:`~inboxrules.core.conditions.ConditionEvaluator` with rule
      filtering, concurrency, and error containment.

    Why:
      The engine needs one call that turns "rules + email" into the rules that
      should act, regardless of how many reasoning calls that takes.

    How:
      Pre-filters rules that cannot apply, fans the rest out on a
      :class:`~concurrent.futures.ThreadPoolExecutor` of ``max_workers``, and
      reorders outcomes by stored position.
    """

    def __init__(
        self,
        evaluator: ConditionEvaluator,
        *,
        max_workers: int = 4,
        tie_break: str = "stored_order",
        logger: Optional[JsonLogger] = None,
    ) -> None:
        if tie_break not in TIE_BREAKS:
            raise ValueError(f"unknown tie-break {tie_break!r}")
        self._evaluator = evaluator
        self._max_workers = max(1, max_workers)
        self._tie_break = tie_break
        self._logger = logger or get_logger("inboxrules.selector")

    def select(
        self,
        rules: Sequence[Rule],
        email: NormalizedEmail,
        *,
        applied_in_thread: Iterable[str] = (),
    ) -> Selection:
        """Evaluate ``rules`` against ``email``.

        Args:
          rules: The account's rules in stored order; disabled rules are ignored.
          email: The email to classify.
          applied_in_thread: Ids of rules that already acted in this thread.

        Returns:
          The :class:`Selection` for ``email``.
        """

        applied = set(applied_in_thread)
        enabled = [(position, rule) for position, rule in enumerate(rules) if rule.enabled]
        by_position = dict(enabled)
        outcomes: Dict[int, ConditionOutcome] = {}

        cold = next(
            ((position, rule) for position, rule in enabled if rule.system_type is SystemType.COLD_EMAIL),
            None,
        )
        if cold is not None:
            position, rule = cold
            outcome = self._pre_match(rule, email)
            if outcome is None:
                skipped = self._skip_reason(rule, email, applied)
                if skipped:
                    outcome = ConditionOutcome(rule.id, MatchVerdict.NOT_MATCHED, reason=skipped)
                else:
                    outcome = self._evaluate(rule, email)
            outcomes[position] = outcome
            if outcome.matched:
                for other, item in enabled:
                    if other != position:
                        outcomes[other] = ConditionOutcome(
                            item.id, MatchVerdict.NOT_MATCHED, reason="email is a cold email"
                        )
                self._logger.info("cold_email_detected", rule_id=rule.id, **email.summary())
                return self._build(outcomes, by_position, email)

        pending: List[Tuple[int, Rule]] = []
        for position, rule in enabled:
            if position in outcomes:
                continue
            if rule.system_type is SystemType.COLD_EMAIL:
                outcomes[position] = ConditionOutcome(
                    rule.id, MatchVerdict.NOT_MATCHED, reason="only the first cold email rule is checked"
                )
                continue
            decided = self._pre_match(rule, email)
            if decided is not None:
                outcomes[position] = decided
                continue
            skipped = self._skip_reason(rule, email, applied)
            if skipped:
                outcomes[position] = ConditionOutcome(rule.id, MatchVerdict.NOT_MATCHED, reason=skipped)
            else:
                pending.append((position, rule))

        # A learned-pattern match is trusted; the remaining rules get no AI call.
        use_ai = not any(outcome.learned_pattern and outcome.matched for outcome in outcomes.values())
        if len(pending) <= 1 or self._max_workers == 1:
            for position, rule in pending:
                outcomes[position] = self._evaluate(rule, email, use_ai=use_ai)
        else:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(pending))) as pool:
                futures = {
                    position: pool.submit(self._evaluate, rule, email, use_ai=use_ai)
                    for position, rule in pending
                }
                for position, future in futures.items():
                    outcomes[position] = future.result()
        return self._build(outcomes, by_position, email)

    def _build(
        self, outcomes: Dict[int, ConditionOutcome], by_position: Dict[int, Rule], email: NormalizedEmail
    ) -> Selection:
        selection = Selection(tie_break=self._tie_break)
        for position in sorted(outcomes):
            outcome = outcomes[position]
            selection.evaluations.append(outcome)
            if outcome.matched:
                selection.matches.append(RuleMatch(by_position[position], outcome, position))
        self._logger.info(
            "rules_evaluated",
            evaluated=len(selection.evaluations),
            matched=[item.rule.id for item in selection.matches],
            **email.summary(),
        )
        return selection

    @staticmethod
    def _pre_match(rule: Rule, email: NormalizedEmail) -> Optional[ConditionOutcome]:
        """Outcome decided by learned patterns alone, or ``None``."""

        pattern, excluded = match_learned_patterns(rule, email)
        if excluded:
            return ConditionOutcome(rule.id, MatchVerdict.NOT_MATCHED, reason="excluded by a learned pattern")
        if pattern is None:
            return None
        return ConditionOutcome(
            rule.id,
            MatchVerdict.MATCHED,
            reason=f'matched learned pattern "{pattern.describe()}"',
            learned_pattern=pattern.describe(),
        )

    @staticmethod
    def _skip_reason(rule: Rule, email: NormalizedEmail, applied: set[str]) -> Optional[str]:
        if email.is_thread_reply and not rule.run_on_threads and rule.id not in applied:
            return "rule does not run on thread replies"
        if rule.system_type is SystemType.TO_REPLY and is_noreply_sender(email.sender_address):
            return "sender does not accept replies"
        return None

    def _evaluate(self, rule: Rule, email: NormalizedEmail, *, use_ai: bool = True) -> ConditionOutcome:
        try:
            if use_ai:
                return self._evaluator.evaluate(rule, email)
            return self._evaluator.evaluate(rule, email, use_ai=False)
        except Exception as exc:
            message = f"evaluation failed: {exc}"
            self._logger.error("rule_evaluation_failed", rule_id=rule.id, error=str(exc), **email.summary())
            return ConditionOutcome(
                rule.id,
                MatchVerdict.NOT_MATCHED,
                reason=message,
                error=ConditionEvaluationError(message, rule_id=rule.id),
            )
