"""inboxrules.core.conditions

What:
  Decide whether a single rule matches a normalized email by combining static
  field patterns with an optional natural-language instruction judged by the
  reasoning capability.

Why:
  Static patterns are cheap and deterministic; AI instructions are expensive
  and can fail. Evaluating the cheap part first and skipping the AI call when
  the static part already decides the outcome saves reasoning calls, while
  treating every AI failure as "unknown" keeps a flaky model from triggering
  actions.

How:
  - Static patterns are matched case-insensitively, either as substrings or,
    when they contain ``*``, as wildcards through the guarded regex helper.
    ``from``/``to`` patterns may list alternatives separated by ``|``, ``,``
    or the word ``OR``.
  - The AI instruction runs under :func:`~inboxrules.utils.deadline.call_with_timeout`;
    errors and timeouts produce an :attr:`MatchVerdict.INDETERMINATE` verdict.
  - The rule's conditional operator (``AND`` by default) combines the parts.
  - Learned patterns are remembered senders and subjects. They sit outside
    the operator: a match decides the rule on its own, an exclusion rules it
    out.

Interfaces:
  :class:`MatchVerdict`, :class:`ConditionOutcome`, :class:`ConditionEvaluator`,
  :func:`matches_static`, :func:`match_learned_patterns`.

Invariants & Safety:
  - Only :attr:`MatchVerdict.MATCHED` triggers actions; indeterminate results
    fail closed.
  - Evaluation has no side effects beyond the reasoning call and log lines.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from ..config.schema import LearnedPattern, Rule, StaticConditions
from ..utils.deadline import call_with_timeout
from ..utils.logging import JsonLogger, get_logger
from ..utils.regexsafe import wildcard_search
from .email import NormalizedEmail
from .errors import ConditionEvaluationError
from .reasoning import ConditionVerdict, ReasoningCapability

_ALTERNATIVES_RE = re.compile(r"\s+or\s+|[|,]", re.IGNORECASE)


class MatchVerdict(str, Enum):
    MATCHED = "matched"
    NOT_MATCHED = "not_matched"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class ConditionOutcome:
    """Result of evaluating one rule against one email.

    Attributes:
      rule_id: Identifier of the evaluated rule.
      verdict: Final combined verdict.
      static_matched: Static verdict, ``None`` when the rule has no static part
        or it was not consulted.
      ai_matched: AI verdict, ``None`` when not consulted or indeterminate.
      reason: Short human-readable explanation.
      error: Evaluation failure, set only for indeterminate verdicts.
      learned_pattern: The learned pattern that decided the match, if any.
    """

    rule_id: str
    verdict: MatchVerdict
    static_matched: Optional[bool] = None
    ai_matched: Optional[bool] = None
    reason: str = ""
    error: Optional[ConditionEvaluationError] = None
    learned_pattern: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.verdict is MatchVerdict.MATCHED

    @property
    def matched_statically(self) -> bool:
        """Matched, and the static part of the rule contributed."""

        return self.matched and self.static_matched is True

    @property
    def matched_deterministically(self) -> bool:
        """Matched through static patterns or a learned pattern, without AI."""

        return self.matched_statically or (self.matched and self.learned_pattern is not None)


def split_alternatives(pattern: str) -> List[str]:
    """Split an address pattern into its alternatives."""

    return [part.strip() for part in _ALTERNATIVES_RE.split(pattern) if part.strip()]


def _pattern_matches(pattern: str, value: str, *, timeout_ms: int) -> bool:
    if "*" in pattern:
        return wildcard_search(pattern, value, timeout_ms=timeout_ms).matched
    return pattern.casefold() in value.casefold()


def matches_static(
    conditions: StaticConditions,
    email: NormalizedEmail,
    *,
    timeout_ms: int = 50,
) -> bool:
    """Return whether every present static pattern matches ``email``.

    Absent patterns are vacuously true. A wildcard search that times out counts
    as a non-match.
    """

    fields = {
        "from": email.from_,
        "to": ", ".join(email.to),
        "subject": email.subject,
        "body": email.body_text,
    }
    for name, pattern in conditions.patterns().items():
        value = fields[name]
        if name in ("from", "to"):
            alternatives = split_alternatives(pattern) or [pattern]
            if not any(_pattern_matches(alt, value, timeout_ms=timeout_ms) for alt in alternatives):
                return False
        elif not _pattern_matches(pattern, value, timeout_ms=timeout_ms):
            return False
    return True


def _learned_pattern_matches(pattern: LearnedPattern, email: NormalizedEmail) -> bool:
    value = pattern.value.casefold()
    if pattern.type == "subject":
        return value in email.subject.casefold()
    address = email.sender_address.casefold()
    if "@" in value.lstrip("@"):
        return address == value
    return address.rsplit("@", 1)[-1] == value.lstrip("@")


def match_learned_patterns(rule: Rule, email: NormalizedEmail) -> Tuple[Optional[LearnedPattern], bool]:
    """Check ``rule``'s learned patterns against ``email``.

    Returns:
      ``(pattern, excluded)``: the first including pattern that matched, and
      whether an exclusion pattern matched. An exclusion wins over any match.
    """

    matched: Optional[LearnedPattern] = None
    for pattern in rule.learned_patterns:
        if not _learned_pattern_matches(pattern, email):
            continue
        if pattern.exclude:
            return None, True
        if matched is None:
            matched = pattern
    return matched, False


class ConditionEvaluator:
    """Evaluate rule conditions against emails.

    What:
      Produces a :class:`ConditionOutcome` for a ``(rule, email)`` pair.

    Why:
      The selector evaluates many rules per email and needs one uniform,
      exception-free result per rule.

    How:
      Runs the static matcher first, short-circuits according to the
      conditional operator, and only then consults the reasoning capability
      under ``timeout_s``.
    """

    def __init__(
        self,
        reasoner: ReasoningCapability,
        *,
        timeout_s: Optional[float] = 30.0,
        regex_timeout_ms: int = 50,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        self._reasoner = reasoner
        self._timeout_s = timeout_s
        self._regex_timeout_ms = regex_timeout_ms
        self._logger = logger or get_logger("inboxrules.conditions")

    def evaluate(self, rule: Rule, email: NormalizedEmail, *, use_ai: bool = True) -> ConditionOutcome:
        """Evaluate ``rule``; with ``use_ai`` off a needed AI check is a non-match."""

        conditions = rule.conditions
        if not conditions.is_active:
            return ConditionOutcome(rule.id, MatchVerdict.NOT_MATCHED, reason="rule has no conditions")

        static_matched: Optional[bool] = None
        if conditions.has_static:
            assert conditions.static is not None
            static_matched = matches_static(
                conditions.static, email, timeout_ms=self._regex_timeout_ms
            )

        if rule.conditional_operator == "OR":
            if static_matched:
                return ConditionOutcome(
                    rule.id, MatchVerdict.MATCHED, static_matched=True, reason="static conditions matched"
                )
            if not conditions.has_ai:
                return ConditionOutcome(
                    rule.id, MatchVerdict.NOT_MATCHED, static_matched=static_matched,
                    reason="static conditions did not match",
                )
            if not use_ai:
                return ConditionOutcome(
                    rule.id, MatchVerdict.NOT_MATCHED, static_matched=static_matched,
                    reason="AI condition skipped",
                )
            return self._evaluate_ai(rule, email, static_matched)

        if static_matched is False:
            return ConditionOutcome(
                rule.id, MatchVerdict.NOT_MATCHED, static_matched=False,
                reason="static conditions did not match",
            )
        if not conditions.has_ai:
            return ConditionOutcome(
                rule.id, MatchVerdict.MATCHED, static_matched=True, reason="static conditions matched"
            )
        if not use_ai:
            return ConditionOutcome(
                rule.id, MatchVerdict.NOT_MATCHED, static_matched=static_matched,
                reason="AI condition skipped",
            )
        return self._evaluate_ai(rule, email, static_matched)

    def _evaluate_ai(
        self, rule: Rule, email: NormalizedEmail, static_matched: Optional[bool]
    ) -> ConditionOutcome:
        instruction = rule.conditions.ai_instructions or ""
        try:
            answer = call_with_timeout(
                self._reasoner.evaluate_condition, instruction, email, timeout_s=self._timeout_s
            )
        except Exception as exc:
            return self._indeterminate(rule, email, static_matched, f"AI condition failed: {exc}", exc)

        if isinstance(answer, ConditionVerdict):
            matched, reason = answer.matched, answer.reason
        elif isinstance(answer, bool):
            matched, reason = answer, ""
        else:
            return self._indeterminate(
                rule, email, static_matched, f"AI condition returned {type(answer).__name__}", None
            )
        verdict = MatchVerdict.MATCHED if matched else MatchVerdict.NOT_MATCHED
        return ConditionOutcome(
            rule.id,
            verdict,
            static_matched=static_matched,
            ai_matched=matched,
            reason=reason or ("AI condition matched" if matched else "AI condition did not match"),
        )

    def _indeterminate(
        self,
        rule: Rule,
        email: NormalizedEmail,
        static_matched: Optional[bool],
        message: str,
        cause: Optional[BaseException],
    ) -> ConditionOutcome:
        error = ConditionEvaluationError(message, rule_id=rule.id)
        error.__cause__ = cause
        self._logger.warning("condition_indeterminate", rule_id=rule.id, error=message, **email.summary())
        return ConditionOutcome(
            rule.id,
            MatchVerdict.INDETERMINATE,
            static_matched=static_matched,
            reason=message,
            error=error,
        )
