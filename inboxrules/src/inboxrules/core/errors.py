"""Error taxonomy of the rule engine.

What:
  Declare the exception types raised or recorded by the condition evaluator,
  action resolver, action executor, approval gate, and rule-management
  boundary.

Why:
  Callers (queue job handlers, the CLI, tests) react differently to each
  category: evaluation and resolution failures stay local to one rule or one
  action, approval conflicts go back to whoever clicked "approve", and
  rule-management errors are user input mistakes that are never retried.

How:
  A shallow hierarchy rooted at :class:`InboxRulesError`. Errors that refer to
  a rule or action carry the identifier as an attribute so results and log
  lines can point at the offending item.

Interfaces:
  :class:`InboxRulesError`, :class:`ConditionEvaluationError`,
  :class:`ResolutionError`, :class:`ExecutionError`,
  :class:`ApprovalConflictError`, :class:`DuplicateRuleNameError`,
  :class:`RuleNotFoundError`, :class:`StaleRuleError`.
"""
from __future__ import annotations

from typing import Optional


class InboxRulesError(Exception):
    """Base class for every error defined by the engine."""


class ConditionEvaluationError(InboxRulesError):
    """A rule's condition could not be evaluated (reasoning error or timeout).

    Recovered locally: the rule is reported as not matching.
    """

    def __init__(self, message: str, *, rule_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.rule_id = rule_id


class ResolutionError(InboxRulesError):
    """An action's references or fields could not be made concrete."""

    def __init__(
        self,
        message: str,
        *,
        action_id: Optional[str] = None,
        action_type: Optional[str] = None,
        field: Optional[str] = None,
        rule_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.rule_id = rule_id
        self.action_id = action_id
        self.action_type = action_type
        self.field = field


class ExecutionError(InboxRulesError):
    """A resolved action failed when run against the mailbox or a sink."""


class ApprovalConflictError(InboxRulesError):
    """A decision targeted an unknown or already decided approval."""

    def __init__(self, message: str, *, approval_id: str) -> None:
        super().__init__(message)
        self.approval_id = approval_id


class DuplicateRuleNameError(InboxRulesError):
    """A rule with the same name already exists for the account."""

    def __init__(self, name: str) -> None:
        super().__init__(f"a rule named {name!r} already exists")
        self.name = name


class RuleNotFoundError(InboxRulesError, KeyError):
    """No rule with the requested id exists."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"rule {rule_id!r} not found")
        self.rule_id = rule_id

    def __str__(self) -> str:
        return str(self.args[0])


class StaleRuleError(InboxRulesError):
    """An update was based on an outdated version of the rule."""

    def __init__(self, rule_id: str, *, expected: int, current: int) -> None:
        super().__init__(
            f"rule {rule_id!r} was modified concurrently "
            f"(expected version {expected}, current version {current})"
        )
        self.rule_id = rule_id
        self.expected = expected
        self.current = current
