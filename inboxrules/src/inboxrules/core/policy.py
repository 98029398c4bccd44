"""Approval policy for resolved actions.

What:
  Decide, per resolved action, whether it may run unattended, must wait for a
  human decision, or must not run at all.

Why:
  Sending mail on someone's behalf is irreversible, and the risk grows when
  the model picked the recipient or wrote the text. A policy keyed on action
  type plus a graded risk level lets operators gate exactly what worries them.

How:
  :func:`action_risk` grades outbound actions by which fields were
  AI-authored. :func:`build_policy` turns :class:`ApprovalSettings` into a
  callable ``policy(action, email) -> PolicyDecision``: blocked types first,
  then gated types, then the risk threshold.

Interfaces:
  :class:`RiskLevel`, :func:`action_risk`, :class:`PolicyVerdict`,
  :class:`PolicyDecision`, :data:`Policy`, :func:`build_policy`,
  :func:`allow_all`.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable

from ..config.schema import ActionType, ApprovalSettings
from .email import NormalizedEmail
from .resolver import ResolvedAction

OUTBOUND_TYPES = frozenset(
    {ActionType.SEND_EMAIL, ActionType.REPLY, ActionType.FORWARD, ActionType.DRAFT_EMAIL}
)


class RiskLevel(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    VERY_HIGH = 3

    @classmethod
    def parse(cls, value: str) -> "RiskLevel":
        return cls[value.upper()]


def action_risk(action: ResolvedAction) -> RiskLevel:
    """Grade how much an action's outcome depends on AI-authored fields.

    Recipient and content both AI-authored is ``VERY_HIGH``; an AI recipient
    (or webhook URL) is ``HIGH``; AI-written content or subject is ``MEDIUM``.
    """

    ai = action.ai_fields
    if action.type is ActionType.CALL_WEBHOOK:
        return RiskLevel.HIGH if "url" in ai else RiskLevel.LOW
    if action.type not in OUTBOUND_TYPES:
        return RiskLevel.LOW
    ai_recipient = bool(ai & {"to", "cc", "bcc"})
    ai_text = bool(ai & {"content", "subject"})
    if ai_recipient and ai_text:
        return RiskLevel.VERY_HIGH
    if ai_recipient:
        return RiskLevel.HIGH
    if ai_text:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class PolicyVerdict(str, Enum):
    ALLOW = "allow"
    REQUIRE_APPROVAL = "require_approval"
    BLOCK = "block"


@dataclass(frozen=True)
class PolicyDecision:
    verdict: PolicyVerdict
    reason: str = ""


Policy = Callable[[ResolvedAction, NormalizedEmail], PolicyDecision]

ALLOW = PolicyDecision(PolicyVerdict.ALLOW)


def allow_all(action: ResolvedAction, email: NormalizedEmail) -> PolicyDecision:
    """Policy that lets every action through."""

    return ALLOW


def build_policy(settings: ApprovalSettings) -> Policy:
    """Build the policy described by ``settings``."""

    blocked = frozenset(settings.blocked)
    gated = frozenset(settings.require_for)
    threshold = RiskLevel.parse(settings.risk_threshold) if settings.risk_threshold else None

    def policy(action: ResolvedAction, email: NormalizedEmail) -> PolicyDecision:
        if action.type in blocked:
            return PolicyDecision(PolicyVerdict.BLOCK, f"{action.type.value} actions are blocked")
        if action.type in gated:
            return PolicyDecision(
                PolicyVerdict.REQUIRE_APPROVAL, f"{action.type.value} actions require approval"
            )
        risk = action_risk(action)
        if threshold is not None and risk > RiskLevel.LOW and risk >= threshold:
            return PolicyDecision(
                PolicyVerdict.REQUIRE_APPROVAL, f"risk level {risk.name.lower()} requires approval"
            )
        return ALLOW

    return policy
