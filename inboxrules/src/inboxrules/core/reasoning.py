"""Reasoning capability used for AI conditions and AI-authored fields.

What:
  Declare :class:`ReasoningCapability`, the opaque interface the evaluator and
  resolver call, together with an OpenAI-backed implementation and a stand-in
  that is always unavailable.

Why:
  The engine never interprets natural language itself. Keeping the contract to
  two calls (judge a condition, author a field) lets tests script verdicts and
  lets deployments swap models without touching rule logic.

How:
  :class:`OpenAIReasoner` sends the instruction and a compact rendering of the
  email to the Responses API. Condition verdicts are requested with a strict
  JSON schema so the reply is parsed with :func:`json.loads`; field
  completions are plain text. Any SDK failure or malformed reply is raised as
  :class:`ReasoningError`, which callers treat as "unknown".

Interfaces:
  :class:`ReasoningCapability`, :class:`ConditionVerdict`,
  :class:`ReasoningError`, :class:`OpenAIReasoner`,
  :class:`UnavailableReasoner`.

Invariants & Safety:
  - Email bodies are truncated to ``reasoning.max_body_chars`` before leaving
    the process.
  - Nothing returned by the model is trusted as a verdict unless it parses
    into the expected schema.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from openai import OpenAI, OpenAIError

from ..config.schema import ReasoningSettings
from .email import NormalizedEmail


class ReasoningError(RuntimeError):
    """The reasoning capability failed or returned an unusable answer."""


@dataclass(frozen=True)
class ConditionVerdict:
    """Answer to "does this email satisfy the instruction?"."""

    matched: bool
    reason: str = ""


class ReasoningCapability(Protocol):
    """Opaque natural-language judgement and authoring."""

    def evaluate_condition(
        self, instruction: str, email: NormalizedEmail
    ) -> Union[ConditionVerdict, bool]:
        """Judge whether ``email`` satisfies ``instruction``."""

    def complete_field(self, instruction: str, email: NormalizedEmail) -> str:
        """Produce the value of an AI-authored action field."""


_VERDICT_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "matched": {"type": "boolean"},
        "reason": {"type": "string"},
    },
    "required": ["matched", "reason"],
}

_CONDITION_PROMPT = (
    "You decide whether an email matches a user's automation rule. "
    "Answer strictly according to the rule text. "
    "When the email does not clearly match, answer matched=false."
)

_FIELD_PROMPT = (
    "You write one field of an automated email action for the user. "
    "Follow the instruction exactly and return only the field value, "
    "with no quotes, labels, or commentary."
)


def render_email(email: NormalizedEmail, *, max_body_chars: int) -> str:
    """Compact plain-text rendering of ``email`` for a prompt."""

    body = email.body_text
    if len(body) > max_body_chars:
        body = body[:max_body_chars] + "\n[truncated]"
    lines = [
        f"From: {email.from_}",
        f"To: {', '.join(email.to)}",
    ]
    if email.cc:
        lines.append(f"Cc: {', '.join(email.cc)}")
    lines.append(f"Subject: {email.subject}")
    if email.attachments:
        lines.append("Attachments: " + ", ".join(item.filename for item in email.attachments))
    lines.append("")
    lines.append(body)
    return "\n".join(lines)


class OpenAIReasoner:
    """Reasoning capability backed by the OpenAI Responses API.

    What:
      Implements :class:`ReasoningCapability` with one request per call.

    Why:
      The evaluator and resolver need a production backend; the Responses API
      supports strict JSON schemas, which keeps verdict parsing trivial.

    How:
      Builds a system/user message pair and calls ``responses.create``. The
      client is created lazily from the API key named by
      ``settings.api_key_env`` unless one is injected (tests pass a fake).
    """

    def __init__(self, settings: ReasoningSettings, *, client: Optional[Any] = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            api_key = os.environ.get(self._settings.api_key_env)
            if not api_key:
                raise ReasoningError(f"environment variable {self._settings.api_key_env} is not set")
            self._client = OpenAI(api_key=api_key)
        return self._client

    def _request(self, system: str, user: str, **extra: Any) -> str:
        try:
            response = self.client.responses.create(
                model=self._settings.model,
                temperature=self._settings.temperature,
                input=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                **extra,
            )
        except OpenAIError as exc:
            raise ReasoningError(f"reasoning request failed: {exc}") from exc
        output_text = getattr(response, "output_text", None)
        if not output_text:
            raise ReasoningError("reasoning response was empty")
        return output_text

    def evaluate_condition(self, instruction: str, email: NormalizedEmail) -> ConditionVerdict:
        rendered = render_email(email, max_body_chars=self._settings.max_body_chars)
        output_text = self._request(
            _CONDITION_PROMPT,
            f"RULE:\n{instruction}\n\nEMAIL:\n{rendered}",
            text={
                "format": {
                    "type": "json_schema",
                    "name": "condition_verdict",
                    "schema": _VERDICT_SCHEMA,
                    "strict": True,
                }
            },
        )
        try:
            payload = json.loads(output_text)
        except json.JSONDecodeError as exc:
            raise ReasoningError("reasoning response is not valid JSON") from exc
        matched = payload.get("matched") if isinstance(payload, dict) else None
        if not isinstance(matched, bool):
            raise ReasoningError("reasoning response is missing a boolean 'matched'")
        return ConditionVerdict(matched=matched, reason=str(payload.get("reason") or ""))

    def complete_field(self, instruction: str, email: NormalizedEmail) -> str:
        rendered = render_email(email, max_body_chars=self._settings.max_body_chars)
        return self._request(
            _FIELD_PROMPT,
            f"INSTRUCTION:\n{instruction}\n\nEMAIL:\n{rendered}",
        ).strip()


class UnavailableReasoner:
    """Reasoning capability for runs without a model; every call fails."""

    def __init__(self, reason: str = "reasoning is disabled") -> None:
        self._reason = reason

    def evaluate_condition(self, instruction: str, email: NormalizedEmail) -> ConditionVerdict:
        raise ReasoningError(self._reason)

    def complete_field(self, instruction: str, email: NormalizedEmail) -> str:
        raise ReasoningError(self._reason)


def build_reasoner(settings: ReasoningSettings) -> ReasoningCapability:
    """Return the reasoner selected by ``settings.provider``."""

    if settings.provider == "none":
        return UnavailableReasoner()
    return OpenAIReasoner(settings)
