"""inboxrules.core.resolver

What:
  Turn the abstract actions of a matched rule into concrete, provider-bound
  :class:`ResolvedAction` records: label and folder names become ids,
  ``{{...}}`` markers are substituted, AI-authored fields are generated, and
  required fields and recipients are checked.

Why:
  Actions are written once by the user but run against many emails and
  several providers. Resolving them in a separate step keeps the executor
  free of templating and lookups, and lets one broken action (an unknown
  variable, a reserved label name, a reasoning failure) fail on its own while
  its siblings still run.

How:
  - Label/folder ids are resolved with lookup-before-create and memoised in a
    per-run :class:`ResolutionCache`; a lock around get-or-create makes sure
    a name is created at most once even with concurrent callers.
  - Literal fields are expanded with :func:`~inboxrules.core.templates.expand`;
    unknown markers are an error.
  - Directive fields are expanded first, then sent to
    ``ReasoningCapability.complete_field`` under a timeout.

Interfaces:
  :class:`ResolutionCache`, :class:`ResolvedAction`, :class:`ActionResolver`.

Invariants & Safety:
  - :meth:`ActionResolver.resolve` either returns a fully concrete action or
    raises :class:`~inboxrules.core.errors.ResolutionError`; partial results
    never escape.
  - :class:`~inboxrules.mail.capability.MailboxUnavailableError` is not
    contained; it aborts the run.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from email.utils import getaddresses
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple, TypeVar, Union
from urllib.parse import urlparse

from ..config.schema import Action, ActionType, DirectiveField, LiteralField
from ..mail.capability import Folder, Label, MailboxUnavailableError, MailCapability
from ..mail.labels import validate_label_name
from ..utils.deadline import call_with_timeout
from ..utils.logging import JsonLogger, get_logger
from .context import AccountContext
from .email import NormalizedEmail
from .errors import ResolutionError
from .reasoning import ReasoningCapability
from .templates import email_variables, expand

T = TypeVar("T")

_RECIPIENT_FIELDS = ("to", "cc", "bcc")


class ResolutionCache:
    """Per-run memo of label and folder ids, keyed by case-folded name.

    Providers look labels and folders up case-insensitively, so "Receipts"
    and "receipts" share one entry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.labels: Dict[str, Label] = {}
        self.folders: Dict[str, Folder] = {}

    def get_or_create(self, table: Dict[str, T], name: str, factory: Callable[[], T]) -> T:
        key = name.casefold()
        with self._lock:
            if key not in table:
                table[key] = factory()
            return table[key]


@dataclass(frozen=True)
class ResolvedAction:
    """A concrete action ready for the executor.

    Attributes:
      action_id: Stable id of the action (``<rule id>:<index>`` by default).
      rule_id: Rule that produced the action.
      type: Action type.
      label_id / label_name: Target label for ``label`` actions.
      folder_id / folder_name: Target folder for ``move_folder`` actions.
      to / cc / bcc: Validated recipient addresses.
      subject / content: Substituted text.
      url: Webhook endpoint.
      delay_in_minutes: Delay before execution; ``None`` or ``<= 0`` is immediate.
      ai_fields: Names of fields whose value was AI-authored.
    """

    action_id: str
    rule_id: str
    type: ActionType
    label_id: Optional[str] = None
    label_name: Optional[str] = None
    folder_id: Optional[str] = None
    folder_name: Optional[str] = None
    to: Tuple[str, ...] = ()
    cc: Tuple[str, ...] = ()
    bcc: Tuple[str, ...] = ()
    subject: Optional[str] = None
    content: Optional[str] = None
    url: Optional[str] = None
    delay_in_minutes: Optional[int] = None
    ai_fields: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_delayed(self) -> bool:
        return self.delay_in_minutes is not None and self.delay_in_minutes > 0

    def summary(self) -> Dict[str, Any]:
        """Identifiers and targets for logs; text content is left out."""

        data: Dict[str, Any] = {
            "action_id": self.action_id,
            "rule_id": self.rule_id,
            "action_type": self.type.value,
        }
        for name in ("label_id", "folder_id", "url", "delay_in_minutes"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.ai_fields:
            data["ai_fields"] = sorted(self.ai_fields)
        return data


def parse_recipients(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated recipient string into bare addresses."""

    if not value:
        return ()
    return tuple(address.strip() for _, address in getaddresses([value]) if address.strip())


def _valid_address(address: str) -> bool:
    local, sep, domain = address.rpartition("@")
    return bool(sep and local and domain and " " not in address and "." in domain)


class ActionResolver:
    """Resolve abstract actions against one email and mailbox.

    What:
      Implements the name-to-id, template, and AI-field steps for every
      action type.

    Why:
      Centralising these steps gives every action type the same error
      semantics and lets the executor assume concrete inputs.

    How:
      :meth:`resolve` handles one action; :meth:`resolve_all` maps over a rule's
      actions, capturing each :class:`ResolutionError` in place.
    """

    def __init__(
        self,
        mailbox: MailCapability,
        reasoner: ReasoningCapability,
        *,
        completion_timeout_s: Optional[float] = 30.0,
        provider_timeout_s: Optional[float] = 30.0,
        logger: Optional[JsonLogger] = None,
    ) -> None:
        self._mailbox = mailbox
        self._reasoner = reasoner
        self._completion_timeout_s = completion_timeout_s
        self._provider_timeout_s = provider_timeout_s
        self._logger = logger or get_logger("inboxrules.resolver")

    def resolve_all(
        self,
        actions: Sequence[Action],
        email: NormalizedEmail,
        context: Optional[AccountContext] = None,
        *,
        rule_id: str,
        cache: Optional[ResolutionCache] = None,
    ) -> List[Union[ResolvedAction, ResolutionError]]:
        """Resolve every action of a rule; failures are returned in place."""

        cache = cache or ResolutionCache()
        results: List[Union[ResolvedAction, ResolutionError]] = []
        for index, action in enumerate(actions):
            try:
                results.append(
                    self.resolve(action, email, context, rule_id=rule_id, index=index, cache=cache)
                )
            except ResolutionError as exc:
                self._logger.warning(
                    "action_resolution_failed",
                    rule_id=rule_id,
                    action_id=exc.action_id,
                    action_type=exc.action_type,
                    field=exc.field,
                    error=str(exc),
                    **email.summary(),
                )
                results.append(exc)
        return results

    def resolve(
        self,
        action: Action,
        email: NormalizedEmail,
        context: Optional[AccountContext] = None,
        *,
        rule_id: str,
        index: int = 0,
        cache: Optional[ResolutionCache] = None,
    ) -> ResolvedAction:
        """Resolve one action.

        Args:
          action: The rule's action model.
          email: The triggering email.
          context: Account the run belongs to (used for log correlation).
          rule_id: Owning rule id.
          index: Position of the action within its rule; names the default id.
          cache: Per-run label/folder memo; a private one is used when omitted.

        Returns:
          The concrete :class:`ResolvedAction`.

        Raises:
          ResolutionError: A reference, template, AI field, or required field
            could not be made concrete.
        """

        cache = cache or ResolutionCache()
        action_type = action.action_type
        action_id = action.id or f"{rule_id}:{index}"
        variables = email_variables(email)

        def fail(message: str, field_name: Optional[str] = None) -> ResolutionError:
            return ResolutionError(
                message,
                action_id=action_id,
                action_type=action_type.value,
                field=field_name,
                rule_id=rule_id,
            )

        texts: Dict[str, Optional[str]] = {}
        ai_fields: set[str] = set()
        for name, value in action.text_fields().items():
            if value is None:
                texts[name] = None
            elif isinstance(value, LiteralField):
                expanded, unresolved = expand(value.value, variables)
                if unresolved:
                    raise fail(f"unknown template variable(s): {', '.join(unresolved)}", name)
                texts[name] = expanded
            elif isinstance(value, DirectiveField):
                texts[name] = self._complete(value, email, variables, fail, name)
                ai_fields.add(name)

        recipients = {name: parse_recipients(texts.get(name)) for name in _RECIPIENT_FIELDS}
        for name, addresses in recipients.items():
            for address in addresses:
                if not _valid_address(address):
                    raise fail(f"invalid recipient address {address!r}", name)

        resolved: Dict[str, Any] = {
            "action_id": action_id,
            "rule_id": rule_id,
            "type": action_type,
            "to": recipients["to"],
            "cc": recipients["cc"],
            "bcc": recipients["bcc"],
            "subject": texts.get("subject"),
            "content": texts.get("content"),
            "delay_in_minutes": action.delay_in_minutes,
            "ai_fields": frozenset(ai_fields),
        }

        if action_type is ActionType.LABEL:
            label = self._resolve_label(getattr(action, "label_id"), texts.get("label"), cache, fail)
            resolved.update(label_id=label.id, label_name=label.name)
        elif action_type is ActionType.MOVE_FOLDER:
            folder = self._resolve_folder(
                getattr(action, "folder_id"), texts.get("folder_name"), cache, fail
            )
            resolved.update(folder_id=folder.id, folder_name=folder.name)
        elif action_type in (ActionType.SEND_EMAIL, ActionType.FORWARD) and not recipients["to"]:
            raise fail(f"{action_type.value} requires at least one recipient", "to")
        elif action_type is ActionType.CALL_WEBHOOK:
            url = (texts.get("url") or "").strip()
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise fail(f"webhook url must be an absolute http(s) URL, got {url!r}", "url")
            resolved["url"] = url

        if action_type in (ActionType.SEND_EMAIL, ActionType.REPLY):
            if not (resolved["content"] or "").strip():
                raise fail(f"{action_type.value} requires content", "content")

        return ResolvedAction(**resolved)

    def _complete(
        self,
        value: DirectiveField,
        email: NormalizedEmail,
        variables: Dict[str, str],
        fail: Callable[[str, Optional[str]], ResolutionError],
        name: str,
    ) -> str:
        instruction, _ = expand(value.instruction, variables)
        try:
            text = call_with_timeout(
                self._reasoner.complete_field, instruction, email, timeout_s=self._completion_timeout_s
            )
        except Exception as exc:
            raise fail(f"AI field generation failed: {exc}", name) from exc
        if not isinstance(text, str) or not text.strip():
            raise fail("AI field generation returned an empty value", name)
        return text.strip()

    def _provider_call(self, func: Callable[..., T], *args: Any) -> T:
        return call_with_timeout(func, *args, timeout_s=self._provider_timeout_s)

    def _resolve_label(
        self,
        label_id: Optional[str],
        name: Optional[str],
        cache: ResolutionCache,
        fail: Callable[[str, Optional[str]], ResolutionError],
    ) -> Label:
        if label_id:
            return Label(id=label_id, name=name or label_id)
        name = name or ""
        problem = validate_label_name(name) or self._mailbox.validate_label_name(name)
        if problem:
            raise fail(problem, "label")

        def _lookup_or_create() -> Label:
            existing = self._provider_call(self._mailbox.get_label_by_name, name)
            if existing is not None:
                return existing
            self._logger.info("label_created", label=name)
            return self._provider_call(self._mailbox.create_label, name)

        try:
            return cache.get_or_create(cache.labels, name, _lookup_or_create)
        except MailboxUnavailableError:
            raise
        except Exception as exc:
            raise fail(f"could not resolve label {name!r}: {exc}", "label") from exc

    def _resolve_folder(
        self,
        folder_id: Optional[str],
        name: Optional[str],
        cache: ResolutionCache,
        fail: Callable[[str, Optional[str]], ResolutionError],
    ) -> Folder:
        if folder_id:
            return Folder(id=folder_id, name=name or folder_id)
        name = (name or "").strip()
        if not name:
            raise fail("folder name cannot be empty", "folder_name")

        def _lookup_or_create() -> Folder:
            existing = self._provider_call(self._mailbox.get_folder_by_name, name)
            if existing is not None:
                return existing
            self._logger.info("folder_created", folder=name)
            return self._provider_call(self._mailbox.create_folder, name)

        try:
            return cache.get_or_create(cache.folders, name, _lookup_or_create)
        except MailboxUnavailableError:
            raise
        except Exception as exc:
            raise fail(f"could not resolve folder {name!r}: {exc}", "folder_name") from exc
