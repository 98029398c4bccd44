"""In-memory rule management with optimistic concurrency.

What:
  Keep an account's rules in stored order and apply create, update, and
  delete operations that preserve name uniqueness and reject stale writes.

Why:
  Rules are edited from several places (a settings form, an assistant chat,
  a YAML import). Two editors saving at once must not silently overwrite each
  other, and two rules with the same name confuse users and the assistant.

How:
  Every rule carries a ``version``. :meth:`RuleBook.update` accepts the
  version the caller last read and raises :class:`StaleRuleError` when it no
  longer matches; successful updates bump the version and ``updated_at``.
  Names are compared case-insensitively. A lock serialises mutations.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional

from ..config.schema import Rule, RulesDocument
from .errors import DuplicateRuleNameError, RuleNotFoundError, StaleRuleError

_IMMUTABLE_FIELDS = frozenset({"id", "version", "updated_at"})


class RuleBook:
    """Thread-safe, ordered collection of one account's rules."""

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._lock = threading.Lock()
        self._rules: List[Rule] = []
        self._clock = clock
        for rule in rules:
            self._check_name(rule.name)
            self._rules.append(rule)

    @classmethod
    def from_document(cls, document: RulesDocument, **kwargs: Any) -> "RuleBook":
        return cls(document.rules, **kwargs)

    def to_document(self) -> RulesDocument:
        return RulesDocument(rules=self.list())

    def list(self) -> List[Rule]:
        """All rules in stored order."""

        with self._lock:
            return list(self._rules)

    def get(self, rule_id: str) -> Rule:
        with self._lock:
            return self._rules[self._index(rule_id)]

    def create(self, rule: Rule) -> Rule:
        """Append ``rule``.

        Raises:
          DuplicateRuleNameError: Another rule already uses the name.
          ValueError: Another rule already uses the id.
        """

        with self._lock:
            if any(existing.id == rule.id for existing in self._rules):
                raise ValueError(f"a rule with id {rule.id!r} already exists")
            self._check_name(rule.name)
            stored = rule.model_copy(update={"version": 1, "updated_at": self._clock()})
            self._rules.append(stored)
            return stored

    def update(
        self,
        rule_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Rule:
        """Apply ``changes`` to a rule.

        Args:
          rule_id: Rule to update.
          changes: Field values to replace, in the rule document's shape.
          expected_version: Version the caller based its edit on; ``None``
            skips the concurrency check.

        Raises:
          RuleNotFoundError: No rule has ``rule_id``.
          StaleRuleError: The rule changed since ``expected_version``.
          DuplicateRuleNameError: The new name is taken by another rule.
        """

        forbidden = _IMMUTABLE_FIELDS & set(changes)
        if forbidden:
            raise ValueError(f"cannot change {', '.join(sorted(forbidden))}")
        with self._lock:
            index = self._index(rule_id)
            current = self._rules[index]
            if expected_version is not None and expected_version != current.version:
                raise StaleRuleError(rule_id, expected=expected_version, current=current.version)
            if "name" in changes:
                self._check_name(str(changes["name"]), ignore_id=rule_id)
            payload = current.model_dump(by_alias=True)
            payload.update(changes)
            payload["version"] = current.version + 1
            payload["updated_at"] = self._clock()
            updated = Rule.model_validate(payload)
            self._rules[index] = updated
            return updated

    def delete(self, rule_id: str) -> Rule:
        with self._lock:
            return self._rules.pop(self._index(rule_id))

    def _index(self, rule_id: str) -> int:
        for index, rule in enumerate(self._rules):
            if rule.id == rule_id:
                return index
        raise RuleNotFoundError(rule_id)

    def _check_name(self, name: str, *, ignore_id: Optional[str] = None) -> None:
        key = name.strip().casefold()
        for rule in self._rules:
            if rule.id != ignore_id and rule.name.casefold() == key:
                raise DuplicateRuleNameError(name)
