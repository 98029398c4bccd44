"""Aggregated exports for the inboxrules rule engine.

What:
  Expose the pipeline's main types from one place while deferring imports
  until a name is requested.

Why:
  The reasoning module imports the OpenAI SDK, which is slow to load and not
  needed for tasks such as validating a rules file. Lazy access keeps those
  paths fast.

How:
  ``__getattr__`` maps each public name to its owning submodule and imports
  it on first access.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS = {
    "Engine": "engine",
    "EmailReport": "engine",
    "EngineStats": "engine",
    "NormalizedEmail": "email",
    "ConditionEvaluator": "conditions",
    "MatchVerdict": "conditions",
    "RuleSelector": "selector",
    "Selection": "selector",
    "ActionResolver": "resolver",
    "ResolvedAction": "resolver",
    "ResolutionCache": "resolver",
    "ActionExecutor": "executor",
    "ExecutionResult": "executor",
    "Outcome": "executor",
    "ApprovalGate": "approvals",
    "AccountContext": "context",
    "RuleBook": "rulebook",
    "InMemoryScheduler": "scheduling",
    "FileScheduler": "scheduling",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Import the submodule owning ``name`` and return the attribute."""

    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(name)
    return getattr(import_module(f".{module_name}", __name__), name)
