"""inboxrules configuration package.

What:
  Provide one import surface for the configuration loaders and the pydantic
  models describing runtime settings and rule documents.

Why:
  Callers should not depend on the internal module layout, and every path to
  user-provided YAML must pass through the validating loaders.

Interfaces:
  - load_rules / parse_rules / dump_rules: ``rules.yaml`` to and from models.
  - get_runtime_config / load_runtime_config / reset_runtime_config:
    ``config.yaml`` discovery and caching.
  - Rule / RulesDocument / RuntimeConfig / ValidationError: schema types.
"""

from .loader import (
    ConfigLoadError,
    LoadedDocument,
    RulesDocumentError,
    RuntimeConfigError,
    RuntimeConfigNotFoundError,
    dump_rules,
    get_runtime_config,
    load_rules,
    load_runtime_config,
    parse_rules,
    reset_runtime_config,
)
from .schema import ActionType, Rule, RulesDocument, RuntimeConfig, ValidationError

__all__ = [
    "ConfigLoadError",
    "LoadedDocument",
    "RulesDocumentError",
    "RuntimeConfigError",
    "RuntimeConfigNotFoundError",
    "load_rules",
    "parse_rules",
    "dump_rules",
    "get_runtime_config",
    "load_runtime_config",
    "reset_runtime_config",
    "ActionType",
    "Rule",
    "RulesDocument",
    "RuntimeConfig",
    "ValidationError",
]
