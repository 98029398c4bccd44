"""Strict loaders and serializers for inboxrules configuration documents.

What:
  Locate, parse, validate, and serialise ``config.yaml`` (runtime settings) and
  ``rules.yaml`` (the account's rule set).

Why:
  Both documents are edited by hand or produced by external tooling. Routing
  every read through one module guarantees that nothing reaches the engine
  without strict pydantic validation and gives each revision a stable
  checksum for audit logs.

How:
  Resolve candidate config paths from an explicit argument, the
  ``INBOXRULES_CONFIG_PATH`` environment variable, and well-known defaults.
  Decode YAML with :func:`yaml.safe_load`, validate with the schema models, and
  wrap failures in :class:`ConfigLoadError` subclasses carrying file context.

Interfaces:
  :func:`load_runtime_config`, :func:`get_runtime_config`,
  :func:`reset_runtime_config`, :func:`parse_rules`, :func:`load_rules`,
  :func:`dump_rules`, :class:`LoadedDocument`.

Invariants:
  - External payloads pass strict validation before they are returned.
  - The runtime cache honours explicit reload requests and path precedence.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Tuple

import yaml
from pydantic import ValidationError as _PydanticValidationError

from ..utils.ids import checksum
from .schema import RulesDocument, RuntimeConfig


class ConfigLoadError(Exception):
    """Base error for configuration parsing or validation failures."""


class RuntimeConfigError(ConfigLoadError):
    """``config.yaml`` cannot be located, read, or validated."""


class RuntimeConfigNotFoundError(RuntimeConfigError):
    """No ``config.yaml`` exists at any candidate path."""


class RulesDocumentError(ConfigLoadError):
    """``rules.yaml`` is not valid YAML or violates the rule schema."""


@dataclass
class LoadedDocument:
    """A validated model together with its source text and checksum.

    Attributes:
      model: The validated pydantic model.
      raw: The text the model was parsed from.
      checksum: ``sha256:<hex>`` digest of ``raw``.
    """

    model: Any
    raw: str
    checksum: str


_CONFIG_ENV = "INBOXRULES_CONFIG_PATH"
_DEFAULT_LOCATIONS: Tuple[Path, ...] = (
    Path("config.yaml"),
    Path("/etc/inboxrules/config.yaml"),
)
_RUNTIME_CACHE: Optional[Tuple[Path, RuntimeConfig]] = None


def _candidate_paths(path: Optional[Path]) -> Iterable[Path]:
    """Yield ``config.yaml`` locations from most to least specific, deduplicated."""

    seen: set[Path] = set()
    env_path = os.environ.get(_CONFIG_ENV)
    ordered = [path, Path(env_path) if env_path else None, *_DEFAULT_LOCATIONS]
    for item in ordered:
        if item is None:
            continue
        candidate = item.expanduser()
        if candidate not in seen:
            seen.add(candidate)
            yield candidate


def _parse_yaml_mapping(text: str, source: str, error: type[ConfigLoadError]) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise error(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise error(f"{source} must contain a mapping at the top-level")
    return payload


def _load_runtime_from_path(path: Path) -> RuntimeConfig:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RuntimeConfigError(f"Configuration file missing: {path}") from exc
    except OSError as exc:  # pragma: no cover - filesystem surface
        raise RuntimeConfigError(f"Unable to read configuration file {path}: {exc}") from exc
    payload = _parse_yaml_mapping(text, str(path), RuntimeConfigError)
    try:
        return RuntimeConfig.model_validate(payload)
    except _PydanticValidationError as exc:
        raise RuntimeConfigError(f"Invalid config.yaml: {exc}") from exc


def load_runtime_config(
    path: Optional[Path | str] = None,
    *,
    reload: bool = False,
) -> RuntimeConfig:
    """Resolve, parse, and cache the runtime configuration.

    What:
      Locate ``config.yaml`` using the precedence chain and return a validated
      :class:`RuntimeConfig`.

    Why:
      Engine wiring, the CLI, and adapters all need the same settings; caching
      avoids repeated disk reads while ``reload`` allows deterministic refreshes.

    How:
      Walk the candidate paths on every call and take the first one that
      exists. The cached value is served only when it came from that same
      file and ``reload`` is not set, so a changed environment variable or
      working directory is never answered from a stale cache.

    Args:
      path: Optional explicit location of ``config.yaml``.
      reload: Bypass the cache when ``True``.

    Returns:
      The validated runtime configuration.

    Raises:
      RuntimeConfigError: No candidate exists, or the file found is invalid.
    """

    global _RUNTIME_CACHE

    requested_path = Path(path).expanduser() if isinstance(path, (str, Path)) else None
    searched: list[str] = []
    for candidate in _candidate_paths(requested_path):
        if not candidate.exists():
            searched.append(str(candidate))
            continue
        if not reload and _RUNTIME_CACHE is not None and _RUNTIME_CACHE[0] == candidate:
            return _RUNTIME_CACHE[1]
        config = _load_runtime_from_path(candidate)
        _RUNTIME_CACHE = (candidate, config)
        return config

    listing = ", ".join(searched) if searched else "<none>"
    raise RuntimeConfigNotFoundError(f"Unable to locate config.yaml (searched: {listing})")


def get_runtime_config() -> RuntimeConfig:
    """Return the cached runtime configuration, loading it on demand."""

    return load_runtime_config()


def reset_runtime_config() -> None:
    """Forget the cached runtime configuration."""

    global _RUNTIME_CACHE
    _RUNTIME_CACHE = None


def parse_rules(yaml_text: str) -> RulesDocument:
    """Convert ``rules.yaml`` text into a validated :class:`RulesDocument`.

    A bare list of rules is accepted as shorthand for ``{rules: [...]}``.

    Raises:
      RulesDocumentError: The text is not YAML or does not satisfy the schema.
    """

    try:
        payload = yaml.safe_load(yaml_text)
    except yaml.YAMLError as exc:
        raise RulesDocumentError(f"Invalid YAML in rules.yaml: {exc}") from exc
    if payload is None:
        payload = {"rules": []}
    elif isinstance(payload, list):
        payload = {"rules": payload}
    if not isinstance(payload, dict):
        raise RulesDocumentError("rules.yaml must contain a mapping or a list of rules")
    try:
        return RulesDocument.model_validate(payload)
    except _PydanticValidationError as exc:
        raise RulesDocumentError(f"Invalid rules.yaml: {exc}") from exc


def load_rules(source: bytes) -> LoadedDocument:
    """Decode, validate, and checksum a ``rules.yaml`` payload."""

    try:
        text = source.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise RulesDocumentError(f"rules.yaml is not valid UTF-8: {exc}") from exc
    model = parse_rules(text)
    return LoadedDocument(model=model, raw=text, checksum=checksum(source))


def dump_rules(model: RulesDocument) -> bytes:
    """Serialise rules back to YAML bytes.

    Literal field values become plain strings and directives ``{ai: ...}``
    mappings, so the output loads back into an equal document.
    """

    data = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    return text.encode("utf-8")
