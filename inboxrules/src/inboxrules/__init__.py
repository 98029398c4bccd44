"""
Module: inboxrules.__init__

What:
  Package root of the inbox-triage rule engine. Exposes the subpackages that
  make up the pipeline: configuration, the core engine, mailbox adapters, and
  utilities.

Why:
  Entry points and embedding services import from these namespaces only, so
  the internal module layout can change without breaking them.

Interfaces:
  - config: ``config.yaml`` and ``rules.yaml`` loaders and schema models.
  - core: condition evaluation, rule selection, action resolution and
    execution, approvals, and the :class:`~inboxrules.core.engine.Engine`.
  - mail: the mailbox capability contract plus IMAP and dry-run adapters.
  - utils: logging, ids, deadlines, backoff, MIME, and guarded regexes.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "core",
    "mail",
    "utils",
]
