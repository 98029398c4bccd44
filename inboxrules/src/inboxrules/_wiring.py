"""Helper functions backing the inboxrules CLI.

What:
  Assemble engines from configuration, load rule and email files, and run an
  engine over a batch while collecting timing metrics.

Why:
  Keeping the glue out of :mod:`inboxrules.cli` lets tests exercise it without
  going through Typer, and keeps each command body short.

How:
  Plain functions taking the runtime configuration explicitly; none of them
  read global state except the environment variables the configuration names
  for secrets.
"""
from __future__ import annotations

import os
from pathlib import Path
from time import monotonic
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .config.loader import LoadedDocument, RuntimeConfigNotFoundError, load_rules, load_runtime_config
from .config.schema import RuntimeConfig
from .core.context import AccountContext
from .core.email import NormalizedEmail
from .core.engine import Engine, EngineStats
from .core.reasoning import ReasoningCapability, UnavailableReasoner, build_reasoner
from .core.scheduling import FileScheduler, InMemoryScheduler
from .core.webhook import WebhookClient
from .mail.capability import MailCapability, MessageNotFoundError
from .mail.dry_run import DryRunMailbox
from .utils.logging import JsonLogger


def resolve_runtime(path: Optional[Path] = None) -> RuntimeConfig:
    """Load ``config.yaml``; built-in defaults apply when none exists.

    An explicit ``path`` must exist. Invalid files always raise.
    """

    if path is not None:
        return load_runtime_config(path, reload=True)
    try:
        return load_runtime_config()
    except RuntimeConfigNotFoundError:
        return RuntimeConfig()


def load_rules_file(path: Path) -> LoadedDocument:
    """Read and validate a ``rules.yaml`` file."""

    return load_rules(Path(path).read_bytes())


def load_email_file(path: Path) -> NormalizedEmail:
    """Parse an ``.eml`` file; its file stem becomes the message id."""

    source = Path(path)
    return NormalizedEmail.from_bytes(source.read_bytes(), id=source.stem)


def build_scheduler(path: Optional[Path] = None) -> InMemoryScheduler:
    """A :class:`FileScheduler` at ``path``, or an in-memory one without a path."""

    return FileScheduler(path) if path is not None else InMemoryScheduler()


def fetch_messages(
    mailbox: MailCapability,
    message_ids: Sequence[str],
    *,
    logger: JsonLogger,
) -> Tuple[List[NormalizedEmail], List[str]]:
    """Fetch ``message_ids`` one by one, skipping messages that vanished.

    Returns:
      The fetched emails and the ids that no longer exist.
    """

    emails: List[NormalizedEmail] = []
    missing: List[str] = []
    for message_id in message_ids:
        try:
            emails.append(mailbox.get_message(message_id))
        except MessageNotFoundError as exc:
            logger.warning("message_skipped", message_id=message_id, reason=str(exc))
            missing.append(message_id)
    return emails, missing


def build_webhook_client(runtime: RuntimeConfig) -> WebhookClient:
    secret_env = runtime.webhook.secret_env
    secret = os.environ.get(secret_env) if secret_env else None
    return WebhookClient(timeout_s=runtime.webhook.timeout_s, secret=secret)


def build_engine(
    document: LoadedDocument,
    *,
    runtime: RuntimeConfig,
    mailbox: MailCapability,
    context: AccountContext,
    logger: JsonLogger,
    reasoner: Optional[ReasoningCapability] = None,
    **overrides: Any,
) -> Engine:
    """Create an :class:`Engine` for ``document`` from runtime settings.

    ``overrides`` are passed to the engine unchanged (scheduler, webhook,
    digest, tracker, run id).
    """

    options: dict[str, Any] = {
        "scheduler": InMemoryScheduler(),
        "webhook": build_webhook_client(runtime),
    }
    options.update(overrides)
    return Engine(
        document.model,
        mailbox=mailbox,
        reasoner=reasoner or build_reasoner(runtime.reasoning),
        context=context,
        config=runtime,
        logger=logger,
        **options,
    )


def build_dry_run_engine(
    document: LoadedDocument,
    email: NormalizedEmail,
    *,
    runtime: RuntimeConfig,
    logger: JsonLogger,
    multi_rule: bool = False,
    use_ai: bool = True,
) -> Tuple[Engine, DryRunMailbox]:
    """Engine whose every side effect is recorded by a :class:`DryRunMailbox`."""

    mailbox = DryRunMailbox([email])
    reasoner = build_reasoner(runtime.reasoning) if use_ai else UnavailableReasoner("AI disabled for this run")
    engine = build_engine(
        document,
        runtime=runtime,
        mailbox=mailbox,
        context=AccountContext(account_id="dry-run", provider="dry-run", multi_rule_selection=multi_rule),
        logger=logger,
        reasoner=reasoner,
        webhook=mailbox,
        digest=mailbox,
        tracker=mailbox,
    )
    return engine, mailbox


def safe_engine_process(
    *,
    engine: Engine,
    emails: Iterable[NormalizedEmail],
) -> Tuple[EngineStats, dict[str, Any]]:
    """Run ``engine.process`` and derive timing and count metrics."""

    email_list = list(emails)
    started = monotonic()
    stats = engine.process(email_list)
    ended = monotonic()
    metrics = {
        "cycle_seconds": ended - started,
        "emails_fetched": len(email_list),
        "matched_emails": stats.matched_emails,
        "actions_applied": stats.actions_applied,
        "pending_approvals": stats.pending_approvals,
        "scheduled_actions": stats.scheduled_actions,
    }
    return stats, metrics
