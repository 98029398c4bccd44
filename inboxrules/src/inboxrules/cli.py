"""inboxrules command-line interface.

What:
  Provide a Typer entry point with three commands: ``check-rules`` validates a
  rules file, ``dry-run`` shows what a rule set would do to one ``.eml`` file,
  and ``once`` triages a batch of unseen messages from the configured IMAP
  account.

Why:
  Rule authors need a safe way to try their rules before pointing them at a
  real mailbox, and operators need a single-pass command that cron or a
  systemd timer can schedule.

How:
  Each command loads the runtime configuration and rules through
  :mod:`inboxrules._wiring`, builds an :class:`~inboxrules.core.engine.Engine`,
  and prints a single JSON document on stdout. Engine logs go to stderr as
  JSON lines so stdout stays machine-readable.

Invariants & Safety:
  - Exit codes follow shell expectations (``0`` success, ``1`` failure).
  - ``dry-run`` never touches a mailbox; every side effect is recorded by a
    :class:`~inboxrules.mail.dry_run.DryRunMailbox`.
"""
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import typer

from ._wiring import (
    build_dry_run_engine,
    build_engine,
    build_scheduler,
    fetch_messages,
    load_email_file,
    load_rules_file,
    resolve_runtime,
    safe_engine_process,
)
from .config.loader import ConfigLoadError
from .core.context import AccountContext
from .core.scheduling import ScheduleStoreError
from .mail.capability import ProviderError
from .utils.ids import new_run_id
from .utils.logging import get_logger

app = typer.Typer(help="Rule matching and action execution for inbox triage")

LOGGER = logging.getLogger("inboxrules.cli")


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, sort_keys=True, default=str))


@app.command("check-rules")
def check_rules(
    rules_path: Path = typer.Argument(..., help="Path to rules.yaml"),
) -> None:
    """Validate a rules file and print its rule count and checksum."""

    try:
        document = load_rules_file(rules_path)
    except (OSError, ConfigLoadError) as exc:
        LOGGER.error("check_rules_failed path=%s error=%s", rules_path, exc)
        typer.echo(f"invalid rules file {rules_path}: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    enabled = sum(1 for rule in document.model.rules if rule.enabled)
    _emit(
        {
            "path": str(rules_path),
            "rules": len(document.model.rules),
            "enabled": enabled,
            "checksum": document.checksum,
        }
    )


@app.command("dry-run")
def dry_run(
    email_path: Path = typer.Argument(..., help="RFC 822 message (.eml) to triage"),
    *,
    rules: Path = typer.Option(..., "--rules", help="Path to rules.yaml"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
    multi_rule: bool = typer.Option(False, "--multi-rule", help="Act on every matching rule"),
    no_ai: bool = typer.Option(False, "--no-ai", help="Disable the language model; AI conditions stay unmatched"),
) -> None:
    """Show which rules match an email and the operations they would perform.

    What:
      Runs the full pipeline against a recording mailbox and prints the email
      report together with the recorded operations.

    How:
      AI conditions fail closed without a model, so ``--no-ai`` reports them
      as indeterminate and only static rules can match.
    """

    try:
        runtime = resolve_runtime(config)
        document = load_rules_file(rules)
        email = load_email_file(email_path)
    except (OSError, ConfigLoadError) as exc:
        LOGGER.error("dry_run_load_failed error=%s", exc)
        typer.echo(f"dry-run failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    engine, mailbox = build_dry_run_engine(
        document,
        email,
        runtime=runtime,
        logger=get_logger("inboxrules.engine", stream=sys.stderr),
        multi_rule=multi_rule,
        use_ai=not no_ai,
    )
    report = engine.process_email(email)
    _emit(
        {
            "report": report.to_dict(),
            "operations": mailbox.to_dicts(),
            "pending_approvals": [item.approval_id for item in engine.approvals.pending()],
        }
    )


@app.command("once")
def once(
    *,
    rules: Path = typer.Option(..., "--rules", help="Path to rules.yaml"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
    max_batch: int = typer.Option(50, help="Maximum messages to process per run"),
    since_uid: Optional[int] = typer.Option(None, help="Only consider messages above this UID"),
    schedule_file: Optional[Path] = typer.Option(
        None, "--schedule-file", help="YAML file keeping delayed actions between runs"
    ),
) -> None:
    """Run a single triage pass over the configured IMAP mailbox.

    Delayed actions that came due since the previous pass run first. Without
    ``--schedule-file`` new delayed actions only live for this process and
    are reported under ``unpersisted_schedules``. Gated actions are reported
    as pending approvals; ``once`` does not keep them after it exits.
    """

    # Imported here so check-rules and dry-run work without imapclient loaded.
    from .mail.imap import ImapMailbox

    run_id = new_run_id()
    try:
        runtime = resolve_runtime(config)
        document = load_rules_file(rules)
        scheduler = build_scheduler(schedule_file)
    except (OSError, ConfigLoadError, ScheduleStoreError) as exc:
        LOGGER.exception("runtime_load_failed: %s", exc)
        raise typer.Exit(code=1) from exc
    if runtime.imap is None:
        LOGGER.error("once_failed run_id=%s error=no imap section in config", run_id)
        typer.echo("config.yaml has no imap section", err=True)
        raise typer.Exit(code=1)

    logger = get_logger("inboxrules.engine", stream=sys.stderr)
    try:
        with ImapMailbox(runtime.imap, smtp=runtime.smtp, logger=logger) as mailbox:
            engine = build_engine(
                document,
                runtime=runtime,
                mailbox=mailbox,
                context=AccountContext(
                    account_id=runtime.imap.username,
                    provider="imap",
                    email_address=runtime.imap.username,
                ),
                logger=logger,
                run_id=run_id,
                scheduler=scheduler,
            )
            due_results = scheduler.run_due(engine.executor)
            ids = mailbox.list_message_ids(since_uid=since_uid, limit=max_batch)
            emails, missing = fetch_messages(mailbox, ids, logger=logger)
            stats, metrics = safe_engine_process(engine=engine, emails=emails)
    except (ProviderError, ScheduleStoreError) as exc:
        LOGGER.exception("once_failed run_id=%s error=%s", run_id, exc)
        raise typer.Exit(code=1) from exc

    metrics.update(
        {
            "run_id": run_id,
            "last_processed_uid": int(ids[-1]) if ids else since_uid,
            "missing_message_ids": missing,
            "pending_approval_ids": [item.approval_id for item in engine.approvals.pending()],
            "due_actions": [result.to_dict() for result in due_results],
        }
    )
    if schedule_file is None:
        lost = [entry.summary() for entry in scheduler.entries()]
        metrics["unpersisted_schedules"] = lost
        if lost:
            logger.warning("scheduled_actions_not_persisted", count=len(lost), hint="pass --schedule-file")
    _emit(metrics)
    LOGGER.info(
        "once_completed run_id=%s fetched=%s actions=%s matched=%s",
        run_id,
        metrics["emails_fetched"],
        stats.actions_applied,
        stats.matched_emails,
    )


def main() -> None:
    """Execute the Typer application entry point."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
