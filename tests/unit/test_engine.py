"""
Module: tests/unit/test_engine.py

What:
    Run the full select, resolve, execute pipeline through :class:`Engine`
    against the canned ``rules.yaml`` and ``config.yaml``.

Why:
    The individual stages are covered elsewhere; these tests pin down the
    behaviour a user observes for a whole email: which rule acts, which
    labels appear, and which outbound mail waits for a human.

How:
    Rules come from ``tests/data/rules.yaml``, settings from the autouse
    configuration fixture, and the mailbox and reasoner are the in-memory
    doubles from :mod:`fakes`.
"""

from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeMailbox, FakeReasoner, make_email, make_rule

from inboxrules.config import get_runtime_config, load_rules
from inboxrules.core.context import AccountContext
from inboxrules.core.engine import Engine
from inboxrules.core.executor import Outcome
from inboxrules.core.reasoning import ReasoningError
from inboxrules.core.rulebook import RuleBook
from inboxrules.core.scheduling import InMemoryScheduler
from inboxrules.mail.capability import MailboxUnavailableError

NOW = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)
SUMMARY_INSTRUCTION = "Summarise the purchase in one sentence."


@pytest.fixture
def document(data_dir):
    return load_rules((data_dir / "rules.yaml").read_bytes()).model


def _engine(rules, mailbox, reasoner, *, multi_rule=False, logger=None, **kwargs):
    return Engine(
        rules,
        mailbox=mailbox,
        reasoner=reasoner,
        context=AccountContext("acct-1", provider="fake", multi_rule_selection=multi_rule),
        config=get_runtime_config(),
        logger=logger,
        run_id="run-test",
        clock=lambda: NOW,
        sleep=lambda _: None,
        **kwargs,
    )


def _newsletter():
    return make_email(
        id="n1",
        thread_id="tn",
        from_="Weekly News <newsletter@x.com>",
        subject="Weekly digest",
        text_plain="Please act now: the sale ends tonight!",
    )


def _receipt():
    return make_email(
        id="r1",
        thread_id="tr",
        from_="Lamp Shop <orders@lamps.example>",
        subject="Your receipt from Lamp Shop",
        text_plain="Order 991: one desk lamp, 25 EUR.",
    )


def test_newsletter_rule_wins_over_ai_urgency(document, logger):
    """
    What:
        A newsletter that also reads as urgent is handled by the static rule.

    Why:
        In single-rule mode a rule whose static filter matched is preferred
        over a rule that only an AI verdict selected.
    """
    email = _newsletter()
    mailbox = FakeMailbox([email])
    reasoner = FakeReasoner({"emails requesting urgent action": True})
    report = _engine(document, mailbox, reasoner, logger=logger).process_email(email)

    assert report.matched_rule_ids == ["newsletter"]
    assert [result.outcome for result in report.results] == [Outcome.SUCCEEDED, Outcome.SUCCEEDED]
    assert mailbox.called("create_label") == [("Newsletter",)]
    assert mailbox.called("label_thread") == [("tn", "L-Newsletter")]
    assert mailbox.called("archive_thread") == [("tn",)]
    assert "Urgent" not in mailbox.labels
    assert "email_processed" in logger.messages()
    assert "Weekly digest" not in logger.stream.getvalue()


def test_receipt_send_email_waits_for_approval(document):
    email = _receipt()
    mailbox = FakeMailbox([email])
    reasoner = FakeReasoner(fields={SUMMARY_INSTRUCTION: "You bought a desk lamp for 25 EUR."})
    engine = _engine(document, mailbox, reasoner)
    report = engine.process_email(email)

    assert report.matched_rule_ids == ["receipts"]
    label, folder, send = report.results
    assert label.success and folder.success
    assert send.outcome is Outcome.REQUIRES_APPROVAL
    assert send.approval_id
    assert mailbox.called("send_email") == []
    assert ("purchase receipts and invoices", "r1") not in reasoner.called("evaluate_condition")

    approved = engine.decide(send.approval_id, "approved")
    assert approved.success
    [(message,)] = mailbox.called("send_email")
    assert message.to == ("bookkeeping@example.com",)
    assert message.subject == "Fwd: Your receipt from Lamp Shop"
    assert message.content == "You bought a desk lamp for 25 EUR."


def test_failed_directive_does_not_stop_sibling_actions(document):
    email = _receipt()
    mailbox = FakeMailbox([email])
    report = _engine(document, mailbox, FakeReasoner()).process_email(email)
    label, folder, send = report.results
    assert label.success and folder.success
    assert send.outcome is Outcome.FAILED
    assert mailbox.called("send_email") == []


def test_same_label_across_rules_is_created_once():
    rules = [
        make_rule("a", conditions={"static": {"subject": "hello"}}, actions=[{"type": "label", "label": "Receipts"}]),
        make_rule("b", conditions={"static": {"from": "ann@"}}, actions=[{"type": "label", "label": "Receipts"}]),
    ]
    email = make_email()
    mailbox = FakeMailbox([email])
    report = _engine(rules, mailbox, FakeReasoner(), multi_rule=True).process_email(email)
    assert report.matched_rule_ids == ["a", "b"]
    assert mailbox.called("create_label") == [("Receipts",)]
    assert mailbox.called("label_thread") == [("t1", "L-Receipts"), ("t1", "L-Receipts")]


def test_single_rule_mode_uses_stored_order_for_ties():
    rules = [
        make_rule("first", conditions={"static": {"subject": "hello"}}, actions=[{"type": "archive"}]),
        make_rule("second", conditions={"static": {"subject": "hello"}}, actions=[{"type": "mark_read"}]),
    ]
    email = make_email()
    mailbox = FakeMailbox([email])
    report = _engine(rules, mailbox, FakeReasoner()).process_email(email)
    assert report.matched_rule_ids == ["first"]
    assert mailbox.called("mark_read") == []


def test_ai_failure_fails_closed(document, logger):
    email = make_email(subject="Server down", text_plain="Please respond immediately")
    mailbox = FakeMailbox([email])
    reasoner = FakeReasoner(
        {
            "emails requesting urgent action": ReasoningError("model offline"),
            "purchase receipts and invoices": ReasoningError("model offline"),
        }
    )
    report = _engine(document, mailbox, reasoner, logger=logger).process_email(email)
    assert report.runs == []
    assert mailbox.calls == []
    assert "condition_indeterminate" in logger.messages()


def test_rulebook_edits_apply_to_the_next_email():
    book = RuleBook([make_rule("a", conditions={"static": {"subject": "hello"}}, actions=[{"type": "archive"}])])
    email = make_email()
    mailbox = FakeMailbox([email])
    engine = _engine(book, mailbox, FakeReasoner())
    assert engine.process_email(email).matched_rule_ids == ["a"]
    book.update("a", {"enabled": False}, expected_version=1)
    assert engine.process_email(email).matched_rule_ids == []


def test_delayed_action_runs_when_due():
    rules = [
        make_rule(
            "later",
            conditions={"static": {"subject": "hello"}},
            actions=[{"type": "archive", "delay_in_minutes": 60}],
        )
    ]
    email = make_email()
    mailbox = FakeMailbox([email])
    scheduler = InMemoryScheduler()
    engine = _engine(rules, mailbox, FakeReasoner(), scheduler=scheduler)
    [result] = engine.process_email(email).results
    assert result.outcome is Outcome.SCHEDULED
    assert result.scheduled_for == NOW + timedelta(minutes=60)
    assert scheduler.due(NOW) == []
    assert mailbox.called("archive_thread") == []

    [entry] = scheduler.entries()
    later = engine.run_scheduled(entry.action, entry.email)
    assert later.success
    assert mailbox.called("archive_thread") == [("t1",)]


def test_batch_statistics(document):
    newsletter, receipt, other = _newsletter(), _receipt(), make_email(id="o1", thread_id="to")
    mailbox = FakeMailbox([newsletter, receipt, other])
    reasoner = FakeReasoner(fields={SUMMARY_INSTRUCTION: "A lamp."})
    stats = _engine(document, mailbox, reasoner).process([newsletter, receipt, other])
    assert stats.scanned_emails == 3
    assert stats.matched_emails == 2
    assert stats.actions_applied == 4
    assert stats.pending_approvals == 1
    assert stats.rule_stats["newsletter"].matches == 1
    assert stats.rule_stats["receipts"].actions == 2


def test_report_serialises_without_email_content(document):
    email = _newsletter()
    report = _engine(document, FakeMailbox([email]), FakeReasoner()).process_email(email)
    data = report.to_dict()
    assert data["run_id"] == "run-test"
    assert [item["rule_id"] for item in data["evaluations"]] == ["newsletter", "urgent", "receipts"]
    assert data["runs"][0]["results"][0]["outcome"] == "succeeded"
    assert "Weekly digest" not in str(data)


def test_lost_mailbox_aborts_processing(document):
    email = _newsletter()
    mailbox = FakeMailbox([email], failures={"get_label_by_name": [MailboxUnavailableError("offline")]})
    with pytest.raises(MailboxUnavailableError):
        _engine(document, mailbox, FakeReasoner()).process_email(email)


def test_adapter_bug_during_label_lookup_leaves_siblings_running():
    rules = [
        make_rule(
            "a",
            conditions={"static": {"subject": "hello"}},
            actions=[{"type": "label", "label": "Receipts"}, {"type": "archive"}],
        )
    ]
    email = make_email()
    mailbox = FakeMailbox([email], failures={"get_label_by_name": [ValueError("boom")]})
    report = _engine(rules, mailbox, FakeReasoner()).process_email(email)
    label, archive = report.results
    assert label.outcome is Outcome.FAILED
    assert "boom" in label.error
    assert archive.success
    assert mailbox.called("archive_thread") == [("t1",)]
