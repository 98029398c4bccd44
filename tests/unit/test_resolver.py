"""
Module: tests/unit/test_resolver.py

What:
    Cover name-to-id resolution, template substitution, AI-authored fields,
    and per-type validation in :class:`ActionResolver`.

Why:
    The executor assumes every field it receives is concrete and valid.
    Resolution is therefore where bad label names, unknown template markers,
    empty AI output, and invalid recipients must be stopped, one action at a
    time and without creating duplicate labels.

How:
    Actions are validated through the pydantic action union and resolved
    against :class:`FakeMailbox` and :class:`FakeReasoner`.
"""

import pytest
from pydantic import TypeAdapter

from fakes import FakeMailbox, FakeReasoner, make_email

from inboxrules.config.schema import Action, ActionType
from inboxrules.core.errors import ResolutionError
from inboxrules.core.reasoning import ReasoningError
from inboxrules.core.resolver import ActionResolver, ResolutionCache, parse_recipients
from inboxrules.mail.capability import MailboxUnavailableError, TransientProviderError

_ACTION = TypeAdapter(Action)


def action(**payload):
    return _ACTION.validate_python(payload)


def _resolver(mailbox=None, reasoner=None):
    return ActionResolver(mailbox or FakeMailbox(), reasoner or FakeReasoner(), provider_timeout_s=2)


def test_literal_fields_expand_email_templates():
    resolved = _resolver().resolve(
        action(type="draft_email", subject="Re: {{ Subject }}", content="Hi {{from_name}}, thanks!"),
        make_email(subject="Quarterly report"),
        rule_id="r1",
    )
    assert resolved.subject == "Re: Quarterly report"
    assert resolved.content == "Hi Ann Smith, thanks!"
    assert resolved.ai_fields == frozenset()


def test_unknown_template_marker_fails_the_action():
    with pytest.raises(ResolutionError) as excinfo:
        _resolver().resolve(
            action(type="reply", content="Hello {{nickname}}"), make_email(), rule_id="r1", index=2
        )
    error = excinfo.value
    assert error.field == "content"
    assert error.action_id == "r1:2"
    assert error.rule_id == "r1"
    assert "nickname" in str(error)


def test_directive_fields_are_authored_by_the_reasoner():
    reasoner = FakeReasoner(fields={"Thank Ann Smith politely": "  Thanks a lot, Ann!  "})
    resolved = _resolver(reasoner=reasoner).resolve(
        action(type="reply", content={"ai": "Thank {{from_name}} politely"}), make_email(), rule_id="r1"
    )
    assert resolved.content == "Thanks a lot, Ann!"
    assert resolved.ai_fields == frozenset({"content"})
    assert reasoner.called("complete_field")[0][0] == "Thank Ann Smith politely"


@pytest.mark.parametrize("answer", ["   ", ReasoningError("quota")])
def test_empty_or_failed_directive_is_a_resolution_error(answer):
    reasoner = FakeReasoner(fields={"write it": answer})
    with pytest.raises(ResolutionError) as excinfo:
        _resolver(reasoner=reasoner).resolve(
            action(type="reply", content={"ai": "write it"}), make_email(), rule_id="r1"
        )
    assert excinfo.value.field == "content"


def test_same_label_name_is_created_once_per_run():
    """
    What:
        Two actions naming "Receipts" share one lookup, one creation, one id.

    Why:
        Creating a label twice either fails at the provider or leaves
        duplicate labels in the user's account.
    """
    mailbox = FakeMailbox()
    resolver = _resolver(mailbox)
    cache = ResolutionCache()
    results = resolver.resolve_all(
        [action(type="label", label="Receipts"), action(type="label", label="Receipts")],
        make_email(),
        rule_id="r1",
        cache=cache,
    )
    assert len(mailbox.called("create_label")) == 1
    assert len(mailbox.called("get_label_by_name")) == 1
    assert results[0].label_id == results[1].label_id == "L-Receipts"


def test_existing_label_is_reused_without_creation():
    mailbox = FakeMailbox(labels=["Receipts"])
    resolved = _resolver(mailbox).resolve(action(type="label", label="Receipts"), make_email(), rule_id="r1")
    assert resolved.label_id == "L-Receipts"
    assert mailbox.called("create_label") == []


def test_label_id_skips_lookup():
    mailbox = FakeMailbox()
    resolved = _resolver(mailbox).resolve(action(type="label", label_id="Label_7"), make_email(), rule_id="r1")
    assert resolved.label_id == "Label_7"
    assert mailbox.calls == []


@pytest.mark.parametrize("name", ["  padded", "two  spaces", "star*", "x" * 226])
def test_invalid_label_names_are_rejected(name):
    mailbox = FakeMailbox()
    with pytest.raises(ResolutionError) as excinfo:
        _resolver(mailbox).resolve(action(type="label", label=name), make_email(), rule_id="r1")
    assert excinfo.value.field == "label"
    assert mailbox.called("create_label") == []


def test_ai_authored_label_name_is_validated():
    reasoner = FakeReasoner(fields={"pick a label": "Bad\\Name"})
    with pytest.raises(ResolutionError):
        _resolver(reasoner=reasoner).resolve(
            action(type="label", label={"ai": "pick a label"}), make_email(), rule_id="r1"
        )


def test_folder_is_looked_up_then_created():
    mailbox = FakeMailbox(folders=["Existing"])
    resolver = _resolver(mailbox)
    cache = ResolutionCache()
    existing = resolver.resolve(action(type="move_folder", folder_name="Existing"), make_email(), rule_id="r", cache=cache)
    created = resolver.resolve(action(type="move_folder", folder_name="New"), make_email(), rule_id="r", cache=cache)
    assert existing.folder_id == "F-Existing"
    assert created.folder_id == "F-New"
    assert mailbox.called("create_folder") == [("New",)]


def test_send_email_requires_a_valid_recipient():
    resolver = _resolver()
    with pytest.raises(ResolutionError) as excinfo:
        resolver.resolve(action(type="send_email", to="", content="Hi"), make_email(), rule_id="r1")
    assert excinfo.value.field == "to"
    with pytest.raises(ResolutionError) as excinfo:
        resolver.resolve(action(type="send_email", to="not an address", content="Hi"), make_email(), rule_id="r1")
    assert excinfo.value.field == "to"


def test_recipients_accept_templates_and_lists():
    resolved = _resolver().resolve(
        action(type="forward", to="{{from_email}}, Team <team@example.com>", cc="boss@example.com"),
        make_email(),
        rule_id="r1",
    )
    assert resolved.to == ("ann@example.com", "team@example.com")
    assert resolved.cc == ("boss@example.com",)
    assert parse_recipients(None) == ()


@pytest.mark.parametrize("url", ["ftp://host/x", "not a url", "https://"])
def test_webhook_requires_absolute_http_url(url):
    with pytest.raises(ResolutionError) as excinfo:
        _resolver().resolve(action(type="call_webhook", url=url), make_email(), rule_id="r1")
    assert excinfo.value.field == "url"


def test_webhook_url_is_kept():
    resolved = _resolver().resolve(
        action(type="call_webhook", url="https://hooks.example.com/{{thread_id}}"), make_email(), rule_id="r1"
    )
    assert resolved.url == "https://hooks.example.com/t1"
    assert resolved.type is ActionType.CALL_WEBHOOK


def test_provider_failure_during_lookup_is_a_resolution_error():
    mailbox = FakeMailbox(failures={"get_label_by_name": [TransientProviderError("429")]})
    with pytest.raises(ResolutionError):
        _resolver(mailbox).resolve(action(type="label", label="Receipts"), make_email(), rule_id="r1")


def test_unreachable_mailbox_propagates():
    mailbox = FakeMailbox(failures={"get_label_by_name": [MailboxUnavailableError("gone")]})
    with pytest.raises(MailboxUnavailableError):
        _resolver(mailbox).resolve(action(type="label", label="Receipts"), make_email(), rule_id="r1")


def test_resolve_all_reports_failures_in_place(logger):
    resolver = ActionResolver(FakeMailbox(), FakeReasoner(), logger=logger)
    results = resolver.resolve_all(
        [
            action(type="archive", id="keep"),
            action(type="reply", content="{{unknown}}"),
            action(type="mark_read", delay_in_minutes=5),
        ],
        make_email(),
        rule_id="r9",
    )
    assert results[0].action_id == "keep"
    assert isinstance(results[1], ResolutionError)
    assert results[2].action_id == "r9:2"
    assert results[2].is_delayed
    assert "action_resolution_failed" in logger.messages()
    assert all(entry.get("content") in (None, "[redacted]") for entry in logger.entries)


def test_unexpected_adapter_error_fails_only_that_action(logger):
    mailbox = FakeMailbox(failures={"get_label_by_name": [ValueError("boom")]})
    resolver = ActionResolver(mailbox, FakeReasoner(), logger=logger)
    results = resolver.resolve_all(
        [action(type="label", label="Receipts"), action(type="archive")],
        make_email(),
        rule_id="r1",
    )
    assert isinstance(results[0], ResolutionError)
    assert "boom" in str(results[0])
    assert results[1].type is ActionType.ARCHIVE


def test_label_names_share_a_cache_entry_regardless_of_case():
    mailbox = FakeMailbox()
    resolver = _resolver(mailbox)
    cache = ResolutionCache()
    first = resolver.resolve(action(type="label", label="Receipts"), make_email(), rule_id="r", cache=cache)
    second = resolver.resolve(action(type="label", label="receipts"), make_email(), rule_id="r", cache=cache)
    assert first.label_id == second.label_id
    assert mailbox.called("create_label") == [("Receipts",)]
