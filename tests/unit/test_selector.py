"""
Module: tests/unit/test_selector.py

What:
    Validate rule pre-filtering, concurrent evaluation, and the single-match
    preference order of :class:`RuleSelector`.

Why:
    In single-rule mode exactly one rule acts per email; the choice must be
    deterministic and must favour rules whose static filters matched over rules
    that only an AI verdict selected.

How:
    Build rule lists with scripted AI verdicts and assert on the chosen rule
    ids, the recorded evaluations, and the calls made to the reasoner.
"""

from datetime import datetime, timezone

import pytest

from fakes import FakeReasoner, make_email, make_rule

from inboxrules.core.conditions import ConditionEvaluator, MatchVerdict
from inboxrules.core.selector import RuleSelector, is_noreply_sender


def _selector(reasoner, **kwargs):
    return RuleSelector(ConditionEvaluator(reasoner), **kwargs)


def test_static_match_beats_earlier_ai_only_match():
    reasoner = FakeReasoner({"anything from ann": True})
    rules = [
        make_rule("ai", conditions={"ai_instructions": "anything from ann"}),
        make_rule("static", conditions={"static": {"from": "ann@example.com"}}),
    ]
    selection = _selector(reasoner).select(rules, make_email())
    assert [match.rule.id for match in selection.matches] == ["ai", "static"]
    assert selection.best().rule.id == "static"
    assert [match.rule.id for match in selection.chosen(False)] == ["static"]


def test_stored_order_breaks_ties_between_static_matches():
    rules = [
        make_rule("first", conditions={"static": {"subject": "hello"}}),
        make_rule("second", conditions={"static": {"from": "ann@"}}),
    ]
    for _ in range(5):
        assert _selector(FakeReasoner(), max_workers=4).select(rules, make_email()).best().rule.id == "first"


def test_most_recently_updated_tie_break():
    old = datetime(2024, 1, 1, tzinfo=timezone.utc)
    new = datetime(2024, 6, 1, tzinfo=timezone.utc)
    rules = [
        make_rule("older", updated_at=old, conditions={"static": {"subject": "hello"}}),
        make_rule("newer", updated_at=new, conditions={"static": {"subject": "hello"}}),
        make_rule("undated", conditions={"static": {"subject": "hello"}}),
    ]
    selection = _selector(FakeReasoner(), tie_break="most_recently_updated").select(rules, make_email())
    assert selection.best().rule.id == "newer"


def test_multi_rule_mode_returns_every_match_in_stored_order():
    reasoner = FakeReasoner({"is friendly": True})
    rules = [
        make_rule("a", conditions={"ai_instructions": "is friendly"}),
        make_rule("b", conditions={"static": {"subject": "nope"}}),
        make_rule("c", conditions={"static": {"subject": "hello"}}),
    ]
    chosen = _selector(reasoner).select(rules, make_email()).chosen(True)
    assert [match.rule.id for match in chosen] == ["a", "c"]


def test_disabled_rules_are_not_evaluated():
    reasoner = FakeReasoner({"is friendly": True})
    rules = [make_rule("off", enabled=False, conditions={"ai_instructions": "is friendly"})]
    selection = _selector(reasoner).select(rules, make_email())
    assert selection.evaluations == []
    assert reasoner.calls == []
    assert selection.best() is None


def test_thread_replies_only_reach_rules_that_run_on_threads():
    reply = make_email(headers={"message-id": "<r@x>", "in-reply-to": "<m1@example.com>"})
    rules = [
        make_rule("plain", conditions={"static": {"subject": "hello"}}),
        make_rule("threads", run_on_threads=True, conditions={"static": {"subject": "hello"}}),
    ]
    selection = _selector(FakeReasoner()).select(rules, reply)
    assert [match.rule.id for match in selection.matches] == ["threads"]
    assert selection.evaluations[0].reason == "rule does not run on thread replies"

    followed = _selector(FakeReasoner()).select(rules, reply, applied_in_thread=["plain"])
    assert [match.rule.id for match in followed.matches] == ["plain", "threads"]


def test_to_reply_rules_skip_noreply_senders():
    rule = make_rule("reply", system_type="to_reply", conditions={"static": {"subject": "hello"}})
    email = make_email(from_="Shop <no-reply@shop.example>")
    selection = _selector(FakeReasoner()).select([rule], email)
    assert selection.matches == []
    assert is_noreply_sender("noreply@x.com")
    assert not is_noreply_sender("ann@example.com")


def test_evaluation_crash_is_contained_to_one_rule(logger):
    class Exploding(ConditionEvaluator):
        def evaluate(self, rule, email):
            if rule.id == "bad":
                raise RuntimeError("boom")
            return super().evaluate(rule, email)

    rules = [
        make_rule("bad", conditions={"static": {"subject": "hello"}}),
        make_rule("good", conditions={"static": {"subject": "hello"}}),
    ]
    selector = RuleSelector(Exploding(FakeReasoner()), logger=logger)
    selection = selector.select(rules, make_email())
    assert [outcome.verdict for outcome in selection.evaluations] == [
        MatchVerdict.NOT_MATCHED,
        MatchVerdict.MATCHED,
    ]
    assert selection.best().rule.id == "good"
    assert "rule_evaluation_failed" in logger.messages()


def test_failed_ai_rule_never_wins(logger):
    from inboxrules.core.reasoning import ReasoningError

    reasoner = FakeReasoner({"is urgent": ReasoningError("down")})
    rules = [make_rule("ai", conditions={"ai_instructions": "is urgent"})]
    selection = RuleSelector(ConditionEvaluator(reasoner, logger=logger), logger=logger).select(
        rules, make_email()
    )
    assert selection.matches == []
    assert selection.evaluations[0].verdict is MatchVerdict.INDETERMINATE


def test_unknown_tie_break_is_rejected():
    with pytest.raises(ValueError):
        _selector(FakeReasoner(), tie_break="alphabetical")


def test_cold_email_rule_is_checked_first_and_stands_alone(logger):
    reasoner = FakeReasoner({"unsolicited sales pitch": True})
    rules = [
        make_rule("hello", conditions={"static": {"subject": "hello"}}),
        make_rule("cold", system_type="cold_email", conditions={"ai_instructions": "unsolicited sales pitch"}),
    ]
    selection = RuleSelector(ConditionEvaluator(reasoner), logger=logger).select(rules, make_email())
    assert [match.rule.id for match in selection.matches] == ["cold"]
    assert selection.evaluations[0].reason == "email is a cold email"
    assert [call[1][0] for call in reasoner.calls] == ["unsolicited sales pitch"]
    assert "cold_email_detected" in logger.messages()


def test_other_rules_run_when_the_email_is_not_cold():
    rules = [
        make_rule("cold", system_type="cold_email", conditions={"ai_instructions": "unsolicited sales pitch"}),
        make_rule("hello", conditions={"static": {"subject": "hello"}}),
    ]
    selection = _selector(FakeReasoner()).select(rules, make_email())
    assert [match.rule.id for match in selection.matches] == ["hello"]
    assert selection.evaluations[0].verdict is MatchVerdict.NOT_MATCHED


def test_learned_sender_matches_without_evaluating_conditions():
    reasoner = FakeReasoner({"is a receipt": True})
    rules = [
        make_rule(
            "receipts",
            conditions={"ai_instructions": "is a receipt"},
            learned_patterns=[{"type": "from", "value": "ann@example.com"}],
        ),
        make_rule("ai", conditions={"ai_instructions": "is a receipt"}),
        make_rule("static", conditions={"static": {"subject": "hello"}}),
    ]
    selection = _selector(reasoner).select(rules, make_email())
    assert [match.rule.id for match in selection.matches] == ["receipts", "static"]
    assert selection.matches[0].outcome.learned_pattern == "from: ann@example.com"
    assert selection.evaluations[1].reason == "AI condition skipped"
    assert reasoner.calls == []


def test_learned_domain_and_subject_patterns():
    rules = [
        make_rule("domain", learned_patterns=[{"type": "from", "value": "@Example.com"}]),
        make_rule("subject", learned_patterns=[{"type": "subject", "value": "HELL"}]),
        make_rule("other", learned_patterns=[{"type": "from", "value": "shop.example"}]),
    ]
    selection = _selector(FakeReasoner()).select(rules, make_email())
    assert [match.rule.id for match in selection.matches] == ["domain", "subject"]


def test_learned_exclusion_rules_the_rule_out():
    rule = make_rule(
        "hello",
        conditions={"static": {"subject": "hello"}},
        learned_patterns=[
            {"type": "subject", "value": "hello"},
            {"type": "from", "value": "example.com", "exclude": True},
        ],
    )
    selection = _selector(FakeReasoner()).select([rule], make_email())
    assert selection.matches == []
    assert selection.evaluations[0].reason == "excluded by a learned pattern"


def test_learned_pattern_match_reaches_thread_replies():
    reply = make_email(headers={"message-id": "<r@x>", "in-reply-to": "<m1@example.com>"})
    rule = make_rule("known", learned_patterns=[{"type": "from", "value": "ann@example.com"}])
    assert [match.rule.id for match in _selector(FakeReasoner()).select([rule], reply).matches] == ["known"]


def test_multi_rule_mode_keeps_one_system_rule():
    rules = [
        make_rule("notify", system_type="notification", conditions={"static": {"subject": "hello"}}),
        make_rule("plain", conditions={"static": {"subject": "hello"}}),
        make_rule("news", system_type="newsletter", conditions={"static": {"from": "ann@"}}),
        make_rule("other", conditions={"static": {"from": "ann@"}}),
    ]
    chosen = _selector(FakeReasoner()).select(rules, make_email()).chosen(True)
    assert [match.rule.id for match in chosen] == ["notify", "plain", "other"]
