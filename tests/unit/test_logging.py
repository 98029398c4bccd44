"""
Module: tests/unit/test_logging.py

What:
    Check the JSON log line layout and the redaction of content-bearing keys.

Why:
    Rule runs handle private mail; subjects and generated replies must never
    reach log files, while ids and outcomes must stay greppable.
"""

import io
import json

from inboxrules.utils.ids import checksum, new_approval_id
from inboxrules.utils.logging import REDACTED, JsonLogger, get_logger


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_log_line_schema():
    stream = io.StringIO()
    get_logger("inboxrules.test", stream=stream).info("action_executed", rule_id="r1")
    [entry] = _lines(stream)
    assert entry["lvl"] == "INFO"
    assert entry["msg"] == "action_executed"
    assert entry["component"] == "inboxrules.test"
    assert entry["rule_id"] == "r1"
    assert "ts" in entry


def test_warning_level_name():
    stream = io.StringIO()
    JsonLogger(stream=stream).warning("provider_retry")
    assert _lines(stream)[0]["lvl"] == "WARN"


def test_sensitive_fields_are_redacted_recursively():
    """
    What:
        Content keys are masked at any depth, including inside lists.

    Why:
        Callers pass whole summaries as context; masking at the sink keeps
        that safe without every call site remembering to strip fields.
    """
    stream = io.StringIO()
    JsonLogger(stream=stream).error(
        "action_failed",
        subject="Salary review",
        email={"body": "secret", "thread_id": "t1"},
        actions=[{"content": "Dear Ann", "type": "reply"}, "plain"],
    )
    [entry] = _lines(stream)
    assert entry["subject"] == REDACTED
    assert entry["email"] == {"body": REDACTED, "thread_id": "t1"}
    assert entry["actions"] == [{"content": REDACTED, "type": "reply"}, "plain"]
    assert "Salary" not in stream.getvalue()


def test_non_json_values_are_stringified():
    from datetime import datetime, timezone

    stream = io.StringIO()
    JsonLogger(stream=stream).info("action_scheduled", when=datetime(2024, 5, 6, tzinfo=timezone.utc))
    assert _lines(stream)[0]["when"].startswith("2024-05-06")


def test_ids_and_checksum():
    assert new_approval_id().startswith("apr_")
    assert new_approval_id() != new_approval_id()
    assert checksum(b"abc").startswith("sha256:")
    assert checksum(b"abc") == checksum(b"abc")
