"""Pytest fixtures for the unit suites.

What:
  Make ``tests/unit`` importable so test modules can use :mod:`fakes`, and
  expose fresh doubles per test.

Why:
  Every doubles instance records calls; sharing one between tests would leak
  state and make assertions order dependent.
"""

import io
import json
import sys
from pathlib import Path

import pytest

UNIT_DIR = Path(__file__).resolve().parent
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))

from fakes import FakeMailbox, FakeReasoner, RecordingScheduler, RecordingSinks, make_email

from inboxrules.utils.logging import JsonLogger


class CapturedLogger(JsonLogger):
    """JSON logger writing to memory, with the entries decoded on demand."""

    def __init__(self) -> None:
        super().__init__(stream=io.StringIO(), component="inboxrules.test")

    @property
    def entries(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines() if line]

    def messages(self):
        return [entry["msg"] for entry in self.entries]


@pytest.fixture
def email():
    return make_email()


@pytest.fixture
def mailbox(email):
    return FakeMailbox([email])


@pytest.fixture
def reasoner():
    return FakeReasoner()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def sinks():
    return RecordingSinks()


@pytest.fixture
def logger():
    return CapturedLogger()
