"""Pytest configuration shared by every suite.

What:
  Put the in-repo source tree on ``sys.path`` and pin the runtime
  configuration to the canned ``tests/data/config.yaml``.

Why:
  Tests must exercise the working tree rather than an installed wheel, and
  the configuration loader caches globally; without a reset per test, results
  would depend on execution order.

How:
  Prepend ``inboxrules/src`` at import time, then an autouse fixture sets
  ``INBOXRULES_CONFIG_PATH`` and clears the loader cache before and after
  each test.
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "inboxrules" / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

import pytest

from inboxrules.config.loader import reset_runtime_config

DATA_DIR = Path(__file__).resolve().parent / "data"
CONFIG_PATH = DATA_DIR / "config.yaml"


@pytest.fixture(autouse=True)
def runtime_config(monkeypatch: pytest.MonkeyPatch):
    """Apply the canned configuration file for every test."""

    monkeypatch.setenv("INBOXRULES_CONFIG_PATH", str(CONFIG_PATH))
    reset_runtime_config()
    try:
        yield
    finally:
        reset_runtime_config()


@pytest.fixture
def data_dir() -> Path:
    return DATA_DIR
