"""Shared fixtures."""

from __future__ import annotations

import os

import pytest

from .fakes import RecordingSleep


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def isolated_settings(monkeypatch, tmp_path):
    """Keep BOOTSTRAP_*/VAULT_* variables from the developer's shell out of the test."""
    for name in list(os.environ):
        if name.startswith(("BOOTSTRAP_", "VAULT_")):
            monkeypatch.delenv(name)
    monkeypatch.setenv("BOOTSTRAP_OUTPUT_DIR", str(tmp_path / "summaries"))
    monkeypatch.setenv("BOOTSTRAP_STATE_DIR", str(tmp_path / "state"))
    return tmp_path
