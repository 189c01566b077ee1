"""Tests for the typer CLI surface."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from platform_bootstrap.cli import app

pytestmark = pytest.mark.usefixtures("isolated_settings")

runner = CliRunner()


class TestCli:
    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("up", "down", "status", "vault"):
            assert command in result.output

    def test_up_rejects_unknown_provider(self):
        result = runner.invoke(app, ["up", "--provider", "k3d", "--dry-run"])

        assert result.exit_code == 2

    def test_up_exit_code_comes_from_run(self, monkeypatch):
        calls = {}

        def fake_run(**kwargs):
            calls.update(kwargs)
            return 1

        monkeypatch.setattr("platform_bootstrap.commands.up_cmd.run_dev_setup", fake_run)

        result = runner.invoke(app, ["up", "--dry-run", "--skip-gpu", "--topology", "multinode-gpu.yaml"])

        assert result.exit_code == 1
        assert calls["dry_run"] and calls["skip_gpu"]
        assert calls["topology"] == "multinode-gpu.yaml"

    def test_vault_dry_run_flag(self, monkeypatch):
        monkeypatch.setattr("platform_bootstrap.commands.vault_cmd.run_vault_setup", lambda dry_run: 0)

        assert runner.invoke(app, ["vault", "--dry-run"]).exit_code == 0

    def test_up_rejects_invalid_minikube_sizes(self, monkeypatch):
        monkeypatch.setattr(
            "platform_bootstrap.orchestrator.build_context",
            lambda *args: pytest.fail("run started with invalid flags"),
        )

        result = runner.invoke(app, ["up", "--provider", "minikube", "--cpus", "0", "--dry-run"])

        assert result.exit_code == 2
