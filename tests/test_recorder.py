"""Tests for RunSummaryRecorder and summary persistence."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from platform_bootstrap.recorder import (
    RunSummaryRecorder,
    StageResult,
    StageStatus,
    load_summary,
    write_json_atomic,
)


def fixed_clock():
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestRunSummaryRecorder:
    def test_nothing_is_written_before_finalize(self, tmp_path):
        recorder = RunSummaryRecorder(tmp_path)
        recorder.record(StageResult(name="a", status=StageStatus.SUCCEEDED))

        assert not (tmp_path / "run-summary.json").exists()

    def test_finalize_appends_pending_and_persists(self, tmp_path):
        recorder = RunSummaryRecorder(tmp_path, dry_run=True, clock=fixed_clock)
        recorder.record(StageResult(name="a", status=StageStatus.SUCCEEDED, duration=1.5))
        recorder.record(StageResult(name="b", status=StageStatus.FAILED, note="boom"))

        summary = recorder.finalize(pending=["c"], exit_code=1)

        assert [s.name for s in summary.stages] == ["a", "b", "c"]
        assert summary.status_of("c") is StageStatus.PENDING
        data = json.loads((tmp_path / "run-summary.json").read_text())
        assert data["dry_run"] is True
        assert data["exit_code"] == 1
        assert data["stages"][1] == {"name": "b", "status": "failed", "duration": 0.0, "note": "boom"}

    def test_finalize_is_idempotent(self, tmp_path):
        recorder = RunSummaryRecorder(tmp_path)

        first = recorder.finalize()
        second = recorder.finalize(pending=["late"])

        assert first is second
        assert second.stages == ()

    def test_record_after_finalize_is_rejected(self, tmp_path):
        recorder = RunSummaryRecorder(tmp_path)
        recorder.finalize()

        with pytest.raises(RuntimeError):
            recorder.record(StageResult(name="a", status=StageStatus.SUCCEEDED))

    def test_phase_summary_has_timestamp(self, tmp_path):
        recorder = RunSummaryRecorder(tmp_path / "out", clock=fixed_clock)

        path = recorder.write_phase_summary("vault-summary", {"vault_info": {"host_port": 8200}})

        assert path == tmp_path / "out" / "vault-summary.json"
        assert load_summary(tmp_path / "out", "vault-summary") == {
            "timestamp": "2026-03-01T12:00:00Z",
            "vault_info": {"host_port": 8200},
        }


class TestPersistence:
    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        write_json_atomic(tmp_path / "a.json", {"x": 1})
        write_json_atomic(tmp_path / "a.json", {"x": 2})

        assert [p.name for p in tmp_path.iterdir()] == ["a.json"]
        assert json.loads((tmp_path / "a.json").read_text()) == {"x": 2}

    def test_load_missing_summary(self, tmp_path):
        assert load_summary(tmp_path, "network-summary") is None

    def test_load_corrupt_summary(self, tmp_path):
        (tmp_path / "network-summary.json").write_text("{not json")

        assert load_summary(tmp_path, "network-summary") is None
