from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from stagehand_automation.state import ReportStore
from stagehand_automation.types import ActionKind, ExecutionResult, Outcome, RunOutcome, RunReport


def _report(run_id: str = "run-1") -> RunReport:
    started = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return RunReport(
        run_id=run_id,
        spec_name="webapp",
        outcome=RunOutcome.FAILED,
        started_at=started,
        finished_at=started + timedelta(seconds=42),
        results=(
            ExecutionResult("install@web1", "web1", ActionKind.INSTALL, "k1", Outcome.FAILED_FATAL, 3, 1.5, "", "lock"),
            ExecutionResult(
                "site@web1", "web1", ActionKind.CONFIGURE, "k2", Outcome.SKIPPED_BLOCKED, blocked_by="install@web1"
            ),
        ),
    )


def test_report_round_trip_with_private_permissions(tmp_path: Path):
    store = ReportStore(tmp_path)

    path = store.save(_report())
    loaded = store.load("run-1")

    assert path == tmp_path / "reports" / "run-1.json"
    assert path.stat().st_mode & 0o777 == 0o600
    assert loaded == _report()
    assert loaded.duration == 42.0
    assert store.list_runs() == ["run-1"]


def test_reports_are_append_only(tmp_path: Path):
    store = ReportStore(tmp_path)
    store.save(_report())
    with pytest.raises(FileExistsError):
        store.save(_report())


def test_corrupt_report_is_ignored(tmp_path: Path):
    store = ReportStore(tmp_path)
    (tmp_path / "reports").mkdir()
    (tmp_path / "reports" / "bad.json").write_text("{not json")

    assert store.load("bad") is None
    assert store.load("missing") is None


def test_cancel_requests_need_an_active_run(tmp_path: Path):
    store = ReportStore(tmp_path)

    assert store.request_cancel("run-2") is False
    store.begin("run-2")
    assert store.is_active("run-2")
    assert store.request_cancel("run-2") is True
    assert store.cancel_marker("run-2").exists()

    store.finish("run-2")
    assert not store.is_active("run-2")
    assert not store.cancel_marker("run-2").exists()


def test_run_ids_cannot_escape_state_dir(tmp_path: Path):
    with pytest.raises(ValueError):
        ReportStore(tmp_path).load("../etc/passwd")
