from __future__ import annotations

from pathlib import Path
from typing import Optional
import json
import logging
import os
import re

from .types import RunReport

logger = logging.getLogger(__name__)

RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ReportStore:
    """Persists run reports for audit and tracks active runs on disk."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.reports_dir = self.state_dir / "reports"
        self.runs_dir = self.state_dir / "runs"

    def save(self, report: RunReport) -> Path:
        path = self._report_path(report.run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            raise FileExistsError(f"report for run {report.run_id} already exists")
        path.write_text(json.dumps(report.to_dict(), indent=2))
        try:
            os.chmod(path, 0o600)
        except OSError:
            logger.debug("Unable to chmod report %s", path, exc_info=True)
        return path

    def load(self, run_id: str) -> Optional[RunReport]:
        path = self._report_path(run_id)
        if not path.exists():
            return None
        try:
            return RunReport.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError, ValueError):
            logger.warning("Report %s is corrupt; ignoring", path)
            return None

    def has_report(self, run_id: str) -> bool:
        return self._report_path(run_id).exists()

    def list_runs(self) -> list[str]:
        if not self.reports_dir.exists():
            return []
        paths = sorted(self.reports_dir.glob("*.json"), key=lambda p: p.stat().st_mtime)
        return [p.stem for p in paths]

    def begin(self, run_id: str) -> Path:
        marker = self._run_path(run_id, "running")
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(str(os.getpid()))
        return marker

    def finish(self, run_id: str) -> None:
        for suffix in ("running", "cancel"):
            self._run_path(run_id, suffix).unlink(missing_ok=True)

    def is_active(self, run_id: str) -> bool:
        return self._run_path(run_id, "running").exists()

    def cancel_marker(self, run_id: str) -> Path:
        return self._run_path(run_id, "cancel")

    def request_cancel(self, run_id: str) -> bool:
        if not self.is_active(run_id):
            return False
        self.cancel_marker(run_id).write_text("cancel\n")
        return True

    def _report_path(self, run_id: str) -> Path:
        return self.reports_dir / f"{validate_run_id(run_id)}.json"

    def _run_path(self, run_id: str, suffix: str) -> Path:
        return self.runs_dir / f"{validate_run_id(run_id)}.{suffix}"


def validate_run_id(run_id: str) -> str:
    if not RUN_ID_RE.match(run_id):
        raise ValueError(f"invalid run id '{run_id}'")
    return run_id
