from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

from .base import Action, as_list
from .service import SystemCtl
from ..executors import Executor
from ..types import ActionKind, ActionResult, Host


class TeardownAction(Action):
    """Stop services and remove deployed paths."""

    kind = ActionKind.TEARDOWN

    def __init__(self, params: Mapping[str, Any]):
        super().__init__(params)
        self.paths = [Path(p) for p in as_list(params.get("paths"), "paths")]
        self.services = as_list(params.get("services"), "services")
        if not self.paths and not self.services:
            raise ValueError("teardown requires paths or services")
        self.systemctl = SystemCtl()

    def describe(self) -> str:
        targets = [*self.services, *(str(p) for p in self.paths)]
        return f"teardown {','.join(targets)}"

    def implied_state(self, host: Host) -> dict[str, str]:
        state = {f"path:{path}": "absent" for path in self.paths}
        state.update({f"service:{svc}": "inactive" for svc in self.services})
        return state

    def apply(self, host: Host, executor: Executor) -> ActionResult:
        removed: list[str] = []
        for service in self.services:
            if self.systemctl.is_active(executor, service):
                self.systemctl.stop(executor, service)
                removed.append(f"stopped={service}")
            if self.systemctl.is_enabled(executor, service):
                self.systemctl.disable(executor, service)
                removed.append(f"disabled={service}")
        for path in self.paths:
            if executor.remove_path(path):
                removed.append(f"removed={path}")
        return self._result(host, bool(removed), " ".join(removed) or "noop")
