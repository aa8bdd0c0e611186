from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .base import Action
from ..executors import Executor
from ..types import ActionKind, ActionResult, Host


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def is_active(self, executor: Executor, service: str) -> bool:
        return executor.run([self.executable, "is-active", "--quiet", service], check=False).ok

    def is_enabled(self, executor: Executor, service: str) -> bool:
        return executor.run([self.executable, "is-enabled", "--quiet", service], check=False).ok

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])


def _service_name(params: Mapping[str, Any], kind: str) -> str:
    raw = params.get("service") or params.get("name")
    if not raw:
        raise ValueError(f"{kind} requires a service")
    return str(raw)


class RestartAction(Action):
    kind = ActionKind.RESTART
    transient_markers = ("job for", "start request repeated too quickly")

    def __init__(self, params: Mapping[str, Any]):
        super().__init__(params)
        self.service = _service_name(params, "restart")
        self.systemctl = SystemCtl()

    def describe(self) -> str:
        return f"restart {self.service}"

    def apply(self, host: Host, executor: Executor) -> ActionResult:
        self.systemctl.restart(executor, self.service)
        return self._result(host, True, "restarted")


class StopAction(Action):
    kind = ActionKind.STOP

    def __init__(self, params: Mapping[str, Any]):
        super().__init__(params)
        self.service = _service_name(params, "stop")
        self.disable = bool(params.get("disable", False))
        self.systemctl = SystemCtl()

    def describe(self) -> str:
        return f"stop {self.service}"

    def implied_state(self, host: Host) -> dict[str, str]:
        state = {f"service:{self.service}": "inactive"}
        if self.disable:
            state[f"service-enabled:{self.service}"] = "disabled"
        return state

    def apply(self, host: Host, executor: Executor) -> ActionResult:
        reasons: list[str] = []
        if self.systemctl.is_active(executor, self.service):
            self.systemctl.stop(executor, self.service)
            reasons.append("stopped")
        if self.disable and self.systemctl.is_enabled(executor, self.service):
            self.systemctl.disable(executor, self.service)
            reasons.append("disabled")
        return self._result(host, bool(reasons), ", ".join(reasons) or "noop")
