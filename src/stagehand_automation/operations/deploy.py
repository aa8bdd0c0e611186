from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Any, Iterable, Mapping, Optional, Sequence

from .base import Action, summarize
from ..executors import Executor
from ..types import ActionKind, ActionResult, Host


class DeployAction(Action):
    """Run the application's release command."""

    kind = ActionKind.DEPLOY
    transient_markers = (
        "connection reset by peer",
        "temporary failure in name resolution",
        "tls handshake timeout",
        "i/o timeout",
    )

    def __init__(self, params: Mapping[str, Any]):
        super().__init__(params)
        raw_command = params.get("command")
        if raw_command is None:
            raise ValueError("deploy requires a command")
        if not isinstance(raw_command, (str, list, tuple)):
            raise ValueError("deploy command must be a string or list")
        self.raw_command = raw_command
        self.cwd = Path(str(params["cwd"])) if params.get("cwd") else None
        self.env = self._normalize_env(params.get("env"))
        raw_vars = params.get("variables", {})
        if not isinstance(raw_vars, dict):
            raise ValueError("deploy variables must be a mapping")
        self.variables = dict(raw_vars)
        self.allowed_returns = self._normalize_returns(params.get("returns", [0]))

    def describe(self) -> str:
        command = self.raw_command if isinstance(self.raw_command, str) else " ".join(map(str, self.raw_command))
        return f"deploy {summarize(command)}"

    def apply(self, host: Host, executor: Executor) -> ActionResult:
        context = {**host.variables, **self.variables, "host": host.name}
        command = self._render(self.raw_command, context)
        result = executor.run(command, check=False, env=self.env, cwd=self.cwd)
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        if result.returncode not in self.allowed_returns:
            return ActionResult(
                host=host.name,
                action=self.kind.value,
                changed=False,
                details=f"rc={result.returncode}: {summarize(result.stderr or result.stdout)}",
                failed=True,
                retryable=self.is_transient(output),
                output=output,
            )
        return self._result(host, True, f"ran (rc={result.returncode})", output)

    @staticmethod
    def _render(value: Any, context: dict[str, Any]) -> list[str]:
        if isinstance(value, str):
            return ["sh", "-c", Template(value).safe_substitute(context)]
        return [Template(str(v)).safe_substitute(context) for v in value]

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("deploy env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if isinstance(value, int):
            return [value]
        if isinstance(value, Sequence) and not isinstance(value, str):
            return [int(v) for v in value]
        raise ValueError("deploy returns must be an int or list of ints")
