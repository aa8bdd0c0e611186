from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping
import subprocess

from ..executors import Executor
from ..types import ActionKind, ActionResult, Host


class Action(ABC):
    """Shared surface for the typed deployment actions."""

    kind: ActionKind
    transient_markers: tuple[str, ...] = ()

    def __init__(self, params: Mapping[str, Any]):
        self.params = dict(params)

    @abstractmethod
    def apply(self, host: Host, executor: Executor) -> ActionResult:
        """Perform the action against ``host`` using ``executor``."""

    def implied_state(self, host: Host) -> dict[str, str]:
        """Resource keys this action guarantees once it has succeeded."""
        return {}

    def describe(self) -> str:
        return self.kind.value

    def execute(self, host: Host, executor: Executor) -> ActionResult:
        try:
            return self.apply(host, executor)
        except subprocess.CalledProcessError as exc:
            output = "\n".join(part for part in (exc.stdout, exc.stderr) if part)
            return ActionResult(
                host=host.name,
                action=self.kind.value,
                changed=False,
                details=f"rc={exc.returncode}: {summarize(exc.stderr or exc.stdout)}",
                failed=True,
                retryable=self.is_transient(output),
                output=output,
            )

    def is_transient(self, output: str) -> bool:
        lowered = output.lower()
        return any(marker in lowered for marker in self.transient_markers)

    def _result(self, host: Host, changed: bool, details: str, output: str = "") -> ActionResult:
        return ActionResult(host=host.name, action=self.kind.value, changed=changed, details=details, output=output)


def summarize(text: str | None) -> str:
    if not text:
        return ""
    stripped = text.strip()
    if not stripped:
        return ""
    line = stripped.splitlines()[0]
    return (line[:157] + "...") if len(line) > 160 else line


def as_list(value: Any, field: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    raise ValueError(f"{field} must be a string or list")


def parse_mode(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    base = 8 if text.startswith("0") else 10
    return int(text, base)
