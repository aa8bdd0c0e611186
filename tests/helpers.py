from __future__ import annotations

import threading
from typing import Callable, Iterable, Optional

from stagehand_automation.transport import ProbeUnreachable, TransientError
from stagehand_automation.types import ActionKind, ActionResult, Host, Operation


def make_op(
    op_id: str,
    host: str,
    kind: ActionKind = ActionKind.DEPLOY,
    deps: Iterable[str] = (),
    desired: Optional[dict[str, str]] = None,
    index: int = 0,
    max_attempts: Optional[int] = None,
) -> Operation:
    return Operation(
        id=op_id,
        host=host,
        kind=kind,
        idempotency_key=f"{op_id}-key",
        depends_on=frozenset(deps),
        desired_state=desired or {},
        index=index,
        max_attempts=max_attempts,
    )


class FakeTransport:
    """In-memory transport: probes read ``state``; successful runs write desired state."""

    def __init__(
        self,
        state: Optional[dict[str, dict[str, str]]] = None,
        failures: Optional[dict[str, list[str]]] = None,
        unreachable: Iterable[str] = (),
        hooks: Optional[dict[str, Callable[[Operation], None]]] = None,
    ):
        self.state = state if state is not None else {}
        self.failures = failures or {}
        self.unreachable = set(unreachable)
        self.hooks = hooks or {}
        self.executed: list[str] = []
        self.probed: list[tuple[str, tuple[str, ...]]] = []
        self.timeouts: dict[str, Optional[float]] = {}
        self._attempts: dict[str, int] = {}
        self._lock = threading.Lock()

    def probe(self, host: Host, keys):
        self.probed.append((host.name, tuple(keys)))
        if host.name in self.unreachable:
            raise ProbeUnreachable(host.name, "connection refused")
        values = self.state.get(host.name, {})
        return {key: values[key] for key in keys if key in values}

    def execute(self, host: Host, operation: Operation, *, timeout=None) -> ActionResult:
        with self._lock:
            self.executed.append(operation.id)
            attempt = self._attempts.get(operation.id, 0) + 1
            self._attempts[operation.id] = attempt
            self.timeouts[operation.id] = timeout
        hook = self.hooks.get(operation.id)
        if hook:
            hook(operation)
        plan = self.failures.get(operation.id, [])
        mode = plan[attempt - 1] if attempt <= len(plan) else "ok"
        if mode == "retryable":
            return ActionResult(host.name, operation.kind.value, False, "lock held", failed=True, retryable=True)
        if mode == "fatal":
            return ActionResult(host.name, operation.kind.value, False, "exit 2", failed=True)
        if mode == "transient":
            raise TransientError("connection reset")
        if mode == "timeout":
            raise TimeoutError("attempt deadline exceeded")
        if mode == "raise":
            raise RuntimeError("unexpected failure")
        with self._lock:
            self.state.setdefault(host.name, {}).update(operation.desired_state)
        return ActionResult(host.name, operation.kind.value, True, "ok", output="done")
