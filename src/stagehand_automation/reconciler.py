from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Mapping, Optional
import logging

from .graph import TaskGraph
from .transport import ProbeUnreachable, Transport
from .types import ExecutionResult, Inventory, Operation, Outcome

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    graph: TaskGraph
    pending: TaskGraph
    skipped: dict[str, ExecutionResult] = field(default_factory=dict)
    unreachable: dict[str, str] = field(default_factory=dict)

    def reason(self, op_id: str) -> str:
        if op_id in self.skipped:
            return "already satisfied"
        op = self.graph[op_id]
        if op.host in self.unreachable:
            return f"state unknown ({self.unreachable[op.host]})"
        if not op.desired_state:
            return "no desired state asserted"
        return "drift detected"


class StateReconciler:
    """Prunes operations whose desired state already holds on the host."""

    def __init__(self, transport: Transport, *, match_mode: str = "strict", max_workers: Optional[int] = None):
        if match_mode not in {"strict", "partial"}:
            raise ValueError(f"unknown match mode '{match_mode}'")
        self.transport = transport
        self.match_mode = match_mode
        self.max_workers = max_workers

    def reconcile(self, graph: TaskGraph, inventory: Inventory) -> ExecutionPlan:
        keys_by_host: dict[str, list[str]] = {}
        for op in graph:
            keys = keys_by_host.setdefault(op.host, [])
            keys.extend(key for key in op.desired_state if key not in keys)

        unreachable: dict[str, str] = {}
        observed: dict[str, dict[str, str]] = {}
        targets = [host for host, keys in keys_by_host.items() if keys]
        if targets:
            workers = self.max_workers or len(targets)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as pool:
                futures = {host: pool.submit(self._probe, inventory, host, keys_by_host[host]) for host in targets}
                for host, future in futures.items():
                    try:
                        observed[host] = future.result()
                    except ProbeUnreachable as exc:
                        logger.warning("probe host=%s unreachable: %s", host, exc.reason)
                        unreachable[host] = exc.reason
                    except Exception as exc:  # noqa: BLE001
                        logger.error("probe host=%s failed: %s", host, exc, exc_info=True)
                        unreachable[host] = str(exc)

        skipped: dict[str, ExecutionResult] = {}
        for op in graph:
            if op.host in unreachable or not op.desired_state:
                continue
            if self.satisfied(op.desired_state, observed.get(op.host, {})):
                logger.debug("operation=%s host=%s already satisfied", op.id, op.host)
                skipped[op.id] = _skip_result(op)

        pending = graph.without(skipped)
        logger.info(
            "reconciled operations=%d pending=%d satisfied=%d unreachable_hosts=%d",
            len(graph),
            len(pending),
            len(skipped),
            len(unreachable),
        )
        return ExecutionPlan(graph=graph, pending=pending, skipped=skipped, unreachable=unreachable)

    def satisfied(self, desired: Mapping[str, str], observed: Mapping[str, str]) -> bool:
        if self.match_mode == "partial":
            seen = [key for key in desired if key in observed]
            return bool(seen) and all(observed[key] == desired[key] for key in seen)
        return all(key in observed and observed[key] == value for key, value in desired.items())

    def _probe(self, inventory: Inventory, host_name: str, keys: list[str]) -> dict[str, str]:
        host = inventory[host_name]
        values = self.transport.probe(host, keys)
        host.record_probe(values)
        logger.debug("probe host=%s keys=%d observed=%d", host_name, len(keys), len(values))
        return values


def _skip_result(op: Operation) -> ExecutionResult:
    return ExecutionResult(
        operation_id=op.id,
        host=op.host,
        kind=op.kind,
        idempotency_key=op.idempotency_key,
        outcome=Outcome.SKIPPED_SATISFIED,
    )
