from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .operations.base import Action


class ActionKind(str, Enum):
    INSTALL = "install"
    CONFIGURE = "configure"
    DEPLOY = "deploy"
    RESTART = "restart"
    STOP = "stop"
    TEARDOWN = "teardown"


class Outcome(str, Enum):
    SKIPPED_SATISFIED = "skipped-already-satisfied"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_FATAL = "failed-fatal"
    SKIPPED_BLOCKED = "skipped-blocked-by-failure"
    SKIPPED_CANCELLED = "skipped-cancelled"

    @property
    def satisfies_dependents(self) -> bool:
        return self in (Outcome.SUCCEEDED, Outcome.SKIPPED_SATISFIED)


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Host:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    credential: Optional[str] = None
    user: Optional[str] = None
    port: int = 22
    groups: tuple[str, ...] = ()
    variables: dict[str, Any] = field(default_factory=dict)
    facts: dict[str, str] = field(default_factory=dict)
    probed_at: Optional[datetime] = None

    def record_probe(self, observed: Mapping[str, str]) -> None:
        self.facts.update(observed)
        self.probed_at = datetime.now(timezone.utc)


class Inventory:
    """Read-only snapshot of the hosts known to a run."""

    def __init__(self, hosts: Iterable[Host]):
        ordered = {host.name: host for host in hosts}
        self._hosts = MappingProxyType(ordered)

    @property
    def hosts(self) -> Mapping[str, Host]:
        return self._hosts

    def __contains__(self, name: object) -> bool:
        return name in self._hosts

    def __getitem__(self, name: str) -> Host:
        return self._hosts[name]

    def __len__(self) -> int:
        return len(self._hosts)

    def names(self) -> list[str]:
        return list(self._hosts)

    def groups(self) -> dict[str, list[str]]:
        groups: dict[str, list[str]] = {}
        for host in self._hosts.values():
            for group in host.groups:
                groups.setdefault(group, []).append(host.name)
        return groups

    def select(self, selector: Any) -> list[str]:
        """Resolve ``all``, a host name, a group name or a list of those."""

        if selector is None:
            return self.names()
        items = [selector] if isinstance(selector, str) else list(selector)
        groups = self.groups()
        selected: list[str] = []
        for item in items:
            item = str(item)
            if item == "all":
                matches = self.names()
            elif item in self._hosts:
                matches = [item]
            elif item in groups:
                matches = groups[item]
            else:
                raise KeyError(item)
            for name in matches:
                if name not in selected:
                    selected.append(name)
        return selected


@dataclass(frozen=True)
class Operation:
    id: str
    host: str
    kind: ActionKind
    idempotency_key: str
    depends_on: frozenset[str] = frozenset()
    desired_state: Mapping[str, str] = field(default_factory=dict)
    action: Optional["Action"] = field(default=None, compare=False, repr=False)
    role: str = ""
    index: int = 0
    timeout: Optional[float] = None
    max_attempts: Optional[int] = None


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    retryable: bool = False
    output: str = ""


@dataclass(frozen=True)
class ExecutionResult:
    operation_id: str
    host: str
    kind: ActionKind
    idempotency_key: str
    outcome: Outcome
    attempts: int = 0
    duration: float = 0.0
    output: str = ""
    error: Optional[str] = None
    blocked_by: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "host": self.host,
            "kind": self.kind.value,
            "idempotency_key": self.idempotency_key,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "duration": round(self.duration, 3),
            "output": self.output,
            "error": self.error,
            "blocked_by": self.blocked_by,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionResult":
        return cls(
            operation_id=str(data["operation_id"]),
            host=str(data["host"]),
            kind=ActionKind(data["kind"]),
            idempotency_key=str(data.get("idempotency_key", "")),
            outcome=Outcome(data["outcome"]),
            attempts=int(data.get("attempts", 0)),
            duration=float(data.get("duration", 0.0)),
            output=str(data.get("output") or ""),
            error=data.get("error"),
            blocked_by=data.get("blocked_by"),
        )


@dataclass(frozen=True)
class RunReport:
    run_id: str
    spec_name: str
    outcome: RunOutcome
    started_at: datetime
    finished_at: datetime
    results: tuple[ExecutionResult, ...] = ()

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def result_for(self, operation_id: str) -> Optional[ExecutionResult]:
        for result in self.results:
            if result.operation_id == operation_id:
                return result
        return None

    def host_counts(self) -> dict[str, dict[str, int]]:
        counts: dict[str, Counter[str]] = {}
        for result in self.results:
            counts.setdefault(result.host, Counter())[result.outcome.value] += 1
        return {host: dict(counter) for host, counter in counts.items()}

    def root_causes(self) -> list[ExecutionResult]:
        return [r for r in self.results if r.outcome is Outcome.FAILED_FATAL]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "spec": self.spec_name,
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration": round(self.duration, 3),
            "results": [result.to_dict() for result in self.results],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunReport":
        return cls(
            run_id=str(data["run_id"]),
            spec_name=str(data.get("spec", "")),
            outcome=RunOutcome(data["outcome"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=datetime.fromisoformat(data["finished_at"]),
            results=tuple(ExecutionResult.from_dict(item) for item in data.get("results", [])),
        )


def ordered_results(results: Mapping[str, ExecutionResult], order: Sequence[str]) -> tuple[ExecutionResult, ...]:
    return tuple(results[op_id] for op_id in order if op_id in results)
