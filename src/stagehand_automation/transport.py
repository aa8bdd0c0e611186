from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable
import logging
import threading

from . import probes
from .executors import CommandTimeout, ConnectionFailed, Executor, LocalExecutor, SSHExecutor
from .secrets import CredentialError, CredentialResolver
from .types import ActionResult, Host, Operation

logger = logging.getLogger(__name__)


class ProbeUnreachable(RuntimeError):
    """Raised when a host cannot be probed; its state is unknown."""

    def __init__(self, host: str, reason: str):
        super().__init__(f"{host}: {reason}")
        self.host = host
        self.reason = reason


class TransientError(RuntimeError):
    """Raised for failures worth retrying (timeouts, dropped connections)."""


@runtime_checkable
class Transport(Protocol):
    def probe(self, host: Host, keys: Sequence[str]) -> dict[str, str]:
        """Return observed values for ``keys``; missing keys are unknown."""

    def execute(self, host: Host, operation: Operation, *, timeout: Optional[float] = None) -> ActionResult:
        """Apply ``operation`` on ``host`` once."""


class ShellTransport:
    """Runs probes and actions through local or SSH executors."""

    def __init__(
        self,
        credentials: Optional[CredentialResolver] = None,
        *,
        probe_timeout: Optional[float] = 30.0,
        connect_timeout: float = 20.0,
    ):
        self.credentials = credentials or CredentialResolver()
        self.probe_timeout = probe_timeout
        self.connect_timeout = connect_timeout
        self._executors: dict[str, Executor] = {}
        self._lock = threading.Lock()

    def probe(self, host: Host, keys: Sequence[str]) -> dict[str, str]:
        try:
            executor = self._executor_for(host)
            with executor.deadline(self.probe_timeout):
                return probes.collect(executor, keys)
        except (ConnectionFailed, CredentialError, CommandTimeout) as exc:
            raise ProbeUnreachable(host.name, str(exc)) from exc

    def execute(self, host: Host, operation: Operation, *, timeout: Optional[float] = None) -> ActionResult:
        if operation.action is None:
            raise ValueError(f"operation {operation.id} carries no action")
        try:
            executor = self._executor_for(host)
            with executor.deadline(timeout):
                return operation.action.execute(host, executor)
        except (ConnectionFailed, CommandTimeout) as exc:
            raise TransientError(str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.close()

    def _executor_for(self, host: Host) -> Executor:
        with self._lock:
            executor = self._executors.get(host.name)
            if executor is None:
                executor = self._build_executor(host)
                self._executors[host.name] = executor
            return executor

    def _build_executor(self, host: Host) -> Executor:
        logger.debug("executor host=%s connection=%s", host.name, host.connection)
        if host.connection == "local":
            return LocalExecutor(host)
        if host.connection == "ssh":
            return SSHExecutor(
                host,
                self.credentials.resolve(host.credential),
                connect_timeout=self.connect_timeout,
            )
        raise ValueError(f"Unknown connection type '{host.connection}'")
