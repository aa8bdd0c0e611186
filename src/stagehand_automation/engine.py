from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional
import logging
import threading
import time
import uuid

from .reconciler import ExecutionPlan
from .transport import TransientError, Transport
from .types import (
    ExecutionResult,
    Inventory,
    Operation,
    Outcome,
    RunOutcome,
    RunReport,
    ordered_results,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, failed_attempts: int) -> float:
        """Backoff before the next attempt once ``failed_attempts`` have failed."""
        return min(self.base_delay * (2 ** (failed_attempts - 1)), self.max_delay)


class CancelToken:
    """Cooperative cancellation flag, optionally mirrored by a marker file."""

    def __init__(self, marker: Optional[Path] = None):
        self.marker = marker
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.marker is not None and self.marker.exists():
            self._event.set()
            return True
        return False


class _RunState:
    """Bookkeeping shared between the dispatcher and workers; guarded by ``cond``."""

    def __init__(self, plan: ExecutionPlan):
        self.cond = threading.Condition()
        self.results: dict[str, ExecutionResult] = dict(plan.skipped)
        self.waiting: set[str] = set(plan.pending.order)
        self.busy_hosts: set[str] = set()
        self.in_flight = 0
        self.cancelled = False


class ExecutionEngine:
    """Runs a reconciled plan: concurrent across hosts, serial within a host."""

    poll_interval = 0.2

    def __init__(
        self,
        transport: Transport,
        *,
        retry: Optional[RetryPolicy] = None,
        max_workers: Optional[int] = None,
        default_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_start: Optional[Callable[[Operation], None]] = None,
        on_finish: Optional[Callable[[ExecutionResult], None]] = None,
    ):
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.max_workers = max_workers
        self.default_timeout = default_timeout
        self.sleep = sleep
        self.on_start = on_start
        self.on_finish = on_finish

    def run(
        self,
        plan: ExecutionPlan,
        inventory: Inventory,
        *,
        run_id: Optional[str] = None,
        spec_name: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> RunReport:
        run_id = run_id or uuid.uuid4().hex[:12]
        cancel = cancel or CancelToken()
        started_at = datetime.now(timezone.utc)
        state = _RunState(plan)
        pending = plan.pending
        workers = self.max_workers or max(1, len(pending.hosts))
        logger.info("run=%s operations=%d workers=%d", run_id, len(pending), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stagehand") as pool:
            with state.cond:
                while state.waiting or state.in_flight:
                    if not state.cancelled and cancel.is_cancelled():
                        self._cancel_waiting(state, plan)
                    if not state.cancelled:
                        for op_id in self._ready(state, plan):
                            if state.in_flight >= workers:
                                break
                            op = pending[op_id]
                            state.waiting.discard(op_id)
                            state.busy_hosts.add(op.host)
                            state.in_flight += 1
                            pool.submit(self._work, op, inventory, state, plan, cancel)
                    if not state.waiting and not state.in_flight:
                        break
                    state.cond.wait(self.poll_interval)

        report = RunReport(
            run_id=run_id,
            spec_name=spec_name,
            outcome=self._outcome(state),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            results=ordered_results(state.results, plan.graph.order),
        )
        logger.info("run=%s outcome=%s duration=%.1fs", run_id, report.outcome.value, report.duration)
        return report

    def _ready(self, state: _RunState, plan: ExecutionPlan) -> list[str]:
        ready: list[str] = []
        claimed: set[str] = set()
        for op_id in plan.pending.order:
            if op_id not in state.waiting:
                continue
            op = plan.pending[op_id]
            if op.host in state.busy_hosts or op.host in claimed:
                continue
            deps = plan.pending.dependencies_of(op_id)
            if all(dep in state.results and state.results[dep].outcome.satisfies_dependents for dep in deps):
                ready.append(op_id)
                claimed.add(op.host)
            else:
                # a blocked head keeps later operations on the same host behind it
                claimed.add(op.host)
        return ready

    def _work(
        self,
        op: Operation,
        inventory: Inventory,
        state: _RunState,
        plan: ExecutionPlan,
        cancel: CancelToken,
    ) -> None:
        result: Optional[ExecutionResult] = None
        try:
            if cancel.is_cancelled():
                result = _terminal(op, Outcome.SKIPPED_CANCELLED)
            else:
                self._notify(self.on_start, op)
                result = self._attempt(op, inventory)
        except Exception as exc:  # noqa: BLE001
            logger.error("operation=%s host=%s worker crashed: %s", op.id, op.host, exc, exc_info=True)
            result = _terminal(op, Outcome.FAILED_FATAL, attempts=1, error=str(exc) or exc.__class__.__name__)
        finally:
            if result is None:
                result = _terminal(op, Outcome.FAILED_FATAL, attempts=1, error="worker interrupted")
            with state.cond:
                state.results[op.id] = result
                state.busy_hosts.discard(op.host)
                state.in_flight -= 1
                if result.outcome is Outcome.FAILED_FATAL:
                    self._block_dependents(state, plan, op.id)
                elif result.outcome is Outcome.SKIPPED_CANCELLED:
                    self._cancel_waiting(state, plan)
                state.cond.notify_all()
        self._notify(self.on_finish, result)

    @staticmethod
    def _notify(callback: Optional[Callable[..., None]], payload: object) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:  # noqa: BLE001
            logger.debug("progress callback failed", exc_info=True)

    def _attempt(self, op: Operation, inventory: Inventory) -> ExecutionResult:
        host = inventory[op.host]
        max_attempts = op.max_attempts or self.retry.max_attempts
        timeout = op.timeout or self.default_timeout
        started = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            output = ""
            try:
                action_result = self.transport.execute(host, op, timeout=timeout)
            except (TransientError, TimeoutError, ConnectionError) as exc:
                retryable, error = True, str(exc) or exc.__class__.__name__
            except Exception as exc:  # noqa: BLE001
                logger.error("operation=%s host=%s raised: %s", op.id, op.host, exc, exc_info=True)
                retryable, error = False, str(exc) or exc.__class__.__name__
            else:
                output = action_result.output or action_result.details
                if not action_result.failed:
                    logger.debug("operation=%s host=%s changed=%s", op.id, op.host, action_result.changed)
                    return _terminal(op, Outcome.SUCCEEDED, attempts, time.monotonic() - started, output)
                retryable, error = action_result.retryable, action_result.details

            if not retryable or attempts >= max_attempts:
                logger.error("operation=%s host=%s failed after %d attempt(s): %s", op.id, op.host, attempts, error)
                return _terminal(op, Outcome.FAILED_FATAL, attempts, time.monotonic() - started, output, error)

            delay = self.retry.delay_for(attempts)
            logger.warning(
                "operation=%s host=%s outcome=%s attempt=%d/%d retry_in=%.1fs: %s",
                op.id,
                op.host,
                Outcome.FAILED_RETRYABLE.value,
                attempts,
                max_attempts,
                delay,
                error,
            )
            self.sleep(delay)

    @staticmethod
    def _block_dependents(state: _RunState, plan: ExecutionPlan, root: str) -> None:
        for dependent in plan.pending.transitive_dependents(root):
            if dependent not in state.waiting:
                continue
            state.waiting.discard(dependent)
            op = plan.pending[dependent]
            state.results[dependent] = _terminal(op, Outcome.SKIPPED_BLOCKED, blocked_by=root)
            logger.info("operation=%s host=%s blocked by %s", dependent, op.host, root)

    @staticmethod
    def _cancel_waiting(state: _RunState, plan: ExecutionPlan) -> None:
        state.cancelled = True
        for op_id in sorted(state.waiting):
            state.results[op_id] = _terminal(plan.pending[op_id], Outcome.SKIPPED_CANCELLED)
        if state.waiting:
            logger.warning("cancellation requested; %d operation(s) not dispatched", len(state.waiting))
        state.waiting.clear()

    @staticmethod
    def _outcome(state: _RunState) -> RunOutcome:
        outcomes = {result.outcome for result in state.results.values()}
        if Outcome.SKIPPED_CANCELLED in outcomes:
            return RunOutcome.CANCELLED
        if Outcome.FAILED_FATAL in outcomes:
            return RunOutcome.FAILED
        return RunOutcome.SUCCEEDED


def _terminal(
    op: Operation,
    outcome: Outcome,
    attempts: int = 0,
    duration: float = 0.0,
    output: str = "",
    error: Optional[str] = None,
    blocked_by: Optional[str] = None,
) -> ExecutionResult:
    return ExecutionResult(
        operation_id=op.id,
        host=op.host,
        kind=op.kind,
        idempotency_key=op.idempotency_key,
        outcome=outcome,
        attempts=attempts,
        duration=duration,
        output=output,
        error=error,
        blocked_by=blocked_by,
    )
