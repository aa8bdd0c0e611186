from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional
import logging
import time
import uuid

from .config import StagehandConfig
from .engine import CancelToken, ExecutionEngine, RetryPolicy
from .graph import build_graph
from .inventory import Deployment, InventoryLoader
from .notifier import Notifier, NullNotifier, WebhookNotifier
from .reconciler import ExecutionPlan, StateReconciler
from .state import ReportStore, validate_run_id
from .transport import ShellTransport, Transport
from .types import Operation, RunReport

logger = logging.getLogger(__name__)


class DeploymentRunner:
    """Coordinates loading, planning, execution, persistence and notification."""

    def __init__(
        self,
        config: StagehandConfig,
        *,
        transport: Optional[Transport] = None,
        notifier: Optional[Notifier] = None,
        store: Optional[ReportStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_start: Optional[Callable[[Operation], None]] = None,
    ):
        self.config = config
        self.transport = transport or ShellTransport(probe_timeout=config.probe_timeout)
        self.notifier = notifier or self._default_notifier(config)
        self.store = store or ReportStore(config.state_dir)
        self.sleep = sleep
        self.on_start = on_start

    def load(self, spec_path: Path, inventory_path: Optional[Path] = None) -> Deployment:
        loader = InventoryLoader()
        inventory = loader.load_inventory(inventory_path) if inventory_path else None
        return loader.load_deployment(spec_path, inventory)

    def plan(self, deployment: Deployment) -> ExecutionPlan:
        return self._reconciler().reconcile(build_graph(deployment.operations), deployment.inventory)

    def run(
        self,
        deployment: Deployment,
        *,
        run_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RunReport:
        run_id = validate_run_id(run_id) if run_id else uuid.uuid4().hex[:12]
        # graph and validation errors surface here, before any remote action
        graph = build_graph(deployment.operations)
        if self.store.is_active(run_id) or self.store.has_report(run_id):
            raise ValueError(f"run id '{run_id}' is already in use")
        self.store.begin(run_id)
        token = cancel or CancelToken()
        token.marker = self.store.cancel_marker(run_id)
        try:
            plan = self._reconciler().reconcile(graph, deployment.inventory)
            engine = ExecutionEngine(
                self.transport,
                retry=RetryPolicy(
                    max_attempts=self.config.max_attempts,
                    base_delay=self.config.retry_base_delay,
                    max_delay=self.config.retry_max_delay,
                ),
                max_workers=self.config.max_workers,
                default_timeout=self.config.operation_timeout,
                sleep=self.sleep,
                on_start=self.on_start,
            )
            report = engine.run(plan, deployment.inventory, run_id=run_id, spec_name=deployment.name, cancel=token)
            path = self.store.save(report)
            logger.info("run=%s report written to %s", run_id, path)
        finally:
            self.store.finish(run_id)
            close = getattr(self.transport, "close", None)
            if callable(close):
                close()
        self.notifier.notify(report)
        return report

    def _reconciler(self) -> StateReconciler:
        return StateReconciler(
            self.transport,
            match_mode=self.config.match_mode,
            max_workers=self.config.max_workers,
        )

    @staticmethod
    def _default_notifier(config: StagehandConfig) -> Notifier:
        if config.webhook_url:
            return WebhookNotifier(config.webhook_url, timeout=config.webhook_timeout)
        return NullNotifier()
