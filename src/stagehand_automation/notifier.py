from __future__ import annotations

from typing import Any, Optional, Protocol
import logging

import requests

from .types import RunReport

logger = logging.getLogger(__name__)


class NotifyFailed(RuntimeError):
    """Raised internally when the sink rejects or drops a summary."""


class Notifier(Protocol):
    def notify(self, report: RunReport) -> bool:
        """Deliver a run summary; never raises."""


def summary_payload(report: RunReport) -> dict[str, Any]:
    return {
        "run_id": report.run_id,
        "spec": report.spec_name,
        "outcome": report.outcome.value,
        "duration": round(report.duration, 3),
        "started_at": report.started_at.isoformat(),
        "finished_at": report.finished_at.isoformat(),
        "hosts": report.host_counts(),
        "root_causes": [
            {"operation": r.operation_id, "host": r.host, "error": r.error}
            for r in report.root_causes()
        ],
    }


class NullNotifier:
    def notify(self, report: RunReport) -> bool:
        logger.debug("run=%s no notification sink configured", report.run_id)
        return True


class WebhookNotifier:
    """Posts a single JSON summary to a webhook; best-effort, one retry."""

    attempts = 2

    def __init__(self, url: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, report: RunReport) -> bool:
        payload = summary_payload(report)
        for attempt in range(1, self.attempts + 1):
            try:
                self._post(payload)
            except NotifyFailed as exc:
                logger.warning(
                    "run=%s notification attempt %d/%d failed: %s", report.run_id, attempt, self.attempts, exc
                )
                continue
            logger.info("run=%s summary delivered to webhook", report.run_id)
            return True
        return False

    def _post(self, payload: dict[str, Any]) -> None:
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise NotifyFailed(str(exc)) from exc
