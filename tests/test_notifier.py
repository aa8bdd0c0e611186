from datetime import datetime, timedelta, timezone

import requests

from stagehand_automation.notifier import NullNotifier, WebhookNotifier, summary_payload
from stagehand_automation.types import ActionKind, ExecutionResult, Outcome, RunOutcome, RunReport


def _report() -> RunReport:
    started = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return RunReport(
        run_id="abc123",
        spec_name="webapp",
        outcome=RunOutcome.FAILED,
        started_at=started,
        finished_at=started + timedelta(seconds=3),
        results=(
            ExecutionResult("install@x", "x", ActionKind.INSTALL, "k", Outcome.FAILED_FATAL, 3, error="lock held"),
            ExecutionResult("conf@x", "x", ActionKind.CONFIGURE, "k", Outcome.SKIPPED_BLOCKED, blocked_by="install@x"),
            ExecutionResult("deploy@y", "y", ActionKind.DEPLOY, "k", Outcome.SUCCEEDED, 1),
        ),
    )


class FakeResponse:
    def __init__(self, status: int):
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


def test_summary_payload_lists_hosts_and_root_causes():
    payload = summary_payload(_report())

    assert payload["outcome"] == "failed"
    assert payload["duration"] == 3.0
    assert payload["hosts"] == {
        "x": {"failed-fatal": 1, "skipped-blocked-by-failure": 1},
        "y": {"succeeded": 1},
    }
    assert payload["root_causes"] == [{"operation": "install@x", "host": "x", "error": "lock held"}]


def test_webhook_posts_summary_once():
    session = FakeSession([200])
    notifier = WebhookNotifier("https://hooks.example.invalid/x", timeout=5, session=session)

    assert notifier.notify(_report()) is True
    assert len(session.posts) == 1
    url, body, timeout = session.posts[0]
    assert url == "https://hooks.example.invalid/x"
    assert body["run_id"] == "abc123"
    assert timeout == 5


def test_webhook_retries_once_then_succeeds():
    session = FakeSession([requests.exceptions.ConnectionError("refused"), 204])
    assert WebhookNotifier("https://hooks.example.invalid/x", session=session).notify(_report()) is True
    assert len(session.posts) == 2


def test_webhook_failure_is_logged_not_raised(caplog):
    session = FakeSession([500, 503])

    delivered = WebhookNotifier("https://hooks.example.invalid/x", session=session).notify(_report())

    assert delivered is False
    assert len(session.posts) == 2
    assert "notification attempt 2/2 failed" in caplog.text


def test_null_notifier_accepts_everything():
    assert NullNotifier().notify(_report()) is True
