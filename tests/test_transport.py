from pathlib import Path
import hashlib
import socket
import time

import paramiko
import pytest

from stagehand_automation.executors import CommandTimeout, ConnectionFailed, LocalExecutor, SSHExecutor
from stagehand_automation.graph import build_graph
from stagehand_automation.operations.configure import ConfigureAction
from stagehand_automation.reconciler import StateReconciler
from stagehand_automation.secrets import CredentialResolver, Credentials
from stagehand_automation.transport import ProbeUnreachable, ShellTransport, TransientError
from stagehand_automation.types import ActionKind, Host, Inventory, Operation


class FakeChannel:
    def __init__(self, status: int = 0) -> None:
        self._status = status

    def recv_exit_status(self) -> int:
        return self._status


class FakeStream:
    def __init__(self, data: str, status: int = 0) -> None:
        self._data = data.encode("utf-8")
        self.channel = FakeChannel(status)

    def read(self) -> bytes:
        return self._data


class FakeSSHClient:
    instances: list["FakeSSHClient"] = []

    def __init__(self) -> None:
        self.closed = False
        self.commands: list[str] = []
        self.kwargs: dict = {}
        FakeSSHClient.instances.append(self)

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.kwargs = kwargs

    def exec_command(self, command: str, timeout=None):
        self.commands.append(command)
        return (None, FakeStream("ok"), FakeStream("", 0))

    def close(self) -> None:
        self.closed = True


class RefusingSSHClient(FakeSSHClient):
    def connect(self, **kwargs) -> None:
        raise paramiko.SSHException("Error reading SSH protocol banner")


class SlowSSHClient(FakeSSHClient):
    def exec_command(self, command: str, timeout=None):
        raise socket.timeout("timed out")


def _ssh_host() -> Host:
    return Host("web1", connection="ssh", address="10.0.0.11", user="deploy", port=2222)


def test_ssh_executor_wraps_env_and_cwd():
    executor = SSHExecutor(_ssh_host(), Credentials(password="secret"), client_factory=FakeSSHClient)

    result = executor.run(["./release.sh", "v1 final"], env={"APP_ENV": "prod"}, cwd="/srv/app")

    client = FakeSSHClient.instances[-1]
    assert result.ok and result.stdout == "ok"
    assert client.commands == ["cd /srv/app && env APP_ENV=prod ./release.sh 'v1 final'"]
    assert client.kwargs["hostname"] == "10.0.0.11"
    assert client.kwargs["port"] == 2222
    assert client.kwargs["username"] == "deploy"
    assert client.kwargs["password"] == "secret"
    executor.close()
    assert client.closed is True


def test_ssh_connect_failure_is_connection_failed():
    executor = SSHExecutor(_ssh_host(), Credentials(), client_factory=RefusingSSHClient)
    with pytest.raises(ConnectionFailed, match="web1"):
        executor.run(["true"])


def test_ssh_socket_timeout_is_command_timeout():
    executor = SSHExecutor(_ssh_host(), Credentials(), client_factory=SlowSSHClient)
    with pytest.raises(CommandTimeout):
        executor.run(["sleep", "100"], timeout=1)


def test_exhausted_deadline_stops_further_commands():
    executor = LocalExecutor(Host("local"))

    with executor.deadline(0.01):
        time.sleep(0.05)
        with pytest.raises(CommandTimeout, match="deadline exceeded"):
            executor.run(["true"])


def test_local_probe_reports_file_digest_and_absent_paths(tmp_path: Path):
    conf = tmp_path / "app.conf"
    conf.write_text("listen 80;\n")
    transport = ShellTransport()

    observed = transport.probe(
        Host("local"),
        [f"file:{conf}", f"path:{tmp_path}", f"path:{tmp_path / 'gone'}", "command:echo ready", "bogus:thing"],
    )

    assert observed[f"file:{conf}"] == hashlib.sha256(b"listen 80;\n").hexdigest()
    assert observed[f"path:{tmp_path}"] == "directory"
    assert observed[f"path:{tmp_path / 'gone'}"] == "absent"
    assert observed["command:echo ready"] == "ready"
    assert "bogus:thing" not in observed


def test_probe_of_unreachable_host_raises_probe_unreachable(monkeypatch):
    transport = ShellTransport()
    monkeypatch.setattr(
        transport,
        "_build_executor",
        lambda host: SSHExecutor(host, Credentials(), client_factory=RefusingSSHClient),
    )

    with pytest.raises(ProbeUnreachable) as excinfo:
        transport.probe(_ssh_host(), ["package:nginx"])

    assert excinfo.value.host == "web1"


def test_missing_credentials_make_host_unreachable(monkeypatch):
    monkeypatch.delenv("STAGEHAND_MISSING_KEY", raising=False)
    host = _ssh_host()
    host.credential = "env:STAGEHAND_MISSING_KEY"

    with pytest.raises(ProbeUnreachable):
        ShellTransport(CredentialResolver()).probe(host, ["service:nginx"])


def test_execute_applies_action_locally(tmp_path: Path):
    dest = tmp_path / "motd"
    action = ConfigureAction({"path": str(dest), "content": "welcome\n"})
    op = Operation("motd@local", "local", ActionKind.CONFIGURE, "key", action=action)
    transport = ShellTransport()

    result = transport.execute(Host("local"), op, timeout=30)
    transport.close()

    assert result.changed is True
    assert dest.read_text() == "welcome\n"


def test_execute_maps_timeouts_to_transient_errors():
    class Hanging(ConfigureAction):
        def apply(self, host, executor):
            raise CommandTimeout("'deploy' timed out after 30s")

    op = Operation("x@local", "local", ActionKind.CONFIGURE, "key", action=Hanging({"path": "/tmp/x", "content": ""}))

    with pytest.raises(TransientError, match="timed out"):
        ShellTransport().execute(Host("local"), op)


def test_permission_drift_keeps_configure_pending(tmp_path: Path):
    dest = tmp_path / "app.env"
    dest.write_text("A=1\n")
    dest.chmod(0o644)
    action = ConfigureAction({"path": str(dest), "content": "A=1\n", "mode": "0600"})
    host = Host("local")
    op = Operation(
        "env@local", "local", ActionKind.CONFIGURE, "key", desired_state=action.implied_state(host), action=action
    )
    transport = ShellTransport()

    observed = transport.probe(host, list(op.desired_state))
    plan = StateReconciler(transport).reconcile(build_graph([op]), Inventory([host]))

    assert observed[f"file-mode:{dest}"] == "644"
    assert observed[f"file:{dest}"] == op.desired_state[f"file:{dest}"]
    assert "env@local" in plan.pending

    transport.execute(host, op)
    assert transport.probe(host, [f"file-mode:{dest}"]) == {f"file-mode:{dest}": "600"}
