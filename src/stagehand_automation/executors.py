from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, Union
import io
import logging
import os
import shlex
import shutil
import socket
import stat
import subprocess
import time

import paramiko

from .secrets import Credentials
from .types import Host

logger = logging.getLogger(__name__)


class ConnectionFailed(RuntimeError):
    """Raised when a host cannot be reached."""


class CommandTimeout(TimeoutError):
    """Raised when a command exceeds its timeout."""


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Executor:
    """Base executor abstraction used by actions and probes."""

    def __init__(self, host: Host):
        self.host = host
        self._deadline: Optional[float] = None

    @contextmanager
    def deadline(self, seconds: Optional[float]) -> Iterator[None]:
        """Bound every command issued inside the block by one shared budget."""

        previous = self._deadline
        self._deadline = time.monotonic() + seconds if seconds else None
        try:
            yield
        finally:
            self._deadline = previous

    def _effective_timeout(self, timeout: Optional[float], command: Sequence[str]) -> Optional[float]:
        if self._deadline is None:
            return timeout
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise CommandTimeout(f"attempt deadline exceeded before '{shlex.join(command)}'")
        return remaining if timeout is None else min(timeout, remaining)

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        raise NotImplementedError

    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> bool:
        raise NotImplementedError

    def remove_path(self, path: Path) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        return None

    @staticmethod
    def _raise_for(result: CommandResult, check: bool) -> CommandResult:
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode,
                result.command,
                result.stdout,
                result.stderr,
            )
        return result


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        cmd_list = list(command)
        timeout = self._effective_timeout(timeout, cmd_list)
        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)
        try:
            proc = subprocess.run(
                cmd_list,
                capture_output=True,
                text=True,
                check=False,
                env=exec_env,
                cwd=str(cwd) if cwd is not None else None,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(f"'{shlex.join(cmd_list)}' timed out after {timeout}s") from exc
        result = CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)
        return self._raise_for(result, check)

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> bool:
        changed = False
        if self.read_file(path) != content:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            changed = True
        if mode is not None and self._file_mode(path) != mode:
            os.chmod(path, mode)
            changed = True
        return changed

    def remove_path(self, path: Path) -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True

    @staticmethod
    def _file_mode(path: Path) -> Optional[int]:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None


class SSHExecutor(Executor):
    """Executor that runs commands over SSH via Paramiko."""

    KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

    def __init__(
        self,
        host: Host,
        credentials: Credentials,
        *,
        connect_timeout: float = 20.0,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ):
        super().__init__(host)
        if not host.address:
            raise ConnectionFailed(f"host {host.name} has no address")
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> paramiko.SSHClient:
        if self._client:
            return self._client
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_kwargs: dict[str, object] = {
            "hostname": self.host.address,
            "port": self.host.port,
            "username": self.host.user,
            "timeout": self.connect_timeout,
        }
        if self.credentials.password:
            connect_kwargs["password"] = self.credentials.password
        if self.credentials.key_path:
            connect_kwargs["key_filename"] = self.credentials.key_path
        if self.credentials.key_data:
            connect_kwargs["pkey"] = self._load_key(self.credentials.key_data)
        try:
            client.connect(**connect_kwargs)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise ConnectionFailed(f"{self.host.name} ({self.host.address}): {exc}") from exc
        logger.debug("ssh connected host=%s address=%s", self.host.name, self.host.address)
        self._client = client
        return client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        cmd_list = list(command)
        timeout = self._effective_timeout(timeout, cmd_list)
        client = self.connect()
        remote = shlex.join(cmd_list)
        if env:
            assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
            remote = f"env {assignments} {remote}"
        if cwd is not None:
            remote = f"cd {shlex.quote(str(cwd))} && {remote}"
        try:
            _, stdout, stderr = client.exec_command(remote, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        except socket.timeout as exc:
            raise CommandTimeout(f"'{remote}' timed out after {timeout}s") from exc
        except (paramiko.SSHException, EOFError) as exc:
            self.close()
            raise ConnectionFailed(f"{self.host.name}: {exc}") from exc
        return self._raise_for(CommandResult(cmd_list, out, err, status), check)

    def read_file(self, path: Path) -> Optional[str]:
        with self.connect().open_sftp() as sftp:
            try:
                with sftp.open(str(path), "r") as handle:
                    return handle.read().decode("utf-8", errors="replace")
            except FileNotFoundError:
                return None

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> bool:
        changed = False
        if self.read_file(path) != content:
            self.run(["mkdir", "-p", str(path.parent)])
            with self.connect().open_sftp() as sftp:
                with sftp.open(str(path), "w") as handle:
                    handle.write(content.encode("utf-8"))
            changed = True
        if mode is not None:
            with self.connect().open_sftp() as sftp:
                current = stat.S_IMODE(sftp.stat(str(path)).st_mode or 0)
                if current != mode:
                    sftp.chmod(str(path), mode)
                    changed = True
        return changed

    def remove_path(self, path: Path) -> bool:
        probe = self.run(["test", "-e", str(path)], check=False)
        if not probe.ok:
            return False
        self.run(["rm", "-rf", "--", str(path)])
        return True

    @classmethod
    def _load_key(cls, key_data: str) -> paramiko.PKey:
        for key_type in cls.KEY_TYPES:
            try:
                return key_type.from_private_key(io.StringIO(key_data))
            except paramiko.SSHException:
                continue
        raise ConnectionFailed("unsupported private key format")
