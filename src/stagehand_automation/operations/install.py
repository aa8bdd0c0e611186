from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional
import logging

from .base import Action, as_list
from ..executors import Executor
from ..types import ActionKind, ActionResult, Host

logger = logging.getLogger(__name__)


class InstallAction(Action):
    """Install or remove packages using the host's package manager."""

    kind = ActionKind.INSTALL
    transient_markers = (
        "could not get lock",
        "unable to acquire the dpkg frontend lock",
        "another app is currently holding the yum lock",
        "unable to lock database",
        "temporary failure resolving",
    )

    def __init__(self, params: Mapping[str, Any]):
        super().__init__(params)
        self.packages = as_list(params.get("packages") or params.get("name"), "packages")
        if not self.packages:
            raise ValueError("install requires at least one package")
        self.state = str(params.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("install state must be 'present' or 'absent'")
        manager = params.get("manager")
        if manager is not None and str(manager) not in PackageManagerFactory.names():
            raise ValueError(f"unknown package manager '{manager}'")
        self.preferred_manager = str(manager) if manager else None

    def describe(self) -> str:
        return f"install {','.join(self.packages)}"

    def implied_state(self, host: Host) -> dict[str, str]:
        value = "installed" if self.state == "present" else "absent"
        return {f"package:{pkg}": value for pkg in self.packages}

    def apply(self, host: Host, executor: Executor) -> ActionResult:
        manager = PackageManagerFactory.create(executor, self.preferred_manager)
        logger.debug("package-manager=%s host=%s packages=%s", manager.name, host.name, self.packages)
        if self.state == "present":
            changed, details = manager.ensure_present(executor, self.packages)
        else:
            changed, details = manager.ensure_absent(executor, self.packages)
        return self._result(host, changed, f"manager={manager.name} {details}")


class PackageManager:
    name = "generic"
    binary = ""

    def ensure_present(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        needed = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        if not needed:
            return False, "already-installed"
        self.install(executor, needed)
        return True, f"installed={','.join(needed)}"

    def ensure_absent(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        removable = [pkg for pkg in packages if self.is_installed(executor, pkg)]
        if not removable:
            return False, "already-removed"
        self.remove(executor, removable)
        return True, f"removed={','.join(removable)}"

    def install(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def remove(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError


class AptPackageManager(PackageManager):
    name = "apt"
    binary = "apt-get"

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "install", "-y", *packages], env={"DEBIAN_FRONTEND": "noninteractive"})

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "remove", "-y", *packages], env={"DEBIAN_FRONTEND": "noninteractive"})

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["dpkg-query", "-W", "-f", "${Status}", package], check=False)
        return result.ok and "install ok installed" in result.stdout


class DnfPackageManager(PackageManager):
    name = "dnf"
    binary = "dnf"

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.binary, "install", "-y", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.binary, "remove", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        return executor.run(["rpm", "-q", package], check=False).ok


class YumPackageManager(DnfPackageManager):
    name = "yum"
    binary = "yum"


class ApkPackageManager(PackageManager):
    name = "apk"
    binary = "apk"

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apk", "add", "--no-cache", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apk", "del", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        return executor.run(["apk", "info", "-e", package], check=False).ok


class PackageManagerFactory:
    _MANAGERS: list[type[PackageManager]] = [
        AptPackageManager,
        DnfPackageManager,
        YumPackageManager,
        ApkPackageManager,
    ]

    @classmethod
    def names(cls) -> set[str]:
        return {manager.name for manager in cls._MANAGERS}

    @classmethod
    def create(cls, executor: Executor, preferred: Optional[str]) -> PackageManager:
        if preferred:
            for manager in cls._MANAGERS:
                if manager.name == preferred:
                    return manager()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for manager in cls._MANAGERS:
            found = executor.run(["sh", "-c", f"command -v {manager.binary}"], check=False)
            if found.ok:
                return manager()
        raise RuntimeError(f"No supported package manager found on {executor.host.name}")
