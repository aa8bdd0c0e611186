"""Resource-key probes.

A resource key has the form ``<kind>:<argument>``, for example
``package:nginx`` or ``file:/etc/nginx/nginx.conf``. Each kind maps to a
read-only check that yields a string value, or ``None`` when the value
cannot be determined.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional
import logging
import shlex

from .executors import Executor

logger = logging.getLogger(__name__)

ProbeFn = Callable[[Executor, str, Optional[float]], Optional[str]]


def split_key(key: str) -> tuple[str, str]:
    kind, sep, argument = key.partition(":")
    if not sep or not argument:
        raise ValueError(f"resource key '{key}' must look like <kind>:<argument>")
    return kind, argument


def _shell(executor: Executor, script: str, timeout: Optional[float]):
    return executor.run(["sh", "-c", script], check=False, timeout=timeout)


def probe_package(executor: Executor, name: str, timeout: Optional[float]) -> Optional[str]:
    version = probe_package_version(executor, name, timeout)
    return "installed" if version != "absent" else "absent"


def probe_package_version(executor: Executor, name: str, timeout: Optional[float]) -> Optional[str]:
    quoted = shlex.quote(name)
    script = (
        f"if command -v dpkg-query >/dev/null 2>&1; then "
        f"dpkg-query -W -f '${{Status}} ${{Version}}' {quoted} 2>/dev/null | "
        f"sed -n 's/^install ok installed //p'; "
        f"elif command -v rpm >/dev/null 2>&1; then rpm -q --qf '%{{VERSION}}-%{{RELEASE}}' {quoted} 2>/dev/null; "
        f"elif command -v apk >/dev/null 2>&1; then apk info -e {quoted} >/dev/null && apk version -v {quoted} 2>/dev/null | "
        f"awk 'NR==2 {{print $1}}'; fi"
    )
    result = _shell(executor, script, timeout)
    version = result.stdout.strip()
    if not version or "not installed" in version:
        return "absent"
    return version


def probe_service(executor: Executor, name: str, timeout: Optional[float]) -> Optional[str]:
    result = executor.run(["systemctl", "is-active", name], check=False, timeout=timeout)
    return result.stdout.strip() or None


def probe_service_enabled(executor: Executor, name: str, timeout: Optional[float]) -> Optional[str]:
    result = executor.run(["systemctl", "is-enabled", name], check=False, timeout=timeout)
    return result.stdout.strip() or None


def probe_file(executor: Executor, path: str, timeout: Optional[float]) -> Optional[str]:
    quoted = shlex.quote(path)
    result = _shell(executor, f"if [ -f {quoted} ]; then sha256sum {quoted} | cut -d' ' -f1; else echo absent; fi", timeout)
    return result.stdout.strip() or None


def probe_file_mode(executor: Executor, path: str, timeout: Optional[float]) -> Optional[str]:
    quoted = shlex.quote(path)
    result = _shell(executor, f"if [ -e {quoted} ]; then stat -c %a {quoted}; else echo absent; fi", timeout)
    return result.stdout.strip() or None


def probe_path(executor: Executor, path: str, timeout: Optional[float]) -> Optional[str]:
    quoted = shlex.quote(path)
    script = f"if [ -d {quoted} ]; then echo directory; elif [ -e {quoted} ]; then echo file; else echo absent; fi"
    return _shell(executor, script, timeout).stdout.strip() or None


def probe_command(executor: Executor, script: str, timeout: Optional[float]) -> Optional[str]:
    result = _shell(executor, script, timeout)
    if not result.ok:
        return None
    return result.stdout.strip()


PROBE_REGISTRY: dict[str, ProbeFn] = {
    "package": probe_package,
    "package-version": probe_package_version,
    "service": probe_service,
    "service-enabled": probe_service_enabled,
    "file": probe_file,
    "file-mode": probe_file_mode,
    "path": probe_path,
    "command": probe_command,
}


def collect(executor: Executor, keys: Iterable[str], timeout: Optional[float] = None) -> dict[str, str]:
    observed: dict[str, str] = {}
    for key in keys:
        kind, argument = split_key(key)
        probe = PROBE_REGISTRY.get(kind)
        if probe is None:
            logger.warning("no probe registered for resource kind '%s' (key=%s)", kind, key)
            continue
        value = probe(executor, argument, timeout)
        if value is not None:
            observed[key] = value
    return observed
