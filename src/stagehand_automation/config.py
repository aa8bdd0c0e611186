from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
import tomllib


DEFAULT_STATE_DIR = Path("/var/lib/stagehand")
MATCH_MODES = {"strict", "partial"}


class ConfigError(ValueError):
    """Raised when the config file holds values of the wrong shape."""


@dataclass
class StagehandConfig:
    spec: Optional[Path] = None
    inventory: Optional[Path] = None
    state_dir: Path = DEFAULT_STATE_DIR
    max_workers: Optional[int] = None
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    operation_timeout: Optional[float] = 600.0
    probe_timeout: float = 30.0
    match_mode: str = "strict"
    webhook_url: Optional[str] = None
    webhook_timeout: float = 10.0
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def load_config(path: Path) -> StagehandConfig:
    if not path.exists():
        return StagehandConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    spec = defaults.get("spec")
    inventory = defaults.get("inventory")
    match_mode = str(defaults.get("match_mode", "strict"))
    if match_mode not in MATCH_MODES:
        raise ConfigError(f"{path}: match_mode must be one of {sorted(MATCH_MODES)}")
    max_workers = defaults.get("max_workers")
    operation_timeout = defaults.get("operation_timeout", 600.0)
    return StagehandConfig(
        spec=Path(spec) if spec else None,
        inventory=Path(inventory) if inventory else None,
        state_dir=Path(defaults.get("state_dir", DEFAULT_STATE_DIR)),
        max_workers=_positive_int(path, "max_workers", max_workers) if max_workers is not None else None,
        max_attempts=_positive_int(path, "max_attempts", defaults.get("max_attempts", 3)),
        retry_base_delay=_number(path, "retry_base_delay", defaults.get("retry_base_delay", 1.0)),
        retry_max_delay=_number(path, "retry_max_delay", defaults.get("retry_max_delay", 30.0)),
        operation_timeout=_number(path, "operation_timeout", operation_timeout) if operation_timeout else None,
        probe_timeout=_number(path, "probe_timeout", defaults.get("probe_timeout", 30.0)),
        match_mode=match_mode,
        webhook_url=str(defaults["webhook_url"]) if defaults.get("webhook_url") else None,
        webhook_timeout=_number(path, "webhook_timeout", defaults.get("webhook_timeout", 10.0)),
        aws_region=str(defaults["aws_region"]) if defaults.get("aws_region") else None,
        aws_profile=str(defaults["aws_profile"]) if defaults.get("aws_profile") else None,
    )


def _positive_int(path: Path, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{path}: {key} must be a positive integer")
    return value


def _number(path: Path, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{path}: {key} must be a non-negative number")
    return float(value)
