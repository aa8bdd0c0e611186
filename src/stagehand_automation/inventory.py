from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
import hashlib
import json
import tomllib

import yaml

from .operations import ACTION_REGISTRY
from .probes import split_key
from .secrets import CredentialError
from .types import ActionKind, Host, Inventory, Operation

RESERVED_KEYS = {"id", "kind", "hosts", "depends_on", "idempotency_key", "assert", "timeout", "max_attempts"}


class InvalidSpec(ValueError):
    """Raised when a deployment spec or inventory fails validation."""


@dataclass(frozen=True)
class Deployment:
    name: str
    path: Path
    inventory: Inventory
    operations: tuple[Operation, ...]


class InventoryLoader:
    """Loads inventories and deployment specs from TOML, JSON or YAML."""

    def load_inventory(self, path: Path) -> Inventory:
        path = Path(path)
        data = self._read_document(path)
        return self._parse_inventory(data.get("hosts", {}), path)

    def load_deployment(self, path: Path, inventory: Optional[Inventory] = None) -> Deployment:
        path = Path(path)
        data = self._read_document(path)
        if inventory is None:
            if data.get("inventory"):
                inventory = self.load_inventory(path.parent / str(data["inventory"]))
            else:
                inventory = self._parse_inventory(data.get("hosts", {}), path)
        name = str(data.get("name") or path.stem)
        roles = data.get("roles")
        if not isinstance(roles, list) or not roles:
            raise InvalidSpec(f"{path}: spec requires a non-empty 'roles' list")
        operations = SpecCompiler(path, inventory).compile(roles)
        return Deployment(name=name, path=path, inventory=inventory, operations=tuple(operations))

    @staticmethod
    def _read_document(path: Path) -> dict[str, Any]:
        try:
            text = path.read_text()
        except OSError as exc:
            raise InvalidSpec(f"{path}: {exc.strerror or exc}") from None
        suffix = path.suffix.lower()
        try:
            if suffix == ".toml":
                data = tomllib.loads(text)
            elif suffix == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except tomllib.TOMLDecodeError as exc:
            raise InvalidSpec(f"{path}: {exc}") from None
        except json.JSONDecodeError as exc:
            raise InvalidSpec(f"{path}:{exc.lineno}:{exc.colno} {exc.msg}") from None
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            where = f":{mark.line + 1}:{mark.column + 1}" if mark is not None else ""
            raise InvalidSpec(f"{path}{where} {exc}") from None
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise InvalidSpec(f"{path}: top level must be a mapping")
        return data

    @staticmethod
    def _parse_inventory(host_data: Any, path: Path) -> Inventory:
        if not host_data:
            host_data = {"local": {"connection": "local"}}
        if not isinstance(host_data, dict):
            raise InvalidSpec(f"{path}: hosts must be a mapping of name -> settings")
        hosts: list[Host] = []
        for name, payload in host_data.items():
            payload = payload or {}
            if not isinstance(payload, dict):
                raise InvalidSpec(f"{path}: host '{name}' must be a mapping")
            connection = str(payload.get("connection", "ssh" if payload.get("address") else "local"))
            if connection not in {"local", "ssh"}:
                raise InvalidSpec(f"{path}: host '{name}' has unknown connection '{connection}'")
            if connection == "ssh" and not payload.get("address"):
                raise InvalidSpec(f"{path}: host '{name}' requires an address for ssh")
            groups = payload.get("groups", [])
            if isinstance(groups, str):
                groups = [groups]
            variables = payload.get("variables", {})
            if not isinstance(variables, dict):
                raise InvalidSpec(f"{path}: host '{name}' variables must be a mapping")
            try:
                port = int(payload.get("port", 22))
            except (TypeError, ValueError):
                raise InvalidSpec(f"{path}: host '{name}' port must be an integer") from None
            hosts.append(
                Host(
                    name=str(name),
                    connection=connection,
                    address=str(payload["address"]) if payload.get("address") else None,
                    credential=str(payload["credential"]) if payload.get("credential") else None,
                    user=str(payload["user"]) if payload.get("user") else None,
                    port=port,
                    groups=tuple(str(g) for g in groups),
                    variables=dict(variables),
                )
            )
        return Inventory(hosts)


@dataclass
class _Declared:
    op_id: str
    role: str
    kind: ActionKind
    hosts: list[str]
    raw: dict[str, Any]
    depends_on: Optional[list[str]]


class SpecCompiler:
    """Expands role/operation declarations into per-host graph operations."""

    def __init__(self, path: Path, inventory: Inventory):
        self.path = path
        self.inventory = inventory

    def compile(self, roles: list[Any]) -> list[Operation]:
        declared = self._declare(roles)
        instances: dict[str, list[str]] = {}
        for decl in declared:
            instances[decl.op_id] = decl.hosts

        operations: list[Operation] = []
        previous: dict[tuple[str, str], str] = {}
        for decl in declared:
            for host_name in decl.hosts:
                qualified = f"{decl.op_id}@{host_name}"
                if decl.depends_on is None:
                    prior = previous.get((decl.role, host_name))
                    deps = {prior} if prior else set()
                else:
                    deps = set()
                    for ref in decl.depends_on:
                        deps.update(self._resolve_ref(ref, host_name, instances))
                operations.append(self._build(decl, host_name, qualified, deps, len(operations)))
                previous[(decl.role, host_name)] = qualified
        return operations

    def _declare(self, roles: list[Any]) -> list[_Declared]:
        declared: list[_Declared] = []
        seen: set[str] = set()
        for r_index, role in enumerate(roles, start=1):
            if not isinstance(role, dict):
                raise InvalidSpec(f"{self.path}: role {r_index} must be a mapping")
            role_name = str(role.get("name") or f"role-{r_index}")
            role_hosts = role.get("hosts")
            ops = role.get("operations")
            if not isinstance(ops, list):
                raise InvalidSpec(f"{self.path}: role '{role_name}' requires an 'operations' list")
            for o_index, raw in enumerate(ops, start=1):
                where = f"{self.path}: role '{role_name}' operation {o_index}"
                if not isinstance(raw, dict):
                    raise InvalidSpec(f"{where} must be a mapping")
                for required in ("id", "kind"):
                    if raw.get(required) is None or not str(raw[required]).strip():
                        raise InvalidSpec(f"{where} is missing required field '{required}'")
                op_id = str(raw["id"])
                if "@" in op_id:
                    raise InvalidSpec(f"{where}: id '{op_id}' must not contain '@'")
                if op_id in seen:
                    raise InvalidSpec(f"{where}: duplicate operation id '{op_id}'")
                seen.add(op_id)
                try:
                    kind = ActionKind(str(raw["kind"]).lower())
                except ValueError:
                    allowed = ", ".join(k.value for k in ActionKind)
                    raise InvalidSpec(f"{where}: unknown kind '{raw['kind']}' (expected one of {allowed})") from None
                selector = raw.get("hosts", role_hosts)
                try:
                    hosts = self.inventory.select(selector)
                except KeyError as exc:
                    raise InvalidSpec(f"{where}: unknown host or group {exc}") from None
                if not hosts:
                    raise InvalidSpec(f"{where}: host selector matched no hosts")
                depends = raw.get("depends_on") if "depends_on" in raw else None
                if isinstance(depends, str):
                    depends = [depends]
                if depends is not None and not isinstance(depends, list):
                    raise InvalidSpec(f"{where}: depends_on must be a string or list")
                declared.append(
                    _Declared(
                        op_id=op_id,
                        role=role_name,
                        kind=kind,
                        hosts=hosts,
                        raw=raw,
                        depends_on=[str(d) for d in depends] if depends is not None else None,
                    )
                )
        return declared

    @staticmethod
    def _resolve_ref(ref: str, host_name: str, instances: dict[str, list[str]]) -> set[str]:
        if "@" in ref or ref not in instances:
            # left as-is; the graph builder reports unknown references
            return {ref}
        hosts = instances[ref]
        if host_name in hosts:
            return {f"{ref}@{host_name}"}
        return {f"{ref}@{h}" for h in hosts}

    def _build(self, decl: _Declared, host_name: str, qualified: str, deps: set[str], index: int) -> Operation:
        where = f"{self.path}: operation '{decl.op_id}'"
        params = {k: v for k, v in decl.raw.items() if k not in RESERVED_KEYS}
        params["_spec_dir"] = str(self.path.parent)
        host = self.inventory[host_name]
        try:
            action = ACTION_REGISTRY[decl.kind](params)
            desired = action.implied_state(host)
        except (ValueError, TypeError, CredentialError) as exc:
            raise InvalidSpec(f"{where}: {exc}") from None

        declared_state = decl.raw.get("assert", {}) or {}
        if not isinstance(declared_state, dict):
            raise InvalidSpec(f"{where}: assert must be a mapping of resource key -> value")
        desired.update({str(k): _as_text(v) for k, v in declared_state.items()})
        for key in desired:
            try:
                split_key(key)
            except ValueError as exc:
                raise InvalidSpec(f"{where}: {exc}") from None

        return Operation(
            id=qualified,
            host=host_name,
            kind=decl.kind,
            idempotency_key=str(decl.raw.get("idempotency_key") or self._default_key(decl, host_name, params)),
            depends_on=frozenset(deps),
            desired_state=desired,
            action=action,
            role=decl.role,
            index=index,
            timeout=self._optional_number(decl.raw.get("timeout"), where, "timeout"),
            max_attempts=self._optional_attempts(decl.raw.get("max_attempts"), where),
        )

    @staticmethod
    def _default_key(decl: _Declared, host_name: str, params: dict[str, Any]) -> str:
        visible = {k: v for k, v in params.items() if not k.startswith("_")}
        payload = json.dumps({"kind": decl.kind.value, "params": visible}, sort_keys=True, default=str)
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:12]
        return f"{decl.op_id}@{host_name}:{digest}"

    @staticmethod
    def _optional_number(value: Any, where: str, field: str) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise InvalidSpec(f"{where}: {field} must be a positive number")
        return float(value)

    @staticmethod
    def _optional_attempts(value: Any, where: str) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidSpec(f"{where}: max_attempts must be a positive integer")
        return value


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
