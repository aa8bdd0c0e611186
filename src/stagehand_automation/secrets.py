from __future__ import annotations

import base64
import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError


class CredentialError(RuntimeError):
    """Raised when a credential reference cannot be resolved."""


@dataclass(frozen=True)
class Credentials:
    """Opaque handle passed to a transport. Never serialized."""

    reference: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None
    key_data: Optional[str] = field(default=None, repr=False)


class SecretResolver:
    """Resolves secret references in variable mappings."""

    def __init__(self):
        self._cache: dict[tuple[str, Optional[str]], Any] = {}
        self._lock = threading.Lock()

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                key = value.get("key")
                return self.aws_secret(str(value["aws_secret"]), None if key is None else str(key))
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def aws_secret(self, name: str, key: Optional[str] = None) -> Any:
        cache_key = (name, key)
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=name)
        except (BotoCoreError, ClientError) as exc:
            raise CredentialError(f"Secret {name} could not be fetched: {exc}") from exc
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise CredentialError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None and secret_str.lstrip().startswith("{"):
            try:
                value = json.loads(secret_str)[key]
            except (json.JSONDecodeError, KeyError, TypeError) as exc:
                raise CredentialError(f"Secret {name} has no usable key '{key}'") from exc

        with self._lock:
            self._cache[cache_key] = value
        return value


class CredentialResolver:
    """Turns ``env:``, ``file:`` and ``aws_secret:`` references into handles."""

    def __init__(self, secrets: Optional[SecretResolver] = None):
        self.secrets = secrets or SecretResolver()

    def resolve(self, reference: Optional[str]) -> Credentials:
        if not reference:
            return Credentials()
        scheme, sep, target = reference.partition(":")
        if not sep or not target:
            raise CredentialError(f"Malformed credential reference '{reference}'")
        if scheme == "env":
            value = os.environ.get(target)
            if value is None:
                raise CredentialError(f"Environment variable {target} is not set")
            return self._from_secret(reference, value)
        if scheme == "file":
            path = Path(target).expanduser()
            if not path.exists():
                raise CredentialError(f"Key file {path} does not exist")
            return Credentials(reference=reference, key_path=str(path))
        if scheme == "aws_secret":
            name, _, key = target.partition("#")
            return self._from_secret(reference, self.secrets.aws_secret(name, key or None))
        raise CredentialError(f"Unknown credential scheme '{scheme}'")

    @staticmethod
    def _from_secret(reference: str, value: Any) -> Credentials:
        if isinstance(value, dict):
            return Credentials(
                reference=reference,
                password=value.get("password"),
                key_data=value.get("private_key"),
            )
        text = str(value)
        if text.startswith("{"):
            try:
                return CredentialResolver._from_secret(reference, json.loads(text))
            except json.JSONDecodeError:
                pass
        if "PRIVATE KEY-----" in text:
            return Credentials(reference=reference, key_data=text)
        return Credentials(reference=reference, password=text)
