from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional
import hashlib

import jinja2

from .base import Action, parse_mode
from ..executors import Executor
from ..secrets import SecretResolver
from ..types import ActionKind, ActionResult, Host


class ConfigureAction(Action):
    """Render a configuration file onto the host."""

    kind = ActionKind.CONFIGURE
    secret_resolver = SecretResolver()

    def __init__(self, params: Mapping[str, Any]):
        super().__init__(params)
        raw_path = params.get("path")
        if not raw_path:
            raise ValueError("configure requires a path")
        self.path = Path(str(raw_path))
        self.content: Optional[str] = None if params.get("content") is None else str(params["content"])
        self.template: Optional[str] = None if params.get("template") is None else str(params["template"])
        if (self.content is None) == (self.template is None):
            raise ValueError("configure requires exactly one of content or template")
        self.variables = params.get("variables", {})
        if not isinstance(self.variables, dict):
            raise ValueError("configure variables must be a mapping")
        self.mode = parse_mode(params.get("mode"))
        spec_dir = params.get("_spec_dir")
        self.spec_dir = Path(str(spec_dir)) if spec_dir else None
        self._rendered: dict[str, str] = {}

    def describe(self) -> str:
        return f"configure {self.path}"

    def render(self, host: Host) -> str:
        if host.name in self._rendered:
            return self._rendered[host.name]
        if self.content is not None:
            text = self.content
        else:
            context: dict[str, Any] = dict(host.variables)
            context.update(self.variables)
            context = self.secret_resolver.resolve(context)
            context.setdefault("host", host.name)
            env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False, keep_trailing_newline=True)
            try:
                text = env.from_string(self._template_text()).render(**context)
            except jinja2.TemplateError as exc:
                raise ValueError(f"template for {self.path} failed to render: {exc}") from exc
        self._rendered[host.name] = text
        return text

    def implied_state(self, host: Host) -> dict[str, str]:
        digest = hashlib.sha256(self.render(host).encode("utf-8")).hexdigest()
        state = {f"file:{self.path}": digest}
        if self.mode is not None:
            state[f"file-mode:{self.path}"] = format(self.mode, "o")
        return state

    def apply(self, host: Host, executor: Executor) -> ActionResult:
        changed = executor.write_file(self.path, content=self.render(host), mode=self.mode)
        return self._result(host, changed, "updated" if changed else "noop")

    def _template_text(self) -> str:
        assert self.template is not None
        candidate = Path(self.template)
        if self.spec_dir is not None and not candidate.is_absolute():
            candidate = self.spec_dir / candidate
        if "\n" not in self.template and candidate.is_file():
            return candidate.read_text()
        return self.template
