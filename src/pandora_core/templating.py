"""
Named-slot prompt templates.

Templates are Jinja2 sources compiled in a sandboxed environment with
``StrictUndefined``. The set of slots a template reads is known statically
(``PromptTemplate.variables``), so a missing slot is reported before
rendering instead of producing a malformed prompt. Every rendered value
goes through ``to_prompt``, which keeps large step outputs bounded.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from blake3 import blake3
from jinja2 import StrictUndefined, TemplateError, TemplateSyntaxError, meta
from jinja2.sandbox import SandboxedEnvironment

from .errors import ConfigurationError, ErrorCode, TemplateRenderError

DEFAULT_MAX_LIST_ITEMS = 20
DEFAULT_MAX_JSON_CHARS = 8000

# Fields kept when a list item is summarized for a prompt.
SUMMARY_FIELDS = (
    "id",
    "name",
    "deal_id",
    "deal_name",
    "amount",
    "stage",
    "stage_normalized",
    "close_date",
    "owner",
    "deal_risk",
    "health_score",
    "days_in_stage",
    "last_activity_date",
    "total",
    "count",
    "type",
    "risk_level",
    "severity",
    "recommended_action",
)


@dataclass(frozen=True)
class PromptRenderResult:
    template_name: str
    template_hash: str
    text: str


def summarize_item(item: Any) -> Any:
    """Reduce a record to the fields that matter in a prompt."""
    if not isinstance(item, dict):
        return item
    summary = {key: item[key] for key in SUMMARY_FIELDS if key in item}
    if not summary:
        for key, value in list(item.items())[:8]:
            summary[key] = "[object]" if isinstance(value, (dict, list)) else value
    return summary


def to_prompt(
    value: Any,
    max_list_items: int = DEFAULT_MAX_LIST_ITEMS,
    max_json_chars: int = DEFAULT_MAX_JSON_CHARS,
) -> str:
    """
    Render a value for inclusion in a prompt.

    Lists longer than ``max_list_items`` keep their first items (summarized)
    and note how many were dropped. Objects serialized beyond
    ``max_json_chars`` are truncated.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, int, float)):
        return json.dumps(value)
    if isinstance(value, (list, tuple)):
        items = list(value)
        rendered = json.dumps([summarize_item(i) for i in items[:max_list_items]], indent=2, default=str)
        if len(items) > max_list_items:
            rendered += f"\n... and {len(items) - max_list_items} more items ({len(items)} total)"
        return rendered
    if isinstance(value, dict):
        rendered = json.dumps(value, indent=2, default=str)
        if len(rendered) > max_json_chars:
            rendered = rendered[:max_json_chars] + "\n... [truncated]"
        return rendered
    return str(value)


def build_environment(
    max_list_items: int = DEFAULT_MAX_LIST_ITEMS,
    max_json_chars: int = DEFAULT_MAX_JSON_CHARS,
) -> SandboxedEnvironment:
    """Sandboxed environment whose output passes through ``to_prompt``."""

    def _finalize(value: Any) -> Any:
        return to_prompt(value, max_list_items, max_json_chars)

    env = SandboxedEnvironment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        finalize=_finalize,
    )
    env.filters["to_prompt"] = _finalize
    env.filters["tojson"] = lambda v: json.dumps(v, default=str)
    return env


class PromptTemplate:
    """
    A compiled prompt template with statically known slots.

    Example:
        ```python
        tpl = PromptTemplate("Deals at risk:\\n{{ at_risk }}\\n{% if quota %}Quota: {{ quota }}{% endif %}")
        tpl.variables  # frozenset({"at_risk", "quota"})
        tpl.render({"at_risk": deals, "quota": 1_000_000}).text
        ```
    """

    def __init__(
        self,
        source: str,
        *,
        name: str = "<inline>",
        environment: SandboxedEnvironment | None = None,
    ) -> None:
        self.name = name
        self.source = source
        self._env = environment or build_environment()
        try:
            ast = self._env.parse(source)
        except TemplateSyntaxError as exc:
            raise ConfigurationError(
                f"Template '{name}' has a syntax error on line {exc.lineno}: {exc.message}",
                code=ErrorCode.INVALID_CONFIG,
                cause=exc,
            ) from exc
        self.variables: frozenset[str] = frozenset(meta.find_undeclared_variables(ast))
        self.template_hash = blake3(source.encode("utf-8")).hexdigest()
        self._template = self._env.from_string(source)

    def missing(self, context: dict[str, Any]) -> list[str]:
        """Slots the template reads that ``context`` does not provide."""
        return sorted(v for v in self.variables if v not in context)

    def render(self, context: dict[str, Any]) -> PromptRenderResult:
        """
        Render against ``context``.

        Raises:
            TemplateRenderError: A slot is missing or rendering failed
        """
        missing = self.missing(context)
        if missing:
            raise TemplateRenderError(f"Template '{self.name}' is missing slots: {', '.join(missing)}")
        try:
            text = self._template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Template '{self.name}' failed to render: {exc}", cause=exc) from exc
        return PromptRenderResult(template_name=self.name, template_hash=self.template_hash, text=text)


class TemplateRenderer:
    """Compiles template sources once and renders them by source."""

    def __init__(
        self,
        max_list_items: int = DEFAULT_MAX_LIST_ITEMS,
        max_json_chars: int = DEFAULT_MAX_JSON_CHARS,
    ) -> None:
        self._env = build_environment(max_list_items, max_json_chars)
        self._compiled: dict[str, PromptTemplate] = {}

    def compile(self, source: str, *, name: str = "<inline>") -> PromptTemplate:
        template = self._compiled.get(source)
        if template is None:
            template = PromptTemplate(source, name=name, environment=self._env)
            self._compiled[source] = template
        return template

    def render(self, source: str, context: dict[str, Any], *, name: str = "<inline>") -> PromptRenderResult:
        return self.compile(source, name=name).render(context)


def estimate_tokens(text: str) -> int:
    """Rough token estimate at four characters per token."""
    return -(-len(text) // 4)


__all__ = [
    "PromptRenderResult",
    "PromptTemplate",
    "TemplateRenderer",
    "build_environment",
    "estimate_tokens",
    "summarize_item",
    "to_prompt",
]
