"""
Skill registry.

Skills are registered once at process start. Registration validates the
step graph, the referenced tools, prompt templates and classify schemas,
so authoring mistakes surface as ``ConfigurationError`` before any run.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..errors import ConfigurationError, ErrorCode, ErrorContext
from ..templating import TemplateRenderer
from ..tools.base import ToolRegistry
from ..validation import validate_json_schema
from .graph import StepGraph
from .types import ClassifyStep, ComputeStep, SkillDefinition, SynthesizeStep

logger = logging.getLogger(__name__)


class SkillRegistry:
    """
    Lookup table from skill id to a validated definition and its graph.

    Example:
        ```python
        skills = SkillRegistry(tools)
        skills.register(pipeline_hygiene)
        definition = skills.get("pipeline-hygiene")
        ```
    """

    def __init__(
        self,
        tools: ToolRegistry | None = None,
        renderer: TemplateRenderer | None = None,
        skills: Iterable[SkillDefinition] = (),
    ) -> None:
        self._tools = tools
        self._renderer = renderer or TemplateRenderer()
        self._skills: dict[str, SkillDefinition] = {}
        self._graphs: dict[str, StepGraph] = {}
        for skill in skills:
            self.register(skill)

    def register(self, skill: SkillDefinition) -> SkillRegistry:
        """
        Validate and register a skill.

        Raises:
            ConfigurationError: Duplicate id or any authoring error
        """
        if skill.id in self._skills:
            raise ConfigurationError(f"Skill '{skill.id}' is already registered", context=ErrorContext(skill_id=skill.id))

        graph = StepGraph.build(skill)
        errors = self._check_payloads(skill, graph)
        if errors:
            raise ConfigurationError(
                f"Skill '{skill.id}' is misconfigured: {'; '.join(errors)}",
                context=ErrorContext(skill_id=skill.id),
            )

        self._skills[skill.id] = skill
        self._graphs[skill.id] = graph
        logger.info(f"Registered skill: {skill.id} v{skill.version} ({len(skill.steps)} steps)")
        return self

    def _check_payloads(self, skill: SkillDefinition, graph: StepGraph) -> list[str]:
        errors: list[str] = []
        output_keys = {s.output_key: s.id for s in skill.steps}

        if skill.critical_steps is not None:
            for step_id in skill.critical_steps:
                if step_id not in graph.dependencies:
                    errors.append(f"critical step '{step_id}' is not a step")

        for tool_id in skill.required_tools:
            if self._tools is not None and tool_id not in self._tools:
                errors.append(f"required tool '{tool_id}' is not registered")

        for step in skill.steps:
            payload = step.payload
            if isinstance(payload, ComputeStep):
                if self._tools is not None and payload.tool_id not in self._tools:
                    errors.append(f"step '{step.id}' uses unknown tool '{payload.tool_id}'")
                continue

            if isinstance(payload, ClassifyStep):
                result = validate_json_schema(payload.schema)
                if not result.valid:
                    errors.append(f"step '{step.id}': {'; '.join(result.errors)}")
            elif isinstance(payload, SynthesizeStep):
                if self._tools is not None:
                    for name in payload.tools:
                        if name not in self._tools:
                            errors.append(f"step '{step.id}' offers unknown tool '{name}'")
                if payload.max_tool_calls is not None and payload.max_tool_calls < 0:
                    errors.append(f"step '{step.id}' has a negative tool-call budget")

            # Prompts may only read outputs of steps they depend on.
            template = self._renderer.compile(payload.prompt, name=f"{skill.id}/{step.id}")
            reachable = graph.ancestors(step.id)
            for variable in sorted(template.variables):
                producer = output_keys.get(variable)
                if producer is not None and producer not in reachable:
                    errors.append(f"step '{step.id}' reads '{variable}' but does not depend on step '{producer}'")

        return errors

    def get(self, skill_id: str) -> SkillDefinition:
        """
        Raises:
            ConfigurationError: If the skill is unknown
        """
        skill = self._skills.get(skill_id)
        if skill is None:
            raise ConfigurationError(
                f"Unknown skill: {skill_id}", code=ErrorCode.UNKNOWN_SKILL, context=ErrorContext(skill_id=skill_id)
            )
        return skill

    def graph(self, skill_id: str) -> StepGraph:
        self.get(skill_id)
        return self._graphs[skill_id]

    def graph_for(self, skill: SkillDefinition) -> StepGraph:
        """Graph for a definition, building one for unregistered definitions."""
        registered = self._skills.get(skill.id)
        if registered is skill:
            return self._graphs[skill.id]
        graph = StepGraph.build(skill)
        errors = self._check_payloads(skill, graph)
        if errors:
            raise ConfigurationError(
                f"Skill '{skill.id}' is misconfigured: {'; '.join(errors)}", context=ErrorContext(skill_id=skill.id)
            )
        return graph

    @property
    def renderer(self) -> TemplateRenderer:
        return self._renderer

    def __contains__(self, skill_id: str) -> bool:
        return skill_id in self._skills

    def __len__(self) -> int:
        return len(self._skills)

    def __iter__(self):
        return iter(self._skills.values())

    @property
    def ids(self) -> list[str]:
        return list(self._skills.keys())


__all__ = ["SkillRegistry"]
