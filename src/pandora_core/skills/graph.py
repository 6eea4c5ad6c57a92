"""
Step dependency graph.

Built once per skill at registration. Malformed graphs are rejected here
so the scheduler never sees a cycle or a dangling dependency.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..errors import ConfigurationError, ErrorCode, ErrorContext
from .types import SkillDefinition, StepDefinition


@dataclass
class StepGraph:
    """A validated DAG over a skill's steps.

    Example:
        ```python
        graph = StepGraph.build(skill)
        graph.levels()          # [["A", "B"], ["C"], ["D"]]
        graph.ancestors("D")    # {"A", "B", "C"}
        ```
    """

    skill_id: str
    order: list[str] = field(default_factory=list)
    dependencies: dict[str, tuple[str, ...]] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, skill: SkillDefinition) -> StepGraph:
        """
        Validate ``skill.steps`` and build the graph.

        Raises:
            ConfigurationError: Empty skill, duplicate id or output key,
                unknown/self/forward dependency, or a cycle
        """
        errors = validate_steps(skill.steps)
        if errors:
            raise ConfigurationError(
                f"Skill '{skill.id}' has an invalid step graph: {'; '.join(errors)}",
                code=ErrorCode.INVALID_GRAPH,
                context=ErrorContext(skill_id=skill.id),
            )

        graph = cls(skill_id=skill.id)
        for step in skill.steps:
            graph.order.append(step.id)
            graph.dependencies[step.id] = step.depends_on
            graph.dependents.setdefault(step.id, [])
            for dep in step.depends_on:
                graph.dependents.setdefault(dep, []).append(step.id)

        try:
            graph.levels()
        except ValueError as e:
            raise ConfigurationError(
                f"Skill '{skill.id}': {e}", code=ErrorCode.INVALID_GRAPH, context=ErrorContext(skill_id=skill.id)
            ) from e
        return graph

    def levels(self) -> list[list[str]]:
        """Get steps in topological order, grouped by level.

        Steps in one level have every dependency in an earlier level and
        may run concurrently. Within a level, declared order is kept.
        """
        in_degree = {step_id: len(self.dependencies[step_id]) for step_id in self.order}
        position = {step_id: i for i, step_id in enumerate(self.order)}

        levels: list[list[str]] = []
        current_level = [step_id for step_id in self.order if in_degree[step_id] == 0]

        while current_level:
            levels.append(current_level)
            next_level = []
            for step_id in current_level:
                for dependent in self.dependents.get(step_id, []):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_level.append(dependent)
            current_level = sorted(next_level, key=position.__getitem__)

        if sum(len(level) for level in levels) != len(self.order):
            raise ValueError("Step graph contains a cycle")
        return levels

    def ancestors(self, step_id: str) -> set[str]:
        """Every step ``step_id`` transitively depends on."""
        seen: set[str] = set()
        stack = list(self.dependencies.get(step_id, ()))
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(self.dependencies.get(current, ()))
        return seen

    @property
    def terminal(self) -> str | None:
        return self.order[-1] if self.order else None


def validate_steps(steps: tuple[StepDefinition, ...] | list[StepDefinition]) -> list[str]:
    """Structural checks on a step list. Returns a list of problems (empty if valid)."""
    errors: list[str] = []
    if not steps:
        return ["skill declares no steps"]

    seen_ids: set[str] = set()
    seen_keys: dict[str, str] = {}
    all_ids = {s.id for s in steps}

    for step in steps:
        if step.id in seen_ids:
            errors.append(f"duplicate step id '{step.id}'")
        if step.output_key in seen_keys:
            errors.append(
                f"steps '{seen_keys[step.output_key]}' and '{step.id}' both write output key '{step.output_key}'"
            )
        seen_keys.setdefault(step.output_key, step.id)

        for dep in step.depends_on:
            if dep == step.id:
                errors.append(f"step '{step.id}' depends on itself")
            elif dep not in all_ids:
                errors.append(f"step '{step.id}' depends on unknown step '{dep}'")
            elif dep not in seen_ids:
                errors.append(f"step '{step.id}' depends on later step '{dep}'")
        seen_ids.add(step.id)

    return errors


__all__ = ["StepGraph", "validate_steps"]
