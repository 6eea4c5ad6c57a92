"""
Evidence assembly.

The runtime only guarantees that step outputs reach the builder registered
for a skill. What a builder extracts is up to the skill's author.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Union

from .types import SkillDefinition, SkillEvidence

EvidenceBuilder = Callable[
    [SkillDefinition, dict[str, Any], dict[str, Any]],
    Union[SkillEvidence, Awaitable[SkillEvidence]],
]


class EvidenceBundle:
    """Fluent helper for builders assembling a ``SkillEvidence``."""

    def __init__(self) -> None:
        self._evidence = SkillEvidence()

    def add_claim(
        self,
        claim_id: str,
        claim_text: str,
        *,
        severity: str = "info",
        metric_name: str | None = None,
        metric_values: list[Any] | None = None,
        entity_type: str | None = None,
        entity_ids: list[str] | None = None,
    ) -> EvidenceBundle:
        claim: dict[str, Any] = {"claim_id": claim_id, "claim_text": claim_text, "severity": severity}
        if metric_name is not None:
            claim["metric_name"] = metric_name
        if metric_values is not None:
            claim["metric_values"] = list(metric_values)
        if entity_type is not None:
            claim["entity_type"] = entity_type
        if entity_ids is not None:
            claim["entity_ids"] = list(entity_ids)
        self._evidence.claims.append(claim)
        return self

    def add_claims(self, claims: list[dict[str, Any]]) -> EvidenceBundle:
        self._evidence.claims.extend(dict(c) for c in claims)
        return self

    def add_records(self, records: list[dict[str, Any]]) -> EvidenceBundle:
        self._evidence.evaluated_records.extend(dict(r) for r in records)
        return self

    def add_data_source(self, source: str, *, connected: bool = True, records_considered: int = 0) -> EvidenceBundle:
        self._evidence.data_sources.append(
            {"source": source, "connected": connected, "records_considered": records_considered}
        )
        return self

    def set_parameter(self, name: str, value: Any) -> EvidenceBundle:
        self._evidence.parameters[name] = value
        return self

    def build(self) -> SkillEvidence:
        return self._evidence


def collect_evidence(
    skill: SkillDefinition,
    step_outputs: dict[str, Any],
    context: dict[str, Any],
) -> SkillEvidence:
    """
    Default builder.

    Gathers ``claims``, ``evaluated_records`` and ``data_sources`` lists from
    any dict step output that carries them, in declared step order. Run
    params become the evidence parameters.
    """
    bundle = EvidenceBundle()
    for step in skill.steps:
        output = step_outputs.get(step.output_key)
        if not isinstance(output, dict):
            continue
        bundle.add_claims([c for c in output.get("claims") or [] if isinstance(c, dict)])
        bundle.add_records([r for r in output.get("evaluated_records") or [] if isinstance(r, dict)])
        for source in output.get("data_sources") or []:
            if isinstance(source, dict):
                bundle.add_data_source(
                    source.get("source", "unknown"),
                    connected=source.get("connected", True),
                    records_considered=source.get("records_considered", 0),
                )

    for name, value in (context.get("params") or {}).items():
        bundle.set_parameter(name, value)
    return bundle.build()


class EvidenceRegistry:
    """Builders keyed by skill id, falling back to ``collect_evidence``."""

    def __init__(
        self,
        builders: dict[str, EvidenceBuilder] | None = None,
        default: EvidenceBuilder = collect_evidence,
    ) -> None:
        self._builders: dict[str, EvidenceBuilder] = dict(builders or {})
        self._default = default

    def register(self, skill_id: str, builder: EvidenceBuilder) -> EvidenceRegistry:
        self._builders[skill_id] = builder
        return self

    def get(self, skill_id: str) -> EvidenceBuilder:
        return self._builders.get(skill_id, self._default)


__all__ = ["EvidenceBuilder", "EvidenceBundle", "EvidenceRegistry", "collect_evidence"]
