"""
Read-side helpers over stored evidence bundles.

Every helper returns new objects; stored evidence is never mutated.
"""

from __future__ import annotations

import copy
from typing import Any

RECORD_NAME_FIELDS = ("entity_name", "entity_id", "deal_name", "account_name")


def _contains(value: Any, needle: str) -> bool:
    return isinstance(value, str) and needle in value.lower()


def claim_matches_entity(claim: dict[str, Any], entity: str) -> bool:
    needle = entity.lower()
    if _contains(claim.get("entity_id"), needle) or _contains(claim.get("claim_text"), needle):
        return True
    if _contains(claim.get("message"), needle):
        return True
    return any(_contains(entity_id, needle) for entity_id in claim.get("entity_ids") or [])


def record_matches_entity(record: dict[str, Any], entity: str) -> bool:
    needle = entity.lower()
    return any(_contains(record.get(key), needle) for key in RECORD_NAME_FIELDS)


def filter_evidence_by_entity(evidence: dict[str, Any] | None, entity: str) -> dict[str, Any]:
    """Claims and records that mention ``entity`` (case-insensitive substring)."""
    evidence = evidence or {}
    return {
        "claims": [copy.deepcopy(c) for c in evidence.get("claims") or [] if claim_matches_entity(c, entity)],
        "evaluated_records": [
            copy.deepcopy(r) for r in evidence.get("evaluated_records") or [] if record_matches_entity(r, entity)
        ],
        "data_sources": copy.deepcopy(evidence.get("data_sources") or []),
        "parameters": copy.deepcopy(evidence.get("parameters") or {}),
    }


def extract_metric(evidence: dict[str, Any] | None, metric: str) -> Any:
    """
    Value of ``metric``: the evidence parameter of that name if present,
    otherwise the claims that reference it alongside all parameters.
    """
    evidence = evidence or {}
    parameters = evidence.get("parameters") or {}
    if metric in parameters:
        return copy.deepcopy(parameters[metric])

    phrase = metric.replace("_", " ").lower()
    related = [
        copy.deepcopy(claim)
        for claim in evidence.get("claims") or []
        if claim.get("metric_name") == metric
        or _contains(claim.get("category"), metric.lower())
        or _contains(claim.get("claim_text"), phrase)
        or _contains(claim.get("message"), phrase)
    ]
    return {"claims": related, "parameters": copy.deepcopy(parameters)}


__all__ = ["filter_evidence_by_entity", "extract_metric", "claim_matches_entity", "record_matches_entity"]
