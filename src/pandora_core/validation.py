"""
Validation utilities for pandora-core.

Uses jsonschema for classify-step output validation and for checking
declared output schemas when skills are registered.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```\s*$", re.DOTALL)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls(valid=True)

    @classmethod
    def error(cls, error: str) -> ValidationResult:
        return cls(valid=False, errors=[error])

    @classmethod
    def merge(cls, *results: ValidationResult) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        for r in results:
            errors.extend(r.errors)
            warnings.extend(r.warnings)
        return cls(valid=all(r.valid for r in results), errors=errors, warnings=warnings)

    def __bool__(self) -> bool:
        return self.valid


def validate_json_schema(schema: dict[str, Any]) -> ValidationResult:
    """Validate that a dict is a valid JSON schema."""
    try:
        Draft202012Validator.check_schema(schema)
        return ValidationResult.ok()
    except SchemaError as e:
        return ValidationResult.error(f"Invalid JSON schema: {e.message}")


def validate_against_schema(data: Any, schema: dict[str, Any]) -> ValidationResult:
    """Validate data against a JSON schema, collecting every violation."""
    validator = Draft202012Validator(schema)
    errors = []
    for e in sorted(validator.iter_errors(data), key=lambda err: list(err.path)):
        path = ".".join(str(p) for p in e.path)
        errors.append(f"Validation failed at '{path}': {e.message}" if path else f"Validation error: {e.message}")
    if errors:
        return ValidationResult(valid=False, errors=errors)
    return ValidationResult.ok()


def parse_json_response(text: str) -> Any:
    """
    Parse a model response as JSON.

    Tolerates a surrounding markdown code fence. Raises ``ValueError`` when
    the text is not JSON.
    """
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        stripped = match.group(1).strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError as e:
        raise ValueError(f"Response is not valid JSON: {e.msg} at position {e.pos}") from e


def repair_array_wrapping(value: Any, schema: dict[str, Any]) -> Any:
    """
    Unwrap ``{"items": [...]}``-style responses when the schema wants an array.

    Models asked for a JSON array often return an object holding the array
    under some key. When the schema's top-level type is ``array``:

    - the non-empty array property whose first item carries the most of the
      item schema's required fields wins, otherwise the longest one;
    - with no array property, an object carrying at least half of the
      required item fields is wrapped as a one-element array.
    """
    if schema.get("type") != "array" or not isinstance(value, dict):
        return value

    expected = list((schema.get("items") or {}).get("required") or [])
    candidates = [(k, v) for k, v in value.items() if isinstance(v, list) and v]

    best_key: str | None = None
    if expected and candidates:
        best_score = -1
        for key, items in candidates:
            sample = items[0]
            if isinstance(sample, dict):
                score = sum(1 for f in expected if f in sample)
                if score > best_score:
                    best_score, best_key = score, key
    if best_key is None and candidates:
        best_key = max(candidates, key=lambda kv: len(kv[1]))[0]

    if best_key is not None:
        logger.debug(f"Unwrapped array response from key '{best_key}'")
        return value[best_key]

    if expected:
        matched = sum(1 for f in expected if f in value)
        if matched >= -(-len(expected) // 2):
            logger.debug(f"Wrapped single object as array ({matched}/{len(expected)} fields)")
            return [value]
    return value


__all__ = [
    "ValidationResult",
    "validate_json_schema",
    "validate_against_schema",
    "parse_json_response",
    "repair_array_wrapping",
]
