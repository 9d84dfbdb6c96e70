"""
Canonical JSON helpers and flat records for persistence sinks.

Canonical form:
  - dict keys are sorted lexicographically
  - sets/frozensets become sorted lists
  - enums become their values
  - non-finite floats are rejected

The chair of a consensus run receives backend results in this form, so two
runs over the same results render the same prompt.
"""


import json
import math
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any

from .models import AnalysisContext, AnalysisResult
from .risk_detector import Finding


def canonicalize_for_json(value: Any) -> Any:
    """Recursively normalize a Python value for canonical JSON encoding."""
    if value is None or isinstance(value, (bool, int)):
        return value

    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("Non-finite floats are not allowed in canonical JSON")
        return value

    if isinstance(value, str):
        return value

    if isinstance(value, Enum):
        return canonicalize_for_json(value.value)

    if is_dataclass(value) and not isinstance(value, type):
        return canonicalize_for_json(asdict(value))

    if isinstance(value, dict):
        normalized: dict[str, Any] = {}
        for key in sorted(value.keys(), key=lambda k: str(k.value if isinstance(k, Enum) else k)):
            normalized_key = key.value if isinstance(key, Enum) else key
            normalized_key = str(normalized_key) if not isinstance(normalized_key, str) else normalized_key
            if normalized_key in normalized:
                raise ValueError(f"Canonical key collision detected for key {normalized_key!r}")
            normalized[normalized_key] = canonicalize_for_json(value[key])
        return normalized

    if isinstance(value, (list, tuple)):
        return [canonicalize_for_json(item) for item in value]

    if isinstance(value, (set, frozenset)):
        normalized_items = [canonicalize_for_json(item) for item in value]
        normalized_items.sort(
            key=lambda item: json.dumps(
                item,
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
                allow_nan=False,
            )
        )
        return normalized_items

    return str(value)


def canonical_json_dumps(value: Any) -> str:
    """Serialize a value as canonical JSON."""
    normalized = canonicalize_for_json(value)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def finding_to_dict(finding: Finding) -> dict[str, Any]:
    return {
        "type": finding.category,
        "severity": finding.severity,
        "description": finding.description,
        "file": finding.file,
        "line": finding.line,
        "provenance": finding.provenance,
    }


def result_to_payload(result: AnalysisResult) -> dict[str, Any]:
    """The parts of a result a reviewer (human or chair model) needs."""
    return {
        "backend": result.backend,
        "summary": result.summary,
        "complexity": result.complexity_score,
        "risks": [finding_to_dict(f) for f in result.findings],
        "recommendations": list(result.recommendations),
    }


def result_to_dict(result: AnalysisResult) -> dict[str, Any]:
    """Full canonical-ready representation, for JSON output files."""
    payload = canonicalize_for_json(result)
    payload["mode"] = result.mode
    return payload


def flatten_result(
    result: AnalysisResult,
    context: AnalysisContext | None = None,
    author: str | None = None,
) -> dict[str, Any]:
    """
    Flat record for persistence sinks: scalars only, lists JSON-encoded.
    """
    classification = result.project_classification
    repo_owner = repo_name = None
    if context and context.repository and "/" in context.repository:
        repo_owner, repo_name = context.repository.split("/", 1)
    return {
        "pr_number": context.pr_number if context else None,
        "repo_owner": repo_owner,
        "repo_name": repo_name,
        "author": author,
        "title": context.title if context else None,
        "summary": result.summary,
        "complexity": result.complexity_score,
        "risks_count": len(result.findings),
        "critical_count": len(result.critical_findings),
        "risks": canonical_json_dumps([finding_to_dict(f) for f in result.findings]),
        "recommendations": canonical_json_dumps(list(result.recommendations)),
        "test_suggestions": canonical_json_dumps(list(result.test_suggestions)),
        "project_type": classification.project_type if classification else None,
        "project_classification": canonical_json_dumps(classification) if classification else None,
        "clarity_score": result.clarity_score,
        "iterations": result.iterations,
        "degraded": result.degraded,
        "budget_exceeded": result.budget_exceeded,
        "input_tokens": result.usage.input_tokens,
        "output_tokens": result.usage.output_tokens,
        "cost": round(result.usage.cost, 6),
        "backend": result.backend,
    }
