"""
Stage output schemas and the parser that maps raw model text onto them.

``parse_stage_output`` never raises: a strict parse is tried first, then
one retry after light normalization (code fences stripped, outermost JSON
object extracted), and finally the stage's schema-conformant default.
"""


import re
import json
import math
from dataclasses import dataclass
from typing import Any, Callable

from .errors import ParseDefect
from .models import PromptStage
from .risk_detector import Finding, normalize_category, normalize_severity


@dataclass(frozen=True)
class FileAnalysisOutput:
    summary: str
    complexity: int
    findings: tuple[Finding, ...] = ()
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class RiskDetectionOutput:
    findings: tuple[Finding, ...] = ()


@dataclass(frozen=True)
class SummaryOutput:
    summary: str
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class EvaluationOutput:
    clarity_score: int
    missing_information: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConsensusOutput:
    summary: str
    complexity: int
    findings: tuple[Finding, ...] = ()
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class ParseResult:
    ok: bool
    output: Any
    error: str = ""
    normalized: bool = False


_RISK_ITEM = {
    "type": "object",
    "required": ["type", "severity", "description"],
    "properties": {
        "type": {"enum": ["security", "quality", "breaking"]},
        "severity": {"enum": ["critical", "warning", "info"]},
        "description": {"type": "string"},
        "file": {"type": "string"},
        "line": {"type": "integer"},
    },
}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}


@dataclass(frozen=True)
class StageSchema:
    stage: PromptStage
    schema: dict
    example: dict
    default: dict
    coerce: Callable[[dict, str | None], Any]


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value)


def _as_string_list(value) -> tuple[str, ...]:
    """Normalize to a tuple of strings (models sometimes return dicts)."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if not isinstance(value, (list, tuple)):
        return (str(value),)
    items = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("description") or item.get("message") or item.get("text") or json.dumps(item, sort_keys=True)
        if not isinstance(item, str):
            item = str(item)
        if item.strip():
            items.append(item.strip())
    return tuple(items)


def _as_int(value, low: int, high: int, name: str) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError, OverflowError) as exc:
        raise ParseDefect(name, f"expected a number, got {value!r}") from exc
    return max(low, min(high, number))


def _as_findings(value, file_path: str | None) -> tuple[Finding, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ParseDefect("risks", "expected a list of risks")
    findings = []
    for item in value:
        if isinstance(item, str):
            item = {"description": item}
        if not isinstance(item, dict):
            continue
        description = _as_text(item.get("description") or item.get("message"))
        if not description:
            continue
        line = item.get("line")
        try:
            line = int(line) if line is not None else None
        except (TypeError, ValueError, OverflowError):
            line = None
        findings.append(Finding(
            category=normalize_category(item.get("type") or item.get("category")),
            severity=normalize_severity(item.get("severity")),
            description=description,
            file=_as_text(item.get("file")) or file_path,
            line=line,
            provenance="model",
        ))
    return tuple(findings)


def _require(payload: dict, key: str, stage: PromptStage) -> Any:
    if key not in payload:
        raise ParseDefect(stage.value, f"missing required key {key!r}")
    return payload[key]


def _coerce_file_analysis(payload: dict, file_path: str | None) -> FileAnalysisOutput:
    return FileAnalysisOutput(
        summary=_as_text(_require(payload, "summary", PromptStage.FILE_ANALYSIS)),
        complexity=_as_int(payload.get("complexity", 1), 1, 5, "complexity"),
        findings=_as_findings(payload.get("risks"), file_path),
        recommendations=_as_string_list(payload.get("recommendations")),
    )


def _coerce_risk_detection(payload: dict, file_path: str | None) -> RiskDetectionOutput:
    return RiskDetectionOutput(
        findings=_as_findings(_require(payload, "risks", PromptStage.RISK_DETECTION), file_path),
    )


def _coerce_summary(payload: dict, file_path: str | None) -> SummaryOutput:
    return SummaryOutput(
        summary=_as_text(_require(payload, "summary", PromptStage.SUMMARY_GENERATION)),
        recommendations=_as_string_list(payload.get("recommendations")),
    )


def _coerce_evaluation(payload: dict, file_path: str | None) -> EvaluationOutput:
    return EvaluationOutput(
        clarity_score=_as_int(
            _require(payload, "clarity_score", PromptStage.SELF_REFINEMENT), 0, 100, "clarity_score"
        ),
        missing_information=_as_string_list(payload.get("missing_information")),
        recommendations=_as_string_list(payload.get("recommendations")),
    )


def _coerce_consensus(payload: dict, file_path: str | None) -> ConsensusOutput:
    return ConsensusOutput(
        summary=_as_text(_require(payload, "summary", PromptStage.CONSENSUS_SYNTHESIS)),
        complexity=_as_int(payload.get("complexity", 1), 1, 5, "complexity"),
        findings=_as_findings(payload.get("risks"), None),
        recommendations=_as_string_list(payload.get("recommendations")),
    )


STAGE_SCHEMAS: dict[PromptStage, StageSchema] = {
    PromptStage.FILE_ANALYSIS: StageSchema(
        stage=PromptStage.FILE_ANALYSIS,
        schema={
            "type": "object",
            "required": ["summary", "complexity"],
            "properties": {
                "summary": {"type": "string"},
                "complexity": {"type": "integer", "minimum": 1, "maximum": 5},
                "risks": {"type": "array", "items": _RISK_ITEM},
                "recommendations": _STRING_LIST,
            },
        },
        example={
            "summary": "What changed in this file and why it matters",
            "complexity": 2,
            "risks": [{"type": "security", "severity": "warning", "description": "...", "line": 12}],
            "recommendations": [],
        },
        default={"summary": "", "complexity": 1, "risks": [], "recommendations": []},
        coerce=_coerce_file_analysis,
    ),
    PromptStage.RISK_DETECTION: StageSchema(
        stage=PromptStage.RISK_DETECTION,
        schema={
            "type": "object",
            "required": ["risks"],
            "properties": {"risks": {"type": "array", "items": _RISK_ITEM}},
        },
        example={
            "risks": [{
                "type": "security|quality|breaking",
                "severity": "critical|warning|info",
                "description": "...",
                "file": "path/to/file",
                "line": 42,
            }],
        },
        default={"risks": []},
        coerce=_coerce_risk_detection,
    ),
    PromptStage.SUMMARY_GENERATION: StageSchema(
        stage=PromptStage.SUMMARY_GENERATION,
        schema={
            "type": "object",
            "required": ["summary"],
            "properties": {"summary": {"type": "string"}, "recommendations": _STRING_LIST},
        },
        example={
            "summary": "Two to four sentences describing the change as a whole",
            "recommendations": ["Concrete, actionable suggestion"],
        },
        default={"summary": "", "recommendations": []},
        coerce=_coerce_summary,
    ),
    PromptStage.SELF_REFINEMENT: StageSchema(
        stage=PromptStage.SELF_REFINEMENT,
        schema={
            "type": "object",
            "required": ["clarity_score"],
            "properties": {
                "clarity_score": {"type": "integer", "minimum": 0, "maximum": 100},
                "missing_information": _STRING_LIST,
                "recommendations": _STRING_LIST,
            },
        },
        example={
            "clarity_score": 85,
            "missing_information": ["What the summary fails to explain"],
            "recommendations": [],
        },
        default={"clarity_score": 0, "missing_information": [], "recommendations": []},
        coerce=_coerce_evaluation,
    ),
    PromptStage.CONSENSUS_SYNTHESIS: StageSchema(
        stage=PromptStage.CONSENSUS_SYNTHESIS,
        schema={
            "type": "object",
            "required": ["summary", "complexity", "risks"],
            "properties": {
                "summary": {"type": "string"},
                "complexity": {"type": "integer", "minimum": 1, "maximum": 5},
                "risks": {"type": "array", "items": _RISK_ITEM},
                "recommendations": _STRING_LIST,
            },
        },
        example={
            "summary": "Merged summary acknowledging where reviewers agreed",
            "complexity": 3,
            "risks": [{"type": "security", "severity": "critical", "description": "...", "file": "app.py"}],
            "recommendations": [],
        },
        default={"summary": "", "complexity": 1, "risks": [], "recommendations": []},
        coerce=_coerce_consensus,
    ),
}


_FENCE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def normalize_model_text(text: str) -> str:
    """Strip code fences and cut the outermost JSON object out of surrounding prose."""
    cleaned = _FENCE.sub("", text.strip()).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    return cleaned


def default_output(stage: PromptStage, file_path: str | None = None) -> Any:
    schema = STAGE_SCHEMAS[stage]
    return schema.coerce(dict(schema.default), file_path)


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ParseDefect("json", f"non-finite number {text}")
    return value


def _reject_constant(name: str):
    raise ParseDefect("json", f"non-finite number {name}")


def _decode(stage: PromptStage, text: str, file_path: str | None) -> Any:
    payload = json.loads(text, parse_float=_finite_float, parse_constant=_reject_constant)
    if not isinstance(payload, dict):
        raise ParseDefect(stage.value, "expected a JSON object")
    return STAGE_SCHEMAS[stage].coerce(payload, file_path)


def parse_stage_output(stage: PromptStage, text: str | None, file_path: str | None = None) -> ParseResult:
    """Parse raw model output for a stage. Never raises."""
    raw = text or ""
    try:
        return ParseResult(ok=True, output=_decode(stage, raw.strip(), file_path))
    except (json.JSONDecodeError, ParseDefect):
        pass

    normalized = normalize_model_text(raw)
    try:
        return ParseResult(ok=True, output=_decode(stage, normalized, file_path), normalized=True)
    except (json.JSONDecodeError, ParseDefect) as exc:
        return ParseResult(
            ok=False,
            output=default_output(stage, file_path),
            error=f"{stage.value}: {exc}",
            normalized=True,
        )
