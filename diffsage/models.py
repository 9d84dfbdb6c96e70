"""
Shared value types passed between the workflow stages.

Everything here is immutable once built. The controller keeps its mutable
bookkeeping in WorkflowState (see workflow.py) and freezes it into an
AnalysisResult at FINALIZE.
"""


from enum import Enum
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import Any

from .diff_parser import FileChange
from .insights import ProjectClassification, TestSuggestion
from .risk_detector import Finding


class ExecutionMode(Enum):
    EXECUTE = "execute"
    PROMPT_ONLY = "prompt_only"


class PromptStage(Enum):
    FILE_ANALYSIS = "file_analysis"
    RISK_DETECTION = "risk_detection"
    SUMMARY_GENERATION = "summary_generation"
    SELF_REFINEMENT = "self_refinement"
    CONSENSUS_SYNTHESIS = "consensus_synthesis"


class ConsensusStatus(Enum):
    SYNTHESIZED = "synthesized"
    SINGLE_BACKEND = "single_backend"
    NOT_ATTEMPTED = "not_attempted"
    SYNTHESIS_FAILED = "synthesis_failed"


class _DictCompat:
    """Read-only dict-style access (``result["key"]``, ``result.get("key")``)."""

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key)

    def __contains__(self, key: str) -> bool:
        return key in self.keys()

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def keys(self):
        return [f.name for f in dataclass_fields(self)]

    def values(self):
        return [getattr(self, f.name) for f in dataclass_fields(self)]

    def items(self):
        return [(f.name, getattr(self, f.name)) for f in dataclass_fields(self)]


@dataclass(frozen=True)
class AnalysisMode:
    """Which parts of the analysis the caller asked for."""
    summary: bool = True
    risks: bool = True
    complexity: bool = True

    @classmethod
    def from_flags(cls, flags) -> "AnalysisMode":
        """
        Accept None (everything), a mapping of flag -> bool, or an iterable
        of flag names to enable.
        """
        if flags is None:
            return cls()
        if isinstance(flags, AnalysisMode):
            return flags
        if isinstance(flags, dict):
            unknown = sorted(set(flags) - {"summary", "risks", "complexity"})
            if unknown:
                raise ValueError(f"Unknown mode flag(s): {', '.join(unknown)}")
            return cls(**{k: bool(v) for k, v in flags.items()})
        names = {str(f).strip().lower() for f in flags}
        unknown = sorted(names - {"summary", "risks", "complexity"})
        if unknown:
            raise ValueError(f"Unknown mode flag(s): {', '.join(unknown)}")
        return cls(
            summary="summary" in names,
            risks="risks" in names,
            complexity="complexity" in names,
        )


@dataclass(frozen=True)
class AnalysisContext:
    """Everything a run needs to know about its input. Immutable for the run."""
    diff: str
    title: str
    files: tuple[FileChange, ...]
    token_budget: int
    cost_ceiling: float
    mode: AnalysisMode = field(default_factory=AnalysisMode)
    arch_docs: str | None = None
    execution_mode: ExecutionMode = ExecutionMode.EXECUTE
    language: str | None = None
    framework: str | None = None
    repository: str | None = None
    pr_number: int | None = None


@dataclass(frozen=True)
class StateSnapshot:
    """The slice of workflow state a prompt is rendered from."""
    file_summaries: tuple[tuple[str, str], ...] = ()
    findings: tuple[Finding, ...] = ()
    complexity_score: int | None = None
    summary: str = ""
    recommendations: tuple[str, ...] = ()
    missing_information: tuple[str, ...] = ()
    iteration: int = 0


@dataclass(frozen=True)
class FileAnalysis:
    path: str
    summary: str
    complexity: int
    findings: tuple[Finding, ...] = ()
    recommendations: tuple[str, ...] = ()
    degraded: bool = False


@dataclass(frozen=True)
class ResourceUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    invocations: int = 0
    failed_invocations: int = 0
    parse_defects: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "ResourceUsage") -> "ResourceUsage":
        return ResourceUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost=self.cost + other.cost,
            invocations=self.invocations + other.invocations,
            failed_invocations=self.failed_invocations + other.failed_invocations,
            parse_defects=self.parse_defects + other.parse_defects,
        )


@dataclass(frozen=True)
class AnalysisResult(_DictCompat):
    """
    Final assessment of one run.

    A degraded result keeps every field present (empty strings and tuples),
    so renderers only need to look at ``degraded``.
    """

    summary: str = ""
    findings: tuple[Finding, ...] = ()
    complexity_score: int = 1
    recommendations: tuple[str, ...] = ()
    usage: ResourceUsage = field(default_factory=ResourceUsage)

    file_analyses: tuple[FileAnalysis, ...] = ()
    clarity_score: int | None = None
    missing_information: tuple[str, ...] = ()
    iterations: int = 0

    test_suggestions: tuple[TestSuggestion, ...] = ()
    project_classification: ProjectClassification | None = None

    degraded: bool = False
    degraded_reasons: tuple[str, ...] = ()
    budget_exceeded: bool = False
    fast_path: bool = False
    notes: tuple[str, ...] = ()
    backend: str = ""

    @property
    def mode(self) -> str:
        return ExecutionMode.EXECUTE.value

    @property
    def critical_findings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == "critical"]

    @property
    def total_failure(self) -> bool:
        """True when the run invoked a model and every invocation failed."""
        return self.usage.invocations > 0 and self.usage.failed_invocations == self.usage.invocations


@dataclass(frozen=True)
class PromptDescriptor:
    """One unit of work for a host that executes prompts with its own model."""
    stage: PromptStage
    prompt: str
    schema: dict
    instructions: str
    default_output: dict
    file_path: str | None = None


@dataclass(frozen=True)
class PromptPlan(_DictCompat):
    """Ordered prompts plus the deterministic analysis already done locally."""
    context: AnalysisContext
    prompts: tuple[PromptDescriptor, ...]
    heuristic_findings: tuple[Finding, ...] = ()
    complexity_score: int = 1
    instructions: tuple[str, ...] = ()
    fast_path: bool = False
    test_suggestions: tuple[TestSuggestion, ...] = ()
    project_classification: ProjectClassification | None = None

    @property
    def mode(self) -> str:
        return ExecutionMode.PROMPT_ONLY.value

    def complete(self, responses: list[str], config=None) -> AnalysisResult:
        """Fold a host's raw outputs (one per prompt, in order) into a result."""
        from .workflow import assemble_result
        return assemble_result(self, responses, config=config)


@dataclass(frozen=True)
class ConsensusReport(_DictCompat):
    results: dict[str, AnalysisResult]
    result: AnalysisResult
    status: ConsensusStatus
    failures: dict[str, str] = field(default_factory=dict)
    chair: str | None = None
    synthesis_error: str = ""
    complexity_average: float | None = None
