"""
Engine facade - one entry point for both execution modes.

    result = engine.run(diff_text, title="Add login", backend=backend)
    if result.mode == "prompt_only":
        ...  # execute result.prompts with your own model, then result.complete(outputs)

The execution mode decides the return type: EXECUTE yields an
AnalysisResult, PROMPT_ONLY a PromptPlan.
"""


from dataclasses import dataclass, fields as dataclass_fields

from . import annotations
from .config import EngineConfig, resolve_backends
from .consensus import ConsensusAggregator
from .diff_parser import parse_diff
from .models import (
    AnalysisContext,
    AnalysisMode,
    AnalysisResult,
    ConsensusReport,
    ExecutionMode,
    PromptPlan,
)
from .providers import BackendConfig, ModelCapability, build_capability, create_capability
from .workflow import make_controller


@dataclass(frozen=True)
class RunOptions:
    """Per-call context options. Anything left as None falls back to the config."""
    execution_mode: ExecutionMode | None = None
    quick: bool = False
    arch_docs: str | None = None
    language: str | None = None
    framework: str | None = None
    repository: str | None = None
    pr_number: int | None = None
    token_budget: int | None = None
    cost_ceiling: float | None = None

    @classmethod
    def from_value(cls, value) -> "RunOptions":
        if value is None:
            return cls()
        if isinstance(value, RunOptions):
            return value
        if not isinstance(value, dict):
            raise TypeError(f"options must be a RunOptions or dict, got {type(value).__name__}")
        known = {f.name for f in dataclass_fields(cls)}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"Unknown option(s): {', '.join(unknown)}")
        data = dict(value)
        mode = data.get("execution_mode")
        if isinstance(mode, str):
            data["execution_mode"] = ExecutionMode(mode)
        return cls(**data)


def estimate_run_tokens(diff_text: str, file_count: int) -> int:
    """Rough pre-flight estimate of the tokens a full run will use."""
    return 2000 + len(diff_text) // 4 + 100 * file_count


def build_context(
    diff_text: str,
    title: str | None = None,
    mode_flags=None,
    options=None,
    config: EngineConfig | None = None,
    execution_mode: ExecutionMode = ExecutionMode.EXECUTE,
) -> AnalysisContext:
    """Parse the diff and freeze everything a run needs."""
    config = config or EngineConfig()
    opts = RunOptions.from_value(options)
    files = parse_diff(diff_text or "", exclude_patterns=config.exclude_patterns)

    token_budget = opts.token_budget or config.token_budget
    estimate = estimate_run_tokens(diff_text or "", len(files))
    if execution_mode is ExecutionMode.EXECUTE and estimate > token_budget:
        annotations.warn(
            f"Estimated {estimate} tokens exceeds the budget of {token_budget}; the run may stop early"
        )

    return AnalysisContext(
        diff=diff_text or "",
        title=title or "",
        files=tuple(files),
        token_budget=token_budget,
        cost_ceiling=opts.cost_ceiling or config.cost_ceiling,
        mode=AnalysisMode.from_flags(mode_flags),
        arch_docs=opts.arch_docs,
        execution_mode=execution_mode,
        language=opts.language,
        framework=opts.framework,
        repository=opts.repository,
        pr_number=opts.pr_number,
    )


def _resolve_capability(backend, config: EngineConfig) -> ModelCapability | None:
    if isinstance(backend, ModelCapability):
        return backend
    if isinstance(backend, BackendConfig):
        return build_capability(backend, create_capability)
    if backend is not None:
        raise TypeError(f"backend must be a BackendConfig or ModelCapability, got {type(backend).__name__}")
    discovered = resolve_backends(config)
    if discovered:
        return build_capability(discovered[0], create_capability)
    return None


def run(
    diff_text: str,
    title: str | None = None,
    mode_flags=None,
    options=None,
    config: EngineConfig | None = None,
    backend=None,
) -> AnalysisResult | PromptPlan:
    """
    Analyze one diff.

    Execution mode comes from ``options.execution_mode`` when given;
    otherwise EXECUTE if a backend is available, else PROMPT_ONLY.
    """
    config = config or EngineConfig()
    opts = RunOptions.from_value(options)
    if opts.quick:
        config = config.quick()

    mode = opts.execution_mode
    capability = None
    if mode is not ExecutionMode.PROMPT_ONLY:
        capability = _resolve_capability(backend, config)
        if mode is None:
            mode = ExecutionMode.EXECUTE if capability is not None else ExecutionMode.PROMPT_ONLY
        elif capability is None:
            raise ValueError("EXECUTE mode requested but no model backend is available")

    if mode is ExecutionMode.PROMPT_ONLY:
        annotations.notice("No model backend configured; returning a prompt plan for the host to execute")

    context = build_context(diff_text, title, mode_flags, opts, config, execution_mode=mode)
    identifier = getattr(capability, "identifier", "") if capability else ""
    controller = make_controller(config, mode, capability, identifier=identifier)
    outcome = controller.run(context)

    expected = PromptPlan if mode is ExecutionMode.PROMPT_ONLY else AnalysisResult
    if not isinstance(outcome, expected):
        raise TypeError(f"{mode.value} run produced {type(outcome).__name__}, expected {expected.__name__}")
    return outcome


def run_consensus(
    diff_text: str,
    title: str | None = None,
    mode_flags=None,
    options=None,
    config: EngineConfig | None = None,
    backends: list[BackendConfig] | None = None,
    capability_factory=None,
) -> ConsensusReport:
    """
    Analyze one diff with every configured backend and merge the results.

    ``backends`` defaults to the configured council. When no council is
    configured, the first discovered backend runs alone.
    """
    config = config or EngineConfig()
    opts = RunOptions.from_value(options)
    if opts.quick:
        config = config.quick()
    if opts.execution_mode is ExecutionMode.PROMPT_ONLY:
        raise ValueError("Consensus needs EXECUTE mode")

    council = list(backends) if backends is not None else list(config.consensus.backends)
    primary = None
    if not council:
        discovered = resolve_backends(config)
        primary = discovered[0] if discovered else None

    context = build_context(diff_text, title, mode_flags, opts, config, execution_mode=ExecutionMode.EXECUTE)
    aggregator = ConsensusAggregator(
        council,
        config=config,
        primary=primary,
        capability_factory=capability_factory or create_capability,
    )
    return aggregator.run(context)
