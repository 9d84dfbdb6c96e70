"""
Refinement Controller - Drives one analysis run through an explicit stage machine.

  INIT -> ANALYZE_FILES -> DETECT_RISKS -> SCORE_COMPLEXITY -> SUMMARIZE
       -> EVALUATE -> { REFINE -> SUMMARIZE | FINALIZE }

Transitions are decided by ``next_stage`` from the current stage and state
alone. The loop back through REFINE is bounded by ``max_iterations``, so
oscillating clarity scores cannot keep a run alive.

The controller thread is the only writer of WorkflowState. Per-file model
calls run on a bounded pool, and their outputs are folded in by the
controller as they complete.
"""


import concurrent.futures
from enum import Enum
from dataclasses import dataclass, field

from . import annotations
from .complexity import ComplexityScorer
from .config import EngineConfig
from .diff_parser import languages
from .errors import BudgetExceeded
from .insights import classify_project, suggest_tests
from .models import (
    AnalysisContext,
    AnalysisResult,
    ExecutionMode,
    FileAnalysis,
    PromptDescriptor,
    PromptPlan,
    PromptStage,
    ResourceUsage,
    StateSnapshot,
)
from .risk_detector import Finding, RiskDetector
from .schemas import parse_stage_output
from .stage_executor import (
    ExecuteStrategy,
    PromptOnlyStrategy,
    StageExecutor,
    StageOutput,
    StageRequest,
)


class WorkflowStage(Enum):
    INIT = "init"
    ANALYZE_FILES = "analyze_files"
    DETECT_RISKS = "detect_risks"
    SCORE_COMPLEXITY = "score_complexity"
    SUMMARIZE = "summarize"
    EVALUATE = "evaluate"
    REFINE = "refine"
    FINALIZE = "finalize"


PROMPT_EXECUTION_WARNING = (
    "These prompts are work for your model to execute. They are not the analysis "
    "result and should not be shown to the user as one."
)


def plan_instructions(config: EngineConfig, refinable: bool = True) -> tuple[str, ...]:
    steps = [
        PROMPT_EXECUTION_WARNING,
        "Execute every prompt in order; each must return a JSON object matching its schema.",
        "Prompts for later steps were rendered before earlier outputs existed: "
        "use your earlier outputs when answering them.",
    ]
    if refinable and config.max_iterations > 0:
        steps.append(
            f"If the self-refinement clarity_score is below {config.clarity_threshold}, run summary "
            "generation again addressing missing_information, then self-refinement again "
            f"(at most {config.max_iterations} rounds). Append each round's two outputs, summary "
            "first, after the outputs for the listed prompts."
        )
    steps.append("Pass the raw outputs, in that order, to PromptPlan.complete() to build the final result.")
    return tuple(steps)


@dataclass
class WorkflowState:
    """Mutable bookkeeping for one run. Owned by a single controller."""
    iteration: int = 0
    file_analyses: dict[str, FileAnalysis] = field(default_factory=dict)
    heuristic_findings: list[Finding] | None = None
    model_findings: list[Finding] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    complexity_score: int | None = None
    summary: str = ""
    recommendations: list[str] = field(default_factory=list)
    clarity_score: int | None = None
    missing_information: list[str] = field(default_factory=list)
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    degraded_reasons: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    budget_exhausted: bool = False
    summary_failed: bool = False
    evaluation_failed: bool = False
    fast_path: bool = False
    skip_evaluation: bool = False
    history: list[WorkflowStage] = field(default_factory=list)
    prompts: list[PromptDescriptor] = field(default_factory=list)

    def collect_findings(self, context: AnalysisContext) -> None:
        """Heuristic, then per-file model, then risk-pass findings. No deduplication."""
        findings = list(self.heuristic_findings or [])
        for change in context.files:
            analysis = self.file_analyses.get(change.path)
            if analysis:
                findings.extend(analysis.findings)
        findings.extend(self.model_findings)
        self.findings = findings

    def snapshot(self, context: AnalysisContext, findings: list[Finding] | None = None) -> StateSnapshot:
        return StateSnapshot(
            file_summaries=tuple(
                (f.path, self.file_analyses[f.path].summary)
                for f in context.files if f.path in self.file_analyses
            ),
            findings=tuple(self.findings if findings is None else findings),
            complexity_score=self.complexity_score,
            summary=self.summary,
            recommendations=tuple(self.recommendations),
            missing_information=tuple(self.missing_information),
            iteration=self.iteration,
        )


def is_fast_path(context: AnalysisContext, config: EngineConfig) -> bool:
    """Small inputs skip self-evaluation entirely."""
    return (
        len(context.files) < config.fast_path.max_files
        and len(context.diff) < config.fast_path.max_diff_chars
    )


def next_stage(
    stage: WorkflowStage,
    state: WorkflowState,
    config: EngineConfig,
    execution_mode: ExecutionMode = ExecutionMode.EXECUTE,
) -> WorkflowStage:
    """Pure transition function of the stage machine."""
    if stage is WorkflowStage.FINALIZE:
        raise ValueError("FINALIZE is terminal")
    if state.budget_exhausted:
        return WorkflowStage.FINALIZE
    if stage is WorkflowStage.INIT:
        return WorkflowStage.ANALYZE_FILES
    if stage is WorkflowStage.ANALYZE_FILES:
        return WorkflowStage.DETECT_RISKS
    if stage is WorkflowStage.DETECT_RISKS:
        return WorkflowStage.SCORE_COMPLEXITY
    if stage is WorkflowStage.SCORE_COMPLEXITY:
        return WorkflowStage.SUMMARIZE
    if stage is WorkflowStage.SUMMARIZE:
        if state.summary_failed or state.skip_evaluation:
            return WorkflowStage.FINALIZE
        return WorkflowStage.EVALUATE
    if stage is WorkflowStage.EVALUATE:
        if execution_mode is ExecutionMode.PROMPT_ONLY or state.evaluation_failed:
            return WorkflowStage.FINALIZE
        if (
            state.clarity_score is not None
            and state.clarity_score < config.clarity_threshold
            and state.iteration < config.max_iterations
        ):
            return WorkflowStage.REFINE
        return WorkflowStage.FINALIZE
    if stage is WorkflowStage.REFINE:
        return WorkflowStage.SUMMARIZE
    raise ValueError(f"Unknown stage: {stage}")


def _merge_unique(existing: list[str], extra) -> list[str]:
    merged = list(existing)
    seen = {item.lower() for item in merged}
    for item in extra:
        if item.lower() not in seen:
            seen.add(item.lower())
            merged.append(item)
    return merged


def fold_output(
    state: WorkflowState,
    output: StageOutput,
    context: AnalysisContext,
    scorer: ComplexityScorer,
) -> None:
    """Apply one stage output to the state. Shared by live runs and plan completion."""
    state.usage = state.usage + output.usage
    stage = output.stage

    if stage is PromptStage.FILE_ANALYSIS:
        change = next((f for f in context.files if f.path == output.file_path), None)
        fallback_complexity = scorer.file_complexity(change.changed if change else 0)
        parsed = output.output
        if output.failed:
            state.notes.append(f"File analysis unavailable for {output.file_path}")
            analysis = FileAnalysis(
                path=output.file_path,
                summary="",
                complexity=fallback_complexity,
                degraded=True,
            )
        else:
            analysis = FileAnalysis(
                path=output.file_path,
                summary=parsed.summary,
                complexity=parsed.complexity if output.parsed else fallback_complexity,
                findings=parsed.findings,
                recommendations=parsed.recommendations,
                degraded=not output.parsed,
            )
        state.file_analyses[output.file_path] = analysis

    elif stage is PromptStage.RISK_DETECTION:
        if output.failed:
            state.notes.append("Model risk detection unavailable; heuristic findings only")
        else:
            state.model_findings = list(output.output.findings)

    elif stage is PromptStage.SUMMARY_GENERATION:
        if output.failed:
            state.summary_failed = True
            if state.summary:
                state.notes.append(f"Summary refinement unavailable ({output.error}); previous summary kept")
            else:
                state.degraded_reasons.append(f"Summary generation unavailable: {output.error}")
        elif output.parsed:
            state.summary = output.output.summary
            state.recommendations = list(output.output.recommendations)
        else:
            state.notes.append("Summary output could not be parsed; previous summary kept")
            if not state.summary:
                state.degraded_reasons.append("Summary output could not be parsed")

    elif stage is PromptStage.SELF_REFINEMENT:
        if output.failed or not output.parsed:
            state.evaluation_failed = True
            state.notes.append("Self-evaluation unavailable; refinement stopped")
        else:
            state.clarity_score = output.output.clarity_score
            state.missing_information = list(output.output.missing_information)
            state.recommendations = _merge_unique(state.recommendations, output.output.recommendations)


def deterministic_summary(context: AnalysisContext, complexity: int, findings: list[Finding]) -> str:
    """Summary composed from counts alone, for runs without a summary stage."""
    added = sum(f.added for f in context.files)
    removed = sum(f.removed for f in context.files)
    langs = languages(list(context.files))
    critical = sum(1 for f in findings if f.severity == "critical")
    parts = [f"{len(context.files)} file(s) changed (+{added}/-{removed})"]
    if langs:
        parts[0] += f" in {', '.join(langs)}"
    parts.append(f"complexity {complexity}/5")
    parts.append(f"{len(findings)} risk flag(s), {critical} critical")
    return "; ".join(parts) + "."


def heuristic_recommendations(findings: list[Finding]) -> list[str]:
    recs: list[str] = []
    for f in findings:
        if f.severity != "critical":
            continue
        loc = f.file or "the change"
        if f.line:
            loc = f"{loc}:{f.line}"
        recs.append(f"Resolve {f.description[:1].lower()}{f.description[1:]} at {loc}")
    return _merge_unique([], recs)


def build_result(
    context: AnalysisContext,
    state: WorkflowState,
    scorer: ComplexityScorer,
    backend: str = "",
) -> AnalysisResult:
    """Freeze the accumulated state. Missing pieces become empty, never absent."""
    if state.complexity_score is None:
        state.complexity_score = scorer.score(list(context.files))
    state.collect_findings(context)

    file_analyses = []
    for change in context.files:
        analysis = state.file_analyses.get(change.path)
        if analysis is None:
            analysis = FileAnalysis(
                path=change.path,
                summary="",
                complexity=scorer.file_complexity(change.changed),
                degraded=state.budget_exhausted,
            )
        file_analyses.append(analysis)

    summary = state.summary
    if not summary and not state.summary_failed:
        summary = deterministic_summary(context, state.complexity_score, state.findings)
    recommendations = state.recommendations or heuristic_recommendations(state.findings)

    notes = list(state.notes)
    if state.budget_exhausted:
        notes.append(
            f"Budget exhausted after {state.usage.total_tokens} tokens (${state.usage.cost:.4f}); result is partial"
        )
    degraded_reasons = list(state.degraded_reasons)
    if state.usage.invocations and state.usage.failed_invocations == state.usage.invocations:
        degraded_reasons.append("Every model invocation failed")

    return AnalysisResult(
        summary=summary,
        findings=tuple(state.findings),
        complexity_score=state.complexity_score,
        recommendations=tuple(recommendations),
        usage=state.usage,
        file_analyses=tuple(file_analyses),
        clarity_score=state.clarity_score,
        missing_information=tuple(state.missing_information),
        iterations=state.iteration,
        test_suggestions=tuple(suggest_tests(list(context.files))),
        project_classification=classify_project(list(context.files)),
        degraded=bool(degraded_reasons),
        degraded_reasons=tuple(degraded_reasons),
        budget_exceeded=state.budget_exhausted,
        fast_path=state.fast_path,
        notes=tuple(notes),
        backend=backend,
    )


class RefinementController:
    """Runs one analysis of one context with one executor."""

    def __init__(
        self,
        executor: StageExecutor,
        config: EngineConfig | None = None,
        detector: RiskDetector | None = None,
        scorer: ComplexityScorer | None = None,
        identifier: str = "",
    ):
        self.executor = executor
        self.config = config or EngineConfig()
        self.detector = detector or self.config.build_detector()
        self.scorer = scorer or self.config.build_scorer()
        self.identifier = identifier or getattr(executor, "identifier", "")
        self.last_state: WorkflowState | None = None
        self._handlers = {
            WorkflowStage.INIT: self._init,
            WorkflowStage.ANALYZE_FILES: self._analyze_files,
            WorkflowStage.DETECT_RISKS: self._detect_risks,
            WorkflowStage.SCORE_COMPLEXITY: self._score_complexity,
            WorkflowStage.SUMMARIZE: self._summarize,
            WorkflowStage.EVALUATE: self._evaluate,
            WorkflowStage.REFINE: self._refine,
        }

    @property
    def prompt_only(self) -> bool:
        return isinstance(self.executor, PromptOnlyStrategy)

    def run(self, context: AnalysisContext) -> AnalysisResult | PromptPlan:
        expects_prompts = context.execution_mode is ExecutionMode.PROMPT_ONLY
        if expects_prompts != self.prompt_only:
            raise TypeError(
                f"{type(self.executor).__name__} cannot run a {context.execution_mode.value} analysis"
            )

        state = WorkflowState()
        stage = WorkflowStage.INIT
        while stage is not WorkflowStage.FINALIZE:
            state.history.append(stage)
            annotations.debug(f"[{self.identifier or 'run'}] {stage.value} (iteration {state.iteration})")
            try:
                self._handlers[stage](context, state)
            except BudgetExceeded as exc:
                self._stop_for_budget(state, exc)
            stage = next_stage(stage, state, self.config, context.execution_mode)
        state.history.append(WorkflowStage.FINALIZE)
        self.last_state = state
        return self._finalize(context, state)

    def _stage_active(self, context: AnalysisContext, stage: PromptStage) -> bool:
        if not self.config.stage_enabled(stage):
            return False
        if stage is PromptStage.RISK_DETECTION:
            return context.mode.risks
        if stage in (PromptStage.SUMMARY_GENERATION, PromptStage.SELF_REFINEMENT):
            return context.mode.summary
        return True

    def _check_budget(self, context: AnalysisContext, state: WorkflowState) -> None:
        """Raise BudgetExceeded once accumulated usage reaches either ceiling."""
        if self.prompt_only:
            return
        usage = state.usage
        if state.budget_exhausted or usage.cost >= context.cost_ceiling or usage.total_tokens >= context.token_budget:
            raise BudgetExceeded(usage.total_tokens, usage.cost)

    def _stop_for_budget(self, state: WorkflowState, exc: BudgetExceeded) -> None:
        if not state.budget_exhausted:
            state.budget_exhausted = True
            annotations.notice(f"Finalizing early: {exc}")

    def _execute(self, request: StageRequest, context: AnalysisContext, state: WorkflowState) -> None:
        """Run one stage (or record its prompt) and fold the outcome."""
        if self.prompt_only:
            state.prompts.append(self.executor.run(request))
            return
        self._check_budget(context, state)
        fold_output(state, self.executor.run(request), context, self.scorer)

    def _fan_out(self, requests: list[StageRequest], context: AnalysisContext, state: WorkflowState) -> None:
        """Keep at most ``file_parallelism`` invocations in flight and wait for all of them."""
        pending = iter(requests)
        in_flight: dict[concurrent.futures.Future, StageRequest] = {}
        limit = self.config.file_parallelism

        with concurrent.futures.ThreadPoolExecutor(max_workers=limit) as pool:
            def launch():
                while len(in_flight) < limit:
                    try:
                        self._check_budget(context, state)
                    except BudgetExceeded as exc:
                        self._stop_for_budget(state, exc)
                        return
                    request = next(pending, None)
                    if request is None:
                        return
                    in_flight[pool.submit(self.executor.run, request)] = request

            launch()
            while in_flight:
                done, _ = concurrent.futures.wait(in_flight, return_when=concurrent.futures.FIRST_COMPLETED)
                for future in done:
                    request = in_flight.pop(future)
                    try:
                        output = future.result()
                    except Exception as exc:
                        annotations.warn(f"{request.stage.value} crashed for {request.file_path}: {exc}")
                        output = StageOutput(
                            stage=request.stage,
                            output=None,
                            parsed=False,
                            failed=True,
                            error=str(exc),
                            usage=ResourceUsage(invocations=1, failed_invocations=1),
                            file_path=request.file_path,
                        )
                    fold_output(state, output, context, self.scorer)
                launch()

    def _init(self, context: AnalysisContext, state: WorkflowState) -> None:
        state.fast_path = is_fast_path(context, self.config)
        state.skip_evaluation = (
            state.fast_path
            or not self._stage_active(context, PromptStage.SELF_REFINEMENT)
            or not self._stage_active(context, PromptStage.SUMMARY_GENERATION)
        )

    def _analyze_files(self, context: AnalysisContext, state: WorkflowState) -> None:
        if not self._stage_active(context, PromptStage.FILE_ANALYSIS):
            return
        requests = [
            StageRequest(PromptStage.FILE_ANALYSIS, context, change=change)
            for change in context.files
        ]
        if self.prompt_only:
            for request in requests:
                state.prompts.append(self.executor.run(request))
            return
        self._fan_out(requests, context, state)

    def _detect_risks(self, context: AnalysisContext, state: WorkflowState) -> None:
        heuristics = self.detector.detect(list(context.files))
        state.heuristic_findings = heuristics
        if self._stage_active(context, PromptStage.RISK_DETECTION):
            request = StageRequest(
                PromptStage.RISK_DETECTION,
                context,
                snapshot=state.snapshot(context, findings=heuristics),
            )
            self._execute(request, context, state)
        state.collect_findings(context)

    def _score_complexity(self, context: AnalysisContext, state: WorkflowState) -> None:
        state.complexity_score = self.scorer.score(list(context.files))

    def _summarize(self, context: AnalysisContext, state: WorkflowState) -> None:
        if not self._stage_active(context, PromptStage.SUMMARY_GENERATION):
            return
        request = StageRequest(PromptStage.SUMMARY_GENERATION, context, snapshot=state.snapshot(context))
        self._execute(request, context, state)

    def _evaluate(self, context: AnalysisContext, state: WorkflowState) -> None:
        request = StageRequest(PromptStage.SELF_REFINEMENT, context, snapshot=state.snapshot(context))
        self._execute(request, context, state)

    def _refine(self, context: AnalysisContext, state: WorkflowState) -> None:
        state.iteration += 1
        annotations.debug(
            f"Refining summary (iteration {state.iteration}, clarity {state.clarity_score}, "
            f"{len(state.missing_information)} gap(s))"
        )

    def _finalize(self, context: AnalysisContext, state: WorkflowState) -> AnalysisResult | PromptPlan:
        if state.heuristic_findings is None:
            state.heuristic_findings = self.detector.detect(list(context.files))
        if state.complexity_score is None:
            state.complexity_score = self.scorer.score(list(context.files))

        if self.prompt_only:
            return PromptPlan(
                context=context,
                prompts=tuple(state.prompts),
                heuristic_findings=tuple(state.heuristic_findings),
                complexity_score=state.complexity_score,
                instructions=plan_instructions(
                    self.config, refinable=any(p.stage is PromptStage.SELF_REFINEMENT for p in state.prompts)
                ),
                fast_path=state.fast_path,
                test_suggestions=tuple(suggest_tests(list(context.files))),
                project_classification=classify_project(list(context.files)),
            )
        return build_result(context, state, self.scorer, backend=self.identifier)


def _fold_host_output(
    state: WorkflowState,
    stage: PromptStage,
    text: str,
    file_path: str | None,
    context: AnalysisContext,
    scorer: ComplexityScorer,
) -> None:
    parsed = parse_stage_output(stage, text, file_path)
    if not parsed.ok:
        annotations.warn(f"Unparseable host output for {stage.value}: {parsed.error}")
    output = StageOutput(
        stage=stage,
        output=parsed.output,
        parsed=parsed.ok,
        error=parsed.error,
        usage=ResourceUsage(parse_defects=0 if parsed.ok else 1),
        file_path=file_path,
    )
    fold_output(state, output, context, scorer)


def assemble_result(plan: PromptPlan, responses: list[str], config: EngineConfig | None = None) -> AnalysisResult:
    """
    Fold a host's raw outputs for a PromptPlan into an AnalysisResult.

    ``responses`` holds one raw model output per descriptor, in plan order,
    optionally followed by refinement rounds: a summary output, then its
    self-refinement output, for at most ``max_iterations`` rounds.
    """
    config = config or EngineConfig()
    expected = len(plan.prompts)
    refinable = any(d.stage is PromptStage.SELF_REFINEMENT for d in plan.prompts)
    extra_allowed = 2 * config.max_iterations if refinable else 0
    if not expected <= len(responses) <= expected + extra_allowed:
        if extra_allowed:
            raise ValueError(
                f"Expected {expected} to {expected + extra_allowed} responses, got {len(responses)}"
            )
        raise ValueError(f"Expected {expected} responses, got {len(responses)}")

    scorer = config.build_scorer()
    context = plan.context
    state = WorkflowState(
        heuristic_findings=list(plan.heuristic_findings),
        complexity_score=plan.complexity_score,
        fast_path=plan.fast_path,
    )
    for descriptor, text in zip(plan.prompts, responses):
        _fold_host_output(state, descriptor.stage, text, descriptor.file_path, context, scorer)

    for index, text in enumerate(responses[expected:]):
        if index % 2 == 0:
            state.iteration += 1
            stage = PromptStage.SUMMARY_GENERATION
        else:
            stage = PromptStage.SELF_REFINEMENT
        _fold_host_output(state, stage, text, None, context, scorer)
    return build_result(context, state, scorer, backend="host")


def make_controller(
    config: EngineConfig,
    execution_mode: ExecutionMode,
    capability=None,
    identifier: str = "",
) -> RefinementController:
    """Controller with the executor strategy that matches the execution mode."""
    builder = config.build_prompt_builder()
    if execution_mode is ExecutionMode.PROMPT_ONLY:
        executor: StageExecutor = PromptOnlyStrategy(builder)
    else:
        if capability is None:
            raise TypeError("EXECUTE mode needs a model capability")
        executor = ExecuteStrategy(capability, builder, timeout=config.invocation_timeout)
    return RefinementController(executor, config=config, identifier=identifier)
