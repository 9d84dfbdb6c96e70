"""
Consensus Aggregator - Runs one analysis per backend and merges the verdicts.

Every backend gets its own controller run on a bounded pool, and the fan-in
waits for all of them. Two or more successes go to a chair model for
synthesis. After that the hard rules are applied in code, whatever the
chair returned:
  - every critical finding from any backend is kept, and its severity is
    never lowered
  - complexity is the average of the backend scores
"""


import concurrent.futures
from dataclasses import replace
from typing import Callable

from . import annotations
from .complexity import round_half_up
from .config import EngineConfig
from .errors import AggregationFailure, CapabilityUnavailable
from .models import (
    AnalysisContext,
    AnalysisResult,
    ConsensusReport,
    ConsensusStatus,
    ExecutionMode,
    PromptStage,
)
from .providers import BackendConfig, ModelCapability, build_capability, create_capability
from .risk_detector import SEVERITY_RANK, Finding
from .schemas import ConsensusOutput
from .serialization import canonical_json_dumps, result_to_payload
from .stage_executor import ExecuteStrategy, StageRequest
from .workflow import make_controller


def _finding_key(finding: Finding) -> tuple:
    return (
        finding.category,
        finding.file or "",
        finding.line,
        " ".join(finding.description.lower().split()),
    )


def dedupe_findings(findings: list[Finding]) -> list[Finding]:
    """Drop repeats of (category, file, line, description), keeping the most severe copy."""
    merged: dict[tuple, Finding] = {}
    for finding in findings:
        key = _finding_key(finding)
        current = merged.get(key)
        if current is None:
            merged[key] = finding
        elif SEVERITY_RANK[finding.severity] > SEVERITY_RANK[current.severity]:
            merged[key] = replace(current, severity=finding.severity)
    return list(merged.values())


def _same_issue(candidate: Finding, critical: Finding) -> bool:
    """Same file and category, and either the same description or the same line."""
    if (candidate.file or "") != (critical.file or ""):
        return False
    if candidate.category != critical.category:
        return False
    if _finding_key(candidate)[3] == _finding_key(critical)[3]:
        return True
    return critical.line is not None and candidate.line == critical.line


def enforce_critical_findings(merged: list[Finding], results: dict[str, AnalysisResult]) -> list[Finding]:
    """Make sure each backend's critical findings survive the merge at full severity."""
    findings = list(merged)
    for backend_id, result in results.items():
        for critical in result.critical_findings:
            match = next((i for i, f in enumerate(findings) if _same_issue(f, critical)), None)
            if match is None:
                findings.append(replace(critical, source=critical.source or backend_id))
            elif findings[match].severity != "critical":
                findings[match] = replace(findings[match], severity="critical")
    return findings


class ConsensusAggregator:
    """Fan one AnalysisContext out to several backends and reconcile the results."""

    def __init__(
        self,
        backends: list[BackendConfig],
        config: EngineConfig | None = None,
        chair: str | None = None,
        primary: BackendConfig | None = None,
        capability_factory: Callable[[BackendConfig], ModelCapability] = create_capability,
    ):
        self.backends = list(backends)
        self.config = config or EngineConfig()
        self.chair = chair or self.config.consensus.chair
        self.primary = primary
        self.capability_factory = capability_factory

    def _analyze(self, backend: BackendConfig, context: AnalysisContext) -> AnalysisResult:
        capability = build_capability(backend, self.capability_factory)
        controller = make_controller(
            self.config, ExecutionMode.EXECUTE, capability, identifier=backend.identifier
        )
        return controller.run(context)

    def _run_backend(self, backend: BackendConfig, context: AnalysisContext) -> AnalysisResult:
        result = self._analyze(backend, context)
        if result.total_failure:
            raise CapabilityUnavailable(backend.identifier, "every model invocation failed")
        return result

    def _fan_out(self, context: AnalysisContext) -> tuple[dict[str, AnalysisResult], dict[str, str]]:
        outcomes: dict[str, AnalysisResult] = {}
        failures: dict[str, str] = {}
        workers = max(1, min(self.config.consensus.parallelism, len(self.backends)))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
            future_to_backend = {
                ex.submit(self._run_backend, backend, context): backend
                for backend in self.backends
            }
            for future in concurrent.futures.as_completed(future_to_backend):
                backend = future_to_backend[future]
                try:
                    outcomes[backend.identifier] = future.result()
                except Exception as e:
                    annotations.warn(f"Consensus backend {backend.identifier} failed: {e}")
                    failures[backend.identifier] = str(e)

        # Report in configuration order, not completion order.
        results = {
            b.identifier: outcomes[b.identifier] for b in self.backends if b.identifier in outcomes
        }
        return results, failures

    def run(self, context: AnalysisContext) -> ConsensusReport:
        if not self.backends:
            if self.primary is None:
                raise AggregationFailure({})
            # A lone backend is reported as-is, degraded or not.
            result = self._analyze(self.primary, context)
            return ConsensusReport(
                results={self.primary.identifier: result},
                result=result,
                status=ConsensusStatus.NOT_ATTEMPTED,
            )

        results, failures = self._fan_out(context)
        if not results:
            raise AggregationFailure(failures)
        if len(results) == 1:
            (only,) = results.values()
            annotations.warn("Only one consensus backend succeeded; returning its result without synthesis")
            return ConsensusReport(
                results=results,
                result=only,
                status=ConsensusStatus.SINGLE_BACKEND,
                failures=failures,
            )
        return self._synthesize(context, results, failures)

    def _chair_backend(self, results: dict[str, AnalysisResult]) -> BackendConfig:
        if self.chair:
            for backend in self.backends:
                if backend.identifier == self.chair:
                    return backend
            annotations.warn(f"Chair {self.chair} is not a configured backend; using the first success")
        first_id = next(iter(results))
        return next(b for b in self.backends if b.identifier == first_id)

    def _synthesize(
        self,
        context: AnalysisContext,
        results: dict[str, AnalysisResult],
        failures: dict[str, str],
    ) -> ConsensusReport:
        average = sum(r.complexity_score for r in results.values()) / len(results)
        chair = self._chair_backend(results)
        payload = canonical_json_dumps([result_to_payload(r) for r in results.values()])

        error = ""
        output = None
        try:
            executor = ExecuteStrategy(
                self.capability_factory(chair),
                self.config.build_prompt_builder(),
                timeout=self.config.invocation_timeout,
            )
            output = executor.run(StageRequest(PromptStage.CONSENSUS_SYNTHESIS, context, payload=payload))
            if output.degraded:
                error = output.error or "chair output could not be parsed"
        except CapabilityUnavailable as exc:
            error = str(exc)

        if error:
            first = next(iter(results.values()))
            annotations.warn(f"Consensus synthesis failed ({error}); using {first.backend}")
            fallback = replace(
                first,
                notes=first.notes + (f"[Consensus synthesis failed] Showing the review from {first.backend}",),
            )
            return ConsensusReport(
                results=results,
                result=fallback,
                status=ConsensusStatus.SYNTHESIS_FAILED,
                failures=failures,
                chair=chair.identifier,
                synthesis_error=error,
                complexity_average=average,
            )

        merged = self._merge(output.output, results, average, output.usage, chair.identifier)
        return ConsensusReport(
            results=results,
            result=merged,
            status=ConsensusStatus.SYNTHESIZED,
            failures=failures,
            chair=chair.identifier,
            complexity_average=average,
        )

    def _merge(
        self,
        chair_output: ConsensusOutput,
        results: dict[str, AnalysisResult],
        average: float,
        chair_usage,
        chair_id: str,
    ) -> AnalysisResult:
        findings = enforce_critical_findings(
            [replace(f, source=chair_id) for f in chair_output.findings], results
        )
        findings = dedupe_findings(findings)

        recommendations = list(chair_output.recommendations)
        if not recommendations:
            seen = set()
            for result in results.values():
                for rec in result.recommendations:
                    if rec.lower() not in seen:
                        seen.add(rec.lower())
                        recommendations.append(rec)

        usage = chair_usage
        for result in results.values():
            usage = usage + result.usage

        first = next(iter(results.values()))
        return AnalysisResult(
            summary=chair_output.summary or first.summary,
            findings=tuple(findings),
            complexity_score=max(1, min(5, round_half_up(average))),
            recommendations=tuple(recommendations),
            usage=usage,
            file_analyses=first.file_analyses,
            clarity_score=None,
            missing_information=(),
            iterations=max(r.iterations for r in results.values()),
            test_suggestions=first.test_suggestions,
            project_classification=first.project_classification,
            budget_exceeded=any(r.budget_exceeded for r in results.values()),
            fast_path=first.fast_path,
            notes=(f"Consensus of {len(results)} backends: {', '.join(results)}",),
            backend="consensus",
        )
