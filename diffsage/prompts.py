"""
Prompt Builder - Renders stage prompts from templates.

Long fields are cut to their character budget before they are substituted,
so no template ever sees an oversized value. The same builder is shared by
the execute and prompt-only paths; identical inputs give identical text.
"""


import json
from dataclasses import dataclass
from string import Template

from .diff_parser import FileChange
from .models import AnalysisContext, PromptStage, StateSnapshot
from .risk_detector import Finding
from .schemas import STAGE_SCHEMAS


TRUNCATION_MARKER = "\n[... truncated]"


@dataclass(frozen=True)
class PromptLimits:
    """Character budgets for fields embedded in prompts."""
    title_chars: int = 200
    diff_chars: int = 6000
    hunk_chars: int = 4000
    arch_docs_chars: int = 3000
    summary_chars: int = 2000
    file_summaries_chars: int = 4000
    findings_chars: int = 3000
    list_chars: int = 1500
    results_chars: int = 12000

    def validate(self) -> None:
        for name, value in self.__dict__.items():
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"prompts.{name} must be a positive integer")


def truncate(text: str, limit: int) -> str:
    """Cut text to at most ``limit`` characters, marker included."""
    text = text or ""
    if len(text) <= limit:
        return text
    if limit <= len(TRUNCATION_MARKER):
        return text[:limit]
    return text[:limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


STAGE_INSTRUCTIONS = {
    PromptStage.FILE_ANALYSIS: "Analyze this single file and respond with JSON only.",
    PromptStage.RISK_DETECTION: "Review the whole diff for risks and respond with JSON only.",
    PromptStage.SUMMARY_GENERATION: (
        "Write the overall summary using the outputs of the file-analysis and "
        "risk-detection steps, and respond with JSON only."
    ),
    PromptStage.SELF_REFINEMENT: (
        "Grade the summary produced by the previous step. If clarity_score is below "
        "the threshold, run summary generation again addressing missing_information."
    ),
    PromptStage.CONSENSUS_SYNTHESIS: "Merge the reviews into one result and respond with JSON only.",
}


FILE_ANALYSIS_TEMPLATE = Template("""You are a senior engineer reviewing one file from a pull request.

## Pull Request

Title: $title
$hints
## File

Path: $path
Status: $status (+$added/-$removed, $language)

```diff
$hunks
```
$arch_docs
## Task

Summarize what changed in this file, rate its complexity from 1 (trivial) to 5 (very complex),
and list concrete risks (security, quality, breaking changes) with line numbers where possible.
Do not invent risks: an empty list is a valid answer.

## Required Response (JSON only)

$schema""")


RISK_DETECTION_TEMPLATE = Template("""You are a security-minded reviewer triaging a pull request diff.

## Pull Request

Title: $title
$hints
## Diff

```diff
$diff
```

## Already Flagged by Static Rules

$findings

## File Notes

$file_summaries
$arch_docs
## Task

Report risks the static rules missed: exploitable security issues, correctness problems and
breaking changes to public interfaces. Do not repeat the findings listed above.
Use severity "critical" only for issues that must block the merge.

## Required Response (JSON only)

$schema""")


SUMMARY_TEMPLATE = Template("""You are writing the review summary for a pull request.

## Pull Request

Title: $title
Files changed: $file_count (+$added/-$removed)
Complexity: $complexity/5
$hints
## File Notes

$file_summaries

## Risks

$findings
$refinement
## Task

Summarize the change as a whole: what it does, how the pieces fit together and what a reviewer
should focus on. Recommendations must be concrete and actionable.

## Required Response (JSON only)

$schema""")


SELF_REFINEMENT_TEMPLATE = Template("""You are grading a pull request summary before it is published.

## Pull Request

Title: $title
Files changed: $file_count (+$added/-$removed)
Complexity: $complexity/5

## File Notes

$file_summaries

## Risks

$findings

## Summary Under Review (iteration $iteration)

$summary

## Recommendations Under Review

$recommendations

## Task

Score how clearly and completely the summary explains the change from 0 (useless) to 100
(nothing to add). List every piece of information a reviewer would still be missing.

## Required Response (JSON only)

$schema""")


CONSENSUS_TEMPLATE = Template("""You are the chair of a review council. Several independent reviewers analyzed the same
pull request. Merge their reviews into a single verdict.

## Pull Request

Title: $title

## Reviews

```json
$reviews
```

## Rules

1. complexity is the average of the reviewers' complexity scores, rounded.
2. Include every risk any reviewer rated "critical", with its severity unchanged.
3. The summary states where the reviewers agree and where they differ.
4. Merge recommendations, dropping duplicates.

## Required Response (JSON only)

$schema""")


def render_schema(stage: PromptStage) -> str:
    return json.dumps(STAGE_SCHEMAS[stage].example, indent=4)


def render_findings(findings: tuple[Finding, ...] | list[Finding]) -> str:
    if not findings:
        return "None."
    lines = []
    for f in findings:
        loc = f.file or "general"
        if f.line:
            loc = f"{loc}:{f.line}"
        lines.append(f"- [{f.severity}/{f.category}] {loc}: {f.description} ({f.provenance})")
    return "\n".join(lines)


def render_file_summaries(file_summaries: tuple[tuple[str, str], ...]) -> str:
    if not file_summaries:
        return "None yet."
    return "\n".join(f"- {path}: {summary or '(no summary)'}" for path, summary in file_summaries)


def render_list(items) -> str:
    if not items:
        return "None."
    return "\n".join(f"- {item}" for item in items)


class PromptBuilder:
    """One method per stage; ``render`` dispatches on the stage enum."""

    def __init__(self, limits: PromptLimits | None = None):
        self.limits = limits or PromptLimits()

    def _common(self, context: AnalysisContext) -> dict[str, str]:
        hints = []
        if context.language:
            hints.append(f"Language: {context.language}")
        if context.framework:
            hints.append(f"Framework: {context.framework}")
        arch_docs = ""
        if context.arch_docs:
            docs = truncate(context.arch_docs, self.limits.arch_docs_chars)
            arch_docs = f"\n## Architecture Notes\n\n{docs}\n"
        return {
            "title": truncate(context.title or "(untitled)", self.limits.title_chars),
            "hints": "".join(f"{h}\n" for h in hints),
            "arch_docs": arch_docs,
        }

    def _totals(self, context: AnalysisContext, snapshot: StateSnapshot) -> dict[str, str]:
        return {
            "file_count": str(len(context.files)),
            "added": str(sum(f.added for f in context.files)),
            "removed": str(sum(f.removed for f in context.files)),
            "complexity": str(snapshot.complexity_score) if snapshot.complexity_score else "unknown",
        }

    def file_analysis(self, context: AnalysisContext, change: FileChange) -> str:
        return FILE_ANALYSIS_TEMPLATE.substitute(
            self._common(context),
            path=change.path,
            status=change.status,
            added=change.added,
            removed=change.removed,
            language=change.language,
            hunks=truncate(change.hunk_text, self.limits.hunk_chars),
            schema=render_schema(PromptStage.FILE_ANALYSIS),
        )

    def risk_detection(self, context: AnalysisContext, snapshot: StateSnapshot) -> str:
        return RISK_DETECTION_TEMPLATE.substitute(
            self._common(context),
            diff=truncate(context.diff, self.limits.diff_chars),
            findings=truncate(render_findings(snapshot.findings), self.limits.findings_chars),
            file_summaries=truncate(
                render_file_summaries(snapshot.file_summaries), self.limits.file_summaries_chars
            ),
            schema=render_schema(PromptStage.RISK_DETECTION),
        )

    def summary_generation(self, context: AnalysisContext, snapshot: StateSnapshot) -> str:
        refinement = ""
        if snapshot.iteration > 0 and (snapshot.summary or snapshot.missing_information):
            previous = truncate(snapshot.summary, self.limits.summary_chars)
            missing = truncate(render_list(snapshot.missing_information), self.limits.list_chars)
            refinement = (
                f"\n## Previous Summary (iteration {snapshot.iteration})\n\n{previous or 'None.'}\n"
                f"\n## Missing Information To Address\n\n{missing}\n"
            )
        return SUMMARY_TEMPLATE.substitute(
            {**self._common(context), **self._totals(context, snapshot)},
            file_summaries=truncate(
                render_file_summaries(snapshot.file_summaries), self.limits.file_summaries_chars
            ),
            findings=truncate(render_findings(snapshot.findings), self.limits.findings_chars),
            refinement=refinement,
            schema=render_schema(PromptStage.SUMMARY_GENERATION),
        )

    def self_refinement(self, context: AnalysisContext, snapshot: StateSnapshot) -> str:
        return SELF_REFINEMENT_TEMPLATE.substitute(
            {**self._common(context), **self._totals(context, snapshot)},
            file_summaries=truncate(
                render_file_summaries(snapshot.file_summaries), self.limits.file_summaries_chars
            ),
            findings=truncate(render_findings(snapshot.findings), self.limits.findings_chars),
            iteration=snapshot.iteration,
            summary=truncate(snapshot.summary or "(empty)", self.limits.summary_chars),
            recommendations=truncate(render_list(snapshot.recommendations), self.limits.list_chars),
            schema=render_schema(PromptStage.SELF_REFINEMENT),
        )

    def consensus_synthesis(self, context: AnalysisContext, reviews_json: str) -> str:
        return CONSENSUS_TEMPLATE.substitute(
            self._common(context),
            reviews=truncate(reviews_json, self.limits.results_chars),
            schema=render_schema(PromptStage.CONSENSUS_SYNTHESIS),
        )

    def render(
        self,
        stage: PromptStage,
        context: AnalysisContext,
        snapshot: StateSnapshot | None = None,
        change: FileChange | None = None,
        payload: str = "",
    ) -> str:
        snapshot = snapshot or StateSnapshot()
        if stage is PromptStage.FILE_ANALYSIS:
            if change is None:
                raise ValueError("file_analysis prompts need a file")
            return self.file_analysis(context, change)
        if stage is PromptStage.RISK_DETECTION:
            return self.risk_detection(context, snapshot)
        if stage is PromptStage.SUMMARY_GENERATION:
            return self.summary_generation(context, snapshot)
        if stage is PromptStage.SELF_REFINEMENT:
            return self.self_refinement(context, snapshot)
        if stage is PromptStage.CONSENSUS_SYNTHESIS:
            return self.consensus_synthesis(context, payload)
        raise ValueError(f"Unknown stage: {stage}")
