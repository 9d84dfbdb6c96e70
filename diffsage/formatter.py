"""
Markdown rendering for PR comments and console output.
"""


from .models import AnalysisResult, ConsensusReport, ConsensusStatus, PromptPlan
from .risk_detector import SEVERITY_RANK, Finding


COMMENT_MARKER = "<!-- diffsage-review -->"
PROMPT_PREVIEW_LIMIT = 10000
PROMPT_PREVIEW_LIMIT_VERBOSE = 20000

_SEVERITY_ICON = {"critical": "XX", "warning": "!!", "info": ".."}


def _location(finding: Finding) -> str:
    if not finding.file:
        return ""
    if finding.line:
        return f" (`{finding.file}:{finding.line}`)"
    return f" (`{finding.file}`)"


def _finding_line(finding: Finding) -> str:
    icon = _SEVERITY_ICON.get(finding.severity, "??")
    return f"- [{icon}] **{finding.severity.upper()}** [{finding.category}]{_location(finding)}: {finding.description}"


def _sorted_findings(findings) -> list[Finding]:
    return sorted(findings, key=lambda f: (-SEVERITY_RANK[f.severity], f.file or "", f.line or 0))


_PROJECT_TYPE_LABEL = {
    "business_logic": "Business logic",
    "qa_testing": "QA/testing",
    "mixed": "Mixed",
    "unknown": "Unknown",
}
SIGNAL_PREVIEW = 5


def _insight_lines(test_suggestions, classification) -> list[str]:
    lines = []
    if test_suggestions:
        lines.append("### Suggested Tests")
        lines.append("")
        for s in test_suggestions:
            lines.append(
                f"- `{s.file}` (+{s.added_lines} lines, no test change): add `{s.suggested_test_path}` ({s.framework})"
            )
        lines.append("")

    if classification is not None and classification.project_type != "unknown":
        label = _PROJECT_TYPE_LABEL.get(classification.project_type, classification.project_type)
        lines.append(
            f"<details><summary>Change type: {label} ({classification.confidence:.0%} confidence)</summary>"
        )
        lines.append("")
        signals = list(classification.business_signals) + list(classification.qa_signals)
        for signal in signals[:SIGNAL_PREVIEW]:
            lines.append(f"- {signal}")
        if len(signals) > SIGNAL_PREVIEW:
            lines.append(f"- ...and {len(signals) - SIGNAL_PREVIEW} more")
        if classification.recommendations:
            lines.append("")
            lines.extend(f"- {rec}" for rec in classification.recommendations)
        lines.append("")
        lines.append("</details>")
        lines.append("")
    return lines


def render_result_markdown(result: AnalysisResult, title: str | None = None) -> str:
    """Render an AnalysisResult as a GitHub PR comment (markdown)."""
    heading = "## DiffSage Review"
    if title:
        heading += f": {title}"
    critical = len(result.critical_findings)

    lines = [
        COMMENT_MARKER,
        heading,
        "",
        f"**Complexity:** {result.complexity_score}/5 | **Findings:** {len(result.findings)} "
        f"({critical} critical)",
        "",
    ]

    if result.degraded:
        lines.append("> **Degraded result:** " + "; ".join(result.degraded_reasons))
        lines.append("")
    if result.budget_exceeded:
        lines.append("> Budget reached before the analysis finished; some sections are partial.")
        lines.append("")

    if result.summary:
        lines.append("### Summary")
        lines.append("")
        lines.append(result.summary)
        lines.append("")

    blocking = [f for f in result.findings if f.severity == "critical"]
    other = [f for f in result.findings if f.severity != "critical"]
    if blocking:
        lines.append("### Critical Findings")
        lines.append("")
        lines.extend(_finding_line(f) for f in _sorted_findings(blocking))
        lines.append("")
    if other:
        lines.append(f"<details><summary>Other findings ({len(other)} items)</summary>")
        lines.append("")
        lines.extend(_finding_line(f) for f in _sorted_findings(other))
        lines.append("")
        lines.append("</details>")
        lines.append("")

    if result.recommendations:
        lines.append("### Recommendations")
        lines.append("")
        for i, rec in enumerate(result.recommendations, 1):
            lines.append(f"{i}. {rec}")
        lines.append("")

    lines.extend(_insight_lines(result.test_suggestions, result.project_classification))

    if result.file_analyses:
        lines.append(f"<details><summary>Per-file analysis ({len(result.file_analyses)} files)</summary>")
        lines.append("")
        lines.append("| File | Complexity | Summary |")
        lines.append("|------|------------|---------|")
        for fa in result.file_analyses:
            summary = (fa.summary or ("_unavailable_" if fa.degraded else "")).replace("|", "\\|").replace("\n", " ")
            lines.append(f"| `{fa.path}` | {fa.complexity} | {summary} |")
        lines.append("")
        lines.append("</details>")
        lines.append("")

    if not result.findings and not result.summary:
        lines.append("No issues found.")
        lines.append("")

    if result.notes:
        for note in result.notes:
            lines.append(f"> {note}")
        lines.append("")

    usage = result.usage
    footer = f"*DiffSage | {usage.invocations} model call(s), {usage.total_tokens} tokens, ${usage.cost:.4f}"
    if result.clarity_score is not None:
        footer += f" | clarity {result.clarity_score}/100 after {result.iterations} refinement(s)"
    if result.fast_path:
        footer += " | fast path"
    lines.append("---")
    lines.append(footer + "*")

    return "\n".join(lines)


def render_plan_markdown(plan: PromptPlan, verbose: bool = False) -> str:
    """Render a PromptPlan for a host that will execute the prompts itself."""
    limit = PROMPT_PREVIEW_LIMIT_VERBOSE if verbose else PROMPT_PREVIEW_LIMIT
    lines = [
        "## DiffSage Prompt Plan",
        "",
        f"**{plan.instructions[0]}**" if plan.instructions else "",
        "",
        f"**Files:** {len(plan.context.files)} | **Complexity:** {plan.complexity_score}/5 | "
        f"**Heuristic findings:** {len(plan.heuristic_findings)}",
        "",
    ]

    if plan.heuristic_findings:
        lines.append("### Heuristic Findings")
        lines.append("")
        lines.extend(_finding_line(f) for f in _sorted_findings(plan.heuristic_findings))
        lines.append("")

    lines.extend(_insight_lines(plan.test_suggestions, plan.project_classification))

    for i, descriptor in enumerate(plan.prompts, 1):
        target = f" - `{descriptor.file_path}`" if descriptor.file_path else ""
        lines.append(f"### Step {i}: {descriptor.stage.value}{target}")
        lines.append("")
        lines.append(f"_{descriptor.instructions}_")
        lines.append("")
        prompt = descriptor.prompt
        if len(prompt) > limit:
            prompt = prompt[:limit] + f"\n\n[... {len(descriptor.prompt) - limit} more characters]"
        lines.append("```")
        lines.append(prompt)
        lines.append("```")
        lines.append("")

    if len(plan.instructions) > 1:
        lines.append("### Next Steps")
        lines.append("")
        for i, step in enumerate(plan.instructions[1:], 1):
            lines.append(f"{i}. {step}")
        lines.append("")

    return "\n".join(lines)


def render_consensus_markdown(report: ConsensusReport, title: str | None = None) -> str:
    """Merged result followed by a per-backend table."""
    body = render_result_markdown(report.result, title=title)
    status_label = {
        ConsensusStatus.SYNTHESIZED: f"synthesized by {report.chair}",
        ConsensusStatus.SINGLE_BACKEND: "single backend, no synthesis",
        ConsensusStatus.NOT_ATTEMPTED: "not attempted",
        ConsensusStatus.SYNTHESIS_FAILED: f"synthesis failed ({report.synthesis_error})",
    }
    lines = [
        "",
        f"<details><summary>Council: {len(report.results)} backend(s), "
        f"{status_label.get(report.status, report.status.value)}</summary>",
        "",
        "| Backend | Complexity | Findings | Critical |",
        "|---------|------------|----------|----------|",
    ]
    for backend_id, result in report.results.items():
        lines.append(
            f"| {backend_id} | {result.complexity_score} | {len(result.findings)} | {len(result.critical_findings)} |"
        )
    for backend_id, reason in report.failures.items():
        lines.append(f"| {backend_id} | - | failed: {reason} | - |")
    if report.complexity_average is not None:
        lines.append("")
        lines.append(f"Average complexity: {report.complexity_average:.2f}")
    lines.append("")
    lines.append("</details>")
    return body + "\n" + "\n".join(lines)
