#!/usr/bin/env python3
"""
DiffSage GitHub Action Entrypoint

Fetches the PR diff, runs the analysis (single backend or consensus), and
publishes the outcome as a PR comment, a JSON file and step outputs.
"""

import json
import os
import sys
import hashlib
from pathlib import Path
from typing import Optional

from github import Github
from github.PullRequest import PullRequest

from diffsage import engine
from diffsage.config import get_env, load_config, parse_bool
from diffsage.errors import AggregationFailure
from diffsage.formatter import (
    COMMENT_MARKER,
    render_consensus_markdown,
    render_plan_markdown,
    render_result_markdown,
)
from diffsage.models import ConsensusReport, PromptPlan
from diffsage.serialization import canonical_json_dumps, result_to_dict


def resolve_path(raw: Optional[str], workspace: Path) -> Optional[Path]:
    """Resolve a possibly-relative path against the GitHub workspace."""
    if not raw:
        return None
    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = workspace / candidate
    return candidate


def parse_mode_flags(raw: str) -> Optional[list[str]]:
    """"summary,risks" -> ["summary", "risks"]; empty means everything."""
    flags = [part.strip() for part in raw.split(",") if part.strip()]
    return flags or None


def plan_to_dict(plan: PromptPlan) -> dict:
    return {
        "mode": plan.mode,
        "complexity": plan.complexity_score,
        "fast_path": plan.fast_path,
        "instructions": list(plan.instructions),
        "heuristic_findings": [
            {"type": f.category, "severity": f.severity, "description": f.description,
             "file": f.file, "line": f.line}
            for f in plan.heuristic_findings
        ],
        "prompts": [
            {"stage": d.stage.value, "file": d.file_path, "prompt": d.prompt,
             "schema": d.schema, "instructions": d.instructions}
            for d in plan.prompts
        ],
        "test_suggestions": list(plan.test_suggestions),
        "project_classification": plan.project_classification,
    }


def main():
    """Main entrypoint for the action."""
    github_token = get_env("INPUT_GITHUB_TOKEN")
    post_comment = parse_bool(get_env("INPUT_POST_COMMENT", "true"))
    fail_on_critical = parse_bool(get_env("INPUT_FAIL_ON_CRITICAL", "false"))
    quick = parse_bool(get_env("INPUT_QUICK", "false"))
    verbose = parse_bool(get_env("INPUT_VERBOSE", "false"))
    mode_flags = parse_mode_flags(get_env("INPUT_MODE", ""))

    workspace = Path(get_env("GITHUB_WORKSPACE", ".")).resolve()
    config_path = resolve_path(get_env("INPUT_CONFIG"), workspace)
    output_path = resolve_path(get_env("INPUT_OUTPUT_PATH"), workspace)

    github_event_path = get_env("GITHUB_EVENT_PATH")
    github_repository = get_env("GITHUB_REPOSITORY")

    if not github_token:
        print("::error::GitHub token is required")
        sys.exit(1)

    try:
        config = load_config(path=config_path, repo_root=workspace)
    except (FileNotFoundError, ValueError) as exc:
        print(f"::error::Failed to load configuration: {exc}")
        sys.exit(1)

    with open(github_event_path) as f:
        event = json.load(f)

    pr_number = event.get("pull_request", {}).get("number")
    if not pr_number:
        print("::notice::Not a pull request event, skipping analysis")
        sys.exit(0)

    print("::group::DiffSage Analysis")
    print(f"Repository: {github_repository}")
    print(f"PR: #{pr_number}")
    print(f"Consensus: {config.consensus.enabled}")
    print(f"Max iterations: {config.max_iterations} (clarity threshold {config.clarity_threshold})")
    print("::endgroup::")

    gh = Github(github_token)
    repo = gh.get_repo(github_repository)
    pr = repo.get_pull(pr_number)

    print("::group::Fetching PR diff")
    diff_content = fetch_pr_diff(pr)
    print(f"Diff size: {len(diff_content)} bytes")
    print("::endgroup::")

    options = {"quick": quick, "repository": github_repository, "pr_number": pr_number}

    print("::group::Analyzing changes")
    report: ConsensusReport | None = None
    if config.consensus.enabled:
        try:
            report = engine.run_consensus(diff_content, title=pr.title, mode_flags=mode_flags,
                                          options=options, config=config)
        except AggregationFailure as exc:
            print(f"::error::{exc}")
            sys.exit(1)
        outcome = report.result
        print(f"Consensus status: {report.status.value}")
        print(f"Backends: {', '.join(report.results) or 'none'}")
    else:
        outcome = engine.run(diff_content, title=pr.title, mode_flags=mode_flags,
                             options=options, config=config)

    if isinstance(outcome, PromptPlan):
        print(f"Prompts: {len(outcome.prompts)}")
        print(f"Heuristic findings: {len(outcome.heuristic_findings)}")
        body = render_plan_markdown(outcome, verbose=verbose)
        payload = plan_to_dict(outcome)
        findings = list(outcome.heuristic_findings)
        degraded = False
    else:
        print(f"Files analyzed: {len(outcome.file_analyses)}")
        print(f"Complexity: {outcome.complexity_score}/5")
        print(f"Findings: {len(outcome.findings)} ({len(outcome.critical_findings)} critical)")
        print(f"Tokens: {outcome.usage.total_tokens} (${outcome.usage.cost:.4f})")
        if report is not None:
            body = render_consensus_markdown(report, title=pr.title)
        else:
            body = render_result_markdown(outcome, title=pr.title)
        payload = result_to_dict(outcome)
        findings = list(outcome.findings)
        degraded = outcome.degraded
        for reason in outcome.degraded_reasons:
            print(f"::warning::{reason}")
    print("::endgroup::")

    critical_count = sum(1 for f in findings if f.severity == "critical")
    complexity = outcome.complexity_score

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(canonical_json_dumps(payload))
            f.write("\n")
        print(f"Result saved: {output_path}")

    set_output("complexity", str(complexity))
    set_output("findings_count", str(len(findings)))
    set_output("critical_count", str(critical_count))
    set_output("degraded", str(degraded).lower())
    set_output("mode", outcome.mode)

    if post_comment:
        print("::group::Posting PR comment")
        post_or_update_comment(pr, body)
        print("::endgroup::")

    if critical_count:
        print(f"::warning::DiffSage: {critical_count} critical finding(s)")
        if fail_on_critical:
            sys.exit(1)
    else:
        print(f"::notice::DiffSage: no critical findings (complexity {complexity}/5)")

    sys.exit(0)


def post_or_update_comment(pr: PullRequest, body: str) -> None:
    """Edit the previous DiffSage comment on the PR, or create one."""
    for comment in pr.get_issue_comments():
        if COMMENT_MARKER in (comment.body or ""):
            comment.edit(body)
            print(f"Updated comment {comment.id}")
            return
    pr.create_issue_comment(body)
    print("Comment posted")


def fetch_pr_diff(pr: PullRequest) -> str:
    """Fetch the diff content for a PR."""
    stub_path = os.environ.get("STUB_DIFF_PATH")
    if stub_path:
        path = Path(stub_path)
        if not path.is_absolute():
            workspace = Path(os.environ.get("GITHUB_WORKSPACE", ".")).resolve()
            path = workspace / path
        if path.exists():
            return path.read_text(encoding="utf-8")
        print(f"::error::STUB_DIFF_PATH set but file not found: {path}")
        sys.exit(1)

    import requests

    token = os.environ.get("INPUT_GITHUB_TOKEN") or os.environ.get("GITHUB_TOKEN")
    headers = {"Accept": "application/vnd.github.v3.diff"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    response = requests.get(pr.diff_url, headers=headers, timeout=30)
    response.raise_for_status()
    return response.text


def set_output(name: str, value: str):
    """Set GitHub Actions output."""
    output_file = os.environ.get("GITHUB_OUTPUT")
    text = str(value)
    if output_file:
        delimiter = f"EOF_{hashlib.sha256(f'{name}:{text}'.encode()).hexdigest()[:16]}"
        with open(output_file, "a", encoding="utf-8") as f:
            f.write(f"{name}<<{delimiter}\n")
            f.write(f"{text}\n")
            f.write(f"{delimiter}\n")
    else:
        escaped = text.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")
        print(f"::set-output name={name}::{escaped}")


if __name__ == "__main__":
    main()
