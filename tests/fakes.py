"""Scripted model capabilities and canned diffs shared by the tests."""

import json
import threading
import time

from diffsage.diff_parser import parse_diff
from diffsage.errors import CapabilityUnavailable
from diffsage.models import AnalysisContext, PromptStage
from diffsage.providers import BackendConfig, ModelCapability, ModelResponse, Provider


STAGE_MARKERS = {
    "You are a senior engineer reviewing one file": PromptStage.FILE_ANALYSIS,
    "You are a security-minded reviewer": PromptStage.RISK_DETECTION,
    "You are writing the review summary": PromptStage.SUMMARY_GENERATION,
    "You are grading a pull request summary": PromptStage.SELF_REFINEMENT,
    "You are the chair of a review council": PromptStage.CONSENSUS_SYNTHESIS,
}

DEFAULT_RESPONSES = {
    PromptStage.FILE_ANALYSIS: json.dumps({"summary": "Updates the module", "complexity": 2, "risks": []}),
    PromptStage.RISK_DETECTION: json.dumps({"risks": []}),
    PromptStage.SUMMARY_GENERATION: json.dumps({"summary": "Adds a feature", "recommendations": ["Add tests"]}),
    PromptStage.SELF_REFINEMENT: json.dumps({"clarity_score": 95, "missing_information": []}),
    PromptStage.CONSENSUS_SYNTHESIS: json.dumps({"summary": "Merged", "complexity": 3, "risks": []}),
}


def stage_of(prompt: str) -> PromptStage:
    for marker, stage in STAGE_MARKERS.items():
        if prompt.startswith(marker):
            return stage
    raise AssertionError(f"Unrecognized prompt: {prompt[:80]!r}")


def make_backend(identifier: str = "fake", **kwargs) -> BackendConfig:
    params = {
        "identifier": identifier,
        "provider": Provider.OPENAI,
        "model": "fake-model",
        "api_key": "test-key",
        "timeout": 5.0,
    }
    params.update(kwargs)
    return BackendConfig(**params)


class ScriptedCapability(ModelCapability):
    """
    Answers by stage. A response may be a string, an exception to raise, a
    list consumed in order (the last entry repeats), or a callable taking
    the prompt.
    """

    def __init__(self, identifier="fake", responses=None, delay=0.0, backend=None, tokens=(100, 50)):
        super().__init__(backend or make_backend(identifier))
        self.responses = dict(DEFAULT_RESPONSES)
        self.responses.update(responses or {})
        self.delay = delay
        self.tokens = tokens
        self.calls: list[tuple[PromptStage, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._counters: dict[PromptStage, int] = {}
        self._lock = threading.Lock()

    def calls_for(self, stage: PromptStage) -> list[str]:
        return [prompt for s, prompt in self.calls if s is stage]

    def _next(self, stage: PromptStage, prompt: str):
        response = self.responses[stage]
        if isinstance(response, list):
            with self._lock:
                idx = self._counters.get(stage, 0)
                self._counters[stage] = idx + 1
            response = response[min(idx, len(response) - 1)]
        if callable(response) and not isinstance(response, Exception):
            response = response(prompt)
        return response

    def invoke(self, prompt_text: str, schema_hint: str = "") -> ModelResponse:
        stage = stage_of(prompt_text)
        with self._lock:
            self.calls.append((stage, prompt_text))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            response = self._next(stage, prompt_text)
            if isinstance(response, Exception):
                raise response
            return ModelResponse(
                text=response,
                input_tokens=self.tokens[0],
                output_tokens=self.tokens[1],
                model="fake-model",
            )
        finally:
            with self._lock:
                self.in_flight -= 1


def unavailable(identifier="fake") -> CapabilityUnavailable:
    return CapabilityUnavailable(identifier, "connection refused")


def file_diff(path: str, added_lines: list[str], context: str = "import os") -> str:
    """A modification diff for one file: one context line plus the added lines."""
    body = "".join(f"+{line}\n" for line in added_lines)
    return (
        f"diff --git a/{path} b/{path}\n"
        f"--- a/{path}\n"
        f"+++ b/{path}\n"
        f"@@ -1,1 +1,{1 + len(added_lines)} @@\n"
        f" {context}\n"
        f"{body}"
    )


def new_file_diff(path: str, lines: list[str]) -> str:
    body = "".join(f"+{line}\n" for line in lines)
    return (
        f"diff --git a/{path} b/{path}\n"
        "new file mode 100644\n"
        "--- /dev/null\n"
        f"+++ b/{path}\n"
        f"@@ -0,0 +1,{len(lines)} @@\n"
        f"{body}"
    )


SECRET_DIFF = file_diff("app.py", ['password = "abc123"', "print(os.name)"])

THREE_FILE_DIFF = (
    file_diff("src/a.py", ["x = 1", "y = 2"])
    + file_diff("src/b.py", ["def helper():", "    return 2"])
    + file_diff("src/c.py", ["z = 3"])
)


def many_file_diff(count: int, lines_per_file: int = 3) -> str:
    return "".join(
        file_diff(f"pkg/mod_{i}.py", [f"value_{i}_{j} = {j}" for j in range(lines_per_file)])
        for i in range(count)
    )


def context_for(diff: str, **kwargs) -> AnalysisContext:
    params = {
        "diff": diff,
        "title": "Add login",
        "files": tuple(parse_diff(diff)),
        "token_budget": 100000,
        "cost_ceiling": 5.0,
    }
    params.update(kwargs)
    return AnalysisContext(**params)
