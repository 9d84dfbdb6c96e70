"""
Stage Executor - Runs one analysis stage, either against a model or as a prompt description.

Both strategies render through the same PromptBuilder, so the text a host
receives in prompt-only mode is exactly what a direct run would send.
"""


import json
import concurrent.futures
from dataclasses import dataclass, field
from typing import Any

from . import annotations
from .diff_parser import FileChange
from .errors import CapabilityUnavailable
from .models import (
    AnalysisContext,
    PromptDescriptor,
    PromptStage,
    ResourceUsage,
    StateSnapshot,
)
from .prompts import STAGE_INSTRUCTIONS, PromptBuilder
from .providers import ModelCapability
from .schemas import STAGE_SCHEMAS, default_output, parse_stage_output


DEFAULT_TIMEOUT = 60.0


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token)."""
    return max(1, len(text or "") // 4)


@dataclass(frozen=True)
class StageRequest:
    stage: PromptStage
    context: AnalysisContext
    snapshot: StateSnapshot = field(default_factory=StateSnapshot)
    change: FileChange | None = None
    payload: str = ""

    @property
    def file_path(self) -> str | None:
        return self.change.path if self.change else None


@dataclass(frozen=True)
class StageOutput:
    """Outcome of an executed stage. ``output`` always matches the stage schema."""
    stage: PromptStage
    output: Any
    parsed: bool = True
    failed: bool = False
    error: str = ""
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    file_path: str | None = None

    @property
    def degraded(self) -> bool:
        return self.failed or not self.parsed


class StageExecutor:
    """Common contract: ``run(request)`` returns a StageOutput or a PromptDescriptor."""

    def __init__(self, builder: PromptBuilder | None = None):
        self.builder = builder or PromptBuilder()

    def render(self, request: StageRequest) -> str:
        return self.builder.render(
            request.stage,
            request.context,
            snapshot=request.snapshot,
            change=request.change,
            payload=request.payload,
        )

    def run(self, request: StageRequest):
        raise NotImplementedError


class ExecuteStrategy(StageExecutor):
    """Invokes a model capability with a deadline and parses its answer."""

    def __init__(
        self,
        capability: ModelCapability,
        builder: PromptBuilder | None = None,
        timeout: float | None = None,
    ):
        super().__init__(builder)
        self.capability = capability
        backend = getattr(capability, "backend", None)
        self.timeout = timeout or getattr(backend, "timeout", None) or DEFAULT_TIMEOUT

    @property
    def identifier(self) -> str:
        return getattr(self.capability, "identifier", "model")

    def _invoke(self, prompt: str, schema_hint: str):
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = pool.submit(self.capability.invoke, prompt, schema_hint)
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise CapabilityUnavailable(self.identifier, f"timed out after {self.timeout:g}s") from exc
        except CapabilityUnavailable:
            raise
        except Exception as exc:
            raise CapabilityUnavailable(self.identifier, str(exc)) from exc
        finally:
            # A hung call keeps its worker thread; the run does not wait for it.
            pool.shutdown(wait=False)

    def _cost(self, input_tokens: int, output_tokens: int) -> float:
        backend = getattr(self.capability, "backend", None)
        if backend is None:
            return 0.0
        return backend.cost(input_tokens, output_tokens)

    def run(self, request: StageRequest) -> StageOutput:
        stage = request.stage
        prompt = self.render(request)
        schema_hint = json.dumps(STAGE_SCHEMAS[stage].example)

        try:
            response = self._invoke(prompt, schema_hint)
        except CapabilityUnavailable as exc:
            annotations.warn(f"{stage.value} failed on {self.identifier}: {exc}")
            return StageOutput(
                stage=stage,
                output=default_output(stage, request.file_path),
                parsed=False,
                failed=True,
                error=str(exc),
                usage=ResourceUsage(invocations=1, failed_invocations=1),
                file_path=request.file_path,
            )

        input_tokens = response.input_tokens or estimate_tokens(prompt)
        output_tokens = response.output_tokens or estimate_tokens(response.text)
        result = parse_stage_output(stage, response.text, request.file_path)
        if not result.ok:
            annotations.warn(f"Unparseable {stage.value} output from {self.identifier}: {result.error}")
        elif result.normalized:
            annotations.debug(f"{stage.value} output from {self.identifier} needed normalization")

        return StageOutput(
            stage=stage,
            output=result.output,
            parsed=result.ok,
            error=result.error,
            usage=ResourceUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=self._cost(input_tokens, output_tokens),
                invocations=1,
                parse_defects=0 if result.ok else 1,
            ),
            file_path=request.file_path,
        )


class PromptOnlyStrategy(StageExecutor):
    """Describes the stage for a host to execute; never contacts a model."""

    def run(self, request: StageRequest) -> PromptDescriptor:
        schema = STAGE_SCHEMAS[request.stage]
        return PromptDescriptor(
            stage=request.stage,
            prompt=self.render(request),
            schema=schema.schema,
            instructions=STAGE_INSTRUCTIONS[request.stage],
            default_output=dict(schema.default),
            file_path=request.file_path,
        )
