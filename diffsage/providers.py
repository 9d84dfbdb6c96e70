"""
Model capabilities - One class per backend family behind a single ``invoke`` call.

The implementation is picked from the Provider enum when the capability is
built; nothing downstream looks providers up by name.
"""


import os
from enum import Enum
from dataclasses import dataclass

from . import annotations
from .errors import CapabilityUnavailable


class Provider(Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"


DEFAULT_MODELS = {
    Provider.OPENROUTER: "anthropic/claude-sonnet-4",
    Provider.ANTHROPIC: "claude-sonnet-4-20250514",
    Provider.OPENAI: "gpt-4o-mini",
    Provider.OLLAMA: "llama3.3",
}

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

SYSTEM_PROMPT = (
    "You are a meticulous code reviewer. Respond with a single JSON object that "
    "matches this shape and nothing else:\n{schema}"
)


@dataclass(frozen=True)
class BackendConfig:
    """Credentials and identity of one model backend."""
    identifier: str
    provider: Provider
    model: str
    api_key: str = ""
    base_url: str = ""
    timeout: float = 60.0
    max_tokens: int = 2000
    input_cost_per_1k: float = 0.003
    output_cost_per_1k: float = 0.015

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1000.0 * self.input_cost_per_1k
            + output_tokens / 1000.0 * self.output_cost_per_1k
        )


@dataclass(frozen=True)
class ModelResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


class ModelCapability:
    """Sends a prompt to a model. Raises CapabilityUnavailable on any failure."""

    def __init__(self, backend: BackendConfig):
        self.backend = backend

    @property
    def identifier(self) -> str:
        return self.backend.identifier

    def invoke(self, prompt_text: str, schema_hint: str = "") -> ModelResponse:
        raise NotImplementedError


class UnavailableCapability(ModelCapability):
    """Stands in for a backend that could not be built; every invoke fails."""

    def __init__(self, backend: BackendConfig, reason: str):
        super().__init__(backend)
        self.reason = reason

    def invoke(self, prompt_text: str, schema_hint: str = "") -> ModelResponse:
        raise CapabilityUnavailable(self.backend.identifier, self.reason)


class OpenAICompatibleCapability(ModelCapability):
    """OpenAI, OpenRouter and Ollama all speak the chat-completions API."""

    def _client(self):
        import openai

        backend = self.backend
        if backend.provider is Provider.OLLAMA:
            base_url = (backend.base_url or "http://localhost:11434").rstrip("/")
            if not base_url.endswith("/v1"):
                base_url = f"{base_url}/v1"
            # Ollama doesn't require a real key
            return openai.OpenAI(api_key="ollama", base_url=base_url, timeout=backend.timeout)
        if backend.provider is Provider.OPENROUTER:
            return openai.OpenAI(
                api_key=backend.api_key,
                base_url=backend.base_url or OPENROUTER_BASE_URL,
                timeout=backend.timeout,
            )
        kwargs = {"api_key": backend.api_key, "timeout": backend.timeout}
        if backend.base_url:
            kwargs["base_url"] = backend.base_url
        return openai.OpenAI(**kwargs)

    def invoke(self, prompt_text: str, schema_hint: str = "") -> ModelResponse:
        backend = self.backend
        messages = []
        if schema_hint:
            messages.append({"role": "system", "content": SYSTEM_PROMPT.format(schema=schema_hint)})
        messages.append({"role": "user", "content": prompt_text})

        extra = {}
        if backend.provider is Provider.OPENROUTER:
            extra["extra_headers"] = {"X-Title": "diffsage"}

        try:
            response = self._client().chat.completions.create(
                model=backend.model,
                messages=messages,
                max_tokens=backend.max_tokens,
                **extra,
            )
        except Exception as exc:
            raise CapabilityUnavailable(backend.identifier, str(exc)) from exc

        if not response.choices:
            raise CapabilityUnavailable(backend.identifier, "empty response")
        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=response.choices[0].message.content or "",
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            model=getattr(response, "model", "") or backend.model,
        )


class AnthropicCapability(ModelCapability):

    def invoke(self, prompt_text: str, schema_hint: str = "") -> ModelResponse:
        import anthropic

        backend = self.backend
        kwargs = {}
        if schema_hint:
            kwargs["system"] = SYSTEM_PROMPT.format(schema=schema_hint)
        try:
            client = anthropic.Anthropic(api_key=backend.api_key, timeout=backend.timeout)
            response = client.messages.create(
                model=backend.model,
                max_tokens=backend.max_tokens,
                messages=[{"role": "user", "content": prompt_text}],
                **kwargs,
            )
        except Exception as exc:
            raise CapabilityUnavailable(backend.identifier, str(exc)) from exc

        text = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=text,
            input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            model=getattr(response, "model", "") or backend.model,
        )


_CAPABILITY_CLASSES = {
    Provider.OPENAI: OpenAICompatibleCapability,
    Provider.OPENROUTER: OpenAICompatibleCapability,
    Provider.OLLAMA: OpenAICompatibleCapability,
    Provider.ANTHROPIC: AnthropicCapability,
}


def create_capability(backend: BackendConfig) -> ModelCapability:
    """Build the capability for a backend. Missing credentials fail here, not mid-run."""
    if backend.provider is not Provider.OLLAMA and not backend.api_key:
        raise CapabilityUnavailable(backend.identifier, f"no API key configured for {backend.provider.value}")
    return _CAPABILITY_CLASSES[backend.provider](backend)


def build_capability(backend: BackendConfig, factory=create_capability) -> ModelCapability:
    """Like ``factory(backend)``, but a backend that cannot be built becomes an UnavailableCapability."""
    try:
        return factory(backend)
    except CapabilityUnavailable as exc:
        annotations.warn(f"Backend {backend.identifier} unavailable: {exc.reason}")
        return UnavailableCapability(backend, exc.reason)


def parse_model_spec(model_spec: str, available: set[Provider] | None = None) -> tuple[Provider, str]:
    """
    Parse a model spec string into (provider, model).

    Formats:
      "anthropic:claude-3-haiku" -> explicit provider
      "openrouter/google/gemini-pro" -> explicit provider, rest is the model
      "claude-3-haiku" -> inferred from the name, falling back to OpenRouter
    """
    available = available if available is not None else set(Provider)
    if ":" in model_spec:
        prefix, model = model_spec.split(":", 1)
        try:
            return Provider(prefix.strip().lower()), model.strip()
        except ValueError:
            pass

    if "/" in model_spec:
        prefix, rest = model_spec.split("/", 1)
        try:
            return Provider(prefix.lower()), rest
        except ValueError:
            # "vendor/model" is an OpenRouter-style name
            return Provider.OPENROUTER, model_spec

    model = model_spec.lower()
    if "claude" in model and Provider.ANTHROPIC in available:
        return Provider.ANTHROPIC, model_spec
    if ("gpt" in model or model.startswith("o1") or model.startswith("o3")) and Provider.OPENAI in available:
        return Provider.OPENAI, model_spec
    ollama_models = ["llama", "mistral", "codellama", "phi", "qwen", "mixtral", "gemma"]
    if any(m in model for m in ollama_models) and Provider.OLLAMA in available:
        return Provider.OLLAMA, model_spec
    if Provider.OPENROUTER in available:
        return Provider.OPENROUTER, model_spec
    return Provider.OLLAMA, model_spec


def discover_backends(env=None, timeout: float = 60.0) -> list[BackendConfig]:
    """
    Build backend configs from API keys in the environment.

    Priority: OpenRouter (most flexible) > Anthropic > OpenAI > Ollama (local).
    One backend per available provider, so several keys give a council.
    """
    env = os.environ if env is None else env

    def lookup(*names: str) -> str:
        for name in names:
            value = env.get(name, "")
            if value:
                return value
        return ""

    backends = []
    openrouter_key = lookup("INPUT_OPENROUTER_API_KEY", "OPENROUTER_API_KEY")
    if openrouter_key:
        backends.append(BackendConfig(
            identifier="openrouter",
            provider=Provider.OPENROUTER,
            model=lookup("INPUT_OPENROUTER_MODEL") or DEFAULT_MODELS[Provider.OPENROUTER],
            api_key=openrouter_key,
            timeout=timeout,
        ))
    anthropic_key = lookup("INPUT_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY")
    if anthropic_key:
        backends.append(BackendConfig(
            identifier="anthropic",
            provider=Provider.ANTHROPIC,
            model=lookup("INPUT_ANTHROPIC_MODEL") or DEFAULT_MODELS[Provider.ANTHROPIC],
            api_key=anthropic_key,
            timeout=timeout,
        ))
    openai_key = lookup("INPUT_OPENAI_API_KEY", "OPENAI_API_KEY")
    if openai_key:
        backends.append(BackendConfig(
            identifier="openai",
            provider=Provider.OPENAI,
            model=lookup("INPUT_OPENAI_MODEL") or DEFAULT_MODELS[Provider.OPENAI],
            api_key=openai_key,
            timeout=timeout,
        ))
    ollama_host = lookup("INPUT_OLLAMA_HOST", "OLLAMA_HOST")
    if ollama_host:
        backends.append(BackendConfig(
            identifier="ollama",
            provider=Provider.OLLAMA,
            model=lookup("INPUT_OLLAMA_MODEL") or DEFAULT_MODELS[Provider.OLLAMA],
            base_url=ollama_host,
            timeout=timeout,
            input_cost_per_1k=0.0,
            output_cost_per_1k=0.0,
        ))
    return backends
