"""
Engine configuration - YAML file plus INPUT_* / DIFFSAGE_* environment overrides.

The config is read once per run and never mutated; every dataclass here is
frozen. Unknown keys in the YAML file are rejected rather than ignored.
"""


import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .complexity import ComplexityScorer, ComplexityThresholds
from .diff_parser import DEFAULT_EXCLUDE_PATTERNS
from .models import PromptStage
from .prompts import PromptBuilder, PromptLimits
from .providers import (
    DEFAULT_MODELS,
    BackendConfig,
    Provider,
    discover_backends,
    parse_model_spec,
)
from .risk_detector import CATEGORIES, SEVERITIES, RiskDetector, DEFAULT_RULES


CONFIG_CANDIDATES = (
    ".diffsage.yaml",
    ".diffsage.yml",
    ".github/diffsage.yaml",
    ".github/diffsage.yml",
)

WORKFLOW_STAGES = (
    PromptStage.FILE_ANALYSIS,
    PromptStage.RISK_DETECTION,
    PromptStage.SUMMARY_GENERATION,
    PromptStage.SELF_REFINEMENT,
)

_PROVIDER_KEY_ENV = {
    Provider.OPENROUTER: ("INPUT_OPENROUTER_API_KEY", "OPENROUTER_API_KEY"),
    Provider.ANTHROPIC: ("INPUT_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    Provider.OPENAI: ("INPUT_OPENAI_API_KEY", "OPENAI_API_KEY"),
    Provider.OLLAMA: ("INPUT_OLLAMA_HOST", "OLLAMA_HOST"),
}


def get_env(name: str, default: str = "", env=None) -> str:
    """Get environment variable with default."""
    return (os.environ if env is None else env).get(name, default)


def parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes")


def parse_float(value: str, default: float) -> float:
    """Parse a float from string with fallback."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_int(value: str, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class FastPathConfig:
    """Inputs below both limits skip self-evaluation."""
    max_files: int = 5
    max_diff_chars: int = 10000


@dataclass(frozen=True)
class RiskPolicy:
    disabled_rules: tuple[str, ...] = ()
    severity_overrides: dict[str, str] = field(default_factory=dict)
    custom_rules: tuple[dict, ...] = ()


@dataclass(frozen=True)
class ConsensusConfig:
    enabled: bool = False
    parallelism: int = 3
    chair: str | None = None
    backends: tuple[BackendConfig, ...] = ()


@dataclass(frozen=True)
class EngineConfig:
    max_iterations: int = 3
    clarity_threshold: int = 80
    file_parallelism: int = 4
    token_budget: int = 100000
    cost_ceiling: float = 5.0
    invocation_timeout: float = 60.0
    enabled_stages: frozenset = frozenset(WORKFLOW_STAGES)
    fast_path: FastPathConfig = field(default_factory=FastPathConfig)
    prompts: PromptLimits = field(default_factory=PromptLimits)
    complexity: ComplexityThresholds = field(default_factory=ComplexityThresholds)
    risk: RiskPolicy = field(default_factory=RiskPolicy)
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)

    def validate(self) -> None:
        if self.max_iterations < 0:
            raise ValueError("workflow.max_iterations must be >= 0")
        if not 0 <= self.clarity_threshold <= 100:
            raise ValueError("workflow.clarity_threshold must be between 0 and 100")
        if self.file_parallelism < 1:
            raise ValueError("workflow.file_parallelism must be >= 1")
        if self.token_budget <= 0:
            raise ValueError("budget.token_budget must be > 0")
        if self.cost_ceiling <= 0:
            raise ValueError("budget.cost_ceiling must be > 0")
        if self.invocation_timeout <= 0:
            raise ValueError("budget.invocation_timeout must be > 0")
        if self.fast_path.max_files < 0 or self.fast_path.max_diff_chars < 0:
            raise ValueError("workflow.fast_path limits must be >= 0")
        if self.consensus.parallelism < 1:
            raise ValueError("consensus.parallelism must be >= 1")
        self.prompts.validate()
        self.complexity.validate()

    def stage_enabled(self, stage: PromptStage) -> bool:
        return stage in self.enabled_stages

    def quick(self) -> "EngineConfig":
        """Reduced budget and no refinement loop."""
        return replace(
            self,
            max_iterations=0,
            token_budget=min(self.token_budget, 50000),
            cost_ceiling=min(self.cost_ceiling, 2.0),
        )

    def build_detector(self) -> RiskDetector:
        return RiskDetector(
            disabled_rules=self.risk.disabled_rules,
            severity_overrides=self.risk.severity_overrides,
            custom_rules=list(self.risk.custom_rules),
        )

    def build_scorer(self) -> ComplexityScorer:
        return ComplexityScorer(self.complexity)

    def build_prompt_builder(self) -> PromptBuilder:
        return PromptBuilder(self.prompts)


def _check_keys(section: Any, allowed: set[str], name: str, path: Path) -> dict:
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"{name} in {path} must be a map")
    unknown = sorted(set(section.keys()) - allowed)
    if unknown:
        raise ValueError(
            f"Unsupported key(s) in {name} of {path}: {', '.join(map(str, unknown))}. "
            f"Allowed: {', '.join(sorted(allowed))}."
        )
    return section


def _int(value: Any, name: str, path: Path) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} in {path} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} in {path} must be an integer") from exc


def _float(value: Any, name: str, path: Path) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} in {path} must be a number") from exc


def _str_list(value: Any, name: str, path: Path) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{name} in {path} must be a list[str]")
    return tuple(value)


def _thresholds(value: Any, name: str, path: Path) -> tuple[int, ...]:
    if not isinstance(value, list):
        raise ValueError(f"{name} in {path} must be a list of integers")
    return tuple(_int(v, name, path) for v in value)


def _parse_backend(raw: Any, idx: int, path: Path, env, timeout: float) -> BackendConfig:
    entry = _check_keys(
        raw,
        {"id", "provider", "model", "api_key_env", "base_url", "timeout", "max_tokens",
         "input_cost_per_1k", "output_cost_per_1k"},
        f"consensus.backends[{idx}]",
        path,
    )
    model_spec = entry.get("model")
    if not isinstance(model_spec, str) or not model_spec:
        raise ValueError(f"consensus.backends[{idx}].model in {path} is required")

    if entry.get("provider"):
        try:
            provider = Provider(str(entry["provider"]).lower())
        except ValueError as exc:
            raise ValueError(
                f"consensus.backends[{idx}].provider in {path} must be one of "
                f"{', '.join(p.value for p in Provider)}"
            ) from exc
        model = model_spec
    else:
        provider, model = parse_model_spec(model_spec)

    key_names = _PROVIDER_KEY_ENV[provider]
    if entry.get("api_key_env"):
        key_names = (str(entry["api_key_env"]),)
    secret = ""
    for key_name in key_names:
        secret = get_env(key_name, env=env)
        if secret:
            break

    base_url = str(entry.get("base_url") or "")
    api_key = secret
    if provider is Provider.OLLAMA:
        base_url = base_url or secret
        api_key = ""

    kwargs = {}
    if "max_tokens" in entry:
        kwargs["max_tokens"] = _int(entry["max_tokens"], f"consensus.backends[{idx}].max_tokens", path)
    for cost_key in ("input_cost_per_1k", "output_cost_per_1k"):
        if cost_key in entry:
            kwargs[cost_key] = _float(entry[cost_key], f"consensus.backends[{idx}].{cost_key}", path)

    return BackendConfig(
        identifier=str(entry.get("id") or f"{provider.value}:{model}"),
        provider=provider,
        model=model,
        api_key=api_key,
        base_url=base_url,
        timeout=_float(entry.get("timeout", timeout), f"consensus.backends[{idx}].timeout", path),
        **kwargs,
    )


def config_from_dict(raw: Any, path: Path = Path("<config>"), env=None) -> EngineConfig:
    """Validate a parsed YAML document strictly and build an EngineConfig."""
    if raw is None:
        raw = {}
    top = _check_keys(
        raw, {"workflow", "budget", "prompts", "diff", "complexity", "risk", "consensus"}, "config", path
    )
    config = EngineConfig()

    workflow = _check_keys(
        top.get("workflow"),
        {"max_iterations", "clarity_threshold", "file_parallelism", "enabled_stages", "fast_path"},
        "workflow",
        path,
    )
    updates: dict[str, Any] = {}
    for key in ("max_iterations", "clarity_threshold", "file_parallelism"):
        if key in workflow:
            updates[key] = _int(workflow[key], f"workflow.{key}", path)
    if "enabled_stages" in workflow:
        names = _str_list(workflow["enabled_stages"], "workflow.enabled_stages", path)
        valid = {stage.value: stage for stage in WORKFLOW_STAGES}
        bad = sorted(set(names) - set(valid))
        if bad:
            raise ValueError(f"Unknown stage(s) in workflow.enabled_stages of {path}: {', '.join(bad)}")
        updates["enabled_stages"] = frozenset(valid[n] for n in names)
    fast_path = _check_keys(workflow.get("fast_path"), {"max_files", "max_diff_chars"}, "workflow.fast_path", path)
    if fast_path:
        updates["fast_path"] = FastPathConfig(
            max_files=_int(fast_path.get("max_files", config.fast_path.max_files), "workflow.fast_path.max_files", path),
            max_diff_chars=_int(
                fast_path.get("max_diff_chars", config.fast_path.max_diff_chars),
                "workflow.fast_path.max_diff_chars",
                path,
            ),
        )

    budget = _check_keys(top.get("budget"), {"token_budget", "cost_ceiling", "invocation_timeout"}, "budget", path)
    if "token_budget" in budget:
        updates["token_budget"] = _int(budget["token_budget"], "budget.token_budget", path)
    for key in ("cost_ceiling", "invocation_timeout"):
        if key in budget:
            updates[key] = _float(budget[key], f"budget.{key}", path)

    prompts = _check_keys(top.get("prompts"), set(PromptLimits().__dict__), "prompts", path)
    if prompts:
        updates["prompts"] = PromptLimits(**{
            key: _int(value, f"prompts.{key}", path) for key, value in prompts.items()
        })

    diff = _check_keys(top.get("diff"), {"exclude_patterns", "extra_exclude_patterns"}, "diff", path)
    patterns = config.exclude_patterns
    if "exclude_patterns" in diff:
        patterns = _str_list(diff["exclude_patterns"], "diff.exclude_patterns", path)
    if "extra_exclude_patterns" in diff:
        patterns = patterns + _str_list(diff["extra_exclude_patterns"], "diff.extra_exclude_patterns", path)
    updates["exclude_patterns"] = patterns

    complexity = _check_keys(top.get("complexity"), {"lines", "files", "file_lines"}, "complexity", path)
    if complexity:
        updates["complexity"] = ComplexityThresholds(**{
            key: _thresholds(value, f"complexity.{key}", path) for key, value in complexity.items()
        })

    risk = _check_keys(top.get("risk"), {"disabled_rules", "severity_overrides", "custom_rules"}, "risk", path)
    if risk:
        known_rules = {rule.rule_id for rule in DEFAULT_RULES}
        disabled = _str_list(risk.get("disabled_rules", []), "risk.disabled_rules", path)
        bad = sorted(set(disabled) - known_rules)
        if bad:
            raise ValueError(f"Unknown rule(s) in risk.disabled_rules of {path}: {', '.join(bad)}")
        overrides = _check_keys(risk.get("severity_overrides"), known_rules, "risk.severity_overrides", path)
        for rule_id, severity in overrides.items():
            if severity not in SEVERITIES:
                raise ValueError(f"risk.severity_overrides[{rule_id}] in {path} has invalid level {severity}")
        custom = risk.get("custom_rules", [])
        if not isinstance(custom, list):
            raise ValueError(f"risk.custom_rules in {path} must be a list")
        for idx, rule in enumerate(custom):
            if isinstance(rule, dict) and rule.get("category", "quality") not in CATEGORIES:
                raise ValueError(f"risk.custom_rules[{idx}].category in {path} must be one of {', '.join(CATEGORIES)}")
        updates["risk"] = RiskPolicy(
            disabled_rules=disabled,
            severity_overrides=dict(overrides),
            custom_rules=tuple(custom),
        )

    consensus = _check_keys(top.get("consensus"), {"enabled", "parallelism", "chair", "backends"}, "consensus", path)
    if consensus:
        timeout = updates.get("invocation_timeout", config.invocation_timeout)
        raw_backends = consensus.get("backends", [])
        if not isinstance(raw_backends, list):
            raise ValueError(f"consensus.backends in {path} must be a list")
        backends = tuple(_parse_backend(b, i, path, env, timeout) for i, b in enumerate(raw_backends))
        ids = [b.identifier for b in backends]
        if len(ids) != len(set(ids)):
            raise ValueError(f"consensus.backends in {path} has duplicate ids")
        chair = consensus.get("chair")
        if chair is not None and chair not in ids:
            raise ValueError(f"consensus.chair {chair!r} in {path} is not a configured backend id")
        updates["consensus"] = ConsensusConfig(
            enabled=bool(consensus.get("enabled", bool(backends))),
            parallelism=_int(consensus.get("parallelism", 3), "consensus.parallelism", path),
            chair=chair,
            backends=backends,
        )

    config = replace(config, **updates)
    config.validate()
    return config


def find_config_file(repo_root: str | Path | None = None) -> Path | None:
    root = Path(repo_root) if repo_root else Path(".")
    for candidate in CONFIG_CANDIDATES:
        path = root / candidate
        if path.exists():
            return path
    return None


def apply_env_overrides(config: EngineConfig, env=None) -> EngineConfig:
    """Apply INPUT_* (GitHub Action inputs) or DIFFSAGE_* variables on top of a config."""

    def lookup(name: str) -> str:
        return get_env(f"INPUT_{name}", env=env) or get_env(f"DIFFSAGE_{name}", env=env)

    updates: dict[str, Any] = {}
    for name, attr in (
        ("MAX_ITERATIONS", "max_iterations"),
        ("CLARITY_THRESHOLD", "clarity_threshold"),
        ("FILE_PARALLELISM", "file_parallelism"),
        ("TOKEN_BUDGET", "token_budget"),
    ):
        raw = lookup(name)
        if raw:
            updates[attr] = parse_int(raw, getattr(config, attr))
    for name, attr in (("COST_CEILING", "cost_ceiling"), ("INVOCATION_TIMEOUT", "invocation_timeout")):
        raw = lookup(name)
        if raw:
            updates[attr] = parse_float(raw, getattr(config, attr))

    consensus = config.consensus
    raw = lookup("CONSENSUS")
    if raw:
        consensus = replace(consensus, enabled=parse_bool(raw))
    raw = lookup("CONSENSUS_PARALLELISM")
    if raw:
        consensus = replace(consensus, parallelism=parse_int(raw, consensus.parallelism))
    raw = lookup("CHAIR")
    if raw:
        consensus = replace(consensus, chair=raw)
    raw = lookup("MODELS")
    if raw:
        timeout = updates.get("invocation_timeout", config.invocation_timeout)
        consensus = replace(consensus, backends=tuple(backends_from_specs(raw.split(","), env=env, timeout=timeout)))
    updates["consensus"] = consensus

    config = replace(config, **updates)
    config.validate()
    return config


def backends_from_specs(specs: list[str], env=None, timeout: float = 60.0) -> list[BackendConfig]:
    """Build backends from "provider/model" specs using keys found in the environment."""
    available = {
        provider for provider, names in _PROVIDER_KEY_ENV.items()
        if any(get_env(n, env=env) for n in names)
    }
    backends = []
    for spec in (s.strip() for s in specs):
        if not spec:
            continue
        provider, model = parse_model_spec(spec, available)
        if provider not in available:
            continue
        secret = next((get_env(n, env=env) for n in _PROVIDER_KEY_ENV[provider] if get_env(n, env=env)), "")
        backends.append(BackendConfig(
            identifier=f"{provider.value}:{model}",
            provider=provider,
            model=model or DEFAULT_MODELS[provider],
            api_key="" if provider is Provider.OLLAMA else secret,
            base_url=secret if provider is Provider.OLLAMA else "",
            timeout=timeout,
        ))
    return backends


def resolve_backends(config: EngineConfig, env=None) -> list[BackendConfig]:
    """Configured backends, or one per provider whose key is in the environment."""
    if config.consensus.backends:
        return list(config.consensus.backends)
    return discover_backends(env, timeout=config.invocation_timeout)


def load_config(
    path: str | Path | None = None,
    repo_root: str | Path | None = None,
    env=None,
) -> EngineConfig:
    """Load the YAML config (explicit path or discovered under repo_root) and apply env overrides."""
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = find_config_file(repo_root)

    if config_path is None:
        config = EngineConfig()
    else:
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse config {config_path}: {exc}") from exc
        config = config_from_dict(raw, config_path, env=env)

    return apply_env_overrides(config, env=env)
