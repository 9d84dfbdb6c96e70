"""
Risk Detector - Deterministic regex rules over the added and removed lines of a diff.

Each rule has a fixed category and severity and reports at most one finding
per diff line. Rules are independent of each other, so their order only
affects the order of the returned findings.
"""


import re
import fnmatch
from dataclasses import dataclass, replace
from typing import Iterator

from . import annotations
from .diff_parser import FileChange, parse_diff


SEVERITIES = ("critical", "warning", "info")
CATEGORIES = ("security", "quality", "breaking")

SEVERITY_RANK = {"info": 0, "warning": 1, "critical": 2}

_SEVERITY_ALIASES = {
    "critical": "critical",
    "blocker": "critical",
    "high": "critical",
    "error": "critical",
    "warning": "warning",
    "warn": "warning",
    "medium": "warning",
    "moderate": "warning",
    "major": "warning",
    "info": "info",
    "low": "info",
    "minor": "info",
    "note": "info",
}

_CATEGORY_ALIASES = {
    "security": "security",
    "vulnerability": "security",
    "secret": "security",
    "quality": "quality",
    "bug": "quality",
    "performance": "quality",
    "maintainability": "quality",
    "style": "quality",
    "testing": "quality",
    "breaking": "breaking",
    "breaking-change": "breaking",
    "breaking_change": "breaking",
    "compatibility": "breaking",
    "api": "breaking",
}

HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@")


@dataclass(frozen=True)
class Finding:
    """A risk flag raised by a rule or a model."""
    category: str  # security, quality, breaking
    severity: str  # critical, warning, info
    description: str
    file: str | None = None
    line: int | None = None
    provenance: str = "heuristic"  # heuristic, model
    rule_id: str = ""
    source: str = ""


def normalize_severity(value) -> str:
    """Map model-reported severities onto critical/warning/info, never downward."""
    return _SEVERITY_ALIASES.get(str(value or "").strip().lower(), "warning")


def normalize_category(value) -> str:
    return _CATEGORY_ALIASES.get(str(value or "").strip().lower(), "quality")


@dataclass(frozen=True)
class RiskRule:
    """A line rule. ``requires`` patterns must all match in addition to one of ``patterns``."""
    rule_id: str
    category: str
    severity: str
    description: str
    patterns: tuple[re.Pattern, ...]
    requires: tuple[re.Pattern, ...] = ()
    scope: str = "added"  # added, removed
    exceptions: tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        if not any(p.search(text) for p in self.patterns):
            return False
        return all(p.search(text) for p in self.requires)

    def applies_to(self, path: str) -> bool:
        return not any(fnmatch.fnmatch(path, pattern) for pattern in self.exceptions)


SECRET_PATTERNS = (
    re.compile(
        r"\b\w*(?:password|passwd|pwd|secret|api[_-]?key|apikey|access[_-]?key|"
        r"private[_-]?key|client[_-]?secret|auth[_-]?token|access[_-]?token|token)\w*"
        r"[\"']?\s*[:=]\s*[\"'][^\"'\s]{3,}[\"']",
        re.IGNORECASE,
    ),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"),
)

EVAL_PATTERNS = (
    re.compile(r"(?<![\w.])eval\s*\("),
    re.compile(r"(?<![\w.])exec\s*\("),
    re.compile(r"\bnew\s+Function\s*\("),
    re.compile(r"\bset(?:Timeout|Interval)\s*\(\s*[\"'`]"),
)

SQL_PATTERNS = (
    re.compile(r"\bselect\b.+\bfrom\b", re.IGNORECASE),
    re.compile(r"\binsert\s+into\b", re.IGNORECASE),
    re.compile(r"\bupdate\s+\w+\s+set\b", re.IGNORECASE),
    re.compile(r"\bdelete\s+from\b", re.IGNORECASE),
)

SQL_INTERPOLATION = re.compile(
    r"[\"']\s*(?:\+|%|\|\|)|\+\s*[\"']|\.format\s*\(|\bf[\"'][^\"']*\{|\$\{"
)

THROW_PATTERNS = (
    re.compile(r"^\s*throw\s+\S"),
    re.compile(r"^\s*raise\s+\w"),
)

GUARD_PATTERN = re.compile(r"\b(?:try|catch|except)\b")

EXPORT_PATTERNS = (
    re.compile(
        r"^\s*export\s+(?:default\s+)?(?:async\s+)?(?:function\*?|class|const|let|var|"
        r"interface|type|enum)\s+([A-Za-z_$][\w$]*)"
    ),
    re.compile(r"^(?:async\s+)?def\s+([A-Za-z]\w*)\s*\("),
    re.compile(r"^class\s+([A-Za-z]\w*)"),
    re.compile(r"^func\s+([A-Z]\w*)\s*\("),
    re.compile(r"^pub\s+(?:fn|struct|enum|trait)\s+(\w+)"),
)


DEFAULT_RULES = (
    RiskRule(
        rule_id="hardcoded-secret",
        category="security",
        severity="critical",
        description="Hardcoded secret or credential literal",
        patterns=SECRET_PATTERNS,
    ),
    RiskRule(
        rule_id="eval-construct",
        category="security",
        severity="critical",
        description="Dynamic code evaluation",
        patterns=EVAL_PATTERNS,
    ),
    RiskRule(
        rule_id="sql-concatenation",
        category="security",
        severity="critical",
        description="SQL built by string concatenation or interpolation",
        patterns=SQL_PATTERNS,
        requires=(SQL_INTERPOLATION,),
    ),
    RiskRule(
        rule_id="unguarded-throw",
        category="quality",
        severity="warning",
        description="Exception thrown without surrounding error handling",
        patterns=THROW_PATTERNS,
    ),
    RiskRule(
        rule_id="removed-export",
        category="breaking",
        severity="warning",
        description="Public symbol removed",
        patterns=EXPORT_PATTERNS,
        scope="removed",
    ),
)


class RiskDetector:
    """
    Applies the ordered rule list to a parsed diff.

    The detector holds no state between calls; ``detect`` depends only on
    the files passed in.
    """

    def __init__(
        self,
        disabled_rules=(),
        severity_overrides: dict[str, str] | None = None,
        custom_rules: list[dict] | None = None,
    ):
        overrides = severity_overrides or {}
        rules = []
        for rule in DEFAULT_RULES:
            if rule.rule_id in disabled_rules:
                continue
            severity = overrides.get(rule.rule_id, rule.severity)
            if severity != rule.severity:
                rule = replace(rule, severity=severity)
            rules.append(rule)
        self.rule_errors: list[str] = []
        rules.extend(self._compile_custom_rules(custom_rules or []))
        self.rules = tuple(rules)

    def _compile_custom_rules(self, raw_rules: list[dict]) -> list[RiskRule]:
        """Compile policy-supplied rules; bad entries are skipped with a warning."""
        compiled_rules = []
        for idx, rule in enumerate(raw_rules):
            if not isinstance(rule, dict):
                self.rule_errors.append(f"Rule {idx} skipped: invalid rule shape")
                continue

            rid = str(rule.get("id") or f"custom_{idx}")
            raw_patterns: list[str] = []
            if isinstance(rule.get("pattern"), str):
                raw_patterns.append(rule["pattern"])
            patterns = rule.get("patterns")
            if isinstance(patterns, list):
                raw_patterns.extend(p for p in patterns if isinstance(p, str))
            elif isinstance(patterns, str):
                raw_patterns.append(patterns)

            compiled: list[re.Pattern] = []
            for raw_pattern in raw_patterns:
                try:
                    compiled.append(re.compile(raw_pattern, re.IGNORECASE))
                except re.error as exc:
                    self.rule_errors.append(f"Rule {rid} skipped pattern {raw_pattern!r}: {exc}")
            if not compiled:
                if not raw_patterns:
                    self.rule_errors.append(f"Rule {rid} skipped: no valid pattern(s)")
                continue

            severity = rule.get("severity", "warning")
            if severity not in SEVERITIES:
                self.rule_errors.append(f"Rule {rid} skipped: invalid severity {severity!r}")
                continue
            category = rule.get("category", "quality")
            if category not in CATEGORIES:
                self.rule_errors.append(f"Rule {rid} skipped: invalid category {category!r}")
                continue
            scope = rule.get("scope", "added")
            if scope not in ("added", "removed"):
                self.rule_errors.append(f"Rule {rid} skipped: invalid scope {scope!r}")
                continue

            exceptions = rule.get("exceptions", [])
            if isinstance(exceptions, str):
                exceptions = [exceptions]
            elif not isinstance(exceptions, list):
                exceptions = []

            compiled_rules.append(RiskRule(
                rule_id=rid,
                category=category,
                severity=severity,
                description=rule.get("message") or rule.get("description") or "Policy rule triggered",
                patterns=tuple(compiled),
                scope=scope,
                exceptions=tuple(str(e) for e in exceptions),
            ))

        for err in self.rule_errors:
            annotations.warn(err)
        return compiled_rules

    def detect(self, files: list[FileChange]) -> list[Finding]:
        """Run every rule over every file, in diff order."""
        findings: list[Finding] = []
        for change in files:
            findings.extend(self._detect_file(change))
        return findings

    def detect_text(self, diff_text: str) -> list[Finding]:
        return self.detect(parse_diff(diff_text, exclude_patterns=()))

    def _detect_file(self, change: FileChange) -> list[Finding]:
        hunks = list(_iter_hunks(change.hunk_text))
        redeclared = _declared_names(hunks, "+")
        findings = []
        for rule in self.rules:
            if not rule.applies_to(change.path):
                continue
            for hunk in hunks:
                guarded = any(GUARD_PATTERN.search(text) for kind, _, text in hunk if kind != "-")
                for kind, line_no, text in hunk:
                    if kind != ("+" if rule.scope == "added" else "-"):
                        continue
                    if not rule.matches(text):
                        continue
                    if rule.rule_id == "unguarded-throw" and guarded:
                        continue
                    description = rule.description
                    if rule.rule_id == "removed-export":
                        name = _declared_name(text)
                        if name is None or name in redeclared:
                            continue
                        description = f"{rule.description}: {name}"
                    findings.append(Finding(
                        category=rule.category,
                        severity=rule.severity,
                        description=description,
                        file=change.path,
                        line=line_no,
                        provenance="heuristic",
                        rule_id=rule.rule_id,
                    ))
        return findings


def _iter_hunks(hunk_text: str) -> Iterator[list[tuple[str, int, str]]]:
    """
    Yield hunks as lists of (kind, line number, text).

    Added and context lines carry their post-image line number, removed
    lines their pre-image line number. Text before the first hunk header
    (file headers) is skipped.
    """
    current: list[tuple[str, int, str]] | None = None
    source_line = target_line = 0
    for raw in hunk_text.splitlines():
        header = HUNK_HEADER.match(raw)
        if header:
            if current is not None:
                yield current
            current = []
            source_line = int(header.group(1))
            target_line = int(header.group(2))
            continue
        if current is None:
            continue
        if raw.startswith("+"):
            current.append(("+", target_line, raw[1:]))
            target_line += 1
        elif raw.startswith("-"):
            current.append(("-", source_line, raw[1:]))
            source_line += 1
        elif raw.startswith("\\"):
            continue
        else:
            current.append((" ", target_line, raw[1:]))
            source_line += 1
            target_line += 1
    if current is not None:
        yield current


def _declared_name(text: str) -> str | None:
    for pattern in EXPORT_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def _declared_names(hunks: list, kind: str) -> set[str]:
    names = set()
    for hunk in hunks:
        for line_kind, _, text in hunk:
            if line_kind == kind:
                name = _declared_name(text)
                if name:
                    names.add(name)
    return names
