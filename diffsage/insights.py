"""
Project Insights - Heuristic test suggestions and project classification.

Both passes look only at the parsed file list, never at a model, so they are
identical in EXECUTE and PROMPT_ONLY runs and across consensus backends.

Test suggestions flag source files with substantial additions and no
matching test change in the same diff. The classification weighs file-path
and added-code signals to tell business-logic changes from QA/test changes,
so reviewers can tell which concerns the change leans towards.
"""


import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from .diff_parser import FileChange


MIN_ADDED_LINES_FOR_TEST = 6
SNIPPET_CHARS = 1000

TEST_FILE_PATTERNS = [
    re.compile(r"\.test\.[jt]sx?$"),
    re.compile(r"\.spec\.[jt]sx?$"),
    re.compile(r"_test\.py$"),
    re.compile(r"(^|/)test_[^/]*\.py$"),
    re.compile(r"_test\.go$"),
    re.compile(r"Test\.java$"),
    re.compile(r"\.test\.rs$"),
]

CODE_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx", ".py", ".go", ".java", ".rs", ".rb", ".cs"}

FRAMEWORK_BY_LANGUAGE = {
    "python": "pytest",
    "javascript": "jest",
    "typescript": "jest",
    "go": "go test",
    "java": "junit",
    "rust": "cargo test",
}

BUSINESS_PATH_PATTERNS = [
    re.compile(r"(^|/)(models?|entities|domain)/", re.IGNORECASE),
    re.compile(r"(^|/)(services?|business|logic)/", re.IGNORECASE),
    re.compile(r"(^|/)(controllers?|handlers?|routes?|views?)/", re.IGNORECASE),
    re.compile(r"(^|/)(api|graphql|rest)/", re.IGNORECASE),
    re.compile(r"(^|/)(repositories?|dao|database|db)/", re.IGNORECASE),
    re.compile(r"(^|/)(utils?|helpers?|lib)/", re.IGNORECASE),
    re.compile(r"(^|/)(components?|pages?)/", re.IGNORECASE),
]

QA_PATH_PATTERNS = [
    re.compile(r"(^|/)tests?/", re.IGNORECASE),
    re.compile(r"(^|/)__tests__/", re.IGNORECASE),
    re.compile(r"(^|/)spec/", re.IGNORECASE),
    re.compile(r"(^|/)(e2e|integration)/", re.IGNORECASE),
    re.compile(r"(^|/)(cypress|playwright|selenium)/", re.IGNORECASE),
    re.compile(r"\.(test|spec|e2e)\.", re.IGNORECASE),
    re.compile(r"(^|/)(test_[^/]*|[^/]*_test)\.py$", re.IGNORECASE),
    re.compile(r"(^|/)conftest\.py$", re.IGNORECASE),
]

BUSINESS_KEYWORDS = (
    "class ", "interface ", "enum ", "async ", "await ", "def ", "return ",
    "router.", "app.", "schema", "model", "entity", "query", "mutation",
    "resolver", "middleware", "validation", "authentication", "authorization",
)

QA_KEYWORDS = (
    "describe(", "it(", "test(", "expect(", "assert", "should",
    "beforeEach", "afterEach", "setUp", "tearDown", "pytest", "unittest",
    "fixture", "mock", "stub", "spy", "snapshot", "toEqual", "toBe",
)

CLASSIFICATION_RECOMMENDATIONS = {
    "business_logic": (
        "Review input validation and error handling for the changed business rules",
        "Check authentication and authorization around sensitive operations",
        "Verify data model changes come with migrations",
    ),
    "qa_testing": (
        "Check that assertions are specific and cover edge cases",
        "Watch for slow or flaky tests",
    ),
    "mixed": (
        "Confirm the test changes cover the business logic changes",
        "Consider separating logic and test changes into separate commits",
    ),
    "unknown": (),
}


@dataclass(frozen=True)
class TestSuggestion:
    """A changed source file that has no matching test change in the diff."""
    __test__ = False  # not a pytest test class

    file: str
    suggested_test_path: str
    framework: str
    added_lines: int
    code_snippet: str = ""


@dataclass(frozen=True)
class ProjectClassification:
    project_type: str  # business_logic, qa_testing, mixed, unknown
    confidence: float
    business_signals: tuple[str, ...] = ()
    qa_signals: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()


def is_test_file(path: str) -> bool:
    return any(p.search(path) for p in TEST_FILE_PATTERNS)


def is_code_file(path: str) -> bool:
    """Source files that are expected to have tests (no configs, type stubs or index modules)."""
    pure = PurePosixPath(path)
    if ".d.ts" in pure.name or ".config." in pure.name or pure.name.startswith("index."):
        return False
    if pure.name in ("__init__.py", "conftest.py", "setup.py"):
        return False
    return pure.suffix.lower() in CODE_EXTENSIONS


def suggest_test_path(path: str, framework: str) -> str:
    pure = PurePosixPath(path)
    stem, suffix = pure.stem, pure.suffix
    parent = pure.parent
    if suffix == ".py":
        return str(parent / f"test_{stem}.py")
    if suffix == ".go":
        return str(parent / f"{stem}_test.go")
    if suffix in (".ts", ".tsx", ".js", ".jsx") and framework == "jest":
        parts = ["tests" if part == "src" else part for part in parent.parts]
        return str(PurePosixPath(*parts, f"{stem}.test{suffix}"))
    return str(parent / f"{stem}.test{suffix}")


def added_code(change: FileChange) -> str:
    return "\n".join(
        line[1:] for line in change.hunk_text.splitlines()
        if line.startswith("+") and not line.startswith("+++")
    )


def suggest_tests(files: list[FileChange], framework: str | None = None) -> list[TestSuggestion]:
    """One suggestion per source file with substantial additions and no test change alongside it."""
    test_paths = [f.path.lower() for f in files if is_test_file(f.path)]
    suggestions = []
    for change in files:
        if change.status == "deleted" or not is_code_file(change.path) or is_test_file(change.path):
            continue
        if change.added < MIN_ADDED_LINES_FOR_TEST:
            continue
        stem = PurePosixPath(change.path).stem.lower()
        if any(stem in test_path for test_path in test_paths):
            continue
        chosen = framework or FRAMEWORK_BY_LANGUAGE.get(change.language, "other")
        suggestions.append(TestSuggestion(
            file=change.path,
            suggested_test_path=suggest_test_path(change.path, chosen),
            framework=chosen,
            added_lines=change.added,
            code_snippet=added_code(change)[:SNIPPET_CHARS],
        ))
    return suggestions


def classify_project(files: list[FileChange]) -> ProjectClassification:
    business_score = 0.0
    qa_score = 0.0
    business_signals = []
    qa_signals = []

    for change in files:
        if any(p.search(change.path) for p in BUSINESS_PATH_PATTERNS):
            business_score += 1
            business_signals.append(f"Business logic file: {change.path}")
        if any(p.search(change.path) for p in QA_PATH_PATTERNS):
            qa_score += 1
            qa_signals.append(f"Test file: {change.path}")

        code = added_code(change)
        if not code:
            continue
        business_hits = sum(1 for k in BUSINESS_KEYWORDS if k in code)
        qa_hits = sum(1 for k in QA_KEYWORDS if k in code)
        if business_hits > qa_hits:
            business_score += business_hits * 0.1
            if business_hits > 3:
                business_signals.append(f"Business logic code patterns in {change.path}")
        elif qa_hits > business_hits:
            qa_score += qa_hits * 0.1
            if qa_hits > 3:
                qa_signals.append(f"Test code patterns in {change.path}")

    total = business_score + qa_score
    if total == 0:
        project_type, confidence = "unknown", 0.0
    else:
        business_ratio = business_score / total
        qa_ratio = qa_score / total
        if business_ratio >= 0.8:
            project_type, confidence = "business_logic", business_ratio
        elif qa_ratio >= 0.8:
            project_type, confidence = "qa_testing", qa_ratio
        else:
            project_type, confidence = "mixed", 1 - abs(business_ratio - qa_ratio)

    recommendations = list(CLASSIFICATION_RECOMMENDATIONS[project_type])
    if project_type == "business_logic" and business_score > 10:
        recommendations.append("Large business logic change; consider splitting the PR")

    return ProjectClassification(
        project_type=project_type,
        confidence=round(confidence, 4),
        business_signals=tuple(business_signals),
        qa_signals=tuple(qa_signals),
        recommendations=tuple(recommendations),
    )
