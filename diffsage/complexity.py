"""
Complexity Scorer - Pure 1-5 score over a set of file changes.

The score is the maximum of independent sub-scores, each bucketed by
fixed thresholds, so growing any one dimension can never lower it.
"""


import re
from dataclasses import dataclass

from .diff_parser import FileChange


MIN_SCORE = 1
MAX_SCORE = 5

MIGRATION_PATTERNS = (
    re.compile(r"(^|/)migrations?/", re.IGNORECASE),
    re.compile(r"(^|/)alembic/", re.IGNORECASE),
    re.compile(r"(^|/)db/migrate/", re.IGNORECASE),
    re.compile(r"\.sql$", re.IGNORECASE),
    re.compile(r"schema\.(prisma|rb|graphql)$", re.IGNORECASE),
)

CONFIG_PATTERNS = (
    re.compile(r"(^|/)\.env", re.IGNORECASE),
    re.compile(r"(^|/)config/", re.IGNORECASE),
    re.compile(r"(^|/)(settings|config)\.(py|js|ts|json|ya?ml|toml)$", re.IGNORECASE),
    re.compile(r"(^|/)(Dockerfile|docker-compose\.ya?ml)$"),
    re.compile(r"(^|/)\.github/workflows/"),
    re.compile(r"(^|/)(pyproject\.toml|setup\.cfg|package\.json|tsconfig\.json)$"),
    re.compile(r"\.tf$"),
)

MIGRATION_BONUS = 3
CONFIG_BONUS = 2


@dataclass(frozen=True)
class ComplexityThresholds:
    """Upper bounds for buckets 1-4; anything above the last bound scores 5."""
    lines: tuple[int, ...] = (50, 200, 500, 1000)
    files: tuple[int, ...] = (3, 10, 20, 40)
    file_lines: tuple[int, ...] = (50, 200, 500, 1000)

    def validate(self) -> None:
        for name in ("lines", "files", "file_lines"):
            bounds = getattr(self, name)
            if len(bounds) != MAX_SCORE - 1:
                raise ValueError(f"complexity.{name} needs exactly {MAX_SCORE - 1} thresholds")
            if any(b < 0 for b in bounds):
                raise ValueError(f"complexity.{name} thresholds must be >= 0")
            if any(a >= b for a, b in zip(bounds, bounds[1:])):
                raise ValueError(f"complexity.{name} thresholds must be strictly increasing")
        # A single file may never out-score the change it belongs to, which keeps
        # the score monotonic when files are added.
        if any(f < l for f, l in zip(self.file_lines, self.lines)):
            raise ValueError("complexity.file_lines thresholds must not be below complexity.lines")


def bucket(value: int, bounds: tuple[int, ...]) -> int:
    """Return 1 + the number of bounds ``value`` exceeds."""
    score = MIN_SCORE
    for bound in bounds:
        if value > bound:
            score += 1
    return min(score, MAX_SCORE)


def round_half_up(value: float) -> int:
    return int(value + 0.5)


class ComplexityScorer:
    """Scores a change set from its size, spread and the kinds of files touched."""

    def __init__(self, thresholds: ComplexityThresholds | None = None):
        self.thresholds = thresholds or ComplexityThresholds()
        self.thresholds.validate()

    def file_complexity(self, changed_lines: int) -> int:
        return bucket(changed_lines, self.thresholds.file_lines)

    def score_dimensions(
        self,
        total_lines: int,
        file_count: int,
        file_scores: list[int],
        has_migration: bool,
        has_config: bool,
    ) -> int:
        """Combine pre-computed dimensions; usable without a file list."""
        if file_count == 0 and total_lines == 0:
            return MIN_SCORE
        average = round_half_up(sum(file_scores) / len(file_scores)) if file_scores else MIN_SCORE
        score = max(
            bucket(total_lines, self.thresholds.lines),
            bucket(file_count, self.thresholds.files),
            average,
            MIGRATION_BONUS if has_migration else MIN_SCORE,
            CONFIG_BONUS if has_config else MIN_SCORE,
        )
        return max(MIN_SCORE, min(MAX_SCORE, score))

    def score(self, files: list[FileChange]) -> int:
        """Score a list of file changes. Empty input scores 1."""
        if not files:
            return MIN_SCORE
        return self.score_dimensions(
            total_lines=sum(f.changed for f in files),
            file_count=len(files),
            file_scores=[self.file_complexity(f.changed) for f in files],
            has_migration=any(is_migration_path(f.path) for f in files),
            has_config=any(is_config_path(f.path) for f in files),
        )


def is_migration_path(path: str) -> bool:
    return any(p.search(path) for p in MIGRATION_PATTERNS)


def is_config_path(path: str) -> bool:
    return any(p.search(path) for p in CONFIG_PATTERNS)
