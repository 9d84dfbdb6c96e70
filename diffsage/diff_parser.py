"""
Diff Parser - Turns unified diff text into an ordered list of FileChange.

Parsing is total: a patch unidiff rejects is split per ``diff --git``
block and each block is parsed on its own, so one malformed hunk only
zeroes the counts of the file it belongs to.
"""


import re
import fnmatch
from dataclasses import dataclass
from pathlib import PurePosixPath

from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from . import annotations


DIFF_HEADER = re.compile(r"^diff --git a/(.*) b/(.*)$", re.MULTILINE)
TARGET_HEADER = re.compile(r"^\+\+\+ (?:b/)?(.+?)\s*$", re.MULTILINE)
SOURCE_HEADER = re.compile(r"^--- (?:a/)?(.+?)\s*$", re.MULTILINE)

DEV_NULL = "/dev/null"

# Build output, vendored dependencies and lockfiles. Directory patterns end
# with "/" and match at any depth; other patterns are globs.
DEFAULT_EXCLUDE_PATTERNS = (
    "dist/",
    "build/",
    "out/",
    ".next/",
    "node_modules/",
    "vendor/",
    "third_party/",
    "__pycache__/",
    "package-lock.json",
    "npm-shrinkwrap.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "Pipfile.lock",
    "uv.lock",
    "Cargo.lock",
    "Gemfile.lock",
    "composer.lock",
    "go.sum",
    "*.min.js",
    "*.min.css",
    "*.map",
)

LANGUAGE_BY_EXTENSION = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".swift": "swift",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".scala": "scala",
    ".sh": "shell",
    ".bash": "shell",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
    ".scss": "css",
    ".vue": "vue",
    ".svelte": "svelte",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".toml": "toml",
    ".md": "markdown",
    ".rst": "restructuredtext",
    ".tf": "terraform",
}

LANGUAGE_BY_NAME = {
    "Dockerfile": "docker",
    "Makefile": "make",
    "Jenkinsfile": "groovy",
}


@dataclass(frozen=True)
class FileChange:
    """Represents a changed file."""
    path: str
    added: int
    removed: int
    status: str  # added, modified, deleted
    language: str = "unknown"
    hunk_text: str = ""
    old_path: str | None = None
    parse_error: bool = False

    @property
    def changed(self) -> int:
        return self.added + self.removed


def infer_language(path: str) -> str:
    """Infer a language tag from a file name or extension."""
    pure = PurePosixPath(path)
    if pure.name in LANGUAGE_BY_NAME:
        return LANGUAGE_BY_NAME[pure.name]
    return LANGUAGE_BY_EXTENSION.get(pure.suffix.lower(), "unknown")


def is_excluded(path: str, patterns=DEFAULT_EXCLUDE_PATTERNS) -> bool:
    """Return True when a path matches any exclusion pattern."""
    normalized = "/" + path.lstrip("/")
    name = PurePosixPath(path).name
    for pattern in patterns:
        if pattern.endswith("/"):
            if f"/{pattern}" in normalized:
                return True
        elif "/" in pattern:
            if fnmatch.fnmatch(path, pattern):
                return True
        elif fnmatch.fnmatch(name, pattern):
            return True
    return False


def parse_diff(diff_text: str, exclude_patterns=DEFAULT_EXCLUDE_PATTERNS) -> list[FileChange]:
    """
    Parse unified diff text into FileChange entries in diff order.

    Never raises: unparsable files come back with zero counts and
    ``parse_error`` set.
    """
    if not diff_text or not diff_text.strip():
        return []

    try:
        files = [_from_patched_file(pf) for pf in PatchSet(diff_text)]
    except (UnidiffParseError, ValueError, IndexError) as exc:
        annotations.warn(f"Diff did not parse as a whole, falling back to per-file parsing: {exc}")
        files = _parse_blocks(diff_text)

    kept = []
    for change in files:
        if exclude_patterns and is_excluded(change.path, exclude_patterns):
            annotations.debug(f"Excluded {change.path}")
            continue
        kept.append(change)
    return kept


def total_added(files: list[FileChange]) -> int:
    return sum(f.added for f in files)


def total_removed(files: list[FileChange]) -> int:
    return sum(f.removed for f in files)


def languages(files: list[FileChange]) -> list[str]:
    """Distinct known languages in first-seen order."""
    seen: list[str] = []
    for f in files:
        if f.language != "unknown" and f.language not in seen:
            seen.append(f.language)
    return seen


def _from_patched_file(pf) -> FileChange:
    if pf.is_added_file:
        status = "added"
    elif pf.is_removed_file:
        status = "deleted"
    else:
        status = "modified"

    path = pf.path
    old_path = None
    if getattr(pf, "is_rename", False):
        source = pf.source_file
        old_path = source[2:] if source.startswith("a/") else source

    hunk_text = "".join(str(hunk) for hunk in pf)
    return FileChange(
        path=path,
        added=pf.added,
        removed=pf.removed,
        status=status,
        language=infer_language(path),
        hunk_text=hunk_text,
        old_path=old_path,
    )


def _split_blocks(diff_text: str) -> list[tuple[str, str]]:
    """Split diff text at ``diff --git`` headers into (path, block) pairs."""
    matches = list(DIFF_HEADER.finditer(diff_text))
    blocks = []
    for idx, match in enumerate(matches):
        end = matches[idx + 1].start() if idx + 1 < len(matches) else len(diff_text)
        blocks.append((match.group(2), diff_text[match.start():end]))
    return blocks


def _parse_blocks(diff_text: str) -> list[FileChange]:
    blocks = _split_blocks(diff_text)
    if not blocks:
        target = TARGET_HEADER.search(diff_text)
        if not target:
            return []
        blocks = [(target.group(1), diff_text)]

    files = []
    for path, block in blocks:
        try:
            parsed = [_from_patched_file(pf) for pf in PatchSet(block)]
        except (UnidiffParseError, ValueError, IndexError) as exc:
            annotations.warn(f"Malformed hunk in {path}: {exc}")
            parsed = [_malformed_file(path, block)]
        if not parsed:
            parsed = [_malformed_file(path, block)]
        files.extend(parsed)
    return files


def _malformed_file(path: str, block: str) -> FileChange:
    source = SOURCE_HEADER.search(block)
    target = TARGET_HEADER.search(block)
    if source and source.group(1) == DEV_NULL:
        status = "added"
    elif target and target.group(1) == DEV_NULL:
        status = "deleted"
    else:
        status = "modified"
    return FileChange(
        path=path,
        added=0,
        removed=0,
        status=status,
        language=infer_language(path),
        hunk_text=block,
        parse_error=True,
    )
