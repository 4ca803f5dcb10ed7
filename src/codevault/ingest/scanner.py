"""Directory scanning and extension-based language detection."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from pathlib import Path

import structlog

log = structlog.get_logger()

# Languages that are always worth embedding. Files with no detected language
# are eligible only when small enough (see is_eligible).
EMBEDDABLE_LANGUAGES: frozenset[str] = frozenset(
    [
        "typescript",
        "javascript",
        "python",
        "markdown",
        "json",
        "jsonl",
        "html",
        "css",
        "java",
        "csharp",
        "go",
        "ruby",
        "php",
        "rust",
        "c",
        "cpp",
        "kotlin",
        "swift",
        "shell",
        "sql",
        "yaml",
        "toml",
    ]
)

_EXTENSION_LANGUAGES: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyi": "python",
    ".md": "markdown",
    ".markdown": "markdown",
    ".json": "json",
    ".jsonl": "jsonl",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".scss": "css",
    ".java": "java",
    ".cs": "csharp",
    ".go": "go",
    ".rb": "ruby",
    ".php": "php",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".kt": "kotlin",
    ".swift": "swift",
    ".sh": "shell",
    ".bash": "shell",
    ".sql": "sql",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
}

_FILENAME_LANGUAGES: dict[str, str] = {
    "Dockerfile": "shell",
    "Makefile": "shell",
    "Gemfile": "ruby",
    "Rakefile": "ruby",
}


@dataclass
class ScannedItem:
    """One entry found by scan_recursive().

    Attributes:
        path: Absolute path.
        relative_path: POSIX path relative to the scan root.
        type: "file" or "directory".
        language: Detected language tag, or None.
        size: Size in bytes (0 for directories).
    """

    path: Path
    relative_path: str
    type: str
    language: str | None = None
    size: int = 0


class ExtensionLanguageDetector:
    """Detect a file's language from its name or extension."""

    def detect_language(self, agent_id: str, path: str, filename: str) -> str | None:
        if filename in _FILENAME_LANGUAGES:
            return _FILENAME_LANGUAGES[filename]
        suffix = Path(filename).suffix.lower()
        return _EXTENSION_LANGUAGES.get(suffix)


def relative_posix(path: Path, root: Path) -> str:
    """POSIX path of *path* relative to *root*, without resolving the leaf.

    Raises:
        ValueError: If *path* is not under *root*.
    """
    parent = path.parent.resolve()
    return (parent / path.name).relative_to(root.resolve()).as_posix()


def is_eligible(item: ScannedItem, max_file_size: int) -> bool:
    """True if *item* is a file worth chunking and embedding.

    A known embeddable language always qualifies; an unknown language
    qualifies when the file is non-empty and under *max_file_size* bytes.
    """
    if item.type != "file":
        return False
    if item.language in EMBEDDABLE_LANGUAGES:
        return True
    return item.language is None and 0 < item.size < max_file_size


def scan_recursive(
    agent_id: str,
    directory: Path,
    root: Path,
    exclude: list[str] | None = None,
    detector: ExtensionLanguageDetector | None = None,
    max_depth: int = 32,
) -> list[ScannedItem]:
    """Walk *directory* and return its files and subdirectories, sorted.

    Entries whose name matches an *exclude* glob are pruned (with their
    subtree). Symlinked directories are not followed.

    Raises:
        NotADirectoryError: If *directory* is not a directory.
        PermissionError: If *directory* itself cannot be listed.
    """
    if not directory.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory}")
    detector = detector or ExtensionLanguageDetector()
    patterns = exclude or []
    items: list[ScannedItem] = []
    root = root.resolve()

    def _walk(current: Path, depth: int) -> None:
        try:
            entries = sorted(current.iterdir())
        except PermissionError:
            if current == directory:
                raise
            log.warning("scan.permission_denied", path=str(current))
            return
        for entry in entries:
            if any(fnmatch.fnmatch(entry.name, pat) for pat in patterns):
                continue
            relative = relative_posix(entry, root)
            if entry.is_dir():
                if entry.is_symlink():
                    continue
                items.append(ScannedItem(path=entry, relative_path=relative, type="directory"))
                if depth < max_depth:
                    _walk(entry, depth + 1)
            elif entry.is_file():
                try:
                    size = entry.stat().st_size
                except OSError:
                    size = 0
                items.append(
                    ScannedItem(
                        path=entry,
                        relative_path=relative,
                        type="file",
                        language=detector.detect_language(agent_id, str(entry), entry.name),
                        size=size,
                    )
                )

    _walk(directory, 0)
    return items
