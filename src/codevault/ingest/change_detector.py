"""File-level change detection against the stored file-hash index."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from codevault.db.models import content_hash

SKIPPED = "skipped"
NEEDS_PROCESSING = "needs-processing"


@dataclass(frozen=True)
class ChangeDecision:
    """Outcome of comparing a file's current hash with the indexed one."""

    status: str
    file_hash: str
    previous_hash: str | None = None

    @property
    def changed(self) -> bool:
        return self.status == NEEDS_PROCESSING


def detect_change(
    path_relative: str, content: str, file_hash_index: Mapping[str, str]
) -> ChangeDecision:
    """Decide whether *path_relative* needs re-ingestion.

    Pure: *file_hash_index* is read, never modified.

    Args:
        path_relative: Relative path as stored in the index.
        content: Current decoded file content.
        file_hash_index: ``{file_path_relative: file_hash}`` (latest write wins).

    Returns:
        ``skipped`` if the indexed hash equals the current one, otherwise
        ``needs-processing``.
    """
    current = content_hash(content)
    previous = file_hash_index.get(path_relative)
    status = SKIPPED if previous == current else NEEDS_PROCESSING
    return ChangeDecision(status=status, file_hash=current, previous_hash=previous)
