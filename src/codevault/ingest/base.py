"""Chunker contract and the default fixed-window chunker."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Protocol, runtime_checkable

from codevault.db.models import Chunk, ChunkMetadata


def count_tokens(text: str) -> int:
    """Approximate token count: 4 characters ≈ 1 token.

    Fast, dependency-free approximation consistent with GPT tokeniser
    averages for source code and English prose.
    """
    return max(1, len(text) // 4)


@dataclass
class ChunkingResult:
    """Output of a multi-vector chunker."""

    chunks: list[Chunk] = field(default_factory=list)
    summarization_calls: int = 0


@runtime_checkable
class Chunker(Protocol):
    def chunk_file(
        self,
        agent_id: str,
        absolute_path: str,
        content: str,
        relative_path: str,
        language: str | None,
    ) -> list[Chunk]:
        """Split one file's *content* into candidate chunks."""
        ...


@runtime_checkable
class MultiVectorChunker(Chunker, Protocol):
    def chunk_file_multi(
        self,
        agent_id: str,
        absolute_path: str,
        content: str,
        relative_path: str,
        language: str | None,
    ) -> ChunkingResult:
        """Like chunk_file(), also reporting AI summarization calls made."""
        ...


class WindowChunker:
    """Whole-file chunk plus overlapping fixed-size windows.

    Small files produce a single ``full_file`` chunk. Larger files produce
    ``window`` chunks whose parent is the ``full_file`` chunk; files too
    large to embed whole produce parentless windows only.

    Args:
        chunk_size: Window size in tokens (``chunk_size * 4`` characters).
        overlap: Fraction of the window repeated at the start of the next one.
        full_file_max_tokens: Largest file still embedded as one chunk.
    """

    def __init__(
        self,
        chunk_size: int = 512,
        overlap: float = 0.10,
        full_file_max_tokens: int = 6_000,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.full_file_max_tokens = full_file_max_tokens

    def chunk_file(
        self,
        agent_id: str,
        absolute_path: str,
        content: str,
        relative_path: str,
        language: str | None,
    ) -> list[Chunk]:
        if not content.strip():
            return []

        name = PurePosixPath(relative_path).name
        chunks: list[Chunk] = []
        parent_id: str | None = None

        if count_tokens(content) <= self.full_file_max_tokens:
            full = Chunk(
                text=content,
                entity_name=name,
                metadata=ChunkMetadata(
                    type="full_file",
                    start_line=1,
                    end_line=content.count("\n") + 1,
                    language=language,
                ),
                chunk_id="full_file",
            )
            chunks.append(full)
            parent_id = full.chunk_id
            if len(content) <= self.chunk_size * 4:
                return chunks

        for i, (start, segment) in enumerate(self._split_fixed_window(content)):
            start_line = content.count("\n", 0, start) + 1
            end_line = start_line + segment.count("\n")
            chunks.append(
                Chunk(
                    text=segment,
                    entity_name=f"{name}:{start_line}-{end_line}",
                    metadata=ChunkMetadata(
                        type="window",
                        start_line=start_line,
                        end_line=end_line,
                        language=language,
                    ),
                    chunk_id=f"window:{i}",
                    parent_chunk_id=parent_id,
                )
            )
        return chunks

    def chunk_file_multi(
        self,
        agent_id: str,
        absolute_path: str,
        content: str,
        relative_path: str,
        language: str | None,
    ) -> ChunkingResult:
        return ChunkingResult(
            chunks=self.chunk_file(agent_id, absolute_path, content, relative_path, language)
        )

    def _split_fixed_window(self, text: str) -> list[tuple[int, str]]:
        """Split *text* into ``(start_offset, segment)`` windows with overlap.

        Window size = ``self.chunk_size * 4`` characters.
        Overlap     = ``self.overlap`` fraction of window size.
        Leading whitespace is skipped; empty segments are omitted.
        """
        char_size = self.chunk_size * 4
        step = max(1, char_size - int(char_size * self.overlap))

        segments: list[tuple[int, str]] = []
        pos = 0
        length = len(text)

        while pos < length:
            end = min(pos + char_size, length)
            raw = text[pos:end]
            segment = raw.strip()
            if segment:
                offset = pos + (len(raw) - len(raw.lstrip()))
                segments.append((offset, segment))
            if end >= length:
                break
            pos += step

        return segments
