"""AI file summaries as an extra "summary" vector per file.

SummarizingChunker wraps another chunker: it asks an LLM (via LiteLLM) for a
short summary of the file and adds it as a ``file_summary`` chunk with
``embedding_type="summary"``. Top-level chunks of the wrapped chunker become
children of the summary, so a hit on any of them can be expanded to it.
"""

from __future__ import annotations

import litellm
import structlog

from codevault.db.models import Chunk, ChunkMetadata
from codevault.ingest.base import Chunker, ChunkingResult

log = structlog.get_logger()

_SUMMARY_PROMPT = """\
You are a code assistant. Write a concise summary (max {max_tokens} tokens) \
of the following source file that will be used to find it again by semantic \
search. Name the main classes, functions and responsibilities.

File: {path}
Source (first 8000 characters):
{source}

Summary:"""

_DEFAULT_MODEL = "openai/gpt-4o-mini"
_DEFAULT_MAX_TOKENS = 200
SUMMARY_CHUNK_ID = "file_summary"


class SummarizingChunker:
    """Add one LLM-generated summary chunk per file to *inner*'s chunks.

    Args:
        inner:      Chunker producing the code chunks.
        model:      LiteLLM model string for summary generation.
        max_tokens: Maximum tokens in the generated summary.
    """

    def __init__(
        self,
        inner: Chunker,
        model: str = _DEFAULT_MODEL,
        max_tokens: int = _DEFAULT_MAX_TOKENS,
    ) -> None:
        self._inner = inner
        self._model = model
        self._max_tokens = max_tokens

    def chunk_file(
        self,
        agent_id: str,
        absolute_path: str,
        content: str,
        relative_path: str,
        language: str | None,
    ) -> list[Chunk]:
        return self.chunk_file_multi(
            agent_id, absolute_path, content, relative_path, language
        ).chunks

    def chunk_file_multi(
        self,
        agent_id: str,
        absolute_path: str,
        content: str,
        relative_path: str,
        language: str | None,
    ) -> ChunkingResult:
        """Chunk with *inner*, then prepend a summary chunk.

        If summary generation fails, the inner chunks are returned unchanged
        (non-fatal); the call still counts towards ``summarization_calls``.
        """
        chunks = self._inner.chunk_file(agent_id, absolute_path, content, relative_path, language)
        if not chunks:
            return ChunkingResult()

        summary = self._generate(relative_path, content)
        if not summary:
            return ChunkingResult(chunks=chunks, summarization_calls=1)

        summary_chunk = Chunk(
            text=summary,
            entity_name=relative_path.rsplit("/", 1)[-1],
            metadata=ChunkMetadata(type="file_summary", language=language),
            embedding_type="summary",
            ai_summary_text=summary,
            chunk_id=SUMMARY_CHUNK_ID,
        )
        for chunk in chunks:
            if chunk.parent_chunk_id is None:
                chunk.parent_chunk_id = SUMMARY_CHUNK_ID
        return ChunkingResult(chunks=[summary_chunk, *chunks], summarization_calls=1)

    def _generate(self, path: str, source: str) -> str:
        """Call litellm.completion() to generate the summary."""
        prompt = _SUMMARY_PROMPT.format(
            max_tokens=self._max_tokens,
            path=path,
            source=source[:8000],
        )
        try:
            response = litellm.completion(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self._max_tokens,
                temperature=0.0,
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as exc:
            log.warning("summary.failed", path=path, model=self._model, error=str(exc))
            return ""
