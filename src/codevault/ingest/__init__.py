"""codevault ingest pipeline: change detection, staging, embedding, sync."""

from codevault.ingest.base import Chunker, ChunkingResult, WindowChunker
from codevault.ingest.embedding_client import (
    BatchEmbeddingClient,
    BatchEmbeddingResult,
    LiteLLMEmbeddingProvider,
)
from codevault.ingest.orchestrator import FileStatus, IngestionOrchestrator, IngestionReport
from codevault.ingest.rate_limit import RateLimiter, RateLimitExceeded
from codevault.ingest.staging import StagingCache

__all__ = [
    "BatchEmbeddingClient",
    "BatchEmbeddingResult",
    "Chunker",
    "ChunkingResult",
    "FileStatus",
    "IngestionOrchestrator",
    "IngestionReport",
    "LiteLLMEmbeddingProvider",
    "RateLimitExceeded",
    "RateLimiter",
    "StagingCache",
    "WindowChunker",
]
