"""Batch embedding client: batching, rate limiting, retry with backoff.

The provider only turns a list of texts into vectors; everything about how
many texts go into one request, how fast requests are sent and what happens
when the provider pushes back lives here. Failures never raise: each input
text maps either to an Embedding or to None, in input order.
"""

from __future__ import annotations

import os
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

import litellm
import structlog

from codevault.ingest.base import count_tokens
from codevault.ingest.rate_limit import RateLimiter

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

log = structlog.get_logger()

# Status-less errors: a standalone 429 or rate-limit wording in the message.
_RATE_LIMIT_RE = re.compile(r"\b429\b|too many requests|rate limit", re.IGNORECASE)

# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
}


def check_api_key(model: str) -> None:
    """Raise RuntimeError if no API key is available for *model*'s provider."""
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)
    if env_var and not os.environ.get(env_var):
        raise RuntimeError(
            f"No API key found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


# ------------------------------------------------------------------
# Types
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Embedding:
    vector: list[float]

    @property
    def dimensions(self) -> int:
        return len(self.vector)


@dataclass
class BatchEmbeddingResult:
    """Index-aligned embeddings plus request counters.

    ``embeddings[i]`` is None when input ``i`` could not be embedded; its
    index is also listed in ``failed_indices``.
    """

    embeddings: list[Embedding | None] = field(default_factory=list)
    failed_indices: list[int] = field(default_factory=list)
    request_count: int = 0
    retry_count: int = 0
    tokens_processed: int = 0

    @property
    def succeeded(self) -> int:
        return len(self.embeddings) - len(self.failed_indices)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_indices)


class EmbeddingProvider(Protocol):
    def embed(self, texts: list[str]) -> list[list[float] | None]:
        """Return one vector (or None) per text, in order."""
        ...


class LiteLLMEmbeddingProvider:
    """EmbeddingProvider backed by ``litellm.embedding()``.

    Retries are owned by BatchEmbeddingClient, so LiteLLM's own retry is
    disabled here.
    """

    def __init__(self, model: str, timeout: float | None = 60.0) -> None:
        self.model = model
        self.timeout = timeout

    def embed(self, texts: list[str]) -> list[list[float] | None]:
        kwargs: dict[str, object] = {"model": self.model, "input": texts, "num_retries": 0}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        response = litellm.embedding(**kwargs)
        return [item["embedding"] for item in response.data]


# ------------------------------------------------------------------
# Batching
# ------------------------------------------------------------------


def plan_batches(
    texts: Sequence[str], max_batch_size: int = 100, max_tokens_per_batch: int = 20_000
) -> list[list[int]]:
    """Group input indices into ordered batches.

    A batch holds at most *max_batch_size* texts and, unless a single text is
    larger on its own, at most *max_tokens_per_batch* estimated tokens.
    """
    batches: list[list[int]] = []
    current: list[int] = []
    current_tokens = 0
    for i, text in enumerate(texts):
        tokens = count_tokens(text)
        if current and (
            len(current) >= max_batch_size or current_tokens + tokens > max_tokens_per_batch
        ):
            batches.append(current)
            current, current_tokens = [], 0
        current.append(i)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for provider push-back: HTTP 429 or an equivalent error."""
    if isinstance(exc, litellm.RateLimitError):
        return True
    status = getattr(exc, "status_code", None)
    if status is not None:
        return status == 429
    return _RATE_LIMIT_RE.search(str(exc)) is not None


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class BatchEmbeddingClient:
    """Embed many texts through *provider*, tolerating partial failure.

    Per batch: wait for the rate limiter, call the provider, and on a
    rate-limit error retry after ``backoff_seconds * 2**(attempt-1)`` up to
    *max_retries* times. An exhausted or otherwise failed batch marks all of
    its texts as failed; later batches still run.

    Args:
        provider: Turns texts into vectors.
        model_name: Stored on every record built from these vectors.
        rate_limiter: Shared limiter; a 60/min limiter is created if None.
        max_batch_size: Texts per request.
        max_tokens_per_batch: Estimated tokens per request.
        max_retries: Retries per batch after a rate-limit error.
        backoff_seconds: Base delay for the exponential backoff.
        sleep: Called for backoff delays.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        model_name: str,
        rate_limiter: RateLimiter | None = None,
        max_batch_size: int = 100,
        max_tokens_per_batch: int = 20_000,
        max_retries: int = 2,
        backoff_seconds: float = 6.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.provider = provider
        self.model_name = model_name
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_batch_size = max_batch_size
        self.max_tokens_per_batch = max_tokens_per_batch
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def embed_texts(self, texts: Sequence[str], operation: str = "embedding") -> BatchEmbeddingResult:
        """Embed *texts*; the result is index-aligned with the input."""
        result = BatchEmbeddingResult(embeddings=[None] * len(texts))
        for batch_no, indices in enumerate(
            plan_batches(texts, self.max_batch_size, self.max_tokens_per_batch)
        ):
            batch = [texts[i] for i in indices]
            vectors = self._embed_batch(batch, operation, batch_no, result)
            if vectors is None:
                result.failed_indices.extend(indices)
                continue
            result.tokens_processed += sum(count_tokens(t) for t in batch)
            for i, vector in zip(indices, vectors):
                if vector:
                    result.embeddings[i] = Embedding(vector=[float(x) for x in vector])
                else:
                    result.failed_indices.append(i)
        result.failed_indices.sort()
        if result.failed_indices:
            log.warning(
                "embed.partial_failure",
                operation=operation,
                failed=len(result.failed_indices),
                total=len(texts),
            )
        return result

    def embed_query(self, text: str, operation: str = "query") -> Embedding | None:
        """Embed a single text; None if it could not be embedded."""
        return self.embed_texts([text], operation=operation).embeddings[0]

    def _embed_batch(
        self,
        batch: list[str],
        operation: str,
        batch_no: int,
        result: BatchEmbeddingResult,
    ) -> list[list[float] | None] | None:
        """One batch with rate limiting and backoff; None if the batch failed."""
        attempt = 0
        while True:
            self.rate_limiter.acquire(operation)
            result.request_count += 1
            try:
                vectors = self.provider.embed(batch)
            except Exception as exc:
                if is_rate_limit_error(exc) and attempt < self.max_retries:
                    attempt += 1
                    result.retry_count += 1
                    delay = self.backoff_seconds * 2 ** (attempt - 1)
                    log.warning(
                        "embed.batch_retry",
                        operation=operation,
                        batch=batch_no,
                        attempt=attempt,
                        delay=delay,
                        error=str(exc),
                    )
                    self._sleep(delay)
                    continue
                log.error(
                    "embed.batch_failed",
                    operation=operation,
                    batch=batch_no,
                    size=len(batch),
                    attempts=attempt + 1,
                    error=str(exc),
                )
                return None
            if len(vectors) != len(batch):
                log.error(
                    "embed.batch_failed",
                    operation=operation,
                    batch=batch_no,
                    size=len(batch),
                    error=f"provider returned {len(vectors)} vectors for {len(batch)} texts",
                )
                return None
            return vectors
