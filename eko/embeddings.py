"""
Embedding providers for Eko.

- `Embedder` is the text -> vector contract every memory component depends on
- `OpenAIEmbedder` calls the OpenAI embeddings endpoint with a per-request
  timeout and retries on rate limits / timeouts
- Any provider failure surfaces as `EmbeddingFailure`
"""
from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

import openai
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from eko.config import EmbeddingConfig
from eko.errors import EmbeddingFailure
from eko.logging_config import get_logger

logger = get_logger("embeddings")

# Hard cap to avoid pathological inputs
MAX_INPUT_CHARS = 8000


class Embedder(Protocol):
    """Text -> fixed-length vector."""

    dimensions: int

    def embed(self, text: str) -> List[float]: ...

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]: ...


class OpenAIEmbedder:
    """OpenAI embedding provider (text-embedding-3-small by default)."""

    def __init__(self, config: Optional[EmbeddingConfig] = None, client=None):
        self.config = config or EmbeddingConfig()
        self.dimensions = self.config.dimensions
        self._client = client

    def _get_client(self):
        """Lazy initialization of the OpenAI client."""
        if self._client is None:
            if not self.config.api_key:
                raise EmbeddingFailure("OPENAI_API_KEY environment variable not set")
            self._client = openai.OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((openai.RateLimitError, openai.APITimeoutError)),
    )
    def _create(self, inputs: List[str]):
        return self._get_client().embeddings.create(
            model=self.config.model,
            input=inputs,
            timeout=self.config.timeout,
        )

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        inputs = [(t or "")[:MAX_INPUT_CHARS] for t in texts]
        if any(not t.strip() for t in inputs):
            raise EmbeddingFailure("Cannot embed empty text")
        try:
            response = self._create(inputs)
        except RetryError as e:
            raise EmbeddingFailure(f"Embedding retries exhausted: {e.last_attempt.exception()}") from e
        except openai.APITimeoutError as e:
            raise EmbeddingFailure(f"Embedding timed out after {self.config.timeout}s") from e
        except openai.OpenAIError as e:
            logger.error(f"OpenAI embedding failed: {e}")
            raise EmbeddingFailure(f"OpenAI embedding failed: {e}") from e

        data = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in data]

    def embed(self, text: str) -> List[float]:
        return self.embed_many([text])[0]
