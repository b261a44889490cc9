"""
Exception taxonomy for the Eko memory and reflection core.

Memory-side errors (StoreUnavailable, EmbeddingFailure) are degraded around:
callers drop the memory-dependent context and carry on. Reasoning-side errors
(LLMError and subclasses) abort the current digest or reflection cycle while
preserving all state.
"""


class EkoError(Exception):
    """Base exception for all Eko errors."""

    pass


class StoreUnavailable(EkoError):
    """Raised when the vector memory backend cannot be reached."""

    pass


class EmbeddingFailure(EkoError):
    """Raised when the embedding model fails or times out."""

    pass


class InvalidTTL(EkoError, ValueError):
    """Raised for TTL strings that are not `<integer><unit>`."""

    pass


class LLMError(EkoError):
    """Base exception for reasoning-collaborator errors."""

    pass


class RateLimitError(LLMError):
    """Raised when the reasoning provider rate limit is exceeded."""

    pass


class ReasoningTimeout(LLMError):
    """Raised when a reasoning call does not complete within its timeout."""

    pass


class MalformedDecision(LLMError):
    """Raised when a decision violates the pass/message contract."""

    pass


class ExtractionError(LLMError):
    """Raised when the digest extraction output cannot be used."""

    pass
