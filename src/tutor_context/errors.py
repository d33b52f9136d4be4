"""Exception hierarchy for the retrieval context engine.

Every failure raised by the engine derives from ``ContextEngineError`` so the
application layer can choose between a degraded path (answer without context,
accept an upload that is searchable-by-nothing) and a hard failure.
"""

from __future__ import annotations

from typing import Any


class ContextEngineError(Exception):
    """Base exception for all context engine failures.

    Attributes:
        message: Human-readable error description
        context: Optional diagnostic details (operation, owning id, ...)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in sorted(self.context.items()))
        return f"{self.message} ({details})"


class EmbeddingProviderError(ContextEngineError):
    """The embedding provider failed (network, quota, or bad dimensionality)."""


class IndexUnavailableError(ContextEngineError):
    """The vector index failed to initialize or did not respond."""


class IndexNotInitializedError(IndexUnavailableError):
    """An index operation was attempted before ``initialize()`` succeeded."""


class RetrievalUnavailableError(IndexUnavailableError):
    """Contextual retrieval could not reach the vector index."""


class IndexWriteError(ContextEngineError):
    """Rows could not be written (schema mismatch or store failure)."""


class InconsistentOwnershipError(ContextEngineError, ValueError):
    """``is_temporary`` contradicts the owner user/session fields."""
