"""Embedding client abstraction for model-agnostic vector generation.

The engine treats the provider as a pure async function ``text -> vector``.
Calls include retry logic for transient failures, and every provider failure
surfaces as ``EmbeddingProviderError`` so callers never see SDK exceptions.
"""

import asyncio
from typing import Protocol

from loguru import logger
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)
from pydantic import BaseModel, Field

from tutor_context.errors import EmbeddingProviderError


class EmbeddingConfig(BaseModel):
    """Configuration for embedding generation.

    Attributes:
        model: Model identifier (e.g., "openai/text-embedding-3-small")
        version: Version tag for reindexing triggers (e.g., "v1")
        dimensions: Expected embedding dimensionality, fixed per deployment
        batch_size: Number of texts to embed per API call
        max_retries: Maximum attempts for transient failures
        timeout_seconds: API request timeout
        max_concurrency: Embedding calls allowed in flight during one ingestion
        api_key: API key for external services (set via env var)
    """

    model: str
    version: str = "v1"
    dimensions: int = Field(default=1536, ge=2, le=4096)
    batch_size: int = Field(default=100, ge=1, le=500)
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    max_concurrency: int = Field(default=16, ge=1, le=256)
    api_key: str | None = None


class EmbeddingClient(Protocol):
    """Protocol for embedding client implementations."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a batch of texts.

        Args:
            texts: List of input texts (max batch_size)

        Returns:
            List of embedding vectors (same order as inputs)

        Raises:
            EmbeddingProviderError: If the provider fails after retries
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text.

        Args:
            text: Input text

        Returns:
            Embedding vector
        """
        ...


class OpenAIEmbedding:
    """OpenAI embedding client with retry logic and batching."""

    def __init__(self, config: EmbeddingConfig):
        """Initialize OpenAI client.

        Args:
            config: Embedding configuration with API key
        """
        self.config = config
        # Retries are handled here so attempts and backoff are visible in logs
        self.client = AsyncOpenAI(
            api_key=config.api_key, timeout=config.timeout_seconds, max_retries=0
        )

        self.model_name = config.model.removeprefix("openai/")

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a batch of texts with retry logic.

        Args:
            texts: List of input texts (max batch_size)

        Returns:
            List of embedding vectors (same order as inputs)

        Raises:
            ValueError: If batch size exceeds config limit
            EmbeddingProviderError: For API failures after all retries, or a
                dimensionality mismatch
        """
        if len(texts) > self.config.batch_size:
            raise ValueError(f"Batch size {len(texts)} exceeds limit {self.config.batch_size}")

        if not texts:
            return []

        attempts = self.config.max_retries
        for attempt in range(attempts):
            try:
                response = await self.client.embeddings.create(model=self.model_name, input=texts)
            except (APITimeoutError, APIConnectionError) as e:
                logger.warning(
                    f"Transient error embedding batch (attempt {attempt + 1}/{attempts}): {e}"
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(2**attempt)
                    continue
                raise EmbeddingProviderError(
                    "Embedding provider unreachable", {"model": self.model_name}
                ) from e
            except RateLimitError as e:
                logger.warning(f"Rate limited (attempt {attempt + 1}/{attempts}): {e}")
                if attempt < attempts - 1:
                    await asyncio.sleep(2 ** (attempt + 1))
                    continue
                raise EmbeddingProviderError(
                    "Embedding quota exhausted", {"model": self.model_name}
                ) from e
            except APIStatusError as e:
                logger.error(f"HTTP error embedding batch: {e}")
                raise EmbeddingProviderError(
                    "Embedding request rejected",
                    {"model": self.model_name, "status": e.status_code},
                ) from e

            ordered = sorted(response.data, key=lambda item: item.index)
            embeddings = [list(item.embedding) for item in ordered]

            for i, emb in enumerate(embeddings):
                if len(emb) != self.config.dimensions:
                    raise EmbeddingProviderError(
                        f"Expected {self.config.dimensions} dimensions, "
                        f"got {len(emb)} for text {i}",
                        {"model": self.model_name},
                    )

            logger.debug(
                f"Embedded {len(texts)} texts with {self.model_name} "
                f"(attempt {attempt + 1}/{attempts})"
            )
            return embeddings

        raise EmbeddingProviderError("Exhausted all retry attempts", {"model": self.model_name})

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text.

        Args:
            text: Input text

        Returns:
            Embedding vector
        """
        embeddings = await self.embed_batch([text])
        return embeddings[0]


def create_embedding_client(config: EmbeddingConfig) -> EmbeddingClient:
    """Factory function to create embedding client based on model config.

    Args:
        config: Embedding configuration

    Returns:
        Embedding client implementation

    Example:
        >>> config = EmbeddingConfig(
        ...     model="openai/text-embedding-3-small",
        ...     version="v1",
        ...     dimensions=1536,
        ...     api_key="sk-..."
        ... )
        >>> client = create_embedding_client(config)
    """
    if config.model.startswith("openai/"):
        return OpenAIEmbedding(config)
    raise ValueError(f"Unknown model prefix in {config.model!r}. Expected 'openai/'")
