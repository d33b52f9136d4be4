"""Retrieval-augmented context engine for the tutoring chat app.

This package ingests document and video transcript text into a vector index,
keeps session-scoped uploads apart from subject-wide material, and builds the
ranked context handed to the tutoring model. HTTP routing, authentication and
text extraction live in the application that consumes it.

Architecture:
    - chunking: Token-aware document splitting, sentence-grouped transcripts
    - embedding: Async OpenAI embedding client with retries
    - index: Two-collection vector index (LanceDB, Pinecone, in-memory)
    - ingestion: Concurrent embedding and batch writes per document/video
    - scoring/retrieval: Bucket- and recency-weighted ranking
    - assembler/video_qa: Context blocks for chat and video Q&A
    - maintenance: Deletion hooks, expiry sweep, statistics
    - engine: Facade wiring everything from configuration

Usage:
    >>> from tutor_context import ContextEngine, load_config
    >>> engine = ContextEngine.from_config(load_config("default"))
    >>> await engine.initialize(start_scheduler=True)
    >>> context = await engine.answer_context("hàm số là gì", subject_id=2)
"""

__version__ = "0.1.0"

from tutor_context.config import ContextEngineConfig, load_config
from tutor_context.engine import ContextEngine
from tutor_context.errors import (
    ContextEngineError,
    EmbeddingProviderError,
    InconsistentOwnershipError,
    IndexNotInitializedError,
    IndexUnavailableError,
    IndexWriteError,
    RetrievalUnavailableError,
)
from tutor_context.models import (
    AnswerContext,
    Bucket,
    CallerContext,
    IndexStats,
    ScoredChunk,
    TranscriptHit,
    TranscriptSegment,
    VideoIndexStats,
    VideoQAResult,
)

__all__ = [
    "ContextEngine",
    "ContextEngineConfig",
    "load_config",
    "ContextEngineError",
    "EmbeddingProviderError",
    "IndexUnavailableError",
    "IndexNotInitializedError",
    "RetrievalUnavailableError",
    "IndexWriteError",
    "InconsistentOwnershipError",
    "AnswerContext",
    "Bucket",
    "CallerContext",
    "IndexStats",
    "ScoredChunk",
    "TranscriptHit",
    "TranscriptSegment",
    "VideoIndexStats",
    "VideoQAResult",
]
