"""Context engine facade.

``ContextEngine`` wires configuration, the embedding client, the vector
index and every component on top of them. The application constructs one
engine at startup, calls ``initialize()``, and injects it wherever documents
are uploaded or questions are answered.

The ``*_safely`` ingestion methods and ``answer_context``/``video_context``
implement the degraded paths: an upload still succeeds when indexing fails,
and a chat answer is still produced without retrieved context.
"""

from typing import Any

from loguru import logger

from tutor_context.assembler import DocumentLookup, QAContextAssembler
from tutor_context.config import ContextEngineConfig
from tutor_context.embedding import EmbeddingClient, create_embedding_client
from tutor_context.errors import (
    EmbeddingProviderError,
    IndexUnavailableError,
    IndexWriteError,
)
from tutor_context.index import VectorIndex, create_index
from tutor_context.ingestion import ChunkIngestor, EmbeddedHook
from tutor_context.maintenance import LifecycleManager, MaintenanceScheduler
from tutor_context.models import (
    AnswerContext,
    CallerContext,
    DocumentInfo,
    IndexStats,
    ScoredChunk,
    TranscriptHit,
    TranscriptSearchGroup,
    TranscriptSegment,
    VideoIndexStats,
    VideoInfo,
    VideoQAResult,
)
from tutor_context.retrieval import ContextualRetriever, VideoLookup
from tutor_context.video_qa import VideoQACombiner, render_video_context

# Failures that have a degraded path; anything else is a bug and propagates
DEGRADABLE_ERRORS = (EmbeddingProviderError, IndexUnavailableError, IndexWriteError)


class NoDocumentLookup:
    """Document lookup used when the application provides none."""

    async def get_document(self, document_id: int) -> DocumentInfo | None:
        return None

    async def get_temporary_document(self, document_id: int) -> DocumentInfo | None:
        return None


async def no_video_lookup(video_id: int) -> VideoInfo | None:
    return None


class ContextEngine:
    """Retrieval-augmented context engine for the tutoring app.

    Example:
        >>> config = load_config("default")
        >>> engine = ContextEngine.from_config(config, document_lookup=storage)
        >>> await engine.initialize()
        >>> await engine.ingest_document(7, 2, ["Định nghĩa hàm số"])
        >>> context = await engine.answer_context("hàm số là gì", subject_id=2)
    """

    def __init__(
        self,
        config: ContextEngineConfig,
        embedding_client: EmbeddingClient,
        index: VectorIndex,
        document_lookup: DocumentLookup | None = None,
        video_lookup: VideoLookup | None = None,
        on_document_embedded: EmbeddedHook | None = None,
    ):
        """Initialize engine components (no I/O happens until ``initialize()``).

        Args:
            config: Engine configuration
            embedding_client: Embedding provider client
            index: Uninitialized vector index
            document_lookup: Document metadata lookup for labelling context
            video_lookup: Video title lookup for transcript grouping
            on_document_embedded: Hook run after a permanent document is indexed
        """
        self.config = config
        self.embedding_client = embedding_client
        self.index = index
        self.document_lookup = document_lookup or NoDocumentLookup()
        self.video_lookup = video_lookup or no_video_lookup

        self.ingestor = ChunkIngestor(
            embedding_client,
            index,
            chunking_config=config.chunking,
            max_concurrency=config.embedding.max_concurrency,
            on_document_embedded=on_document_embedded,
        )
        self.retriever = ContextualRetriever(index, embedding_client, config.retrieval)
        self.assembler = QAContextAssembler(
            self.retriever, self.document_lookup, top_k=config.retrieval.answer_top_k
        )
        self.combiner = VideoQACombiner(self.retriever, config.video_qa)
        self.lifecycle = LifecycleManager(index, config.retrieval, config.maintenance)
        self.scheduler = MaintenanceScheduler(
            self.lifecycle, interval_seconds=config.maintenance.sweep_interval_seconds
        )

    @classmethod
    def from_config(
        cls,
        config: ContextEngineConfig,
        embedding_client: EmbeddingClient | None = None,
        index: VectorIndex | None = None,
        **kwargs: Any,
    ) -> "ContextEngine":
        """Build an engine, creating the embedding client and index from config."""
        embedding_client = embedding_client or create_embedding_client(config.embedding)
        index = index or create_index(config.index, dimensions=config.embedding.dimensions)
        return cls(config, embedding_client, index, **kwargs)

    async def initialize(self, start_scheduler: bool = False) -> None:
        """Initialize the vector index; optionally start the hourly expiry sweep.

        Raises:
            IndexUnavailableError: If the index cannot be initialized
        """
        await self.index.initialize()
        if start_scheduler:
            self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.index.close()

    # Ingestion

    async def ingest_document(
        self,
        document_id: int,
        subject_id: int,
        chunks: list[str],
        owner_user_id: int = 0,
        owner_session_id: int = 0,
        is_temporary: bool = False,
    ) -> int:
        return await self.ingestor.ingest_document(
            document_id,
            subject_id,
            chunks,
            owner_user_id=owner_user_id,
            owner_session_id=owner_session_id,
            is_temporary=is_temporary,
        )

    async def ingest_temporary_document(
        self, document_id: int, user_id: int, session_id: int, subject_id: int, chunks: list[str]
    ) -> int:
        return await self.ingestor.ingest_temporary_document(
            document_id, user_id, session_id, subject_id, chunks
        )

    async def reingest_document(
        self,
        document_id: int,
        subject_id: int,
        chunks: list[str],
        owner_user_id: int = 0,
        owner_session_id: int = 0,
        is_temporary: bool = False,
    ) -> int:
        return await self.ingestor.reingest_document(
            document_id,
            subject_id,
            chunks,
            owner_user_id=owner_user_id,
            owner_session_id=owner_session_id,
            is_temporary=is_temporary,
        )

    async def ingest_video_transcript(
        self, video_id: int, subject_id: int, segments: list[TranscriptSegment]
    ) -> int:
        return await self.ingestor.ingest_video_transcript(video_id, subject_id, segments)

    async def ingest_transcript_text(self, video_id: int, subject_id: int, transcript: str) -> int:
        return await self.ingestor.ingest_transcript_text(video_id, subject_id, transcript)

    async def ingest_document_safely(
        self, document_id: int, subject_id: int, chunks: list[str]
    ) -> int:
        """Index a permanent document; on failure log and return 0.

        The document stays searchable-by-nothing until it is reprocessed.
        """
        try:
            return await self.ingest_document(document_id, subject_id, chunks)
        except DEGRADABLE_ERRORS as e:
            logger.error(
                f"Indexing failed for document {document_id}, continuing without vectors: {e}"
            )
            return 0

    async def ingest_temporary_document_safely(
        self, document_id: int, user_id: int, session_id: int, subject_id: int, chunks: list[str]
    ) -> int:
        """Index a session upload; on failure log and return 0."""
        try:
            return await self.ingest_temporary_document(
                document_id, user_id, session_id, subject_id, chunks
            )
        except DEGRADABLE_ERRORS as e:
            logger.error(
                f"Indexing failed for temporary document {document_id} "
                f"(user {user_id}, session {session_id}): {e}"
            )
            return 0

    async def ingest_video_transcript_safely(
        self, video_id: int, subject_id: int, segments: list[TranscriptSegment]
    ) -> int:
        """Index a video transcript; on failure log and return 0."""
        try:
            return await self.ingest_video_transcript(video_id, subject_id, segments)
        except DEGRADABLE_ERRORS as e:
            logger.error(f"Indexing failed for video {video_id}: {e}")
            return 0

    # Retrieval

    async def search_with_context(
        self,
        query: str,
        subject_id: int | None = None,
        caller: CallerContext | None = None,
        top_k: int | None = None,
    ) -> list[ScoredChunk]:
        return await self.retriever.search_with_context(
            query, subject_id=subject_id, caller=caller, top_k=top_k
        )

    async def search_documents(
        self, query: str, subject_id: int | None = None, top_k: int | None = None
    ) -> list[ScoredChunk]:
        return await self.retriever.search_documents(query, subject_id=subject_id, top_k=top_k)

    async def search_transcripts(
        self, query: str, subject_id: int | None = None, top_k: int = 5
    ) -> list[TranscriptHit]:
        return await self.retriever.search_transcripts(query, subject_id=subject_id, top_k=top_k)

    async def search_transcripts_grouped(
        self, query: str, subject_id: int | None = None, top_k: int = 10
    ) -> list[TranscriptSearchGroup]:
        return await self.retriever.search_transcripts_grouped(
            query, self.video_lookup, subject_id=subject_id, top_k=top_k
        )

    async def answer_context(
        self,
        query: str,
        subject_id: int | None = None,
        caller: CallerContext | None = None,
    ) -> AnswerContext:
        """Build the answer context, degrading to an empty context on failure."""
        try:
            return await self.assembler.build(query, subject_id=subject_id, caller=caller)
        except (EmbeddingProviderError, IndexUnavailableError) as e:
            logger.warning(f"Answering without retrieved context (subject {subject_id}): {e}")
            return AnswerContext(system_prompt="", context="", relevant_docs=[])

    async def combine_video_qa(
        self,
        query: str,
        subject_id: int | None = None,
        top_k: int | None = None,
        current_video_id: int | None = None,
    ) -> VideoQAResult:
        return await self.combiner.combine(
            query, subject_id=subject_id, top_k=top_k, current_video_id=current_video_id
        )

    async def video_context(
        self,
        query: str,
        subject_id: int | None = None,
        current_video_id: int | None = None,
        top_k: int | None = None,
    ) -> str:
        """Render the video Q&A context block, degrading to "" on failure."""
        try:
            result = await self.combine_video_qa(
                query, subject_id=subject_id, top_k=top_k, current_video_id=current_video_id
            )
        except (EmbeddingProviderError, IndexUnavailableError) as e:
            logger.warning(
                f"Answering video question without retrieved context "
                f"(video {current_video_id}): {e}"
            )
            return ""
        return await render_video_context(result, self.video_lookup, self.document_lookup)

    # Lifecycle

    async def delete_document(self, document_id: int) -> int:
        return await self.lifecycle.delete_document(document_id, temporary=False)

    async def delete_temporary_document(self, document_id: int) -> int:
        return await self.lifecycle.delete_document(document_id, temporary=True)

    async def delete_user_session(self, user_id: int, session_id: int) -> int:
        return await self.lifecycle.delete_user_session(user_id, session_id)

    async def delete_video(self, video_id: int) -> int:
        return await self.lifecycle.delete_video(video_id)

    async def delete_all(self) -> int:
        return await self.lifecycle.delete_all()

    async def clear_transcripts(self) -> int:
        return await self.lifecycle.clear_transcripts()

    async def sweep_expired(self) -> int:
        return await self.lifecycle.sweep_expired()

    async def get_stats(self) -> IndexStats:
        return await self.lifecycle.get_stats()

    async def get_video_stats(self) -> VideoIndexStats:
        return await self.lifecycle.get_video_stats()
