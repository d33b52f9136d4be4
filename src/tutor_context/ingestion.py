"""Chunk ingestion: embed text chunks and append them to the vector index.

Combines chunking (optional), concurrent embedding, and one batch write per
owning document or video. Ingestion is at-least-once: a failed run is retried
by deleting the owner's rows and ingesting again (see ``reingest_document``).
"""

import asyncio
from collections.abc import Awaitable, Callable

from loguru import logger

from tutor_context.chunking import ChunkingConfig, RecursiveTokenChunker, TranscriptChunker
from tutor_context.embedding import EmbeddingClient
from tutor_context.errors import InconsistentOwnershipError
from tutor_context.index import VectorIndex
from tutor_context.models import (
    CollectionKind,
    DocumentChunkRecord,
    TranscriptChunkRecord,
    TranscriptSegment,
    document_chunk_id,
    transcript_chunk_id,
    utc_now,
)
from tutor_context.predicates import Predicate

# Called after a permanent document's chunks are written (e.g. to mark them embedded)
EmbeddedHook = Callable[[int], Awaitable[None]]


def document_predicate(document_id: int, is_temporary: bool) -> Predicate:
    """Rows of one document within its partition."""
    return Predicate.where(document_id=document_id, is_temporary=is_temporary)


class ChunkIngestor:
    """Indexes document and transcript chunks.

    Handles the complete workflow:
    1. Drop whitespace-only chunks and number the rest from 0
    2. Embed the remaining chunks concurrently
    3. Append all records in one batch
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndex,
        chunking_config: ChunkingConfig | None = None,
        max_concurrency: int = 16,
        on_document_embedded: EmbeddedHook | None = None,
    ):
        """Initialize chunk ingestor.

        Args:
            embedding_client: Client for generating embeddings
            vector_index: Vector index for storage
            chunking_config: Configuration for text chunking (uses defaults if None)
            max_concurrency: Embedding calls allowed in flight at once
            on_document_embedded: Optional hook run after a permanent document
                is indexed
        """
        self.embedding_client = embedding_client
        self.vector_index = vector_index
        self.chunking_config = chunking_config or ChunkingConfig()
        self.max_concurrency = max_concurrency
        self.on_document_embedded = on_document_embedded
        self.transcript_chunker = TranscriptChunker(self.chunking_config)
        self._document_chunker: RecursiveTokenChunker | None = None

    @property
    def document_chunker(self) -> RecursiveTokenChunker:
        # Built on first use: loading the tokenizer is slow
        if self._document_chunker is None:
            self._document_chunker = RecursiveTokenChunker(self.chunking_config)
        return self._document_chunker

    async def _embed_all(self, texts: list[str]) -> list[list[float]]:
        """Embed texts concurrently; results keep input order."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def embed(text: str) -> list[float]:
            async with semaphore:
                return await self.embedding_client.embed_single(text)

        return list(await asyncio.gather(*(embed(text) for text in texts)))

    async def ingest_document(
        self,
        document_id: int,
        subject_id: int,
        chunks: list[str],
        owner_user_id: int = 0,
        owner_session_id: int = 0,
        is_temporary: bool = False,
    ) -> int:
        """Embed and index the chunks of one document.

        ``chunk_index`` numbers the non-empty chunks contiguously from 0 in
        their order in ``chunks``, whatever order the embedding calls complete in.

        Args:
            document_id: Owning document id
            subject_id: Subject classification
            chunks: Ordered chunk texts
            owner_user_id: Uploading user (temporary documents only)
            owner_session_id: Chat session (temporary documents only)
            is_temporary: Whether the document is a session-scoped upload

        Returns:
            Number of rows written (0 when there was nothing to index)

        Raises:
            InconsistentOwnershipError: If ``is_temporary`` contradicts the owner pair
            EmbeddingProviderError: If any embedding call fails
            IndexWriteError: If the batch write fails
        """
        has_owner = owner_user_id != 0 or owner_session_id != 0
        if is_temporary != has_owner:
            raise InconsistentOwnershipError(
                "is_temporary must be set exactly when an owner user/session is given",
                {
                    "document_id": document_id,
                    "is_temporary": is_temporary,
                    "owner_user_id": owner_user_id,
                    "owner_session_id": owner_session_id,
                },
            )

        positioned = list(enumerate(text for text in chunks if text.strip()))
        if len(positioned) < len(chunks):
            logger.warning(
                f"Skipping {len(chunks) - len(positioned)} empty chunks for document {document_id}"
            )
        if not positioned:
            return 0

        vectors = await self._embed_all([text for _, text in positioned])
        created_at = utc_now()

        records = [
            DocumentChunkRecord(
                id=document_chunk_id(document_id, position, is_temporary),
                vector=vector,
                text=text,
                document_id=document_id,
                chunk_index=position,
                subject_id=subject_id,
                owner_user_id=owner_user_id,
                owner_session_id=owner_session_id,
                is_temporary=is_temporary,
                created_at=created_at,
            )
            for (position, text), vector in zip(positioned, vectors, strict=True)
        ]

        await self.vector_index.add(CollectionKind.DOCUMENTS, records)

        if not is_temporary and self.on_document_embedded is not None:
            await self.on_document_embedded(document_id)

        logger.info(
            f"Indexed {len(records)} {'temporary' if is_temporary else 'permanent'} "
            f"chunks for document {document_id}"
        )
        return len(records)

    async def ingest_temporary_document(
        self,
        document_id: int,
        user_id: int,
        session_id: int,
        subject_id: int,
        chunks: list[str],
    ) -> int:
        """Index a session-scoped upload owned by ``(user_id, session_id)``."""
        return await self.ingest_document(
            document_id,
            subject_id,
            chunks,
            owner_user_id=user_id,
            owner_session_id=session_id,
            is_temporary=True,
        )

    async def ingest_document_text(
        self,
        document_id: int,
        subject_id: int,
        text: str,
        owner_user_id: int = 0,
        owner_session_id: int = 0,
        is_temporary: bool = False,
    ) -> int:
        """Chunk extracted document text, then ingest the chunks."""
        chunks = self.document_chunker.chunk(text)
        return await self.ingest_document(
            document_id,
            subject_id,
            chunks,
            owner_user_id=owner_user_id,
            owner_session_id=owner_session_id,
            is_temporary=is_temporary,
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
        """Delete any rows of the document, then ingest it again.

        This is the retry path after a partial failure. A concurrent reader
        may briefly see no rows for the document.
        """
        removed = await self.vector_index.delete_where(
            CollectionKind.DOCUMENTS, document_predicate(document_id, is_temporary)
        )
        if removed:
            logger.info(f"Removed {removed} previous chunks of document {document_id}")

        return await self.ingest_document(
            document_id,
            subject_id,
            chunks,
            owner_user_id=owner_user_id,
            owner_session_id=owner_session_id,
            is_temporary=is_temporary,
        )

    async def ingest_video_transcript(
        self,
        video_id: int,
        subject_id: int,
        segments: list[TranscriptSegment],
    ) -> int:
        """Embed and index transcript segments of one video.

        ``chunk_id`` is the segment's own ``sequence_id`` when given,
        otherwise its position among the non-empty segments.

        Returns:
            Number of rows written
        """
        positioned = list(enumerate(segment for segment in segments if segment.text.strip()))
        if len(positioned) < len(segments):
            logger.warning(
                f"Skipping {len(segments) - len(positioned)} empty transcript chunks "
                f"for video {video_id}"
            )
        if not positioned:
            return 0

        vectors = await self._embed_all([segment.text for _, segment in positioned])
        created_at = utc_now()

        records = []
        for (position, segment), vector in zip(positioned, vectors, strict=True):
            chunk_id = segment.sequence_id if segment.sequence_id is not None else position
            records.append(
                TranscriptChunkRecord(
                    id=transcript_chunk_id(video_id, chunk_id),
                    vector=vector,
                    text=segment.text,
                    video_id=video_id,
                    chunk_id=chunk_id,
                    subject_id=subject_id,
                    created_at=created_at,
                )
            )

        await self.vector_index.add(CollectionKind.TRANSCRIPTS, records)
        logger.info(f"Indexed {len(records)} transcript chunks for video {video_id}")
        return len(records)

    async def ingest_transcript_text(self, video_id: int, subject_id: int, transcript: str) -> int:
        """Split a raw transcript into sentence groups, then ingest them."""
        segments = self.transcript_chunker.chunk(transcript)
        return await self.ingest_video_transcript(video_id, subject_id, segments)
