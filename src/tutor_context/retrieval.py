"""Contextual retrieval over the document and transcript collections.

Document search over-fetches, scores every candidate by ownership bucket and
recency, and returns the best ``top_k``. Transcript search is plain nearest
neighbour ranking, optionally grouped by video for display.
"""

from collections.abc import Awaitable, Callable

from loguru import logger

from tutor_context.config import RetrievalConfig
from tutor_context.embedding import EmbeddingClient
from tutor_context.errors import IndexUnavailableError, RetrievalUnavailableError
from tutor_context.index import VectorIndex
from tutor_context.models import (
    Bucket,
    CallerContext,
    CollectionKind,
    IndexHit,
    ScoredChunk,
    TranscriptChunkPayload,
    TranscriptHit,
    TranscriptSearchGroup,
    VideoInfo,
)
from tutor_context.predicates import Predicate
from tutor_context.scoring import score_candidates

VideoLookup = Callable[[int], Awaitable[VideoInfo | None]]


def subject_predicate(subject_id: int | None) -> Predicate:
    if subject_id is None:
        return Predicate()
    return Predicate.where(subject_id=subject_id)


class ContextualRetriever:
    """Ranks indexed chunks for a query.

    Example:
        >>> retriever = ContextualRetriever(index, embedder, RetrievalConfig())
        >>> results = await retriever.search_with_context(
        ...     "hàm số là gì", subject_id=2, caller=CallerContext(user_id=9, session_id=100)
        ... )
        >>> results[0].category
        <Bucket.TEMPORARY: 'temporary'>
    """

    def __init__(
        self,
        index: VectorIndex,
        embedder: EmbeddingClient,
        config: RetrievalConfig | None = None,
    ):
        self.index = index
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    async def _search(
        self,
        kind: CollectionKind,
        query: str,
        limit: int,
        predicate: Predicate,
    ) -> list[IndexHit]:
        query_vector = await self.embedder.embed_single(query)
        try:
            return await self.index.search(kind, query_vector, limit, predicate)
        except IndexUnavailableError as e:
            logger.error(f"Retrieval from {kind.value} failed ({predicate}): {e}")
            raise RetrievalUnavailableError(
                "Vector index unavailable for retrieval",
                {"collection": kind.value, "predicate": str(predicate)},
            ) from e

    async def search_with_context(
        self,
        query: str,
        subject_id: int | None = None,
        caller: CallerContext | None = None,
        top_k: int | None = None,
        buckets: set[Bucket] | None = None,
        predicate: Predicate | None = None,
    ) -> list[ScoredChunk]:
        """Return the ``top_k`` document chunks ranked by bucket, recency and similarity.

        Args:
            query: Question text
            subject_id: Restrict to one subject (None: all subjects)
            caller: Asking user/session; None falls back to flat similarity ranking
            top_k: Number of results (defaults to ``retrieval.default_top_k``)
            buckets: Keep only candidates in these buckets (None: keep all)
            predicate: Extra store filter applied before over-fetching

        Returns:
            Up to ``top_k`` scored chunks, best first

        Raises:
            EmbeddingProviderError: If the query cannot be embedded
            RetrievalUnavailableError: If the index does not respond
        """
        if top_k is None:
            top_k = self.config.default_top_k
        if top_k <= 0:
            return []
        limit = top_k * self.config.overfetch_factor

        store_filter = subject_predicate(subject_id)
        if predicate is not None:
            store_filter = store_filter & predicate

        hits = await self._search(CollectionKind.DOCUMENTS, query, limit, store_filter)
        scored = score_candidates(hits, caller, self.config)
        if buckets is not None:
            scored = [item for item in scored if item.category in buckets]
        ranked = scored[:top_k]

        logger.debug(
            f"Contextual search returned {len(ranked)}/{len(hits)} chunks "
            f"(subject={subject_id}, caller={'anonymous' if caller is None else caller.user_id})"
        )
        return ranked

    async def search_documents(
        self,
        query: str,
        subject_id: int | None = None,
        top_k: int | None = None,
        buckets: set[Bucket] | None = None,
        predicate: Predicate | None = None,
    ) -> list[ScoredChunk]:
        """Anonymous contextual search."""
        return await self.search_with_context(
            query, subject_id=subject_id, top_k=top_k, buckets=buckets, predicate=predicate
        )

    async def search_transcripts(
        self, query: str, subject_id: int | None = None, top_k: int = 5
    ) -> list[TranscriptHit]:
        """Return the nearest transcript chunks ordered by ascending distance."""
        hits = await self._search(
            CollectionKind.TRANSCRIPTS, query, top_k, subject_predicate(subject_id)
        )
        return [
            TranscriptHit(
                chunk=TranscriptChunkPayload.from_row(hit.payload),
                distance=hit.distance,
                raw_distance=hit.distance,
            )
            for hit in hits
        ]

    async def search_transcripts_grouped(
        self,
        query: str,
        video_lookup: VideoLookup,
        subject_id: int | None = None,
        top_k: int = 10,
    ) -> list[TranscriptSearchGroup]:
        """Search transcripts and group the hits by video.

        Hits whose video no longer exists are dropped. Groups are ordered by
        their best chunk, chunks within a group by ascending distance.
        """
        hits = await self.search_transcripts(query, subject_id=subject_id, top_k=top_k)

        by_video: dict[int, list[TranscriptHit]] = {}
        for hit in hits:
            by_video.setdefault(hit.video_id, []).append(hit)

        groups: list[TranscriptSearchGroup] = []
        for video_id, video_hits in by_video.items():
            video = await video_lookup(video_id)
            if video is None:
                logger.warning(
                    f"Dropping {len(video_hits)} transcript hits for missing video {video_id}"
                )
                continue
            video_hits.sort(key=lambda hit: hit.distance)
            groups.append(
                TranscriptSearchGroup(video_id=video_id, video_title=video.title, chunks=video_hits)
            )

        groups.sort(key=lambda group: group.best_distance)
        return groups
