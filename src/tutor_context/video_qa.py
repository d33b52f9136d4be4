"""Video Q&A: blend permanent documents with video transcripts.

While a student watches a video, answers draw most of their context from
curated permanent documents and the rest from transcripts, with the video
being watched pulled ahead of other videos.
"""

import math

from loguru import logger

from tutor_context.assembler import DocumentLookup, resolve_document
from tutor_context.config import VideoQAConfig
from tutor_context.models import Bucket, TranscriptHit, VideoQAResult
from tutor_context.predicates import Predicate
from tutor_context.retrieval import ContextualRetriever, VideoLookup

NOTHING_FOUND = "Không tìm thấy thông tin liên quan trong video và tài liệu."

# Ingestion rejects temporary rows without an owner, so this is the permanent bucket
PERMANENT_ONLY = Predicate.where(is_temporary=False)


def split_counts(top_k: int, document_ratio: float) -> tuple[int, int]:
    """Split a result budget into (document count, transcript count).

    Example:
        >>> split_counts(7, 0.7)
        (5, 2)
    """
    # Rounding absorbs float noise such as 10 * 0.7 == 7.000000000000001
    doc_count = math.ceil(round(top_k * document_ratio, 9))
    video_count = math.floor(round(top_k * (1 - document_ratio), 9))
    return doc_count, video_count


def boost_current_video(
    hits: list[TranscriptHit],
    current_video_id: int | None,
    video_count: int,
    boost: float,
) -> list[TranscriptHit]:
    """Rank transcript hits, favouring the video being watched.

    Hits from ``current_video_id`` have their distance multiplied by
    ``boost`` (< 1 moves them up), then everything is re-sorted ascending.
    Without a current video the original ranking is kept.
    """
    if current_video_id is None:
        return hits[:video_count]

    reranked = [
        hit.model_copy(update={"distance": hit.raw_distance * boost})
        if hit.video_id == current_video_id
        else hit
        for hit in hits
    ]
    # Ties go to the current video
    reranked.sort(key=lambda hit: (hit.distance, hit.video_id != current_video_id))
    return reranked[:video_count]


class VideoQACombiner:
    """Combines document and transcript retrieval for video Q&A."""

    def __init__(self, retriever: ContextualRetriever, config: VideoQAConfig | None = None):
        self.retriever = retriever
        self.config = config or VideoQAConfig()

    async def combine(
        self,
        query: str,
        subject_id: int | None = None,
        top_k: int | None = None,
        current_video_id: int | None = None,
    ) -> VideoQAResult:
        """Retrieve both sources and return them as separate ranked lists.

        Args:
            query: Question text
            subject_id: Restrict both sources to one subject
            top_k: Total result budget (defaults to ``video_qa.default_top_k``)
            current_video_id: Video being watched, if any

        Returns:
            Documents (permanent bucket only) and transcript hits

        Raises:
            EmbeddingProviderError: If the query cannot be embedded
            RetrievalUnavailableError: If the index does not respond
        """
        if top_k is None:
            top_k = self.config.default_top_k
        doc_count, video_count = split_counts(top_k, self.config.document_ratio)

        documents = []
        if doc_count:
            # Session uploads stay out of the shared video context
            documents = await self.retriever.search_documents(
                query,
                subject_id=subject_id,
                top_k=doc_count,
                buckets={Bucket.PERMANENT},
                predicate=PERMANENT_ONLY,
            )

        videos: list[TranscriptHit] = []
        if video_count:
            candidates = await self.retriever.search_transcripts(
                query,
                subject_id=subject_id,
                top_k=video_count + self.config.transcript_overfetch,
            )
            videos = boost_current_video(
                candidates, current_video_id, video_count, self.config.current_video_boost
            )

        logger.debug(
            f"Video Q&A for video {current_video_id}: {len(documents)}/{doc_count} documents, "
            f"{len(videos)}/{video_count} transcript chunks"
        )
        return VideoQAResult(
            documents=documents,
            videos=videos,
            current_video_id=current_video_id,
            doc_count=doc_count,
            video_count=video_count,
        )


async def render_video_context(
    result: VideoQAResult,
    video_lookup: VideoLookup,
    document_lookup: DocumentLookup,
) -> str:
    """Render a combined result into the context block for the tutoring model.

    Transcript hits come first, grouped by video with the watched video's
    group labelled and placed ahead of the others; document chunks follow.
    """
    context = ""

    if result.videos:
        context += "Từ video transcripts:\n"

        groups: dict[int, list[str]] = {}
        for hit in result.videos:
            groups.setdefault(hit.video_id, []).append(hit.chunk.text)

        titles: dict[int, str] = {}
        for video_id in groups:
            video = await video_lookup(video_id)
            titles[video_id] = video.title if video is not None else f"Video {video_id}"

        current = result.current_video_id
        ordered = [vid for vid in groups if vid == current]
        ordered += [vid for vid in groups if vid != current]

        for video_id in ordered:
            prefix = "[VIDEO ĐANG XEM] " if video_id == current else ""
            context += f"{prefix}{titles[video_id]}:\n"
            context += "".join(f"- {text}\n" for text in groups[video_id])

        context += "\n"

    if result.documents:
        context += "Từ tài liệu:\n"
        for item in result.documents:
            info = await resolve_document(
                document_lookup, item.chunk.document_id, item.chunk.is_temporary
            )
            context += f'Tài liệu "{info.name}": {item.chunk.text}\n'

    if not context.strip():
        return NOTHING_FOUND
    return context
