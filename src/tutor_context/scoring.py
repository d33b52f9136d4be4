"""Categorical and temporal scoring of retrieved document chunks.

Each candidate is classified into an ownership bucket relative to the caller,
then scored as a weighted blend of semantic similarity and recency plus a
per-bucket offset large enough that buckets never interleave.
"""

from datetime import datetime, timedelta

from tutor_context.config import RetrievalConfig
from tutor_context.models import (
    Bucket,
    CallerContext,
    DocumentChunkPayload,
    IndexHit,
    ScoredChunk,
    utc_now,
)


def categorize(chunk: DocumentChunkPayload, caller: CallerContext | None) -> Bucket:
    """Classify a chunk for a caller.

    The checks are ordered so the result is always exactly one bucket:
    the caller's own temporary rows first, then permanent rows (explicitly
    non-temporary, or carrying the zero owner pair), then everything else.

    Args:
        chunk: Stored chunk payload
        caller: Identity of the asker, or None for anonymous queries

    Returns:
        The chunk's bucket
    """
    if (
        caller is not None
        and chunk.is_temporary
        and chunk.owner_user_id == caller.user_id
        and chunk.owner_session_id == caller.session_id
    ):
        return Bucket.TEMPORARY

    if not chunk.is_temporary or (chunk.owner_user_id == 0 and chunk.owner_session_id == 0):
        return Bucket.PERMANENT

    return Bucket.OTHER


def semantic_score(distance: float) -> float:
    return 1.0 - distance


def temporal_score(age: timedelta, retention: timedelta) -> float:
    """Linear recency decay: 1 when fresh, 0 at and beyond ``retention``.

    Example:
        >>> temporal_score(timedelta(hours=1), timedelta(hours=2))
        0.5
    """
    # Clock skew can produce rows from the future; treat them as fresh
    if age <= timedelta(0):
        return 1.0
    return max(0.0, 1.0 - age / retention)


def composite_score(
    bucket: Bucket, semantic: float, temporal: float, config: RetrievalConfig
) -> float:
    weights = config.weights_for(bucket)
    return weights.semantic * semantic + weights.temporal * temporal + weights.offset


def score_candidates(
    hits: list[IndexHit],
    caller: CallerContext | None,
    config: RetrievalConfig,
    now: datetime | None = None,
) -> list[ScoredChunk]:
    """Score raw index hits and sort them best first.

    With a caller, every hit gets its bucket blend. Without one there is no
    session to prioritize, so every hit scores ``semantic + anonymous_offset``
    while keeping its real bucket label.

    Args:
        hits: Raw document hits from the index
        caller: Identity of the asker, or None for anonymous queries
        config: Weights, offsets and retention window
        now: Reference time for recency (defaults to current UTC time)

    Returns:
        Scored chunks ordered by descending score
    """
    now = now or utc_now()
    scored: list[ScoredChunk] = []

    for hit in hits:
        chunk = DocumentChunkPayload.from_row(hit.payload)
        bucket = categorize(chunk, caller)
        semantic = semantic_score(hit.distance)
        temporal = temporal_score(now - chunk.created_at, config.retention)

        if caller is None:
            score = semantic + config.anonymous_offset
        else:
            score = composite_score(bucket, semantic, temporal, config)

        scored.append(
            ScoredChunk(
                chunk=chunk,
                distance=hit.distance,
                category=bucket,
                semantic_score=semantic,
                temporal_score=temporal,
                score=score,
            )
        )

    # Stable sort keeps index order among equal scores
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored
