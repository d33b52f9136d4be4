"""Pydantic models for the retrieval context engine.

All rows flowing in and out of the vector index are validated against these
schemas. Stored payloads carry ``created_at`` as epoch seconds so every backend
can range-filter it; the models expose it as a timezone-aware datetime.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_epoch(value: datetime) -> float:
    """Convert a datetime to epoch seconds, treating naive values as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.timestamp()


def from_epoch(value: Any) -> datetime:
    """Parse a stored ``created_at`` value (epoch seconds or ISO string)."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.fromtimestamp(float(value), tz=UTC)


class Bucket(str, Enum):
    """Ownership bucket a document chunk falls into for a given caller."""

    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    OTHER = "other"


class CollectionKind(str, Enum):
    """The two logical collections managed by the index."""

    DOCUMENTS = "documents"
    TRANSCRIPTS = "video_transcripts"


def document_chunk_id(document_id: int, chunk_index: int, is_temporary: bool) -> str:
    """Build the row id for a document chunk.

    Temporary and permanent documents share a numeric id space but are
    logically disjoint, so the partition is part of the id.

    Example:
        >>> document_chunk_id(7, 0, False)
        'doc_7_0'
        >>> document_chunk_id(50, 1, True)
        'tmp_50_1'
    """
    prefix = "tmp" if is_temporary else "doc"
    return f"{prefix}_{document_id}_{chunk_index}"


def transcript_chunk_id(video_id: int, chunk_id: int) -> str:
    """Build the row id for a video transcript chunk."""
    return f"video_{video_id}_{chunk_id}"


def _check_vector(v: list[float]) -> list[float]:
    if not v:
        raise ValueError("Vector cannot be empty")
    for i, val in enumerate(v):
        if not math.isfinite(val):
            raise ValueError(f"Vector contains non-finite value at index {i}: {val}")
    return v


def _aware(v: datetime) -> datetime:
    return v if v.tzinfo else v.replace(tzinfo=UTC)


class DocumentChunkPayload(BaseModel):
    """Payload fields of a document chunk row (everything except the vector).

    Attributes:
        text: Raw chunk content
        document_id: Owning document id
        chunk_index: Zero-based position within the source document
        subject_id: Subject classification used for filtering
        owner_user_id: Uploading user for temporary documents, 0 otherwise
        owner_session_id: Chat session for temporary documents, 0 otherwise
        is_temporary: Whether the row belongs to a session-scoped upload
        created_at: Write time, used for recency scoring and expiry
    """

    text: str
    document_id: int
    chunk_index: int = Field(ge=0)
    subject_id: int
    owner_user_id: int = 0
    owner_session_id: int = 0
    is_temporary: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return _aware(v)

    @property
    def has_owner(self) -> bool:
        return self.owner_user_id != 0 or self.owner_session_id != 0

    @property
    def has_consistent_ownership(self) -> bool:
        """True when ``is_temporary`` agrees with the owner fields."""
        return self.is_temporary == self.has_owner

    def to_row(self) -> dict[str, Any]:
        """Flatten to the stored payload representation."""
        return {
            "text": self.text,
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "subject_id": self.subject_id,
            "owner_user_id": self.owner_user_id,
            "owner_session_id": self.owner_session_id,
            "is_temporary": self.is_temporary,
            "created_at": to_epoch(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DocumentChunkPayload:
        return cls(
            text=row["text"],
            document_id=int(row["document_id"]),
            chunk_index=int(row["chunk_index"]),
            subject_id=int(row["subject_id"]),
            owner_user_id=int(row.get("owner_user_id") or 0),
            owner_session_id=int(row.get("owner_session_id") or 0),
            is_temporary=bool(row.get("is_temporary", False)),
            created_at=from_epoch(row["created_at"]),
        )


class DocumentChunkRecord(DocumentChunkPayload):
    """A document chunk ready for insertion into the ``documents`` collection."""

    id: str
    vector: list[float]

    @field_validator("vector")
    @classmethod
    def validate_vector_values(cls, v: list[float]) -> list[float]:
        """Ensure vector is non-empty and contains finite floats."""
        return _check_vector(v)

    def to_row(self) -> dict[str, Any]:
        row = super().to_row()
        row["id"] = self.id
        row["vector"] = self.vector
        return row


class TranscriptChunkPayload(BaseModel):
    """Payload fields of a video transcript chunk row.

    ``start_time`` and ``end_time`` are reserved for schema stability and are
    always written as 0.
    """

    text: str
    video_id: int
    chunk_id: int
    subject_id: int
    start_time: float = 0.0
    end_time: float = 0.0
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return _aware(v)

    def to_row(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "video_id": self.video_id,
            "chunk_id": self.chunk_id,
            "subject_id": self.subject_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "created_at": to_epoch(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> TranscriptChunkPayload:
        return cls(
            text=row["text"],
            video_id=int(row["video_id"]),
            chunk_id=int(row["chunk_id"]),
            subject_id=int(row["subject_id"]),
            start_time=float(row.get("start_time") or 0.0),
            end_time=float(row.get("end_time") or 0.0),
            created_at=from_epoch(row["created_at"]),
        )


class TranscriptChunkRecord(TranscriptChunkPayload):
    """A transcript chunk ready for insertion into ``video_transcripts``."""

    id: str
    vector: list[float]

    @field_validator("vector")
    @classmethod
    def validate_vector_values(cls, v: list[float]) -> list[float]:
        """Ensure vector is non-empty and contains finite floats."""
        return _check_vector(v)

    def to_row(self) -> dict[str, Any]:
        row = super().to_row()
        row["id"] = self.id
        row["vector"] = self.vector
        return row


class TranscriptSegment(BaseModel):
    """A chunk of transcript text handed to ingestion.

    Attributes:
        text: Transcript text
        sequence_id: Id of the source chunk, or None to use its position
    """

    text: str
    sequence_id: int | None = None


class IndexHit(BaseModel):
    """A raw row returned by a nearest-neighbour search.

    Attributes:
        id: Row id
        payload: Stored payload fields (no vector)
        distance: Vector distance to the query (smaller = more similar)
    """

    id: str
    payload: dict[str, Any]
    distance: float


class CallerContext(BaseModel):
    """Identity of the user/session asking a question."""

    user_id: int
    session_id: int


class ScoredChunk(BaseModel):
    """A document chunk ranked by contextual retrieval.

    Attributes:
        chunk: The matched chunk payload
        distance: Raw vector distance
        category: Ownership bucket relative to the caller
        semantic_score: ``1 - distance``
        temporal_score: Linear recency decay in [0, 1]
        score: Composite score used for ranking (higher is better)
    """

    chunk: DocumentChunkPayload
    distance: float
    category: Bucket
    semantic_score: float
    temporal_score: float
    score: float


class TranscriptHit(BaseModel):
    """A transcript chunk returned by transcript retrieval.

    Attributes:
        chunk: The matched transcript payload
        distance: Ranking distance (boosted for the current video)
        raw_distance: Distance as reported by the index
    """

    chunk: TranscriptChunkPayload
    distance: float
    raw_distance: float

    @property
    def video_id(self) -> int:
        return self.chunk.video_id


class DocumentInfo(BaseModel):
    """Display metadata resolved from the external document store."""

    name: str
    type: str


class VideoInfo(BaseModel):
    """Display metadata resolved from the external video store."""

    title: str


class RelevantDocument(BaseModel):
    """A ranked chunk labelled with its owning document's metadata."""

    content: str
    distance: float
    score: float
    document_id: int
    chunk_index: int
    document_name: str
    document_type: str
    subject_id: int
    category: Bucket
    is_temporary: bool


class AnswerContext(BaseModel):
    """Context block and system prompt for the downstream language model."""

    system_prompt: str
    context: str
    relevant_docs: list[RelevantDocument] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.relevant_docs


class VideoQAResult(BaseModel):
    """Document and transcript hits for the video Q&A interaction.

    The two lists stay separate so the prompt builder can label them apart.
    """

    documents: list[ScoredChunk] = Field(default_factory=list)
    videos: list[TranscriptHit] = Field(default_factory=list)
    current_video_id: int | None = None
    doc_count: int = 0
    video_count: int = 0

    @property
    def total_sources(self) -> int:
        return len(self.documents) + len(self.videos)


class TranscriptSearchGroup(BaseModel):
    """Transcript hits of one video, ordered best first."""

    video_id: int
    video_title: str
    chunks: list[TranscriptHit]

    @property
    def best_distance(self) -> float:
        return min(hit.distance for hit in self.chunks)


class IndexStats(BaseModel):
    """Statistics about the ``documents`` collection.

    Attributes:
        total_count: Total rows
        temporary_count: Rows with ``is_temporary`` set
        permanent_count: Rows in the permanent bucket
        expired_count: Temporary rows older than the retention window
        cutoff: Creation time before which temporary rows count as expired
    """

    total_count: int = Field(ge=0)
    temporary_count: int = Field(ge=0)
    permanent_count: int = Field(ge=0)
    expired_count: int = Field(ge=0)
    cutoff: datetime


class VideoIndexStats(BaseModel):
    """Statistics about the ``video_transcripts`` collection."""

    total_chunks: int = Field(ge=0)
    unique_videos: int = Field(ge=0)
    subject_counts: dict[int, int] = Field(default_factory=dict)
    avg_chunks_per_video: int = Field(ge=0)
