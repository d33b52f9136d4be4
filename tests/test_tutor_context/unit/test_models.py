"""Unit tests for Pydantic models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from tutor_context.models import (
    DocumentChunkPayload,
    DocumentChunkRecord,
    TranscriptChunkPayload,
    TranscriptHit,
    TranscriptSearchGroup,
    VideoQAResult,
    document_chunk_id,
    from_epoch,
    to_epoch,
    transcript_chunk_id,
)


class TestRowIds:
    """Tests for row id builders."""

    def test_permanent_and_temporary_ids_differ(self):
        """Same numeric document id in both partitions yields distinct row ids."""
        assert document_chunk_id(7, 0, False) == "doc_7_0"
        assert document_chunk_id(7, 0, True) == "tmp_7_0"

    def test_transcript_id(self):
        assert transcript_chunk_id(5, 3) == "video_5_3"


class TestTimestamps:
    """Tests for created_at conversion helpers."""

    def test_epoch_round_trip(self):
        moment = datetime(2025, 3, 1, 12, 30, tzinfo=UTC)
        assert from_epoch(to_epoch(moment)) == moment

    def test_iso_string_parsed_as_utc(self):
        """Legacy ISO strings with a Z suffix are accepted."""
        parsed = from_epoch("2025-03-01T12:30:00.000Z")
        assert parsed == datetime(2025, 3, 1, 12, 30, tzinfo=UTC)

    def test_naive_datetime_treated_as_utc(self):
        chunk = DocumentChunkPayload(
            text="x", document_id=1, chunk_index=0, subject_id=1, created_at=datetime(2025, 1, 1)
        )
        assert chunk.created_at.tzinfo is UTC


class TestDocumentChunkPayload:
    """Tests for document chunk payloads."""

    def test_defaults_are_permanent(self):
        chunk = DocumentChunkPayload(text="Định nghĩa", document_id=7, chunk_index=0, subject_id=2)

        assert chunk.is_temporary is False
        assert chunk.has_owner is False
        assert chunk.has_consistent_ownership

    def test_temporary_without_owner_is_inconsistent(self):
        chunk = DocumentChunkPayload(
            text="x", document_id=1, chunk_index=0, subject_id=1, is_temporary=True
        )
        assert not chunk.has_consistent_ownership

    def test_negative_chunk_index_rejected(self):
        with pytest.raises(ValidationError):
            DocumentChunkPayload(text="x", document_id=1, chunk_index=-1, subject_id=1)

    def test_to_row_stores_epoch_seconds(self):
        moment = datetime(2025, 3, 1, tzinfo=UTC)
        chunk = DocumentChunkPayload(
            text="x", document_id=1, chunk_index=0, subject_id=1, created_at=moment
        )

        row = chunk.to_row()

        assert row["created_at"] == moment.timestamp()
        assert DocumentChunkPayload.from_row(row) == chunk

    def test_from_row_tolerates_float_ids(self):
        """Hosted stores may return numeric metadata as floats."""
        row = {
            "text": "x",
            "document_id": 7.0,
            "chunk_index": 2.0,
            "subject_id": 3.0,
            "owner_user_id": 9.0,
            "owner_session_id": 100.0,
            "is_temporary": True,
            "created_at": 1740787200.0,
        }

        chunk = DocumentChunkPayload.from_row(row)

        assert chunk.document_id == 7
        assert chunk.owner_session_id == 100


class TestDocumentChunkRecord:
    """Tests for record validation."""

    def test_empty_vector_rejected(self):
        with pytest.raises(ValidationError, match="Vector cannot be empty"):
            DocumentChunkRecord(
                id="doc_1_0", vector=[], text="x", document_id=1, chunk_index=0, subject_id=1
            )

    def test_non_finite_vector_rejected(self):
        with pytest.raises(ValidationError, match="non-finite"):
            DocumentChunkRecord(
                id="doc_1_0",
                vector=[0.1, float("nan")],
                text="x",
                document_id=1,
                chunk_index=0,
                subject_id=1,
            )

    def test_to_row_includes_id_and_vector(self):
        record = DocumentChunkRecord(
            id="doc_1_0", vector=[0.1, 0.2], text="x", document_id=1, chunk_index=0, subject_id=1
        )

        row = record.to_row()

        assert row["id"] == "doc_1_0"
        assert row["vector"] == [0.1, 0.2]


class TestResultModels:
    """Tests for result containers."""

    @staticmethod
    def _hit(video_id: int, distance: float) -> TranscriptHit:
        chunk = TranscriptChunkPayload(text="t", video_id=video_id, chunk_id=0, subject_id=1)
        return TranscriptHit(chunk=chunk, distance=distance, raw_distance=distance)

    def test_transcript_reserved_times_are_zero(self):
        chunk = TranscriptChunkPayload(text="t", video_id=1, chunk_id=0, subject_id=1)
        assert chunk.to_row()["start_time"] == 0.0
        assert chunk.to_row()["end_time"] == 0.0

    def test_group_best_distance(self):
        group = TranscriptSearchGroup(
            video_id=5, video_title="Hàm số", chunks=[self._hit(5, 0.4), self._hit(5, 0.2)]
        )
        assert group.best_distance == 0.2

    def test_video_qa_total_sources(self):
        result = VideoQAResult(videos=[self._hit(5, 0.1), self._hit(6, 0.2)])
        assert result.total_sources == 2
