"""Unit tests for contextual retrieval over the in-memory index."""

from unittest.mock import AsyncMock

import pytest

from tutor_context.config import RetrievalConfig
from tutor_context.errors import IndexUnavailableError, RetrievalUnavailableError
from tutor_context.ingestion import ChunkIngestor
from tutor_context.maintenance import LifecycleManager
from tutor_context.models import Bucket, CallerContext, TranscriptSegment, VideoInfo
from tutor_context.predicates import Predicate
from tutor_context.retrieval import ContextualRetriever, subject_predicate

QUERY = "hàm số là gì"
PERMANENT_CHUNKS = ["Định nghĩa hàm số", "Ví dụ hàm số bậc 1", "Bài tập hàm số"]
TEMPORARY_CHUNKS = ["Ghi chú tải lên 1", "Ghi chú tải lên 2"]
OWNER = CallerContext(user_id=9, session_id=100)
STRANGER = CallerContext(user_id=1, session_id=5)


@pytest.fixture
def retriever(embedder, memory_index):
    return ContextualRetriever(memory_index, embedder, RetrievalConfig())


@pytest.fixture
async def permanent_doc(embedder, memory_index):
    """Permanent document 7 (subject 2) plus an unrelated subject-3 document."""
    ingestor = ChunkIngestor(embedder, memory_index)
    await ingestor.ingest_document(7, 2, PERMANENT_CHUNKS)
    await ingestor.ingest_document(8, 3, ["Định nghĩa hàm số"])
    return ingestor


@pytest.fixture
async def with_upload(permanent_doc):
    """Adds temporary upload 50 owned by user 9, session 100."""
    await permanent_doc.ingest_temporary_document(50, 9, 100, 2, TEMPORARY_CHUNKS)
    return permanent_doc


class TestSubjectPredicate:
    def test_none_matches_all(self):
        assert subject_predicate(None).is_empty

    def test_zero_still_filters(self):
        assert not subject_predicate(0).is_empty


class TestSearchWithContext:
    """Ranking by bucket, recency and similarity."""

    @pytest.mark.asyncio
    async def test_anonymous_permanent_results(self, retriever, permanent_doc):
        results = await retriever.search_with_context(QUERY, subject_id=2)

        assert [r.chunk.text for r in results] == PERMANENT_CHUNKS
        assert all(r.chunk.document_id == 7 for r in results)
        assert all(r.category is Bucket.PERMANENT for r in results)
        # Anonymous ranking is similarity plus a flat offset
        assert results[0].score == pytest.approx(results[0].semantic_score + 5)

    @pytest.mark.asyncio
    async def test_subject_filter(self, retriever, permanent_doc):
        results = await retriever.search_with_context(QUERY, subject_id=3)
        assert [r.chunk.document_id for r in results] == [8]

    @pytest.mark.asyncio
    async def test_no_subject_searches_everything(self, retriever, permanent_doc):
        results = await retriever.search_with_context(QUERY)
        assert {r.chunk.document_id for r in results} == {7, 8}

    @pytest.mark.asyncio
    async def test_own_upload_outranks_permanent(self, retriever, with_upload):
        results = await retriever.search_with_context(QUERY, subject_id=2, caller=OWNER)

        assert [r.category for r in results] == [Bucket.TEMPORARY] * 2 + [Bucket.PERMANENT] * 3
        assert {r.chunk.document_id for r in results[:2]} == {50}
        # The uploads are weaker matches than every permanent chunk
        assert max(r.semantic_score for r in results[:2]) < min(
            r.semantic_score for r in results[2:]
        )

    @pytest.mark.asyncio
    async def test_other_callers_upload_ranks_last(self, retriever, with_upload):
        results = await retriever.search_with_context(QUERY, subject_id=2, caller=STRANGER)

        assert [r.category for r in results] == [Bucket.PERMANENT] * 3 + [Bucket.OTHER] * 2
        assert Bucket.TEMPORARY not in {r.category for r in results}

    @pytest.mark.asyncio
    async def test_top_k_truncates(self, retriever, with_upload):
        results = await retriever.search_with_context(QUERY, subject_id=2, caller=OWNER, top_k=3)

        assert len(results) == 3
        assert [r.category for r in results] == [
            Bucket.TEMPORARY,
            Bucket.TEMPORARY,
            Bucket.PERMANENT,
        ]

    @pytest.mark.asyncio
    async def test_bucket_filter(self, retriever, with_upload):
        results = await retriever.search_with_context(
            QUERY, subject_id=2, caller=OWNER, buckets={Bucket.PERMANENT}
        )
        assert [r.chunk.document_id for r in results] == [7, 7, 7]

    @pytest.mark.asyncio
    async def test_overfetches_candidates(self, embedder):
        index = AsyncMock()
        index.search.return_value = []
        retriever = ContextualRetriever(index, embedder, RetrievalConfig(overfetch_factor=4))

        assert await retriever.search_with_context(QUERY, top_k=5) == []
        assert index.search.await_args.args[2] == 20

    @pytest.mark.asyncio
    async def test_extra_predicate_pushed_to_store(self, embedder):
        index = AsyncMock()
        index.search.return_value = []
        retriever = ContextualRetriever(index, embedder)

        await retriever.search_with_context(
            QUERY, subject_id=2, predicate=Predicate.where(is_temporary=False)
        )

        assert index.search.await_args.args[3] == Predicate.where(subject_id=2, is_temporary=False)

    @pytest.mark.asyncio
    async def test_zero_top_k_returns_nothing(self, retriever, with_upload):
        assert await retriever.search_with_context(QUERY, subject_id=2, top_k=0) == []

    @pytest.mark.asyncio
    async def test_deleted_document_not_returned(self, retriever, permanent_doc, memory_index):
        await LifecycleManager(memory_index).delete_document(7)

        results = await retriever.search_with_context("hàm số")

        assert all(r.chunk.document_id != 7 for r in results)

    @pytest.mark.asyncio
    async def test_index_failure_raises_retrieval_unavailable(self, embedder):
        index = AsyncMock()
        index.search.side_effect = IndexUnavailableError("Vector search failed")
        retriever = ContextualRetriever(index, embedder)

        with pytest.raises(RetrievalUnavailableError) as exc_info:
            await retriever.search_with_context(QUERY, subject_id=2)

        assert exc_info.value.context["collection"] == "documents"

    @pytest.mark.asyncio
    async def test_search_documents_is_anonymous(self, retriever, with_upload):
        results = await retriever.search_documents(QUERY, subject_id=2)

        categories = {r.chunk.document_id: r.category for r in results}
        assert categories[50] is Bucket.OTHER
        assert categories[7] is Bucket.PERMANENT


class TestTranscriptSearch:
    """Plain nearest-neighbour transcript search."""

    @pytest.fixture
    def transcript_embedder(self, make_embedder):
        return make_embedder(
            {
                "đạo hàm": [1.0, 0.0, 0.0, 0.0],
                "Đạo hàm là giới hạn.": [0.9, 0.1, 0.0, 0.0],
                "Quy tắc đạo hàm.": [0.7, 0.3, 0.0, 0.0],
                "Tích phân.": [0.1, 0.9, 0.0, 0.0],
            }
        )

    @pytest.fixture
    async def transcripts(self, transcript_embedder, memory_index):
        ingestor = ChunkIngestor(transcript_embedder, memory_index)
        lecture = [TranscriptSegment(text="Quy tắc đạo hàm."), TranscriptSegment(text="Tích phân.")]
        definition = [TranscriptSegment(text="Đạo hàm là giới hạn.")]
        await ingestor.ingest_video_transcript(5, 2, lecture)
        await ingestor.ingest_video_transcript(6, 2, definition)
        await ingestor.ingest_video_transcript(7, 4, definition)
        return ContextualRetriever(memory_index, transcript_embedder)

    @pytest.mark.asyncio
    async def test_ordered_by_distance(self, transcripts):
        hits = await transcripts.search_transcripts("đạo hàm", subject_id=2, top_k=5)

        assert [(h.video_id, h.chunk.text) for h in hits] == [
            (6, "Đạo hàm là giới hạn."),
            (5, "Quy tắc đạo hàm."),
            (5, "Tích phân."),
        ]
        assert all(h.distance == h.raw_distance for h in hits)

    @pytest.mark.asyncio
    async def test_grouped_by_video(self, transcripts):
        titles = {5: VideoInfo(title="Quy tắc tính đạo hàm")}

        async def lookup(video_id):
            return titles.get(video_id)

        groups = await transcripts.search_transcripts_grouped("đạo hàm", lookup, subject_id=2)

        # Video 6 no longer exists
        assert [g.video_id for g in groups] == [5]
        assert groups[0].video_title == "Quy tắc tính đạo hàm"
        assert [c.chunk.text for c in groups[0].chunks] == ["Quy tắc đạo hàm.", "Tích phân."]

    @pytest.mark.asyncio
    async def test_groups_ordered_by_best_chunk(self, transcripts):
        async def lookup(video_id):
            return VideoInfo(title=f"Bài {video_id}")

        groups = await transcripts.search_transcripts_grouped("đạo hàm", lookup)

        assert groups[0].best_distance <= groups[-1].best_distance
        assert {g.video_id for g in groups} == {5, 6, 7}
        assert groups[-1].video_id == 5
