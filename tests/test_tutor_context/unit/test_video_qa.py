"""Unit tests for video Q&A combination and rendering."""

from itertools import permutations
from unittest.mock import AsyncMock

import pytest

from tutor_context.config import VideoQAConfig
from tutor_context.ingestion import ChunkIngestor
from tutor_context.models import (
    Bucket,
    DocumentChunkPayload,
    DocumentInfo,
    ScoredChunk,
    TranscriptChunkPayload,
    TranscriptHit,
    TranscriptSegment,
    VideoInfo,
    VideoQAResult,
)
from tutor_context.retrieval import ContextualRetriever
from tutor_context.video_qa import (
    NOTHING_FOUND,
    PERMANENT_ONLY,
    VideoQACombiner,
    boost_current_video,
    render_video_context,
    split_counts,
)

QUERY = "hàm số là gì"


def _hit(video_id: int, distance: float, chunk_id: int = 0, text: str | None = None):
    return TranscriptHit(
        chunk=TranscriptChunkPayload(
            text=text or f"video {video_id} @ {distance}",
            video_id=video_id,
            chunk_id=chunk_id,
            subject_id=2,
        ),
        distance=distance,
        raw_distance=distance,
    )


def _scored(document_id: int, text: str, is_temporary: bool = False):
    owner = 9 if is_temporary else 0
    return ScoredChunk(
        chunk=DocumentChunkPayload(
            text=text,
            document_id=document_id,
            chunk_index=0,
            subject_id=2,
            owner_user_id=owner,
            owner_session_id=owner,
            is_temporary=is_temporary,
        ),
        distance=0.1,
        category=Bucket.PERMANENT,
        semantic_score=0.9,
        temporal_score=1.0,
        score=5.95,
    )


class TestSplitCounts:
    @pytest.mark.parametrize(
        "top_k,expected",
        [(7, (5, 2)), (10, (7, 3)), (5, (4, 1)), (1, (1, 0)), (3, (3, 0))],
    )
    def test_default_ratio(self, top_k, expected):
        assert split_counts(top_k, 0.7) == expected

    def test_all_documents(self):
        assert split_counts(7, 1.0) == (7, 0)

    def test_all_transcripts(self):
        assert split_counts(7, 0.0) == (0, 7)


class TestBoostCurrentVideo:
    """Tests for the current-video distance boost."""

    def test_current_video_pulled_ahead(self):
        hits = [
            _hit(6, 0.20),
            _hit(6, 0.25),
            _hit(5, 0.30),
            _hit(5, 0.35),
            _hit(6, 0.40),
            _hit(6, 0.45),
            _hit(5, 0.50),
        ]

        ranked = boost_current_video(hits, current_video_id=5, video_count=2, boost=0.5)

        assert [h.video_id for h in ranked] == [5, 5]
        assert [h.distance for h in ranked] == [pytest.approx(0.15), pytest.approx(0.175)]
        assert [h.raw_distance for h in ranked] == [0.30, 0.35]

    def test_much_closer_other_video_still_wins(self):
        hits = [_hit(6, 0.10), _hit(5, 0.30), _hit(5, 0.35), _hit(6, 0.40)]

        ranked = boost_current_video(hits, current_video_id=5, video_count=2, boost=0.5)

        assert [(h.video_id, h.raw_distance) for h in ranked] == [(6, 0.10), (5, 0.30)]

    def test_without_current_video_keeps_order(self):
        hits = [_hit(6, 0.1), _hit(5, 0.2), _hit(7, 0.3)]

        ranked = boost_current_video(hits, current_video_id=None, video_count=2, boost=0.5)

        assert ranked == hits[:2]

    @pytest.mark.parametrize("distance", [0.0, 0.2, 0.8])
    def test_current_video_never_below_equal_raw_distance(self, distance):
        """Whatever the input order, the watched video wins ties."""
        for order in permutations([_hit(5, distance, 1), _hit(6, distance, 2), _hit(7, 0.9, 3)]):
            ranked = boost_current_video(list(order), current_video_id=5, video_count=3, boost=0.5)
            positions = {h.video_id: i for i, h in enumerate(ranked)}
            assert positions[5] < positions[6]

    def test_boost_of_one_still_breaks_ties(self):
        ranked = boost_current_video(
            [_hit(6, 0.3), _hit(5, 0.3)], current_video_id=5, video_count=1, boost=1.0
        )
        assert ranked[0].video_id == 5


class TestVideoQACombiner:
    """Tests for combining the two sources."""

    @pytest.fixture
    def retriever(self):
        retriever = AsyncMock()
        retriever.search_documents.return_value = [_scored(7, "Định nghĩa hàm số")]
        retriever.search_transcripts.return_value = [
            _hit(6, 0.20),
            _hit(5, 0.30),
            _hit(5, 0.35),
            _hit(6, 0.25),
            _hit(5, 0.50),
        ]
        return retriever

    @pytest.mark.asyncio
    async def test_split_and_requests(self, retriever):
        combiner = VideoQACombiner(retriever, VideoQAConfig())

        result = await combiner.combine(QUERY, subject_id=2, top_k=7, current_video_id=5)

        assert (result.doc_count, result.video_count) == (5, 2)
        retriever.search_documents.assert_awaited_once_with(
            QUERY,
            subject_id=2,
            top_k=5,
            buckets={Bucket.PERMANENT},
            predicate=PERMANENT_ONLY,
        )
        retriever.search_transcripts.assert_awaited_once_with(QUERY, subject_id=2, top_k=5)
        assert [h.video_id for h in result.videos] == [5, 5]
        assert result.current_video_id == 5
        assert result.total_sources == 3

    @pytest.mark.asyncio
    async def test_default_budget(self, retriever):
        result = await VideoQACombiner(retriever).combine(QUERY)
        assert (result.doc_count, result.video_count) == (5, 2)

    @pytest.mark.asyncio
    async def test_zero_share_skips_source(self, retriever):
        combiner = VideoQACombiner(retriever, VideoQAConfig(document_ratio=1.0))

        result = await combiner.combine(QUERY, top_k=4)

        assert result.videos == []
        retriever.search_transcripts.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_uploads_excluded(self, embedder, memory_index):
        ingestor = ChunkIngestor(embedder, memory_index)
        await ingestor.ingest_document(7, 2, ["Định nghĩa hàm số", "Ví dụ hàm số bậc 1"])
        await ingestor.ingest_temporary_document(50, 9, 100, 2, ["Ghi chú tải lên 1"])
        await ingestor.ingest_video_transcript(5, 2, [TranscriptSegment(text="hàm số")])

        combiner = VideoQACombiner(ContextualRetriever(memory_index, embedder))
        result = await combiner.combine(QUERY, subject_id=2, current_video_id=5)

        assert [d.chunk.document_id for d in result.documents] == [7, 7]
        assert [h.video_id for h in result.videos] == [5]

    @pytest.mark.asyncio
    async def test_permanent_documents_survive_crowd_of_uploads(self, make_embedder, memory_index):
        # Every upload chunk is closer to the query than the permanent chunk
        embedder = make_embedder(
            {QUERY: [1.0, 0.0, 0.0, 0.0], "Äá»nh nghÄ©a hÃ m sá»": [0.7, 0.7, 0.0, 0.0]},
            default=[1.0, 0.0, 0.0, 0.0],
        )
        ingestor = ChunkIngestor(embedder, memory_index)
        await ingestor.ingest_document(7, 2, ["Äá»nh nghÄ©a hÃ m sá»"])
        uploads = [f"Ghi chÃº táº£i lÃªn {i}" for i in range(20)]
        await ingestor.ingest_temporary_document(50, 1, 5, 2, uploads)

        combiner = VideoQACombiner(ContextualRetriever(memory_index, embedder))
        result = await combiner.combine(QUERY, subject_id=2, top_k=7)

        assert result.doc_count * 3 < len(uploads)
        assert [d.chunk.document_id for d in result.documents] == [7]
        assert result.documents[0].category == Bucket.PERMANENT


class TestRenderVideoContext:
    """Tests for the rendered context block."""

    @staticmethod
    async def video_lookup(video_id):
        return {5: VideoInfo(title="Hàm số bậc nhất")}.get(video_id)

    @pytest.fixture
    def document_lookup(self):
        lookup = AsyncMock()
        lookup.get_document.return_value = DocumentInfo(name="Giáo trình", type="theory")
        return lookup

    @pytest.mark.asyncio
    async def test_current_video_first_then_documents(self, document_lookup):
        result = VideoQAResult(
            documents=[_scored(7, "Định nghĩa hàm số")],
            videos=[
                _hit(6, 0.10, text="Đồ thị là đường thẳng."),
                _hit(5, 0.15, text="Hàm số có dạng y = ax + b."),
                _hit(5, 0.20, text="a khác 0."),
            ],
            current_video_id=5,
        )

        context = await render_video_context(result, self.video_lookup, document_lookup)

        assert context == (
            "Từ video transcripts:\n"
            "[VIDEO ĐANG XEM] Hàm số bậc nhất:\n"
            "- Hàm số có dạng y = ax + b.\n"
            "- a khác 0.\n"
            "Video 6:\n"
            "- Đồ thị là đường thẳng.\n"
            "\n"
            "Từ tài liệu:\n"
            'Tài liệu "Giáo trình": Định nghĩa hàm số\n'
        )

    @pytest.mark.asyncio
    async def test_documents_only(self, document_lookup):
        result = VideoQAResult(documents=[_scored(7, "Định nghĩa hàm số")])

        context = await render_video_context(result, self.video_lookup, document_lookup)

        assert context == 'Từ tài liệu:\nTài liệu "Giáo trình": Định nghĩa hàm số\n'

    @pytest.mark.asyncio
    async def test_unresolvable_document_named_unknown(self):
        lookup = AsyncMock()
        lookup.get_document.return_value = None
        result = VideoQAResult(documents=[_scored(7, "Định nghĩa hàm số")])

        context = await render_video_context(result, self.video_lookup, lookup)

        assert 'Tài liệu "Unknown"' in context

    @pytest.mark.asyncio
    async def test_empty_result(self, document_lookup):
        context = await render_video_context(VideoQAResult(), self.video_lookup, document_lookup)
        assert context == NOTHING_FOUND
