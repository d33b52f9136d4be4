"""Lifecycle maintenance: deletion hooks, expiry sweep and statistics.

The application calls the deletion operations whenever it deletes a
document, a temporary upload, a video or a chat session, so no orphaned
vectors persist. Expired temporary rows are removed by a periodic sweep.
"""

import asyncio
import math
from datetime import datetime

from loguru import logger

from tutor_context.config import MaintenanceConfig, RetrievalConfig
from tutor_context.index import VectorIndex
from tutor_context.ingestion import document_predicate
from tutor_context.models import (
    Bucket,
    CollectionKind,
    DocumentChunkPayload,
    IndexStats,
    VideoIndexStats,
    to_epoch,
    utc_now,
)
from tutor_context.predicates import MATCH_ALL, Op, Predicate
from tutor_context.scoring import categorize


def expired_predicate(cutoff: datetime) -> Predicate:
    """Temporary rows created strictly before ``cutoff``."""
    return Predicate.where(is_temporary=True).and_("created_at", Op.LT, to_epoch(cutoff))


class LifecycleManager:
    """Deletion, expiry and statistics over both collections."""

    def __init__(
        self,
        index: VectorIndex,
        retrieval_config: RetrievalConfig | None = None,
        config: MaintenanceConfig | None = None,
    ):
        self.index = index
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self.config = config or MaintenanceConfig()

    def expiry_cutoff(self, now: datetime | None = None) -> datetime:
        return (now or utc_now()) - self.retrieval_config.retention

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete temporary rows older than the retention window.

        Idempotent and safe to run alongside ingestion and retrieval.
        Permanent rows are never touched, whatever their age.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            Number of rows removed
        """
        cutoff = self.expiry_cutoff(now)
        deleted = await self.index.delete_where(CollectionKind.DOCUMENTS, expired_predicate(cutoff))
        logger.info(f"Expiry sweep removed {deleted} temporary chunks created before {cutoff}")
        return deleted

    async def delete_document(self, document_id: int, temporary: bool = False) -> int:
        """Delete the rows of one document in its partition.

        Args:
            document_id: Document id
            temporary: Whether ``document_id`` names a temporary upload

        Returns:
            Number of rows removed
        """
        deleted = await self.index.delete_where(
            CollectionKind.DOCUMENTS, document_predicate(document_id, temporary)
        )
        logger.info(
            f"Deleted {deleted} chunks of {'temporary ' if temporary else ''}document {document_id}"
        )
        return deleted

    async def delete_user_session(self, user_id: int, session_id: int) -> int:
        """Delete every temporary row uploaded in one chat session."""
        predicate = Predicate.where(
            owner_user_id=user_id, owner_session_id=session_id, is_temporary=True
        )
        deleted = await self.index.delete_where(CollectionKind.DOCUMENTS, predicate)
        logger.info(f"Deleted {deleted} temporary chunks for user {user_id}, session {session_id}")
        return deleted

    async def delete_video(self, video_id: int) -> int:
        """Delete every transcript row of one video."""
        deleted = await self.index.delete_where(
            CollectionKind.TRANSCRIPTS, Predicate.where(video_id=video_id)
        )
        if deleted:
            logger.info(f"Deleted {deleted} transcript chunks for video {video_id}")
        else:
            logger.debug(f"No transcript chunks found for video {video_id}")
        return deleted

    async def clear_transcripts(self) -> int:
        """Remove every row of the transcript collection."""
        deleted = await self.index.delete_where(CollectionKind.TRANSCRIPTS, MATCH_ALL)
        logger.info(f"Cleared {deleted} transcript chunks")
        return deleted

    async def delete_all(self) -> int:
        """Remove every row of both collections.

        Returns:
            Total number of rows removed
        """
        documents = await self.index.delete_where(CollectionKind.DOCUMENTS, MATCH_ALL)
        transcripts = await self.index.delete_where(CollectionKind.TRANSCRIPTS, MATCH_ALL)
        logger.info(f"Deleted {documents} document and {transcripts} transcript chunks")
        return documents + transcripts

    async def get_stats(self, now: datetime | None = None) -> IndexStats:
        """Classify document rows without a caller identity.

        "Temporary" here means any row with ``is_temporary`` set; "permanent"
        uses the same predicate as retrieval. Rows that are temporary with a
        zero owner pair count in both.
        """
        cutoff = self.expiry_cutoff(now)
        total = await self.index.count_rows(CollectionKind.DOCUMENTS)
        rows = await self.index.scan(CollectionKind.DOCUMENTS, limit=self.config.scan_limit)

        temporary = permanent = expired = 0
        for row in rows:
            chunk = DocumentChunkPayload.from_row(row)
            if chunk.is_temporary:
                temporary += 1
                if chunk.created_at < cutoff:
                    expired += 1
            if categorize(chunk, None) is Bucket.PERMANENT:
                permanent += 1

        if len(rows) < total:
            logger.warning(f"Stats scanned {len(rows)} of {total} document rows")

        return IndexStats(
            total_count=total,
            temporary_count=temporary,
            permanent_count=permanent,
            expired_count=expired,
            cutoff=cutoff,
        )

    async def get_video_stats(self) -> VideoIndexStats:
        """Count transcript rows per subject and per video."""
        total = await self.index.count_rows(CollectionKind.TRANSCRIPTS)
        rows = await self.index.scan(CollectionKind.TRANSCRIPTS, limit=self.config.scan_limit)

        subject_counts: dict[int, int] = {}
        videos: set[int] = set()
        for row in rows:
            subject_id = int(row["subject_id"])
            subject_counts[subject_id] = subject_counts.get(subject_id, 0) + 1
            videos.add(int(row["video_id"]))

        # Half-up rounding
        average = math.floor(total / len(videos) + 0.5) if videos else 0

        return VideoIndexStats(
            total_chunks=total,
            unique_videos=len(videos),
            subject_counts=subject_counts,
            avg_chunks_per_video=average,
        )


class MaintenanceScheduler:
    """Runs the expiry sweep periodically on the event loop.

    A failed sweep is logged and the loop keeps going; the next interval
    retries it.
    """

    def __init__(self, lifecycle: LifecycleManager, interval_seconds: float = 3600.0):
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self.last_deleted: int | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int | None:
        """Run one sweep, returning the count removed or None on failure."""
        try:
            self.last_deleted = await self.lifecycle.sweep_expired()
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}")
            return None
        return self.last_deleted

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="tutor-context-expiry-sweep")
        logger.info(f"Expiry sweep scheduled every {self.interval_seconds:.0f}s")

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweep stopped")
