#!/usr/bin/env python
"""Operator commands for the tutoring context index.

Usage:
    python scripts/vector_maintenance.py stats
    python scripts/vector_maintenance.py sweep
    python scripts/vector_maintenance.py search "hàm số là gì" --subject-id 2
    python scripts/vector_maintenance.py delete-document 7
    python scripts/vector_maintenance.py clear --transcripts-only
"""

import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import click
import yaml
from loguru import logger

from tutor_context.config import load_config
from tutor_context.engine import ContextEngine
from tutor_context.models import CallerContext

# Configure logging
logger.remove()
logger.add(sys.stderr, level="INFO", format="<level>{message}</level>")


def load_secrets() -> None:
    """Export API keys from conf/secrets.yml unless already set."""
    secrets_path = Path(__file__).parent.parent / "conf" / "secrets.yml"
    if not secrets_path.exists():
        return
    with open(secrets_path) as f:
        secrets = yaml.safe_load(f) or {}
    for key in ("OPENAI_API_KEY", "PINECONE_API_KEY", "PINECONE_ENVIRONMENT"):
        if secrets.get(key) and not os.environ.get(key):
            os.environ[key] = str(secrets[key])


async def open_engine(overrides: tuple[str, ...]) -> ContextEngine:
    load_secrets()
    config = load_config("default", overrides=list(overrides))
    engine = ContextEngine.from_config(config)
    await engine.initialize()
    return engine


async def show_stats(overrides: tuple[str, ...]) -> None:
    engine = await open_engine(overrides)
    try:
        stats = await engine.get_stats()
        video_stats = await engine.get_video_stats()
    finally:
        await engine.close()

    logger.info("=" * 60)
    logger.info("Documents")
    logger.info("=" * 60)
    logger.info(f"Total chunks:     {stats.total_count}")
    logger.info(f"Temporary:        {stats.temporary_count}")
    logger.info(f"Permanent:        {stats.permanent_count}")
    logger.info(
        f"Expired:          {stats.expired_count} "
        f"(created before {stats.cutoff:%Y-%m-%d %H:%M} UTC)"
    )
    logger.info("=" * 60)
    logger.info("Video transcripts")
    logger.info("=" * 60)
    logger.info(f"Total chunks:     {video_stats.total_chunks}")
    logger.info(f"Videos:           {video_stats.unique_videos}")
    logger.info(f"Chunks per video: {video_stats.avg_chunks_per_video}")
    for subject_id, count in sorted(video_stats.subject_counts.items()):
        logger.info(f"  subject {subject_id}: {count}")


async def run_sweep(overrides: tuple[str, ...]) -> None:
    engine = await open_engine(overrides)
    try:
        deleted = await engine.sweep_expired()
    finally:
        await engine.close()
    logger.success(f"Removed {deleted} expired temporary chunks")


async def run_search(
    query: str,
    subject_id: int | None,
    user_id: int | None,
    session_id: int | None,
    top_k: int,
    overrides: tuple[str, ...],
) -> None:
    caller = None
    if user_id is not None and session_id is not None:
        caller = CallerContext(user_id=user_id, session_id=session_id)

    engine = await open_engine(overrides)
    try:
        results = await engine.search_with_context(
            query, subject_id=subject_id, caller=caller, top_k=top_k
        )
    finally:
        await engine.close()

    if not results:
        logger.warning("No results found!")
        return

    logger.success(f"Found {len(results)} results:\n")
    for i, item in enumerate(results, 1):
        chunk = item.chunk
        text = chunk.text[:300] + "..." if len(chunk.text) > 300 else chunk.text
        logger.info(f"{'=' * 60}")
        logger.info(
            f"Result {i} [{item.category.value}] score={item.score:.4f} "
            f"distance={item.distance:.4f}"
        )
        logger.info(
            f"Document {chunk.document_id}, chunk {chunk.chunk_index}, "
            f"subject {chunk.subject_id}"
        )
        logger.info(f"\n{text}\n")


async def run_delete_document(
    document_id: int, temporary: bool, overrides: tuple[str, ...]
) -> None:
    engine = await open_engine(overrides)
    try:
        if temporary:
            deleted = await engine.delete_temporary_document(document_id)
        else:
            deleted = await engine.delete_document(document_id)
    finally:
        await engine.close()
    logger.success(f"Deleted {deleted} chunks of document {document_id}")


async def run_clear(transcripts_only: bool, overrides: tuple[str, ...]) -> None:
    engine = await open_engine(overrides)
    try:
        if transcripts_only:
            deleted = await engine.clear_transcripts()
        else:
            deleted = await engine.delete_all()
    finally:
        await engine.close()
    logger.success(f"Deleted {deleted} chunks")


override_option = click.option(
    "--override",
    "overrides",
    multiple=True,
    help="Hydra config override, e.g. index.backend=pinecone (repeatable)",
)


@click.group()
def cli() -> None:
    """Inspect and maintain the tutoring context vector index."""


@cli.command()
@override_option
def stats(overrides: tuple[str, ...]) -> None:
    """Show document and transcript statistics."""
    asyncio.run(show_stats(overrides))


@cli.command()
@override_option
def sweep(overrides: tuple[str, ...]) -> None:
    """Remove temporary chunks older than the retention window."""
    asyncio.run(run_sweep(overrides))


@cli.command()
@click.argument("query", type=str)
@click.option("--subject-id", type=int, default=None, help="Restrict to one subject")
@click.option("--user-id", type=int, default=None, help="Caller user id")
@click.option("--session-id", type=int, default=None, help="Caller session id")
@click.option("--top-k", default=10, help="Number of results to return")
@override_option
def search(
    query: str,
    subject_id: int | None,
    user_id: int | None,
    session_id: int | None,
    top_k: int,
    overrides: tuple[str, ...],
) -> None:
    """Run a contextual search and print the ranked chunks."""
    asyncio.run(run_search(query, subject_id, user_id, session_id, top_k, overrides))


@cli.command("delete-document")
@click.argument("document_id", type=int)
@click.option("--temporary", is_flag=True, help="Document id names a temporary upload")
@override_option
def delete_document(document_id: int, temporary: bool, overrides: tuple[str, ...]) -> None:
    """Delete every chunk of one document."""
    asyncio.run(run_delete_document(document_id, temporary, overrides))


@cli.command()
@click.option("--transcripts-only", is_flag=True, help="Only clear video transcripts")
@click.confirmation_option(prompt="This deletes indexed content. Continue?")
@override_option
def clear(transcripts_only: bool, overrides: tuple[str, ...]) -> None:
    """Delete all indexed chunks."""
    asyncio.run(run_clear(transcripts_only, overrides))


if __name__ == "__main__":
    cli()
