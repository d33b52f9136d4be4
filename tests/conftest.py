"""Pytest configuration for test discovery, env, and fixtures.

This file ensures that:
- `src/` is importable
- Integration tests can read credentials from `conf/secrets.yml`
- Unit tests share a deterministic embedder and an in-memory index
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Ensure src directory is in path for imports
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from tutor_context.index import MemoryIndex  # noqa: E402

DIMENSIONS = 4


def _load_secrets_into_env() -> None:
    """Load secrets from conf/secrets.yml into environment if not set.

    Only sets variables that are currently unset to avoid overriding user-provided
    environment.
    """
    secrets_path = repo_root / "conf" / "secrets.yml"
    if not secrets_path.exists():
        return

    import yaml

    data = yaml.safe_load(secrets_path.read_text()) or {}
    for env_key in ("OPENAI_API_KEY", "PINECONE_API_KEY", "PINECONE_ENVIRONMENT"):
        if os.environ.get(env_key):
            continue
        value = data.get(env_key)
        if value:
            os.environ[env_key] = str(value)


def pytest_sessionstart(session: object) -> None:
    _load_secrets_into_env()


class KeywordEmbedder:
    """Deterministic embedder: known texts map to fixed vectors.

    Unknown texts get ``default``. Every call is recorded in ``calls``.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default: list[float] | None = None,
    ):
        self.vectors = dict(vectors or {})
        self.default = default or [0.0, 0.0, 0.0, 1.0]
        self.calls: list[str] = []

    async def embed_single(self, text: str) -> list[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, self.default))

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_single(text) for text in texts]


# Query and chunk vectors used by the retrieval scenarios
QUERY = "hàm số là gì"
PERMANENT_CHUNKS = ["Định nghĩa hàm số", "Ví dụ hàm số bậc 1", "Bài tập hàm số"]
TEMPORARY_CHUNKS = ["Ghi chú tải lên 1", "Ghi chú tải lên 2"]

SCENARIO_VECTORS: dict[str, list[float]] = {
    QUERY: [1.0, 0.0, 0.0, 0.0],
    "hàm số": [1.0, 0.0, 0.0, 0.0],
    "Định nghĩa hàm số": [0.95, 0.05, 0.0, 0.0],
    "Ví dụ hàm số bậc 1": [0.85, 0.3, 0.0, 0.0],
    "Bài tập hàm số": [0.75, 0.4, 0.1, 0.0],
    # Weaker matches than every permanent chunk
    "Ghi chú tải lên 1": [0.3, 0.9, 0.0, 0.0],
    "Ghi chú tải lên 2": [0.2, 0.9, 0.3, 0.0],
}


@pytest.fixture
def embedder() -> KeywordEmbedder:
    """Embedder preloaded with the scenario vectors."""
    return KeywordEmbedder(SCENARIO_VECTORS)


@pytest.fixture
def make_embedder():
    """Factory for embedders with custom vectors."""
    return KeywordEmbedder


@pytest.fixture
async def memory_index():
    """Initialized in-memory index with 4-dimensional vectors."""
    index = MemoryIndex(dimensions=DIMENSIONS)
    await index.initialize()
    yield index
    await index.close()
