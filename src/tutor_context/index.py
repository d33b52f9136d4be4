"""Vector index management and search operations.

Provides a unified interface over two logical collections (document chunks
and video transcript chunks) with:
- Explicit ``initialize()`` lifecycle with schema verification
- Batch append with dimensionality checks
- Nearest-neighbour search with store-level filtering plus client-side re-check
- Predicate deletion reporting the number of rows removed
- Full-collection scans for statistics

Backends: LanceDB (local, native predicate deletion), Pinecone (hosted,
predicate deletion emulated by scan-then-delete-by-id) and an in-process
memory store.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import numpy as np
import pyarrow as pa
from loguru import logger

from tutor_context.config import IndexConfig
from tutor_context.errors import (
    ContextEngineError,
    IndexNotInitializedError,
    IndexUnavailableError,
    IndexWriteError,
)
from tutor_context.models import (
    CollectionKind,
    DocumentChunkRecord,
    IndexHit,
    TranscriptChunkRecord,
)
from tutor_context.predicates import MATCH_ALL, Predicate

ChunkRecord = DocumentChunkRecord | TranscriptChunkRecord

# Payload columns per collection (the vector column is added separately)
PAYLOAD_FIELDS: dict[CollectionKind, dict[str, pa.DataType]] = {
    CollectionKind.DOCUMENTS: {
        "id": pa.string(),
        "text": pa.string(),
        "document_id": pa.int64(),
        "chunk_index": pa.int64(),
        "subject_id": pa.int64(),
        "owner_user_id": pa.int64(),
        "owner_session_id": pa.int64(),
        "is_temporary": pa.bool_(),
        "created_at": pa.float64(),
    },
    CollectionKind.TRANSCRIPTS: {
        "id": pa.string(),
        "text": pa.string(),
        "video_id": pa.int64(),
        "chunk_id": pa.int64(),
        "start_time": pa.float64(),
        "end_time": pa.float64(),
        "subject_id": pa.int64(),
        "created_at": pa.float64(),
    },
}

VECTOR_FIELD = "vector"


def arrow_schema(kind: CollectionKind, dimensions: int) -> pa.Schema:
    """Build the Arrow schema for a collection."""
    fields = [pa.field(VECTOR_FIELD, pa.list_(pa.float32(), dimensions))]
    fields.extend(pa.field(name, dtype) for name, dtype in PAYLOAD_FIELDS[kind].items())
    return pa.schema(fields)


def _compatible_type(actual: pa.DataType, expected: pa.DataType) -> bool:
    if pa.types.is_integer(expected):
        return pa.types.is_integer(actual)
    if pa.types.is_floating(expected):
        return pa.types.is_floating(actual)
    if pa.types.is_boolean(expected):
        return pa.types.is_boolean(actual)
    if pa.types.is_string(expected):
        return pa.types.is_string(actual) or pa.types.is_large_string(actual)
    return actual == expected


def schema_matches(actual: pa.Schema, kind: CollectionKind, dimensions: int) -> bool:
    """Return True when an existing table can hold this collection's rows."""
    names = set(actual.names)
    if VECTOR_FIELD not in names:
        return False

    vector_type = actual.field(VECTOR_FIELD).type
    if not pa.types.is_fixed_size_list(vector_type) or vector_type.list_size != dimensions:
        return False

    for name, expected in PAYLOAD_FIELDS[kind].items():
        if name not in names or not _compatible_type(actual.field(name).type, expected):
            return False
    return True


def list_table_names(db: Any) -> set[str]:
    """Names of the tables in a LanceDB connection."""
    response = db.list_tables()
    # Newer clients wrap the names in a paginated response
    return set(getattr(response, "tables", response))


def _payload_of(row: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in row.items() if k != VECTOR_FIELD and not k.startswith("_")}


class VectorIndex(ABC):
    """Abstract base class for vector index implementations.

    The index is constructed once per process, initialized explicitly at
    startup, and shared by every request afterwards. Any operation before a
    successful ``initialize()`` raises ``IndexNotInitializedError``.
    """

    # Backends that know how many rows a delete removed skip the count delta
    reports_deleted_count = False

    def __init__(
        self,
        dimensions: int,
        documents_collection: str = "documents",
        transcripts_collection: str = "video_transcripts",
        allow_schema_reset: bool = False,
    ):
        """Initialize shared index state.

        Args:
            dimensions: Embedding dimensionality of both collections
            documents_collection: Name of the document chunk collection
            transcripts_collection: Name of the transcript chunk collection
            allow_schema_reset: Permit dropping collections with a bad schema
        """
        self.dimensions = dimensions
        self.allow_schema_reset = allow_schema_reset
        self.collection_names = {
            CollectionKind.DOCUMENTS: documents_collection,
            CollectionKind.TRANSCRIPTS: transcripts_collection,
        }
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Connect and make sure both collections exist with the right schema.

        Only call at process start: with ``allow_schema_reset`` an incompatible
        collection is dropped and recreated, losing its content.

        Raises:
            IndexUnavailableError: If the store cannot be reached or a
                collection is incompatible and resets are not allowed
        """
        try:
            await self._open()
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize {type(self).__name__}: {e}")
            raise IndexUnavailableError(
                "Vector index failed to initialize", {"backend": type(self).__name__}
            ) from e

        self._initialized = True
        logger.info(
            f"{type(self).__name__} ready with collections "
            f"{sorted(self.collection_names.values())} ({self.dimensions} dimensions)"
        )

    def _require_ready(self, operation: str) -> None:
        if not self._initialized:
            raise IndexNotInitializedError(
                "Vector index used before initialize()", {"operation": operation}
            )

    def _check_dimensions(self, vector: list[float]) -> bool:
        return len(vector) == self.dimensions

    async def add(self, kind: CollectionKind, records: list[ChunkRecord]) -> None:
        """Append rows to a collection.

        Args:
            kind: Target collection
            records: Records to append

        Raises:
            ValueError: If records list is empty
            IndexWriteError: On dimensionality mismatch or store failure
            IndexNotInitializedError: If called before initialize()
        """
        self._require_ready("add")
        if not records:
            raise ValueError("Cannot add empty record list")

        for record in records:
            if not self._check_dimensions(record.vector):
                raise IndexWriteError(
                    f"Expected {self.dimensions} dimensions, got {len(record.vector)}",
                    {"collection": kind.value, "id": record.id},
                )

        rows = [record.to_row() for record in records]
        try:
            await self._add(kind, rows)
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(f"Failed to add {len(rows)} rows to {kind.value}: {e}")
            raise IndexWriteError(
                "Vector index write failed", {"collection": kind.value, "rows": len(rows)}
            ) from e

        logger.debug(f"Added {len(rows)} rows to {self.collection_names[kind]}")

    async def search(
        self,
        kind: CollectionKind,
        query_vector: list[float],
        limit: int,
        predicate: Predicate | None = None,
    ) -> list[IndexHit]:
        """Return up to ``limit`` nearest rows ordered by ascending distance.

        The predicate is pushed down to the store and then re-evaluated on the
        returned rows, so a store whose filter is fragile cannot leak rows.

        Raises:
            ValueError: If the query vector has the wrong dimensionality
            IndexUnavailableError: If the store does not respond
        """
        self._require_ready("search")
        if not self._check_dimensions(query_vector):
            raise ValueError(
                f"Query vector has {len(query_vector)} dimensions, expected {self.dimensions}"
            )
        if limit <= 0:
            return []

        predicate = predicate or MATCH_ALL
        try:
            hits = await self._search(kind, query_vector, limit, predicate)
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(f"Search on {kind.value} failed ({predicate}): {e}")
            raise IndexUnavailableError(
                "Vector search failed", {"collection": kind.value}
            ) from e

        filtered = [hit for hit in hits if predicate.matches(hit.payload)]
        if len(filtered) < len(hits):
            logger.warning(
                f"Store filter on {kind.value} let through {len(hits) - len(filtered)} "
                f"rows not matching {predicate}"
            )
        filtered.sort(key=lambda hit: hit.distance)
        return filtered[:limit]

    async def delete_where(self, kind: CollectionKind, predicate: Predicate) -> int:
        """Remove all rows matching ``predicate`` and return how many were removed.

        The count is the row count before minus the row count after, unless
        the backend reports deletions itself.
        """
        self._require_ready("delete_where")
        try:
            if self.reports_deleted_count:
                deleted = await self._delete(kind, predicate)
            else:
                before = await self._count(kind, None)
                await self._delete(kind, predicate)
                after = await self._count(kind, None)
                deleted = before - after
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(f"Delete on {kind.value} failed ({predicate}): {e}")
            raise IndexUnavailableError(
                "Vector delete failed", {"collection": kind.value, "predicate": str(predicate)}
            ) from e

        logger.debug(f"Deleted {deleted} rows from {kind.value} where {predicate}")
        return max(0, deleted or 0)

    async def count_rows(self, kind: CollectionKind, predicate: Predicate | None = None) -> int:
        """Count rows in a collection, optionally restricted by a predicate."""
        self._require_ready("count_rows")
        try:
            return await self._count(kind, predicate)
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(f"Count on {kind.value} failed: {e}")
            raise IndexUnavailableError("Vector count failed", {"collection": kind.value}) from e

    async def scan(
        self,
        kind: CollectionKind,
        predicate: Predicate | None = None,
        limit: int = 10000,
    ) -> list[dict[str, Any]]:
        """Read payload rows (including ``id``, excluding vectors)."""
        self._require_ready("scan")
        predicate = predicate or MATCH_ALL
        try:
            rows = await self._scan(kind, predicate, limit)
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(f"Scan on {kind.value} failed: {e}")
            raise IndexUnavailableError("Vector scan failed", {"collection": kind.value}) from e
        return [row for row in rows if predicate.matches(row)][:limit]

    async def health_check(self) -> bool:
        """Check if the index is initialized and responding.

        Returns:
            True if healthy, False otherwise
        """
        if not self._initialized:
            return False
        try:
            await self._count(CollectionKind.DOCUMENTS, None)
            return True
        except Exception as e:
            logger.warning(f"Health check failed for {type(self).__name__}: {e}")
            return False

    async def close(self) -> None:
        """Release backend resources; the index must be re-initialized to reuse."""
        self._initialized = False

    @abstractmethod
    async def _open(self) -> None:
        """Connect and verify/create both collections."""
        ...

    @abstractmethod
    async def _add(self, kind: CollectionKind, rows: list[dict[str, Any]]) -> None: ...

    @abstractmethod
    async def _search(
        self, kind: CollectionKind, vector: list[float], limit: int, predicate: Predicate
    ) -> list[IndexHit]: ...

    @abstractmethod
    async def _delete(self, kind: CollectionKind, predicate: Predicate) -> int | None: ...

    @abstractmethod
    async def _count(self, kind: CollectionKind, predicate: Predicate | None) -> int: ...

    @abstractmethod
    async def _scan(
        self, kind: CollectionKind, predicate: Predicate, limit: int
    ) -> list[dict[str, Any]]: ...


class LanceDBIndex(VectorIndex):
    """LanceDB vector index implementation.

    Each collection is a LanceDB table with a fixed Arrow schema. Search uses
    cosine distance; filters and deletes are pushed down as SQL predicates.
    LanceDB's client is synchronous, so calls run in worker threads to keep
    the event loop free.
    """

    def __init__(self, uri: str | Path, dimensions: int, **kwargs: Any):
        """Initialize LanceDB index client.

        Args:
            uri: Database directory
            dimensions: Embedding dimensionality
            **kwargs: Collection names and ``allow_schema_reset``
        """
        super().__init__(dimensions, **kwargs)
        self.uri = str(uri)
        self.db: Any = None
        self._tables: dict[CollectionKind, Any] = {}

    async def _open(self) -> None:
        await asyncio.to_thread(self._open_sync)

    def _open_sync(self) -> None:
        import lancedb

        Path(self.uri).mkdir(parents=True, exist_ok=True)
        self.db = lancedb.connect(self.uri)
        existing = list_table_names(self.db)

        for kind in CollectionKind:
            name = self.collection_names[kind]
            expected = arrow_schema(kind, self.dimensions)

            if name in existing:
                table = self.db.open_table(name)
                if schema_matches(table.schema, kind, self.dimensions):
                    self._tables[kind] = table
                    continue

                if not self.allow_schema_reset:
                    raise IndexUnavailableError(
                        "Collection schema is incompatible; enable index.allow_schema_reset "
                        "to drop and recreate it",
                        {"collection": name, "uri": self.uri},
                    )
                logger.warning(
                    f"Dropping collection {name!r} with incompatible schema "
                    f"({table.count_rows()} rows will need reindexing)"
                )
                self.db.drop_table(name)

            self._tables[kind] = self.db.create_table(name, schema=expected)
            logger.info(f"Created collection {name!r} at {self.uri}")

    def _table(self, kind: CollectionKind) -> Any:
        return self._tables[kind]

    async def _add(self, kind: CollectionKind, rows: list[dict[str, Any]]) -> None:
        await asyncio.to_thread(self._table(kind).add, rows)

    async def _search(
        self, kind: CollectionKind, vector: list[float], limit: int, predicate: Predicate
    ) -> list[IndexHit]:
        def run() -> list[dict[str, Any]]:
            query = self._table(kind).search(vector, vector_column_name=VECTOR_FIELD)
            query = query.distance_type("cosine")
            where = predicate.to_sql()
            if where:
                query = query.where(where, prefilter=True)
            return query.limit(limit).to_list()

        rows = await asyncio.to_thread(run)
        return [
            IndexHit(
                id=row["id"],
                payload=_payload_of(row),
                distance=float(row.get("_distance") or 0.0),
            )
            for row in rows
        ]

    async def _delete(self, kind: CollectionKind, predicate: Predicate) -> None:
        await asyncio.to_thread(self._table(kind).delete, predicate.to_sql() or "1 = 1")

    async def _count(self, kind: CollectionKind, predicate: Predicate | None) -> int:
        where = predicate.to_sql() if predicate else None
        return int(await asyncio.to_thread(self._table(kind).count_rows, where))

    async def _scan(
        self, kind: CollectionKind, predicate: Predicate, limit: int
    ) -> list[dict[str, Any]]:
        def run() -> list[dict[str, Any]]:
            query = self._table(kind).search().select(list(PAYLOAD_FIELDS[kind]))
            where = predicate.to_sql()
            if where:
                query = query.where(where)
            return query.limit(limit).to_list()

        rows = await asyncio.to_thread(run)
        return [_payload_of(row) for row in rows]

    async def close(self) -> None:
        self._tables.clear()
        self.db = None
        await super().close()


class PineconeIndex(VectorIndex):
    """Pinecone vector index implementation.

    Both collections live in one Pinecone index as separate namespaces.
    Metadata filters are pushed down on query; predicate deletion is emulated
    by listing ids, fetching their metadata, and deleting matching ids in
    batches, which costs O(n) round-trips.
    """

    reports_deleted_count = True
    batch_size = 100

    def __init__(
        self,
        index_name: str,
        api_key: str,
        dimensions: int,
        environment: str = "us-east-1",
        cloud: str = "aws",
        **kwargs: Any,
    ):
        """Initialize Pinecone index client.

        Args:
            index_name: Name of Pinecone index
            api_key: Pinecone API key
            dimensions: Embedding dimensionality
            environment: Pinecone region (e.g., "us-east-1")
            cloud: Cloud provider for serverless indexes
            **kwargs: Collection names and ``allow_schema_reset``
        """
        super().__init__(dimensions, **kwargs)
        self.index_name = index_name
        self.api_key = api_key
        self.environment = environment
        self.cloud = cloud
        self.pc: Any = None
        self.index: Any = None

    async def _open(self) -> None:
        await asyncio.to_thread(self._open_sync)

    def _open_sync(self) -> None:
        from pinecone import Pinecone, ServerlessSpec

        self.pc = Pinecone(api_key=self.api_key)
        existing = set(self.pc.list_indexes().names())

        if self.index_name in existing:
            description = self.pc.describe_index(self.index_name)
            if description.dimension == self.dimensions:
                self.index = self.pc.Index(self.index_name)
                return
            if not self.allow_schema_reset:
                raise IndexUnavailableError(
                    f"Pinecone index has {description.dimension} dimensions, "
                    f"expected {self.dimensions}",
                    {"index_name": self.index_name},
                )
            logger.warning(f"Deleting Pinecone index {self.index_name!r}: dimension mismatch")
            self.pc.delete_index(self.index_name)

        self.pc.create_index(
            name=self.index_name,
            dimension=self.dimensions,
            metric="cosine",
            spec=ServerlessSpec(cloud=self.cloud, region=self.environment),
        )
        logger.info(f"Created Pinecone index {self.index_name!r}")
        self.index = self.pc.Index(self.index_name)

    def _namespace(self, kind: CollectionKind) -> str:
        return self.collection_names[kind]

    async def _add(self, kind: CollectionKind, rows: list[dict[str, Any]]) -> None:
        vectors = [
            {"id": row["id"], "values": row[VECTOR_FIELD], "metadata": _payload_of(row)}
            for row in rows
        ]
        for start in range(0, len(vectors), self.batch_size):
            batch = vectors[start : start + self.batch_size]
            await asyncio.to_thread(
                self.index.upsert, vectors=batch, namespace=self._namespace(kind)
            )

    async def _search(
        self, kind: CollectionKind, vector: list[float], limit: int, predicate: Predicate
    ) -> list[IndexHit]:
        results = await asyncio.to_thread(
            self.index.query,
            vector=vector,
            top_k=limit,
            namespace=self._namespace(kind),
            filter=predicate.to_pinecone(),
            include_metadata=True,
            include_values=False,
        )

        hits = []
        for match in results.matches:
            payload = dict(match.metadata or {})
            payload["id"] = match.id
            # Pinecone reports cosine similarity; convert to distance
            hits.append(IndexHit(id=match.id, payload=payload, distance=1.0 - match.score))
        return hits

    async def _delete(self, kind: CollectionKind, predicate: Predicate) -> int:
        namespace = self._namespace(kind)

        if predicate.is_empty:
            total = await self._count(kind, None)
            if total:
                await asyncio.to_thread(self.index.delete, delete_all=True, namespace=namespace)
            return total

        rows = await self._scan(kind, predicate, limit=0)
        ids = [row["id"] for row in rows if predicate.matches(row)]
        for start in range(0, len(ids), self.batch_size):
            await asyncio.to_thread(
                self.index.delete, ids=ids[start : start + self.batch_size], namespace=namespace
            )
        return len(ids)

    async def _count(self, kind: CollectionKind, predicate: Predicate | None) -> int:
        if predicate is not None and not predicate.is_empty:
            rows = await self._scan(kind, predicate, limit=0)
            return len(rows)

        stats = await asyncio.to_thread(self.index.describe_index_stats)
        summary = (stats.namespaces or {}).get(self._namespace(kind))
        return int(summary.vector_count) if summary else 0

    async def _scan(
        self, kind: CollectionKind, predicate: Predicate, limit: int
    ) -> list[dict[str, Any]]:
        """Fetch metadata for every id in the namespace (``limit=0``: no limit)."""
        namespace = self._namespace(kind)

        def list_ids() -> list[str]:
            ids: list[str] = []
            for page in self.index.list(namespace=namespace):
                ids.extend(page)
            return ids

        ids = await asyncio.to_thread(list_ids)

        rows: list[dict[str, Any]] = []
        for start in range(0, len(ids), self.batch_size):
            batch = ids[start : start + self.batch_size]
            response = await asyncio.to_thread(self.index.fetch, ids=batch, namespace=namespace)
            for vector_id, vector in response.vectors.items():
                row = dict(vector.metadata or {})
                row["id"] = vector_id
                if predicate.matches(row):
                    rows.append(row)
            if limit and len(rows) >= limit:
                break
        return rows[:limit] if limit else rows

    async def close(self) -> None:
        self.index = None
        self.pc = None
        await super().close()


class MemoryIndex(VectorIndex):
    """In-process vector index.

    Rows live in per-collection lists and search is an exact cosine scan.
    Useful for tests and single-process development; nothing is persisted.
    """

    def __init__(self, dimensions: int, **kwargs: Any):
        super().__init__(dimensions, **kwargs)
        self._rows: dict[CollectionKind, list[tuple[np.ndarray, dict[str, Any]]]] = {}

    async def _open(self) -> None:
        for kind in CollectionKind:
            self._rows.setdefault(kind, [])

    async def _add(self, kind: CollectionKind, rows: list[dict[str, Any]]) -> None:
        for row in rows:
            vector = np.asarray(row[VECTOR_FIELD], dtype=np.float32)
            self._rows[kind].append((vector, _payload_of(row)))

    async def _search(
        self, kind: CollectionKind, vector: list[float], limit: int, predicate: Predicate
    ) -> list[IndexHit]:
        query = np.asarray(vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))

        scored = []
        for position, (row_vector, payload) in enumerate(self._rows[kind]):
            if not predicate.matches(payload):
                continue
            denominator = query_norm * float(np.linalg.norm(row_vector))
            similarity = float(np.dot(query, row_vector)) / denominator if denominator else 0.0
            scored.append((1.0 - similarity, position, payload))

        scored.sort(key=lambda item: (item[0], item[1]))
        return [
            IndexHit(id=payload["id"], payload=dict(payload), distance=distance)
            for distance, _, payload in scored[:limit]
        ]

    async def _delete(self, kind: CollectionKind, predicate: Predicate) -> None:
        self._rows[kind] = [item for item in self._rows[kind] if not predicate.matches(item[1])]

    async def _count(self, kind: CollectionKind, predicate: Predicate | None) -> int:
        if predicate is None:
            return len(self._rows[kind])
        return sum(1 for _, payload in self._rows[kind] if predicate.matches(payload))

    async def _scan(
        self, kind: CollectionKind, predicate: Predicate, limit: int
    ) -> list[dict[str, Any]]:
        rows = [dict(payload) for _, payload in self._rows[kind] if predicate.matches(payload)]
        return rows[:limit]


def create_index(config: IndexConfig, dimensions: int) -> VectorIndex:
    """Factory function to create a vector index from configuration.

    Args:
        config: Index configuration
        dimensions: Embedding dimensionality shared by both collections

    Returns:
        Uninitialized vector index; call ``initialize()`` at process start

    Example:
        >>> index = create_index(IndexConfig(backend="memory"), dimensions=1536)
        >>> index.is_initialized
        False
    """
    common: dict[str, Any] = {
        "documents_collection": config.documents_collection,
        "transcripts_collection": config.transcripts_collection,
        "allow_schema_reset": config.allow_schema_reset,
    }

    if config.backend == "lancedb":
        return LanceDBIndex(uri=config.uri, dimensions=dimensions, **common)
    if config.backend == "pinecone":
        if not config.api_key:
            raise ValueError("Pinecone backend requires index.api_key")
        return PineconeIndex(
            index_name=config.index_name,
            api_key=config.api_key,
            dimensions=dimensions,
            environment=config.environment or "us-east-1",
            cloud=config.cloud,
            **common,
        )
    if config.backend == "memory":
        return MemoryIndex(dimensions=dimensions, **common)
    raise ValueError(f"Unknown index backend {config.backend!r}")
