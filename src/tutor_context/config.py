"""Configuration management for the context engine using Hydra.

All configuration is loaded from YAML files in conf/tutor_context/.
This module provides typed config objects and validation. The product-tuned
constants of the scoring algorithm (bucket weights, retention window, video
ratio and boost) live here rather than in the code that applies them.
"""

from datetime import timedelta
from pathlib import Path

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field, model_validator

from tutor_context.chunking import ChunkingConfig
from tutor_context.embedding import EmbeddingConfig
from tutor_context.models import Bucket


class IndexConfig(BaseModel):
    """Vector index configuration.

    Attributes:
        backend: Index backend ("lancedb", "pinecone" or "memory")
        uri: LanceDB database directory
        index_name: Pinecone index name
        api_key: API key for hosted service
        environment: Pinecone region (serverless spec)
        cloud: Pinecone cloud provider (serverless spec)
        documents_collection: Name of the document chunk collection
        transcripts_collection: Name of the video transcript collection
        allow_schema_reset: Drop and recreate collections whose schema does
            not match. Destroys indexed content, so it is opt-in.
    """

    backend: str = Field(default="lancedb", pattern="^(lancedb|pinecone|memory)$")
    uri: str = "data/lancedb"
    index_name: str = "tutor-context"
    api_key: str | None = None
    environment: str | None = None
    cloud: str = "aws"
    documents_collection: str = "documents"
    transcripts_collection: str = "video_transcripts"
    allow_schema_reset: bool = False


class BucketWeights(BaseModel):
    """Score blend for one ownership bucket.

    Attributes:
        semantic: Weight of ``1 - distance``
        temporal: Weight of the recency decay
        offset: Constant added so buckets never interleave
    """

    semantic: float = Field(ge=0.0, le=1.0)
    temporal: float = Field(ge=0.0, le=1.0)
    offset: float = Field(ge=0.0)


class RetrievalConfig(BaseModel):
    """Contextual retrieval configuration.

    Attributes:
        overfetch_factor: Raw candidates fetched per requested result
        retention_hours: Temporary-row lifetime; also the recency decay span
        temporary: Weights for the caller's own temporary uploads
        permanent: Weights for permanent (subject-wide) documents
        other: Weights for other callers' temporary uploads
        anonymous_offset: Flat boost applied when no caller identity is given
        default_top_k: Results returned by raw retrieval
        answer_top_k: Results used to build a Q&A context
    """

    overfetch_factor: int = Field(default=3, ge=1, le=20)
    retention_hours: float = Field(default=2.0, gt=0.0)
    temporary: BucketWeights = BucketWeights(semantic=0.1, temporal=0.9, offset=10.0)
    permanent: BucketWeights = BucketWeights(semantic=0.5, temporal=0.5, offset=5.0)
    other: BucketWeights = BucketWeights(semantic=0.8, temporal=0.2, offset=0.0)
    anonymous_offset: float = Field(default=5.0, ge=0.0)
    default_top_k: int = Field(default=10, ge=1, le=100)
    answer_top_k: int = Field(default=5, ge=1, le=100)

    @model_validator(mode="after")
    def check_bucket_order(self) -> "RetrievalConfig":
        """Offsets must rank temporary above permanent above other."""
        if not self.temporary.offset > self.permanent.offset > self.other.offset:
            raise ValueError(
                "bucket offsets must satisfy temporary > permanent > other, got "
                f"{self.temporary.offset}, {self.permanent.offset}, {self.other.offset}"
            )
        return self

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)

    def weights_for(self, bucket: Bucket) -> BucketWeights:
        return {
            Bucket.TEMPORARY: self.temporary,
            Bucket.PERMANENT: self.permanent,
            Bucket.OTHER: self.other,
        }[bucket]


class VideoQAConfig(BaseModel):
    """Video Q&A combination configuration.

    Attributes:
        document_ratio: Share of results drawn from documents (rest: transcripts)
        current_video_boost: Distance multiplier for the video being watched
        transcript_overfetch: Extra transcript candidates fetched before boosting
        default_top_k: Total results requested per question
    """

    document_ratio: float = Field(default=0.7, ge=0.0, le=1.0)
    current_video_boost: float = Field(default=0.5, gt=0.0, le=1.0)
    transcript_overfetch: int = Field(default=3, ge=0, le=100)
    default_top_k: int = Field(default=7, ge=1, le=100)


class MaintenanceConfig(BaseModel):
    """Lifecycle maintenance configuration.

    Attributes:
        sweep_interval_seconds: Period of the expiry sweep
        scan_limit: Maximum rows read by full-collection scans
    """

    sweep_interval_seconds: float = Field(default=3600.0, gt=0.0)
    scan_limit: int = Field(default=10000, ge=1)


class ContextEngineConfig(BaseModel):
    """Top-level configuration for the context engine.

    Attributes:
        chunking: Text chunking configuration
        embedding: Embedding model configuration
        index: Vector index configuration
        retrieval: Scoring and retrieval configuration
        video_qa: Video Q&A combination configuration
        maintenance: Expiry sweep configuration
    """

    chunking: ChunkingConfig = ChunkingConfig()
    embedding: EmbeddingConfig
    index: IndexConfig = Field(default_factory=IndexConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    video_qa: VideoQAConfig = Field(default_factory=VideoQAConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)


def load_config(
    config_name: str = "default",
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> ContextEngineConfig:
    """Load context engine configuration from Hydra YAML files.

    Args:
        config_name: Name of config file (without .yaml extension)
        config_path: Path to config directory (defaults to conf/tutor_context/)
        overrides: List of config overrides (e.g., ["retrieval.retention_hours=3"])

    Returns:
        Validated configuration object

    Example:
        >>> config = load_config("default")
        >>> config.retrieval.overfetch_factor
        3

        >>> config = load_config("default", overrides=["index.backend=memory"])
        >>> config.index.backend
        'memory'
    """
    if config_path is None:
        repo_root = Path(__file__).parent.parent.parent
        config_path = repo_root / "conf" / "tutor_context"

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config directory not found: {config_path}\n" f"Create it with: mkdir -p {config_path}"
        )

    with initialize_config_dir(
        config_dir=str(config_path), version_base=None, job_name="tutor_context"
    ):
        cfg: DictConfig = compose(config_name=config_name, overrides=overrides or [])

    config_dict = OmegaConf.to_container(cfg, resolve=True)
    return ContextEngineConfig(**config_dict)  # type: ignore


def create_default_config() -> dict[str, dict[str, object]]:
    """Create a default configuration dictionary for bootstrapping.

    Returns:
        Dictionary suitable for writing to YAML

    Example:
        >>> import yaml
        >>> config = create_default_config()
        >>> with open("conf/tutor_context/default.yaml", "w") as f:
        ...     yaml.dump(config, f)
    """
    return {
        "chunking": {
            "chunk_size": 400,
            "overlap": 50,
            "tokenizer": "cl100k_base",
            "preserve_boundaries": True,
            "sentences_per_chunk": 10,
        },
        "embedding": {
            "model": "openai/text-embedding-ada-002",
            "version": "v1",
            "dimensions": 1536,
            "batch_size": 100,
            "max_retries": 3,
            "timeout_seconds": 30.0,
            "max_concurrency": 16,
            "api_key": "${oc.env:OPENAI_API_KEY,null}",
        },
        "index": {
            "backend": "lancedb",
            "uri": "${oc.env:TUTOR_CONTEXT_LANCEDB_URI,data/lancedb}",
            "index_name": "tutor-context",
            "api_key": "${oc.env:PINECONE_API_KEY,null}",
            "environment": "${oc.env:PINECONE_ENVIRONMENT,us-east-1}",
            "cloud": "aws",
            "documents_collection": "documents",
            "transcripts_collection": "video_transcripts",
            "allow_schema_reset": False,
        },
        "retrieval": {
            "overfetch_factor": 3,
            "retention_hours": 2.0,
            "temporary": {"semantic": 0.1, "temporal": 0.9, "offset": 10.0},
            "permanent": {"semantic": 0.5, "temporal": 0.5, "offset": 5.0},
            "other": {"semantic": 0.8, "temporal": 0.2, "offset": 0.0},
            "anonymous_offset": 5.0,
            "default_top_k": 10,
            "answer_top_k": 5,
        },
        "video_qa": {
            "document_ratio": 0.7,
            "current_video_boost": 0.5,
            "transcript_overfetch": 3,
            "default_top_k": 7,
        },
        "maintenance": {
            "sweep_interval_seconds": 3600.0,
            "scan_limit": 10000,
        },
    }
