import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "openai/text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "openai/text-embedding-3-large": 3072,
}

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
GITHUB_API_URL = "https://api.github.com"

MAX_DOWNLOAD_BYTES = 100 * 1024 * 1024     # 100 MB
MAX_EXTRACTED_BYTES = 500 * 1024 * 1024    # 500 MB
MAX_FILE_BYTES = 10 * 1024 * 1024          # 10 MB


class SnapshotLimits(BaseModel):
    max_download_bytes: int = MAX_DOWNLOAD_BYTES
    max_extracted_bytes: int = MAX_EXTRACTED_BYTES
    download_chunk_bytes: int = 64 * 1024
    temp_root: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "repo-index")


class ChunkingConfig(BaseModel):
    chunk_lines: int = 200
    chunk_overlap: int = 40
    max_chunk_chars: int = 10_000
    max_file_bytes: int = MAX_FILE_BYTES
    split_overlap_lines: int = 5


class WriterConfig(BaseModel):
    embed_batch_size: int = 100
    upsert_batch_size: int = 100
    metadata_content_chars: int = 1000


class RetrievalConfig(BaseModel):
    default_top_k: int = 8
    max_top_k: int = 15
    max_chunks: int = 8
    max_total_chars: int = 16_000
    max_chunk_chars: int = 4000
    overlap_threshold: float = 0.3
    # also drop a candidate whose own span is mostly covered by a kept chunk;
    # False restores the plain overlap / union rule
    dedup_by_candidate_coverage: bool = True


class Settings(BaseModel):
    openrouter_api_key: str
    embedding_model: str = "text-embedding-3-small"
    embedding_api_base: str = OPENROUTER_API_BASE
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    collection_prefix: str = "repo_index"
    redis_url: str | None = None
    github_api_url: str = GITHUB_API_URL
    github_token: str | None = None
    index_ready_webhook_url: str | None = None

    snapshot: SnapshotLimits = Field(default_factory=SnapshotLimits)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    writer: WriterConfig = Field(default_factory=WriterConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)

    @property
    def embedding_dimensions(self) -> int:
        return MODEL_DIMENSIONS[self.embedding_model]

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment (and .env), failing fast on bad credentials."""
        load_dotenv()

        api_key = os.environ.get("OPENROUTER_API_KEY")
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY environment variable is not set")

        model = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
        if model not in MODEL_DIMENSIONS:
            raise RuntimeError(
                f"Unknown model '{model}'. Supported: {', '.join(MODEL_DIMENSIONS)}"
            )

        snapshot = SnapshotLimits()
        if os.environ.get("MAX_DOWNLOAD_BYTES"):
            snapshot.max_download_bytes = int(os.environ["MAX_DOWNLOAD_BYTES"])
        if os.environ.get("REPO_INDEX_TMPDIR"):
            snapshot.temp_root = Path(os.environ["REPO_INDEX_TMPDIR"])

        return cls(
            openrouter_api_key=api_key,
            embedding_model=model,
            qdrant_url=os.environ.get("QDRANT_URL", "http://localhost:6333"),
            qdrant_api_key=os.environ.get("QDRANT_API_KEY") or None,
            collection_prefix=os.environ.get("COLLECTION_PREFIX", "repo_index"),
            redis_url=os.environ.get("REDIS_URL") or None,
            github_api_url=os.environ.get("GITHUB_API_URL", GITHUB_API_URL),
            github_token=os.environ.get("GITHUB_TOKEN") or None,
            index_ready_webhook_url=os.environ.get("INDEX_READY_WEBHOOK_URL") or None,
            snapshot=snapshot,
        )
