import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

REVISION_PATTERN = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RepoReference(BaseModel):
    owner: str
    repo: str
    pinned_revision: str              # full commit hash, never a branch name

    @field_validator("owner", "repo")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not NAME_PATTERN.match(value) or value in {".", ".."}:
            raise ValueError(f"invalid repository name component: {value!r}")
        return value

    @field_validator("pinned_revision")
    @classmethod
    def _check_revision(cls, value: str) -> str:
        value = value.strip().lower()
        if not REVISION_PATTERN.match(value):
            raise ValueError(
                "pinned_revision must be a full commit hash (40 or 64 hex characters)"
            )
        return value

    @property
    def short_revision(self) -> str:
        return self.pinned_revision[:7]

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}@{self.short_revision}"


class Snapshot(BaseModel):
    root_path: Path                   # <extract_dir>/<top_level_dir_name>
    extract_dir: Path
    archive_path: Path
    bytes_downloaded: int
    top_level_dir_name: str


class Chunk(BaseModel):
    file_path: str
    start_line: int = Field(ge=1)
    end_line: int
    content: str
    language: str

    @model_validator(mode="after")
    def _check_range(self) -> "Chunk":
        if self.end_line < self.start_line:
            raise ValueError(
                f"end_line {self.end_line} precedes start_line {self.start_line}"
            )
        return self


class SkippedFile(BaseModel):
    path: str
    reason: str


class IndexStatus(str, Enum):
    QUEUED = "queued"
    INDEXING = "indexing"
    READY = "ready"
    FAILED = "failed"


class IndexStats(BaseModel):
    file_count: int = 0
    chunk_count: int = 0
    total_chars: int = 0
    files_skipped: int = 0


class IndexFailure(BaseModel):
    message: str
    stack: str | None = None
    at: datetime = Field(default_factory=utcnow)


class IndexStatusRecord(BaseModel):
    submission_id: str
    repo: RepoReference
    status: IndexStatus = IndexStatus.QUEUED
    stats: IndexStats = Field(default_factory=IndexStats)
    error: IndexFailure | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StartIndexingResult(BaseModel):
    status: IndexStatus
    chunk_count: int | None = None
    file_count: int | None = None
    error: str | None = None


class IndexReadyEvent(BaseModel):
    submission_id: str
    repo: RepoReference
    stats: IndexStats
    completed_at: datetime = Field(default_factory=utcnow)


class SearchOptions(BaseModel):
    top_k: int | None = None
    max_chunks: int | None = None
    max_total_chars: int | None = None
    max_chunk_chars: int | None = None


class CodeChunkResult(BaseModel):
    path: str
    start_line: int
    end_line: int
    content: str
    score: float
    language: str | None = None


class SearchStats(BaseModel):
    requested_top_k: int
    returned_chunks: int
    total_chars_returned: int


class SearchResult(BaseModel):
    chunks: list[CodeChunkResult]
    stats: SearchStats


class IndexRequest(BaseModel):
    submission_id: str
    repo: RepoReference


class StatusRequest(BaseModel):
    submission_id: str
    pinned_revision: str | None = None  # None = most recently indexed revision


class SearchRequest(BaseModel):
    submission_id: str
    query: str
    options: SearchOptions = Field(default_factory=SearchOptions)
