"""Shared pytest fixtures: fake repository host, deterministic embeddings, in-memory stores."""

import hashlib
import io
import math
import re
import zipfile
from collections.abc import Callable

import httpx
import pytest
import pytest_asyncio
from llama_index.core.base.embeddings.base import BaseEmbedding
from qdrant_client import AsyncQdrantClient

from repo_index.config import ChunkingConfig, SnapshotLimits, WriterConfig
from repo_index.models import RepoReference
from repo_index.snapshot import SnapshotAcquirer
from repo_index.status_store import InMemoryIndexStatusStore
from repo_index.vector_store import QdrantNamespaceIndex
from repo_index.writer import ChunkWriter

REVISION = "0123456789abcdef0123456789abcdef01234567"
OTHER_REVISION = "fedcba9876543210fedcba9876543210fedcba98"
TOP_LEVEL = "acme-widgets-0123456"


class HashingEmbedding(BaseEmbedding):
    """Bag-of-words feature hashing: texts sharing words land close together."""

    dim: int = 64

    @classmethod
    def class_name(cls) -> str:
        return "HashingEmbedding"

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dim
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        return [v / norm for v in vec]

    def _get_query_embedding(self, query: str) -> list[float]:
        return self._vector(query)

    async def _aget_query_embedding(self, query: str) -> list[float]:
        return self._vector(query)

    def _get_text_embedding(self, text: str) -> list[float]:
        return self._vector(text)


def build_zip(files: dict[str, str | bytes], top_level: str = TOP_LEVEL) -> bytes:
    """Zip archive shaped like a GitHub zipball: every entry under one top-level directory."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        if top_level:
            zf.writestr(f"{top_level}/", "")
        for name, content in files.items():
            zf.writestr(f"{top_level}/{name}" if top_level else name, content)
    return buf.getvalue()


def numbered_lines(prefix: str, count: int) -> str:
    return "\n".join(f"{prefix} line {i}" for i in range(1, count + 1)) + "\n"


class FakeGitHub:
    """MockTransport handler serving one archive per revision and counting archive fetches."""

    def __init__(self, archives: dict[str, bytes] | None = None) -> None:
        self.archives = dict(archives or {})
        self.archive_requests: list[httpx.Request] = []
        self.gate = None              # asyncio.Event; archive responses wait on it when set

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        if len(parts) == 5 and parts[0] == "repos" and parts[3] == "zipball":
            self.archive_requests.append(request)
            if self.gate is not None:
                await self.gate.wait()
            archive = self.archives.get(parts[4])
            if archive is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, content=archive)
        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def repo_ref() -> RepoReference:
    return RepoReference(owner="acme", repo="widgets", pinned_revision=REVISION)


@pytest.fixture
def snapshot_limits(tmp_path) -> SnapshotLimits:
    return SnapshotLimits(temp_root=tmp_path / "snapshots")


@pytest.fixture
def embed_model() -> HashingEmbedding:
    return HashingEmbedding()


@pytest.fixture
def status_store() -> InMemoryIndexStatusStore:
    return InMemoryIndexStatusStore()


@pytest.fixture
def chunking_config() -> ChunkingConfig:
    return ChunkingConfig()


@pytest_asyncio.fixture
async def qdrant():
    client = AsyncQdrantClient(location=":memory:")
    yield client
    await client.close()


@pytest.fixture
def vector_index(qdrant) -> QdrantNamespaceIndex:
    return QdrantNamespaceIndex(qdrant, collection_prefix="test")


@pytest.fixture
def writer(embed_model, vector_index) -> ChunkWriter:
    return ChunkWriter(embed_model, vector_index, WriterConfig())


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest_asyncio.fixture
async def http_client(fake_github):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_github)) as client:
        yield client


@pytest.fixture
def acquirer(http_client, snapshot_limits) -> SnapshotAcquirer:
    return SnapshotAcquirer(http_client, snapshot_limits, api_url="https://api.github.test")


@pytest.fixture
def make_acquirer(snapshot_limits) -> Callable[..., SnapshotAcquirer]:
    """Acquirer over an arbitrary MockTransport handler."""
    clients: list[httpx.AsyncClient] = []

    def factory(handler, limits: SnapshotLimits | None = None) -> SnapshotAcquirer:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return SnapshotAcquirer(client, limits or snapshot_limits, api_url="https://api.github.test")

    return factory
