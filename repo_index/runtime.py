import logging
from dataclasses import dataclass

import httpx
from llama_index.core.base.embeddings.base import BaseEmbedding
from llama_index.embeddings.openai import OpenAIEmbedding
from qdrant_client import AsyncQdrantClient

from .config import Settings
from .events import CompletionWorker, WebhookNotifier, log_ready
from .github import GitHubResolver
from .indexing import IndexingService
from .retrieval import Retriever
from .snapshot import SnapshotAcquirer
from .status_store import IndexStatusStore, InMemoryIndexStatusStore, RedisIndexStatusStore
from .vector_store import QdrantNamespaceIndex
from .writer import ChunkWriter

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    http: httpx.AsyncClient
    qdrant: AsyncQdrantClient
    status_store: IndexStatusStore
    completions: CompletionWorker
    indexing: IndexingService
    retriever: Retriever
    resolver: GitHubResolver

    async def aclose(self) -> None:
        await self.completions.stop()
        await self.http.aclose()
        await self.qdrant.close()


def build_embed_model(settings: Settings) -> OpenAIEmbedding:
    return OpenAIEmbedding(
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        api_base=settings.embedding_api_base,
        api_key=settings.openrouter_api_key,
        default_headers={
            "HTTP-Referer": "https://github.com/repo-index",
            "X-Title": "repo-index",
        },
    )


def build_status_store(settings: Settings) -> IndexStatusStore:
    if settings.redis_url:
        return RedisIndexStatusStore.from_url(settings.redis_url, prefix=settings.collection_prefix)
    logger.warning("REDIS_URL is not set, index status is kept in memory for this process only")
    return InMemoryIndexStatusStore()


def build_engine(
    settings: Settings,
    *,
    embed_model: BaseEmbedding | None = None,
    qdrant: AsyncQdrantClient | None = None,
    http: httpx.AsyncClient | None = None,
    status_store: IndexStatusStore | None = None,
) -> Engine:
    """Create every client once and wire the components together."""
    embed_model = embed_model or build_embed_model(settings)
    qdrant = qdrant or AsyncQdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
    http = http or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=120.0))
    status_store = status_store or build_status_store(settings)

    completions = CompletionWorker([log_ready])
    if settings.index_ready_webhook_url:
        completions.add_handler(WebhookNotifier(http, settings.index_ready_webhook_url))

    vector_index = QdrantNamespaceIndex(
        qdrant,
        collection_prefix=settings.collection_prefix,
        batch_size=settings.writer.upsert_batch_size,
    )
    acquirer = SnapshotAcquirer(
        http, settings.snapshot, api_url=settings.github_api_url, token=settings.github_token
    )
    writer = ChunkWriter(embed_model, vector_index, settings.writer)

    return Engine(
        settings=settings,
        http=http,
        qdrant=qdrant,
        status_store=status_store,
        completions=completions,
        indexing=IndexingService(status_store, acquirer, writer, settings.chunking, completions),
        retriever=Retriever(embed_model, vector_index, status_store, settings.retrieval),
        resolver=GitHubResolver(http, api_url=settings.github_api_url, token=settings.github_token),
    )
