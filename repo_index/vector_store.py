import hashlib
import re

from llama_index.core.schema import TextNode
from llama_index.core.vector_stores.types import (
    MetadataFilter,
    MetadataFilters,
    VectorStoreQuery,
    VectorStoreQueryResult,
)
from llama_index.vector_stores.qdrant import QdrantVectorStore
from qdrant_client import AsyncQdrantClient


def sanitize_collection_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", name).strip("_")


class QdrantNamespaceIndex:
    """Per-submission namespaces on Qdrant: one collection per submission."""

    def __init__(
        self,
        aclient: AsyncQdrantClient,
        collection_prefix: str = "repo_index",
        batch_size: int = 100,
    ) -> None:
        self._aclient = aclient
        self._prefix = collection_prefix
        self._batch_size = batch_size
        self._stores: dict[str, QdrantVectorStore] = {}

    def collection_name(self, submission_id: str) -> str:
        # hash suffix keeps ids that sanitize alike ("sub-1", "sub_1") apart
        digest = hashlib.sha256(submission_id.encode()).hexdigest()[:12]
        return f"{sanitize_collection_name(f'{self._prefix}_{submission_id}')}_{digest}"

    def _store(self, submission_id: str) -> QdrantVectorStore:
        name = self.collection_name(submission_id)
        if name not in self._stores:
            self._stores[name] = QdrantVectorStore(
                collection_name=name,
                aclient=self._aclient,
                batch_size=self._batch_size,
            )
        return self._stores[name]

    async def upsert(self, submission_id: str, nodes: list[TextNode]) -> list[str]:
        """Upsert nodes that already carry their embeddings. Same id overwrites."""
        if not nodes:
            return []
        return await self._store(submission_id).async_add(nodes)

    async def query(
        self,
        submission_id: str,
        embedding: list[float],
        top_k: int,
        pinned_revision: str | None = None,
    ) -> VectorStoreQueryResult:
        if not await self._aclient.collection_exists(self.collection_name(submission_id)):
            return VectorStoreQueryResult(nodes=[], similarities=[], ids=[])

        conditions = [MetadataFilter(key="submission_id", value=submission_id)]
        if pinned_revision:
            conditions.append(MetadataFilter(key="pinned_revision", value=pinned_revision))
        filters = MetadataFilters(filters=conditions)
        return await self._store(submission_id).aquery(
            VectorStoreQuery(query_embedding=embedding, similarity_top_k=top_k, filters=filters)
        )
