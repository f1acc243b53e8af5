import logging
import re
import uuid
from collections.abc import Sequence

from llama_index.core.base.embeddings.base import BaseEmbedding
from llama_index.core.schema import TextNode

from .config import WriterConfig
from .errors import EmbeddingError
from .models import Chunk, RepoReference
from .vector_store import QdrantNamespaceIndex

logger = logging.getLogger(__name__)


def embedding_text(chunk: Chunk) -> str:
    return f"File: {chunk.file_path}\nLines: {chunk.start_line}-{chunk.end_line}\n\n{chunk.content}"


def chunk_key(submission_id: str, chunk: Chunk) -> str:
    raw = f"{submission_id}_{chunk.file_path}_{chunk.start_line}_{chunk.end_line}"
    return re.sub(r"[^a-zA-Z0-9_-]", "_", raw)


def vector_id(submission_id: str, chunk: Chunk) -> str:
    # Qdrant point ids must be UUIDs; hash the unsanitized key so "a/b" and "a_b" stay distinct
    raw = f"{submission_id}\x00{chunk.file_path}\x00{chunk.start_line}\x00{chunk.end_line}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, raw))


class ChunkWriter:
    """Embeds chunks batch by batch and upserts them into a submission's namespace."""

    def __init__(
        self,
        embed_model: BaseEmbedding,
        vector_index: QdrantNamespaceIndex,
        config: WriterConfig | None = None,
    ) -> None:
        self._embed_model = embed_model
        self._index = vector_index
        self._config = config or WriterConfig()

    def _to_node(
        self, submission_id: str, ref: RepoReference, chunk: Chunk, embedding: list[float]
    ) -> TextNode:
        return TextNode(
            id_=vector_id(submission_id, chunk),
            text=chunk.content[: self._config.metadata_content_chars],
            embedding=embedding,
            metadata={
                "submission_id": submission_id,
                "owner": ref.owner,
                "repo": ref.repo,
                "pinned_revision": ref.pinned_revision,
                "file_path": chunk.file_path,
                "language": chunk.language,
                "start_line": chunk.start_line,
                "end_line": chunk.end_line,
                "chunk_key": chunk_key(submission_id, chunk),
            },
        )

    async def write(self, submission_id: str, ref: RepoReference, chunks: Sequence[Chunk]) -> int:
        """Embed and upsert every chunk. Returns the number of vectors written."""
        embed_size = self._config.embed_batch_size
        upsert_size = self._config.upsert_batch_size
        total_batches = (len(chunks) + embed_size - 1) // embed_size

        pending: list[TextNode] = []
        written = 0

        for n, i in enumerate(range(0, len(chunks), embed_size), start=1):
            batch = chunks[i:i + embed_size]
            embeddings = await self._embed_model.aget_text_embedding_batch(
                [embedding_text(c) for c in batch]
            )
            if len(embeddings) != len(batch):
                raise EmbeddingError(
                    f"Embedding service returned {len(embeddings)} vectors for {len(batch)} inputs"
                )
            pending.extend(
                self._to_node(submission_id, ref, c, e) for c, e in zip(batch, embeddings)
            )
            logger.info("Embedded batch %d/%d for submission %s", n, total_batches, submission_id)

            while len(pending) >= upsert_size:
                await self._index.upsert(submission_id, pending[:upsert_size])
                written += upsert_size
                pending = pending[upsert_size:]

        if pending:
            await self._index.upsert(submission_id, pending)
            written += len(pending)

        logger.info("Upserted %d vectors for submission %s", written, submission_id)
        return written
