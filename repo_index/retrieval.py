"""Query-time retrieval: embed, fetch neighbours, deduplicate, trim to budget."""

import logging

from llama_index.core.base.embeddings.base import BaseEmbedding
from llama_index.core.vector_stores.types import VectorStoreQueryResult

from .config import RetrievalConfig
from .errors import (
    EmptyQueryError,
    IndexFailedError,
    IndexInProgressError,
    IndexMissingError,
)
from .models import (
    CodeChunkResult,
    IndexStatus,
    SearchOptions,
    SearchResult,
    SearchStats,
)
from .status_store import IndexStatusStore
from .vector_store import QdrantNamespaceIndex

logger = logging.getLogger(__name__)


def overlap_ratio(start1: int, end1: int, start2: int, end2: int) -> float:
    """Overlap length divided by union length of two inclusive line ranges."""
    overlap = min(end1, end2) - max(start1, start2) + 1
    if overlap <= 0:
        return 0.0
    union = max(end1, end2) - min(start1, start2) + 1
    return overlap / union


def _coverage(candidate: CodeChunkResult, kept: CodeChunkResult) -> float:
    overlap = min(candidate.end_line, kept.end_line) - max(candidate.start_line, kept.start_line) + 1
    if overlap <= 0:
        return 0.0
    return overlap / (candidate.end_line - candidate.start_line + 1)


def chunks_overlap(
    candidate: CodeChunkResult,
    kept: CodeChunkResult,
    threshold: float = 0.3,
    by_candidate_coverage: bool = True,
) -> bool:
    """Same file, and the shared lines exceed threshold of the union (or, when
    by_candidate_coverage is set, of the candidate's own span)."""
    if candidate.path != kept.path:
        return False
    ratio = overlap_ratio(candidate.start_line, candidate.end_line, kept.start_line, kept.end_line)
    if ratio > threshold:
        return True
    return by_candidate_coverage and _coverage(candidate, kept) > threshold


def deduplicate_chunks(
    chunks: list[CodeChunkResult],
    threshold: float = 0.3,
    by_candidate_coverage: bool = True,
) -> list[CodeChunkResult]:
    """Keep the highest-scored chunk of every overlapping same-file group."""
    unique: list[CodeChunkResult] = []
    for chunk in sorted(chunks, key=lambda c: c.score, reverse=True):
        if not any(
            chunks_overlap(chunk, kept, threshold, by_candidate_coverage) for kept in unique
        ):
            unique.append(chunk)
    return unique


def apply_budget(
    chunks: list[CodeChunkResult],
    max_chunks: int,
    max_total_chars: int,
    max_chunk_chars: int,
) -> tuple[list[CodeChunkResult], int]:
    """Truncate each chunk, then take chunks in order until either global cap would be breached."""
    selected: list[CodeChunkResult] = []
    total_chars = 0

    for chunk in chunks:
        if len(selected) >= max_chunks:
            break

        content = chunk.content
        if len(content) > max_chunk_chars:
            logger.debug(
                "Truncated chunk %s:%d from %d to %d chars",
                chunk.path, chunk.start_line, len(content), max_chunk_chars,
            )
            content = content[:max_chunk_chars]

        if total_chars + len(content) > max_total_chars:
            logger.info(
                "Stopping at %d chunks (%d chars) to stay under %d char limit",
                len(selected), total_chars, max_total_chars,
            )
            break

        selected.append(chunk.model_copy(update={"content": content}))
        total_chars += len(content)

    return selected, total_chars


def _to_results(result: VectorStoreQueryResult) -> list[CodeChunkResult]:
    nodes = result.nodes or []
    scores = result.similarities or [0.0] * len(nodes)

    chunks = []
    for node, score in zip(nodes, scores):
        metadata = node.metadata or {}
        path = metadata.get("file_path")
        if not path:
            logger.warning("Match %s is missing file_path metadata", node.node_id)
            continue
        chunks.append(CodeChunkResult(
            path=str(path),
            start_line=int(metadata.get("start_line") or 0),
            end_line=int(metadata.get("end_line") or 0),
            content=node.get_content(),
            score=float(score),
            language=metadata.get("language"),
        ))
    return chunks


class Retriever:
    def __init__(
        self,
        embed_model: BaseEmbedding,
        vector_index: QdrantNamespaceIndex,
        status_store: IndexStatusStore,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._embed_model = embed_model
        self._index = vector_index
        self._store = status_store
        self._config = config or RetrievalConfig()

    def clamp_top_k(self, top_k: int | None) -> int:
        requested = top_k if top_k is not None else self._config.default_top_k
        return max(1, min(requested, self._config.max_top_k))

    async def search(
        self, submission_id: str, query: str, options: SearchOptions | None = None
    ) -> SearchResult:
        if not submission_id:
            raise ValueError("submission_id is required")
        query = (query or "").strip()
        if not query:
            raise EmptyQueryError()

        options = options or SearchOptions()
        top_k = self.clamp_top_k(options.top_k)
        max_chunks = options.max_chunks if options.max_chunks is not None else self._config.max_chunks
        max_total_chars = (
            options.max_total_chars if options.max_total_chars is not None
            else self._config.max_total_chars
        )
        max_chunk_chars = (
            options.max_chunk_chars if options.max_chunk_chars is not None
            else self._config.max_chunk_chars
        )

        record = await self._store.latest(submission_id)
        if record is None:
            raise IndexMissingError(submission_id)
        if record.status == IndexStatus.FAILED:
            raise IndexFailedError(submission_id)
        if record.status != IndexStatus.READY:
            raise IndexInProgressError(submission_id, record.status.value)

        logger.info("Embedding query for submission %s: %r", submission_id, query)
        embedding = await self._embed_model.aget_query_embedding(query)

        matches = await self._index.query(
            submission_id, embedding, top_k, pinned_revision=record.repo.pinned_revision
        )
        candidates = _to_results(matches)
        logger.info("Found %d matches for submission %s", len(candidates), submission_id)

        unique = deduplicate_chunks(
            candidates,
            self._config.overlap_threshold,
            self._config.dedup_by_candidate_coverage,
        )
        logger.info("Deduplicated: %d -> %d chunks", len(candidates), len(unique))

        chunks, total_chars = apply_budget(unique, max_chunks, max_total_chars, max_chunk_chars)
        return SearchResult(
            chunks=chunks,
            stats=SearchStats(
                requested_top_k=top_k,
                returned_chunks=len(chunks),
                total_chars_returned=total_chars,
            ),
        )
