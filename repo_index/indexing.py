import logging
import traceback

from .config import ChunkingConfig
from .errors import IndexMissingError
from .events import CompletionWorker
from .models import (
    IndexFailure,
    IndexReadyEvent,
    IndexStats,
    IndexStatus,
    IndexStatusRecord,
    RepoReference,
    StartIndexingResult,
    utcnow,
)
from .snapshot import SnapshotAcquirer
from .splitter import chunk_repository
from .status_store import ABSENT, IndexStatusStore
from .writer import ChunkWriter

logger = logging.getLogger(__name__)

CLAIMABLE = (ABSENT, IndexStatus.QUEUED.value, IndexStatus.FAILED.value)
ENQUEUEABLE = (ABSENT, IndexStatus.FAILED.value)


def _result_for(record: IndexStatusRecord) -> StartIndexingResult:
    return StartIndexingResult(
        status=record.status,
        chunk_count=record.stats.chunk_count,
        file_count=record.stats.file_count,
        error=record.error.message if record.error else None,
    )


class IndexingService:
    """Runs snapshot -> chunk -> embed -> upsert for one (submission, revision) key.

    The status store is the only place a run's outcome is recorded: phases below
    this class raise, and this class turns the exception into a `failed` record.
    """

    def __init__(
        self,
        status_store: IndexStatusStore,
        acquirer: SnapshotAcquirer,
        writer: ChunkWriter,
        chunking: ChunkingConfig | None = None,
        completions: CompletionWorker | None = None,
    ) -> None:
        self._store = status_store
        self._acquirer = acquirer
        self._writer = writer
        self._chunking = chunking or ChunkingConfig()
        self._completions = completions

    async def _previous(self, submission_id: str, ref: RepoReference) -> IndexStatusRecord | None:
        return await self._store.get(submission_id, ref.pinned_revision)

    def _new_record(
        self,
        submission_id: str,
        ref: RepoReference,
        status: IndexStatus,
        previous: IndexStatusRecord | None,
    ) -> IndexStatusRecord:
        now = utcnow()
        return IndexStatusRecord(
            submission_id=submission_id,
            repo=ref,
            status=status,
            stats=IndexStats(),
            created_at=previous.created_at if previous else now,
            updated_at=now,
        )

    async def enqueue(self, submission_id: str, ref: RepoReference) -> IndexStatusRecord:
        """Record `queued` for a run that will be started later. Existing live records win."""
        previous = await self._previous(submission_id, ref)
        record, applied = await self._store.transition(
            self._new_record(submission_id, ref, IndexStatus.QUEUED, previous), ENQUEUEABLE
        )
        if applied:
            logger.info("Queued indexing of %s for submission %s", ref, submission_id)
        return record

    async def start_indexing(self, submission_id: str, ref: RepoReference) -> StartIndexingResult:
        previous = await self._previous(submission_id, ref)
        record, claimed = await self._store.transition(
            self._new_record(submission_id, ref, IndexStatus.INDEXING, previous), CLAIMABLE
        )
        if not claimed:
            # ready: cached result; indexing: another run owns this key
            logger.info(
                "Skipping indexing of %s for submission %s: already %s",
                ref, submission_id, record.status.value,
            )
            return _result_for(record)

        try:
            logger.info("Downloading repo %s for submission %s", ref, submission_id)
            async with self._acquirer.open(ref, session_id=submission_id) as snapshot:
                logger.info("Repository extracted to %s", snapshot.root_path)

                outcome = chunk_repository(snapshot.root_path, self._chunking)
                for skipped in outcome.skipped[:10]:
                    logger.info("Skipped %s: %s", skipped.path, skipped.reason)
                if len(outcome.skipped) > 10:
                    logger.info("... and %d more skipped files", len(outcome.skipped) - 10)
                logger.info(
                    "Created %d chunks from %d files (%d files skipped)",
                    len(outcome.chunks), outcome.file_count, len(outcome.skipped),
                )

                await self._writer.write(submission_id, ref, outcome.chunks)

            record.stats = IndexStats(
                file_count=outcome.file_count,
                chunk_count=len(outcome.chunks),
                total_chars=outcome.total_chars,
                files_skipped=len(outcome.skipped),
            )
            record.status = IndexStatus.READY
            record.error = None
            record.updated_at = utcnow()
            await self._store.save(record)
        except Exception as e:
            logger.exception("Indexing failed for submission %s (%s)", submission_id, ref)
            message = str(e) or type(e).__name__
            record.status = IndexStatus.FAILED
            record.error = IndexFailure(message=message, stack=traceback.format_exc())
            record.updated_at = utcnow()
            await self._store.save(record)
            return StartIndexingResult(status=IndexStatus.FAILED, error=message)

        logger.info(
            "Indexing completed for submission %s: %d chunks from %d files",
            submission_id, record.stats.chunk_count, record.stats.file_count,
        )
        if self._completions is not None:
            self._completions.publish(
                IndexReadyEvent(submission_id=submission_id, repo=ref, stats=record.stats)
            )
        return _result_for(record)

    async def get_index_status(
        self, submission_id: str, revision: str | None = None
    ) -> IndexStatusRecord:
        if revision:
            record = await self._store.get(submission_id, revision.strip().lower())
        else:
            record = await self._store.latest(submission_id)
        if record is None:
            raise IndexMissingError(submission_id)
        return record
