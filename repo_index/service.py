import asyncio
import logging
import os

import restate
from hypercorn.asyncio import serve
from hypercorn.config import Config

from .config import Settings
from .errors import (
    EmptyQueryError,
    IndexFailedError,
    IndexInProgressError,
    IndexMissingError,
    InvalidRepoReferenceError,
    RepoIndexError,
)
from .models import (
    IndexRequest,
    IndexStatus,
    IndexStatusRecord,
    SearchRequest,
    SearchResult,
    StartIndexingResult,
    StatusRequest,
)
from .runtime import Engine, build_engine

TERMINAL_STATUS_CODES: list[tuple[type[RepoIndexError], int]] = [
    (EmptyQueryError, 400),
    (InvalidRepoReferenceError, 400),
    (IndexMissingError, 404),
    (IndexInProgressError, 409),
    (IndexFailedError, 409),
]


def to_terminal_error(e: RepoIndexError) -> restate.TerminalError | None:
    """Caller errors are not recoverable by retrying; everything else is left to restate."""
    for error_type, status_code in TERMINAL_STATUS_CODES:
        if isinstance(e, error_type):
            return restate.TerminalError(str(e), status_code=status_code)
    return None


def create_service(engine: Engine) -> restate.Service:
    service = restate.Service("RepoIndex")

    @service.handler("StartIndexing")
    async def start_indexing(ctx: restate.Context, req: IndexRequest) -> StartIndexingResult:
        # Failures are recorded on the index status, never retried by restate.
        return await engine.indexing.start_indexing(req.submission_id, req.repo)

    @service.handler("QueueIndexing")
    async def queue_indexing(ctx: restate.Context, req: IndexRequest) -> IndexStatusRecord:
        record = await engine.indexing.enqueue(req.submission_id, req.repo)
        if record.status == IndexStatus.QUEUED:
            ctx.service_send(start_indexing, req)
        return record

    @service.handler("GetIndexStatus")
    async def get_index_status(ctx: restate.Context, req: StatusRequest) -> IndexStatusRecord:
        try:
            return await engine.indexing.get_index_status(req.submission_id, req.pinned_revision)
        except RepoIndexError as e:
            terminal = to_terminal_error(e)
            if terminal is None:
                raise
            raise terminal from e

    @service.handler("Search")
    async def search(ctx: restate.Context, req: SearchRequest) -> SearchResult:
        try:
            return await engine.retriever.search(req.submission_id, req.query, req.options)
        except RepoIndexError as e:
            terminal = to_terminal_error(e)
            if terminal is None:
                raise
            raise terminal from e

    return service


def create_app(engine: Engine):
    return restate.app([create_service(engine)])


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    engine = build_engine(Settings.from_env())
    app = create_app(engine)

    host = os.environ.get("INDEXER_HOST", "0.0.0.0")
    port = os.environ.get("INDEXER_PORT", "9091")

    config = Config()
    config.bind = [f"{host}:{port}"]

    async def run() -> None:
        try:
            await serve(app, config)
        finally:
            await engine.aclose()

    asyncio.run(run())


if __name__ == "__main__":
    main()
