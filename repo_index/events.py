"""Completion events for finished indexing runs.

A successful run publishes an IndexReadyEvent; CompletionWorker hands it to
each registered handler on its own background task. Handler failures are
logged and counted here and never reach the index status.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx

from .models import IndexReadyEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[IndexReadyEvent], Awaitable[None]]


class CompletionWorker:
    def __init__(self, handlers: list[EventHandler] | None = None, max_pending: int = 1000) -> None:
        self._handlers = list(handlers or [])
        self._queue: asyncio.Queue[IndexReadyEvent] = asyncio.Queue(maxsize=max_pending)
        self._task: asyncio.Task[None] | None = None
        self.failures: list[tuple[IndexReadyEvent, BaseException]] = []

    def add_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def publish(self, event: IndexReadyEvent) -> None:
        """Enqueue without waiting. Starts the worker on first use."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="repo-index-completion-worker")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("Completion queue full, dropping event for submission %s", event.submission_id)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                for handler in self._handlers:
                    try:
                        await handler(event)
                    except Exception as e:
                        self.failures.append((event, e))
                        logger.exception(
                            "Completion handler %s failed for submission %s",
                            getattr(handler, "__name__", type(handler).__name__),
                            event.submission_id,
                        )
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every published event has been handled."""
        if self._task is not None and not self._task.done():
            await self._queue.join()

    async def stop(self) -> None:
        await self.drain()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class WebhookNotifier:
    """POSTs each IndexReadyEvent as JSON to a downstream consumer (e.g. question generation)."""

    def __init__(self, http_client: httpx.AsyncClient, url: str) -> None:
        self._http = http_client
        self._url = url

    async def __call__(self, event: IndexReadyEvent) -> None:
        response = await self._http.post(
            self._url, content=event.model_dump_json(), headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()
        logger.info("Notified %s that submission %s is indexed", self._url, event.submission_id)


async def log_ready(event: IndexReadyEvent) -> None:
    logger.info(
        "Index ready for submission %s (%s): %d chunks from %d files",
        event.submission_id,
        event.repo,
        event.stats.chunk_count,
        event.stats.file_count,
    )
