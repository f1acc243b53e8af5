"""Tests for the completion worker and its handlers."""

import json

import httpx
import pytest
import pytest_asyncio

from repo_index.events import CompletionWorker, WebhookNotifier, log_ready
from repo_index.models import IndexReadyEvent, IndexStats


@pytest.fixture
def event(repo_ref):
    return IndexReadyEvent(
        submission_id="sub-1", repo=repo_ref, stats=IndexStats(file_count=2, chunk_count=5)
    )


@pytest_asyncio.fixture
async def worker():
    w = CompletionWorker()
    yield w
    await w.stop()


class TestCompletionWorker:
    """Tests for background delivery of ready events."""

    @pytest.mark.asyncio
    async def test_handlers_called_in_order(self, worker, event):
        """Every handler sees every event."""
        calls = []

        async def first(e):
            calls.append(("first", e.submission_id))

        async def second(e):
            calls.append(("second", e.submission_id))

        worker.add_handler(first)
        worker.add_handler(second)
        worker.publish(event)
        await worker.drain()

        assert calls == [("first", "sub-1"), ("second", "sub-1")]

    @pytest.mark.asyncio
    async def test_failure_isolated(self, worker, event):
        """A failing handler is recorded and later handlers still run."""
        calls = []

        async def broken(e):
            raise RuntimeError("nope")

        async def after(e):
            calls.append(e)

        worker.add_handler(broken)
        worker.add_handler(after)
        worker.publish(event)
        worker.publish(event)
        await worker.drain()

        assert len(calls) == 2
        assert len(worker.failures) == 2
        assert isinstance(worker.failures[0][1], RuntimeError)

    @pytest.mark.asyncio
    async def test_full_queue_drops(self, event, caplog):
        """Publishing past the queue bound drops the event instead of blocking."""
        calls = []

        async def record(e):
            calls.append(e)

        worker = CompletionWorker([record], max_pending=1)
        worker.publish(event)
        worker.publish(event)
        await worker.stop()

        assert len(calls) == 1
        assert "Completion queue full" in caplog.text

    @pytest.mark.asyncio
    async def test_log_ready(self, event, caplog):
        """The default handler logs the counts."""
        with caplog.at_level("INFO", logger="repo_index.events"):
            await log_ready(event)
        assert "5 chunks from 2 files" in caplog.text


class TestWebhookNotifier:
    """Tests for webhook delivery."""

    @pytest.mark.asyncio
    async def test_posts_event(self, event):
        """The event is POSTed as JSON."""
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await WebhookNotifier(client, "https://hooks.test/ready")(event)

        assert received[0]["submission_id"] == "sub-1"
        assert received[0]["stats"]["chunk_count"] == 5

    @pytest.mark.asyncio
    async def test_error_status_raises(self, event):
        """Non-2xx responses raise so the worker records them."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await WebhookNotifier(client, "https://hooks.test/ready")(event)
