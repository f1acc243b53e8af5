"""Control-plane store for per-(submission, revision) index status records.

Records are never deleted. Each store also tracks the most recently touched
revision per submission so retrieval can find "the" index of a submission.

`transition` is an atomic compare-and-set on the stored status, which is what
makes indexing single-flight per key.
"""

import asyncio
from collections.abc import Iterable

import redis.asyncio as aioredis

from .models import IndexStatusRecord


ABSENT = ""

# KEYS[1] record hash, KEYS[2] latest-revision pointer
# ARGV[1] new status, ARGV[2] record json, ARGV[3] revision, ARGV[4..] allowed current statuses
TRANSITION_SCRIPT = """
local current = redis.call("HGET", KEYS[1], "status") or ""
for i = 4, #ARGV do
    if ARGV[i] == current then
        redis.call("HSET", KEYS[1], "status", ARGV[1], "record", ARGV[2])
        redis.call("SET", KEYS[2], ARGV[3])
        return {1, ARGV[2]}
    end
end
return {0, redis.call("HGET", KEYS[1], "record")}
"""


class IndexStatusStore:
    async def get(self, submission_id: str, revision: str) -> IndexStatusRecord | None:
        raise NotImplementedError

    async def latest(self, submission_id: str) -> IndexStatusRecord | None:
        raise NotImplementedError

    async def save(self, record: IndexStatusRecord) -> IndexStatusRecord:
        """Unconditionally store record (used for indexing -> ready/failed)."""
        raise NotImplementedError

    async def transition(
        self, record: IndexStatusRecord, allowed_from: Iterable[str]
    ) -> tuple[IndexStatusRecord | None, bool]:
        """Store record only if the current status is in allowed_from (ABSENT = no record).

        Returns (stored record, True) when applied, else (current record, False).
        """
        raise NotImplementedError


class InMemoryIndexStatusStore(IndexStatusStore):
    def __init__(self) -> None:
        self._records: dict[tuple[str, str], IndexStatusRecord] = {}
        self._latest: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, submission_id: str, revision: str) -> IndexStatusRecord | None:
        record = self._records.get((submission_id, revision))
        return record.model_copy(deep=True) if record else None

    async def latest(self, submission_id: str) -> IndexStatusRecord | None:
        revision = self._latest.get(submission_id)
        return await self.get(submission_id, revision) if revision else None

    async def save(self, record: IndexStatusRecord) -> IndexStatusRecord:
        async with self._lock:
            self._put(record)
        return record

    async def transition(
        self, record: IndexStatusRecord, allowed_from: Iterable[str]
    ) -> tuple[IndexStatusRecord | None, bool]:
        allowed = set(allowed_from)
        async with self._lock:
            current = self._records.get((record.submission_id, record.repo.pinned_revision))
            current_status = current.status.value if current else ABSENT
            if current_status not in allowed:
                return (current.model_copy(deep=True) if current else None), False
            self._put(record)
            return record, True

    def _put(self, record: IndexStatusRecord) -> None:
        revision = record.repo.pinned_revision
        self._records[(record.submission_id, revision)] = record.model_copy(deep=True)
        self._latest[record.submission_id] = revision


class RedisIndexStatusStore(IndexStatusStore):
    """Records as Redis hashes: repo_index:status:{submission}:{revision} -> {status, record}."""

    def __init__(self, client: aioredis.Redis, prefix: str = "repo_index") -> None:
        self._redis = client
        self._prefix = prefix
        self._transition = client.register_script(TRANSITION_SCRIPT)

    @classmethod
    def from_url(cls, url: str, prefix: str = "repo_index") -> "RedisIndexStatusStore":
        return cls(aioredis.from_url(url, decode_responses=True), prefix)

    def _record_key(self, submission_id: str, revision: str) -> str:
        return f"{self._prefix}:status:{submission_id}:{revision}"

    def _latest_key(self, submission_id: str) -> str:
        return f"{self._prefix}:latest:{submission_id}"

    async def get(self, submission_id: str, revision: str) -> IndexStatusRecord | None:
        raw = await self._redis.hget(self._record_key(submission_id, revision), "record")
        return IndexStatusRecord.model_validate_json(raw) if raw else None

    async def latest(self, submission_id: str) -> IndexStatusRecord | None:
        revision = await self._redis.get(self._latest_key(submission_id))
        return await self.get(submission_id, revision) if revision else None

    async def save(self, record: IndexStatusRecord) -> IndexStatusRecord:
        revision = record.repo.pinned_revision
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._record_key(record.submission_id, revision),
                mapping={"status": record.status.value, "record": record.model_dump_json()},
            )
            pipe.set(self._latest_key(record.submission_id), revision)
            await pipe.execute()
        return record

    async def transition(
        self, record: IndexStatusRecord, allowed_from: Iterable[str]
    ) -> tuple[IndexStatusRecord | None, bool]:
        revision = record.repo.pinned_revision
        applied, raw = await self._transition(
            keys=[self._record_key(record.submission_id, revision), self._latest_key(record.submission_id)],
            args=[record.status.value, record.model_dump_json(), revision, *allowed_from],
        )
        return (IndexStatusRecord.model_validate_json(raw) if raw else None), bool(applied)
