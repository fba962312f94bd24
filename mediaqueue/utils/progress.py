"""
Progress broadcasting for processing jobs.

The job row is the source of truth; this module only fans transitions out to
live subscribers (the SSE endpoint). Uses Redis pub/sub when available so
events raised by worker processes reach API processes. Falls back to an
in-process asyncio Event mechanism when Redis is unavailable.
"""

import asyncio
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import AsyncGenerator, Iterator

from mediaqueue.models.job import ProcessingJob, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

_TERMINAL = {s.value for s in TERMINAL_STATUSES}


def snapshot(job: ProcessingJob) -> dict:
    """The subset of a job row that subscribers care about."""
    return {
        "job_id": str(job.id),
        "status": job.status,
        "stage": job.current_stage or "",
        "progress": job.progress,
        "retry_count": job.retry_count,
    }


def _format_event(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


# ── Redis-backed implementation ──────────────────────────────────────

def _decode_state(raw: dict) -> dict:
    """Redis hashes hold strings; restore the numeric snapshot fields."""
    state = dict(raw)
    for key in ("progress", "retry_count"):
        state[key] = int(state.get(key) or 0)
    return state


class RedisProgressManager:
    """
    Progress fan-out backed by Redis pub/sub + hash storage.
    The hash keeps the latest snapshot so late subscribers start from it.
    """

    def __init__(self, redis_url: str, state_ttl_seconds: int = 3600):
        self._redis_url = redis_url
        self._state_ttl = state_ttl_seconds
        self._redis = None

    async def _get_redis(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    @contextmanager
    def _sync_client(self) -> Iterator:
        # Worker threads publish outside the event loop, so they get a short-lived sync client.
        import redis as sync_redis
        client = sync_redis.from_url(self._redis_url, decode_responses=True)
        try:
            yield client
        finally:
            client.close()

    @staticmethod
    def _keys(job_id: uuid.UUID) -> tuple[str, str]:
        prefix = f"mediaqueue:job:{job_id}"
        return f"{prefix}:state", f"{prefix}:progress"

    def publish(self, job: ProcessingJob) -> None:
        data = snapshot(job)
        state_key, channel = self._keys(job.id)
        with self._sync_client() as client:
            pipe = client.pipeline()
            pipe.hset(state_key, mapping={k: str(v) for k, v in data.items()})
            pipe.expire(state_key, self._state_ttl)
            pipe.publish(channel, json.dumps(data))
            pipe.execute()

    def get(self, job_id: uuid.UUID) -> dict | None:
        state_key, _ = self._keys(job_id)
        with self._sync_client() as client:
            raw = client.hgetall(state_key)
        return _decode_state(raw) if raw else None

    async def subscribe(self, job_id: uuid.UUID, initial: dict | None = None) -> AsyncGenerator[str, None]:
        """Yield SSE-formatted progress events via Redis pub/sub."""
        r = await self._get_redis()
        state_key, channel = self._keys(job_id)

        # Subscribe before reading the hash so nothing published in between is lost.
        pubsub = r.pubsub()
        await pubsub.subscribe(channel)
        try:
            raw = await r.hgetall(state_key)
            state = _decode_state(raw) if raw else initial
            if state:
                yield _format_event("progress", state)
                if state.get("status") in _TERMINAL:
                    return

            while True:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=30.0)
                if msg is None:
                    yield ": keepalive\n\n"
                    continue
                data = json.loads(msg["data"])
                yield _format_event("progress", data)
                if data.get("status") in _TERMINAL:
                    break
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


# ── In-memory fallback ───────────────────────────────────────────────

@dataclass
class JobProgressState:
    data: dict = field(default_factory=dict)
    event: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryProgressManager:
    """In-memory progress fan-out — single-process fallback."""

    def __init__(self):
        self._jobs: dict[uuid.UUID, JobProgressState] = {}

    def publish(self, job: ProcessingJob) -> None:
        state = self._jobs.setdefault(job.id, JobProgressState())
        state.data = snapshot(job)
        state.event.set()

    def get(self, job_id: uuid.UUID) -> dict | None:
        state = self._jobs.get(job_id)
        return dict(state.data) if state else None

    async def subscribe(self, job_id: uuid.UUID, initial: dict | None = None) -> AsyncGenerator[str, None]:
        """Yield SSE-formatted progress events until the job reaches a terminal status."""
        state = self._jobs.get(job_id)
        if state is None:
            if initial is None:
                yield _format_event("progress", {"job_id": str(job_id), "status": "unknown", "stage": "", "progress": 0})
                return
            state = self._jobs.setdefault(job_id, JobProgressState(data=dict(initial)))

        yield _format_event("progress", state.data)
        if state.data.get("status") in _TERMINAL:
            return

        while True:
            state.event.clear()
            try:
                await asyncio.wait_for(state.event.wait(), timeout=30.0)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue

            yield _format_event("progress", state.data)

            if state.data.get("status") in _TERMINAL:
                break


# ── Singleton factory ────────────────────────────────────────────────

def _create_progress_manager() -> RedisProgressManager | InMemoryProgressManager:
    """Try Redis first; fall back to in-memory if unavailable."""
    from mediaqueue.config import settings

    if settings.REDIS_URL:
        try:
            import redis as sync_redis
            r = sync_redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=2)
            r.ping()
            r.close()
            logger.info("Progress manager: using Redis at %s", settings.REDIS_URL)
            return RedisProgressManager(settings.REDIS_URL)
        except Exception as e:
            logger.warning("Redis unavailable (%s), falling back to in-memory progress", e)

    logger.info("Progress manager: using in-memory fallback")
    return InMemoryProgressManager()


progress_manager = _create_progress_manager()
