"""Checkpointed workflow steps.

A run is a sequence of named steps. Each step's JSON result is stored under
(run_id, step_name) once it returns; re-running the workflow with the same
run_id after a crash replays stored results instead of executing the step
again. A step that crashed mid-way is executed again in full, so anything that
moves money must happen at most once per step body.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkflowStepError(RuntimeError):
    def __init__(self, run_id: str, step: str, cause: BaseException) -> None:
        super().__init__(f"step {step!r} of run {run_id} failed: {cause}")
        self.run_id = run_id
        self.step = step


class CheckpointStore(Protocol):
    def load(self, run_id: str, step: str) -> Optional[str]:
        ...

    def save(self, run_id: str, step: str, value: str, *, ttl_seconds: int) -> None:
        ...


class InMemoryCheckpointStore:
    def __init__(self) -> None:
        self._data: dict[tuple[str, str], tuple[float, str]] = {}

    def load(self, run_id: str, step: str) -> Optional[str]:
        entry = self._data.get((run_id, step))
        if entry is None or entry[0] <= time.time():
            return None
        return entry[1]

    def save(self, run_id: str, step: str, value: str, *, ttl_seconds: int) -> None:
        self._data[(run_id, step)] = (time.time() + ttl_seconds, value)

    def steps(self, run_id: str) -> list[str]:
        return [s for (r, s) in self._data if r == run_id]


class RedisCheckpointStore:
    def __init__(self, redis_url: str, *, key_prefix: str = "workflow:checkpoint") -> None:
        self.redis_url = redis_url
        self._prefix = key_prefix.rstrip(":")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import redis  # type: ignore

            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _key(self, run_id: str) -> str:
        return f"{self._prefix}:{run_id}"

    def load(self, run_id: str, step: str) -> Optional[str]:
        return self._get_client().hget(self._key(run_id), step)

    def save(self, run_id: str, step: str, value: str, *, ttl_seconds: int) -> None:
        client = self._get_client()
        client.hset(self._key(run_id), step, value)
        client.expire(self._key(run_id), ttl_seconds)


class DurableRun:
    def __init__(self, run_id: str, store: CheckpointStore, *, ttl_seconds: int = 7 * 24 * 3600) -> None:
        self.run_id = run_id
        self._store = store
        self._ttl = ttl_seconds
        self.replayed: list[str] = []

    async def step(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        *,
        encode: Callable[[T], Any] = lambda v: v,
        decode: Callable[[Any], T] = lambda v: v,
    ) -> T:
        stored = self._store.load(self.run_id, name)
        if stored is not None:
            self.replayed.append(name)
            logger.info(f"run {self.run_id}: step {name} replayed from checkpoint")
            return decode(json.loads(stored))

        try:
            value = await fn()
        except Exception as e:
            raise WorkflowStepError(self.run_id, name, e) from e

        self._store.save(self.run_id, name, json.dumps(encode(value)), ttl_seconds=self._ttl)
        return value
