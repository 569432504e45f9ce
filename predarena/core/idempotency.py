from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol


class IdempotencyStore(Protocol):
    """Tracks whether a key (signal event id, pending bridge) is currently claimed.

    Contract: if `seen(key)` is True then the key must be treated as already processed.
    """

    def seen(self, key: str) -> bool:
        ...

    def mark(self, key: str, *, ttl_seconds: int) -> bool:
        ...

    def clear(self, key: str) -> None:
        ...


@dataclass
class InMemoryIdempotencyStore:
    _seen: dict[str, float]

    def __init__(self, *, clock=time.time) -> None:
        self._seen = {}
        self._clock = clock

    def _expire(self) -> None:
        now = self._clock()
        expired = [k for k, exp in self._seen.items() if exp <= now]
        for k in expired:
            self._seen.pop(k, None)

    def seen(self, key: str) -> bool:
        self._expire()
        return key in self._seen

    def mark(self, key: str, *, ttl_seconds: int) -> bool:
        """Claim `key`; returns False when it was already claimed."""

        self._expire()
        if key in self._seen:
            return False
        self._seen[key] = self._clock() + ttl_seconds
        return True

    def clear(self, key: str) -> None:
        self._seen.pop(key, None)


class RedisIdempotencyStore:
    def __init__(self, redis_client, *, key_prefix: str):
        self._client = redis_client
        self._prefix = key_prefix.rstrip(":")

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def seen(self, key: str) -> bool:
        return bool(self._client.exists(self._key(key)))

    def mark(self, key: str, *, ttl_seconds: int) -> bool:
        # SET NX prevents concurrent duplicates from double-processing.
        return bool(self._client.set(self._key(key), "1", ex=ttl_seconds, nx=True))

    def clear(self, key: str) -> None:
        self._client.delete(self._key(key))
