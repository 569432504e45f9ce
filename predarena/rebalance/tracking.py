from __future__ import annotations

from predarena.core.idempotency import IdempotencyStore, InMemoryIdempotencyStore, RedisIdempotencyStore

PENDING_BRIDGE_TTL_SECONDS = 35 * 60


class PendingBridgeTracker:
    """At most one in-flight bridge per agent.

    Entries expire after the TTL so a crashed process cannot block an agent
    forever; 35 minutes outlasts the slowest (attestation) pathway.
    """

    def __init__(self, store: IdempotencyStore, *, ttl_seconds: int = PENDING_BRIDGE_TTL_SECONDS) -> None:
        self._store = store
        self._ttl = ttl_seconds

    @classmethod
    def in_memory(cls, *, ttl_seconds: int = PENDING_BRIDGE_TTL_SECONDS) -> "PendingBridgeTracker":
        return cls(InMemoryIdempotencyStore(), ttl_seconds=ttl_seconds)

    @classmethod
    def redis(cls, redis_url: str, *, ttl_seconds: int = PENDING_BRIDGE_TTL_SECONDS) -> "PendingBridgeTracker":
        import redis  # type: ignore

        client = redis.Redis.from_url(redis_url, decode_responses=True)
        return cls(RedisIdempotencyStore(client, key_prefix="bridge:pending"), ttl_seconds=ttl_seconds)

    def is_pending(self, agent_id: str) -> bool:
        return self._store.seen(agent_id)

    def try_mark(self, agent_id: str) -> bool:
        return self._store.mark(agent_id, ttl_seconds=self._ttl)

    def clear(self, agent_id: str) -> None:
        self._store.clear(agent_id)
