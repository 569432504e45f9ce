from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from predarena.contracts.streams import dlq_stream
from predarena.contracts.validation import validate_envelope_dict

from .models import EventEnvelope, envelope_from_wire, envelope_to_wire

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedMessage:
    stream: str
    message_id: str
    body: str
    envelope: Optional[EventEnvelope]
    error: Optional[str] = None


class RedisStreamBus:
    """Redis Streams transport for workflow triggers.

    Consumers suspend on a blocking XREADGROUP, so an idle listener costs nothing
    but an open connection. Delivery is at-least-once; duplicates are dropped by
    event_id. An entry is acked only once its handler returns, so a consumer that
    dies mid-handler leaves it pending: the worker re-reads its own pending
    entries on start and claims entries other consumers left idle for
    `claim_idle_ms`.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        block_ms: int = 5000,
        read_count: int = 1,
        max_attempts: int = 3,
        dedupe_ttl_seconds: int = 7 * 24 * 3600,
        retry_backoff_seconds: float = 1.0,
        claim_idle_ms: int = 10 * 60 * 1000,
        client=None,
    ):
        self.redis_url = redis_url
        self._client = client
        self.block_ms = block_ms
        self.read_count = read_count
        self.max_attempts = max_attempts
        self.dedupe_ttl_seconds = dedupe_ttl_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self.claim_idle_ms = claim_idle_ms

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis  # type: ignore

            self._client = aioredis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def _ensure_group(self, stream: str, group: str) -> None:
        client = self._get_client()
        try:
            await client.xgroup_create(name=stream, groupname=group, id="$", mkstream=True)
        except Exception as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, stream: str, event: EventEnvelope) -> str:
        wire = envelope_to_wire(event)
        validate_envelope_dict(wire)
        body = json.dumps(wire, ensure_ascii=False)
        return await self._get_client().xadd(stream, {"event": body})

    @staticmethod
    def _decode(stream: str, msg_id: str, fields) -> ReceivedMessage:
        body = dict(fields or {}).get("event") or ""
        try:
            wire = json.loads(body)
            validate_envelope_dict(wire)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too.
            return ReceivedMessage(stream, msg_id, body, None, f"contract_invalid: {e}")
        return ReceivedMessage(stream, msg_id, body, envelope_from_wire(wire))

    async def poll(self, *, stream: str, group: str, consumer: str, pending: bool = False) -> list[ReceivedMessage]:
        """Read new entries, or with `pending` this consumer's delivered-but-unacked ones."""

        await self._ensure_group(stream, group)
        kwargs = {} if pending else {"block": self.block_ms}
        resp = await self._get_client().xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: "0" if pending else ">"},
            count=self.read_count,
            **kwargs,
        )
        return [self._decode(sname, msg_id, fields) for (sname, items) in resp or [] for (msg_id, fields) in items]

    async def reclaim(self, *, stream: str, group: str, consumer: str) -> list[ReceivedMessage]:
        """Take over entries other consumers read but never acked."""

        await self._ensure_group(stream, group)
        resp = await self._get_client().xautoclaim(
            stream, group, consumer, min_idle_time=self.claim_idle_ms, start_id="0-0", count=self.read_count
        )
        claimed = resp[1] if resp else []
        if claimed:
            logger.warning("stream_entries_reclaimed", extra={"stream": stream, "consumer": consumer, "count": len(claimed)})
        return [self._decode(stream, msg_id, fields) for (msg_id, fields) in claimed]

    async def ack(self, *, stream: str, group: str, message_id: str) -> None:
        await self._get_client().xack(stream, group, message_id)

    async def _dlq(self, *, base_stream: str, body: str, error: str, original_message_id: str) -> None:
        await self._get_client().xadd(
            dlq_stream(base_stream),
            {
                "event": body,
                "error": error,
                "failed_at": datetime.now(timezone.utc).isoformat(),
                "original_stream": base_stream,
                "original_message_id": original_message_id,
            },
        )

    async def run_worker(
        self,
        *,
        stream: str,
        group: str,
        consumer: str,
        handler: Callable[[EventEnvelope], Awaitable[None]],
        stop_after_messages: int | None = None,
        pause_seconds: float = 0.0,
    ) -> None:
        """Run an at-least-once worker with idempotency + retry + DLQ.

        - Strict contract validation (v1: no extra fields); invalid events go to the DLQ
        - Duplicate event_id is skipped (idempotent)
        - Pending entries of this consumer, then idle ones of others, are handled first
        - On handler exception: requeue up to max_attempts, then DLQ; the loop keeps going
        """

        client = self._get_client()
        processed = 0
        # Left over from a previous life of this consumer, then from dead ones.
        recovering = True

        while True:
            if recovering:
                batch = await self.poll(stream=stream, group=group, consumer=consumer, pending=True)
                if not batch:
                    batch = await self.reclaim(stream=stream, group=group, consumer=consumer)
                recovering = bool(batch)
            else:
                batch = await self.poll(stream=stream, group=group, consumer=consumer)
                if not batch:
                    batch = await self.reclaim(stream=stream, group=group, consumer=consumer)
            for msg in batch:
                if msg.envelope is None:
                    logger.warning(
                        "trigger_contract_invalid",
                        extra={"stream": stream, "message_id": msg.message_id, "error": msg.error},
                    )
                    await self._dlq(base_stream=stream, body=msg.body, error=msg.error or "", original_message_id=msg.message_id)
                    await self.ack(stream=stream, group=group, message_id=msg.message_id)
                    continue

                env = msg.envelope
                done_key = f"processed:{group}:{stream}:{env.event_id}"
                if await client.exists(done_key):
                    await self.ack(stream=stream, group=group, message_id=msg.message_id)
                    continue

                try:
                    await handler(env)
                except Exception as e:
                    attempt_key = f"attempt:{group}:{stream}:{env.event_id}"
                    attempt = int(await client.incr(attempt_key))
                    # Avoid unbounded growth of retry counters.
                    await client.expire(attempt_key, self.dedupe_ttl_seconds)
                    logger.exception(
                        "trigger_handler_failed",
                        extra={"stream": stream, "event_id": env.event_id, "attempt": attempt},
                    )
                    await self.ack(stream=stream, group=group, message_id=msg.message_id)
                    if attempt >= self.max_attempts:
                        await self._dlq(
                            base_stream=stream,
                            body=msg.body,
                            error=f"handler_failed_after_{attempt}: {e}",
                            original_message_id=msg.message_id,
                        )
                    else:
                        # Same event_id, so a resumed run picks up its checkpoints.
                        await asyncio.sleep(self.retry_backoff_seconds)
                        await client.xadd(stream, {"event": msg.body})
                    continue

                await client.set(done_key, "1", ex=self.dedupe_ttl_seconds, nx=True)
                await self.ack(stream=stream, group=group, message_id=msg.message_id)

                processed += 1
                if stop_after_messages is not None and processed >= stop_after_messages:
                    return
                if pause_seconds:
                    await asyncio.sleep(pause_seconds)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
