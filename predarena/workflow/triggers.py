from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

import httpx

from predarena.contracts import streams
from predarena.core.ids import new_event_id, new_trace_id
from predarena.core.models import EventEnvelope

logger = logging.getLogger(__name__)

_ORDERBOOK_TOKEN_RE = re.compile(r"^\d{50,}$")


@dataclass(frozen=True)
class Trigger:
    """Why a workflow run started. Scheduled, manual and market-signal runs look the same downstream."""

    trigger_type: str
    details: dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.trigger_type not in streams.TRIGGER_TYPES:
            raise ValueError(f"unknown trigger type: {self.trigger_type}")

    @classmethod
    def periodic(cls) -> "Trigger":
        return cls("periodic")

    @classmethod
    def manual(cls, details: Optional[dict[str, Any]] = None) -> "Trigger":
        return cls("manual", dict(details or {}))

    @classmethod
    def from_envelope(cls, ev: EventEnvelope) -> "Trigger":
        return cls(str(ev.payload["trigger_type"]), dict(ev.payload.get("details") or {}), ev.event_id)

    def to_dict(self) -> dict[str, Any]:
        return {"trigger_type": self.trigger_type, "details": self.details, "event_id": self.event_id}


def build_trigger_event(
    *,
    agent_id: str,
    trigger_type: str,
    details: Optional[dict[str, Any]] = None,
    trace_id: Optional[str] = None,
    source_service: str = "predarena-api",
) -> EventEnvelope:
    now = datetime.now(timezone.utc)
    return EventEnvelope(
        event_id=new_event_id(),
        trace_id=trace_id or new_trace_id(),
        produced_at=now,
        schema=streams.WORKFLOW_TRIGGER_V1,
        schema_version=1,
        payload={
            "agent_id": agent_id,
            "trigger_type": trigger_type,
            "ts": now.isoformat(),
            "details": dict(details or {}),
        },
        source_service=source_service,
    )


def infer_platform(instrument_id: str) -> str:
    return "polymarket" if _ORDERBOOK_TOKEN_RE.match(instrument_id) else "kalshi"


class SignalRelayNotifier:
    """Asks the market-signal relays to watch instruments an agent just traded.

    Best effort: relays that are unconfigured, slow or down are logged and skipped.
    """

    def __init__(
        self,
        relay_urls: Mapping[str, str],
        *,
        secret: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._relay_urls = dict(relay_urls)
        self._secret = secret
        self._client = client or httpx.AsyncClient(timeout=10.0)

    async def notify(self, instrument_ids: Iterable[str]) -> dict[str, int]:
        by_platform: dict[str, list[str]] = {}
        for inst in instrument_ids:
            markets = by_platform.setdefault(infer_platform(inst), [])
            if inst not in markets:
                markets.append(inst)

        subscribed: dict[str, int] = {}
        if not self._secret:
            logger.warning("signal_relay_secret_missing", extra={"platforms": sorted(by_platform)})
            return subscribed

        for platform, markets in by_platform.items():
            url = self._relay_urls.get(platform)
            if not url:
                continue
            try:
                response = await self._client.post(
                    url,
                    json={"type": "subscribe_markets", "markets": markets},
                    headers={"Authorization": f"Bearer {self._secret}"},
                )
                response.raise_for_status()
                subscribed[platform] = int(response.json().get("subscribed", 0))
            except Exception as e:
                logger.warning("signal_relay_notify_failed", extra={"platform": platform, "error": str(e)})
        return subscribed

    async def aclose(self) -> None:
        await self._client.aclose()
