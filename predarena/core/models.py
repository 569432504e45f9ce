from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class EventEnvelope:
    """Wire wrapper for every stream message; `payload` is validated per `schema`."""

    event_id: str
    trace_id: str
    produced_at: datetime
    schema: str
    schema_version: int
    payload: Dict[str, Any]
    source_service: Optional[str] = None

    @property
    def agent_id(self) -> Optional[str]:
        agent = self.payload.get("agent_id")
        return str(agent) if agent is not None else None


def envelope_to_wire(event: EventEnvelope) -> Dict[str, Any]:
    d = asdict(event)
    produced_at = event.produced_at
    if produced_at.tzinfo is None:
        produced_at = produced_at.replace(tzinfo=timezone.utc)
    d["produced_at"] = produced_at.isoformat()
    if d.get("source_service") is None:
        d.pop("source_service", None)
    return d


def envelope_from_wire(d: Dict[str, Any]) -> EventEnvelope:
    return EventEnvelope(
        event_id=d["event_id"],
        trace_id=d["trace_id"],
        produced_at=datetime.fromisoformat(str(d["produced_at"]).replace("Z", "+00:00")),
        schema=d["schema"],
        schema_version=int(d["schema_version"]),
        payload=d["payload"],
        source_service=d.get("source_service"),
    )
