"""Strict v1 contract checks for everything that crosses a stream.

v1 payloads are closed: unknown keys are rejected rather than ignored, so a
producer that starts sending new fields must move to a v2 stream.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from . import streams

ENVELOPE_KEYS = frozenset({"event_id", "trace_id", "produced_at", "schema", "schema_version", "payload"})
ENVELOPE_EXTRA_KEYS = frozenset({"source_service"})

DECISION_LABELS = frozenset({"buy", "sell", "hold", "skip"})


def _closed(obj: dict[str, Any], keys: frozenset[str], allowed: frozenset[str] = frozenset(), *, where: str) -> None:
    present = set(obj)
    if keys - present:
        raise ValueError(f"{where}: missing keys {sorted(keys - present)}")
    if present - keys - allowed:
        raise ValueError(f"{where}: unexpected keys {sorted(present - keys - allowed)}")


def _text(d: dict[str, Any], key: str) -> str:
    v = d.get(key)
    if isinstance(v, str) and v.strip():
        return v
    raise ValueError(f"{key} must be a non-empty string")


def _aware_timestamp(d: dict[str, Any], key: str) -> datetime:
    raw = _text(d, key)
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"{key} is not an ISO8601 timestamp: {raw}") from e
    if ts.tzinfo is None:
        raise ValueError(f"{key} must carry a timezone")
    return ts


def _trigger_payload(payload: dict[str, Any]) -> None:
    _closed(payload, frozenset({"agent_id", "trigger_type", "ts", "details"}), where="trigger")
    _text(payload, "agent_id")
    _aware_timestamp(payload, "ts")
    trigger_type = _text(payload, "trigger_type")
    if trigger_type not in streams.TRIGGER_TYPES:
        raise ValueError(f"trigger_type must be one of {sorted(streams.TRIGGER_TYPES)}")

    details = payload["details"]
    if not isinstance(details, dict):
        raise ValueError("details must be an object")
    if trigger_type in streams.SIGNAL_TRIGGER_TYPES:
        # Signal relays always say which instrument moved.
        _text(details, "instrument_id")
        magnitude = details.get("magnitude")
        if magnitude is not None and (isinstance(magnitude, bool) or not isinstance(magnitude, (int, float))):
            raise ValueError("magnitude must be a number")


def _run_completed_payload(payload: dict[str, Any]) -> None:
    _closed(payload, frozenset({"agent_id", "run_id", "ts", "decision", "orders"}), where="run.completed")
    _text(payload, "agent_id")
    _text(payload, "run_id")
    _aware_timestamp(payload, "ts")
    if _text(payload, "decision") not in DECISION_LABELS:
        raise ValueError(f"decision must be one of {sorted(DECISION_LABELS)}")
    orders = payload["orders"]
    if not isinstance(orders, list) or any(not isinstance(o, str) for o in orders):
        raise ValueError("orders must be a list of order ids")


PAYLOAD_VALIDATORS: dict[str, Callable[[dict[str, Any]], None]] = {
    streams.WORKFLOW_TRIGGER_V1: _trigger_payload,
    streams.WORKFLOW_RUN_COMPLETED_V1: _run_completed_payload,
}


def validate_envelope_dict(event: dict[str, Any]) -> None:
    """Raise ValueError unless `event` is a well-formed v1 envelope with a valid payload."""

    _closed(event, ENVELOPE_KEYS, ENVELOPE_EXTRA_KEYS, where="envelope")
    _text(event, "event_id")
    _text(event, "trace_id")
    _aware_timestamp(event, "produced_at")

    schema = _text(event, "schema")
    version = event["schema_version"]
    if isinstance(version, bool) or version != 1 or not schema.endswith(".v1"):
        raise ValueError("only schema_version 1 on .v1 schemas is accepted")

    validator = PAYLOAD_VALIDATORS.get(schema)
    if validator is None:
        raise ValueError(f"unknown schema: {schema}")
    if not isinstance(event["payload"], dict):
        raise ValueError("payload must be an object")
    validator(event["payload"])
