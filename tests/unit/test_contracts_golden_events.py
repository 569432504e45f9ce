from __future__ import annotations

import json
from pathlib import Path

import pytest

from predarena.contracts.streams import trigger_stream
from predarena.contracts.validation import validate_envelope_dict
from predarena.core.ids import run_id_for_signal
from predarena.core.idempotency import InMemoryIdempotencyStore
from predarena.core.models import envelope_from_wire, envelope_to_wire
from predarena.workflow.triggers import Trigger, build_trigger_event

FIXTURES = Path("contracts") / "golden_events" / "v1"
VALID = sorted(p for p in FIXTURES.glob("*.json") if "invalid" not in p.name)
INVALID = sorted(p for p in FIXTURES.glob("*_invalid.json"))


def _load(name_or_path) -> dict:
    path = name_or_path if isinstance(name_or_path, Path) else FIXTURES / name_or_path
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.mark.parametrize("path", VALID, ids=lambda p: p.stem)
def test_valid_fixtures_pass_and_decode(path: Path) -> None:
    wire = _load(path)
    validate_envelope_dict(wire)
    ev = envelope_from_wire(wire)
    assert ev.agent_id == wire["payload"]["agent_id"]
    assert ev.produced_at.tzinfo is not None


@pytest.mark.parametrize("path", INVALID, ids=lambda p: p.stem)
def test_invalid_fixtures_are_rejected(path: Path) -> None:
    with pytest.raises(ValueError):
        validate_envelope_dict(_load(path))


def test_redelivered_trigger_maps_to_one_run() -> None:
    a = envelope_from_wire(_load("08_duplicate_valid_a.json"))
    b = envelope_from_wire(_load("08_duplicate_valid_b.json"))
    assert run_id_for_signal(a.agent_id, a.event_id) == run_id_for_signal(b.agent_id, b.event_id)

    store = InMemoryIdempotencyStore()
    assert store.mark(a.event_id, ttl_seconds=60) is True
    assert store.seen(b.event_id) is True
    assert store.mark(b.event_id, ttl_seconds=60) is False


def test_built_trigger_event_is_valid_on_the_wire() -> None:
    ev = build_trigger_event(agent_id="openai/gpt-5", trigger_type="price_swing", details={"instrument_id": "KXFED"})
    wire = envelope_to_wire(ev)
    validate_envelope_dict(wire)

    trigger = Trigger.from_envelope(envelope_from_wire(wire))
    assert trigger.trigger_type == "price_swing"
    assert trigger.event_id == ev.event_id
    assert trigger_stream("openai/gpt-5") == "workflow.trigger.v1:openai/gpt-5"


def test_unknown_trigger_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        Trigger("sunspots")
    ev = build_trigger_event(agent_id="a", trigger_type="sunspots")
    with pytest.raises(ValueError):
        validate_envelope_dict(envelope_to_wire(ev))
