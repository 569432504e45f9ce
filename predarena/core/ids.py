from __future__ import annotations

import uuid

# Fixed namespace so derived ids are stable across processes and restarts.
_PREDARENA_NS = uuid.UUID("5b0c7a2e-9f1d-4c3e-8a57-2d1e6f0b9c44")


def new_event_id() -> str:
    return str(uuid.uuid4())


def new_trace_id() -> str:
    return str(uuid.uuid4())


def new_run_id() -> str:
    return str(uuid.uuid4())


def stable_id(*parts: str) -> str:
    """uuid5 over the joined parts; same inputs always give the same id."""

    return str(uuid.uuid5(_PREDARENA_NS, "|".join(parts)))


def run_id_for_signal(agent_id: str, signal_event_id: str) -> str:
    return stable_id("signal-run", agent_id, signal_event_id)


def decision_id_for_run(run_id: str) -> str:
    return stable_id("decision", run_id)
