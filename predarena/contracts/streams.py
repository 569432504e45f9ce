from __future__ import annotations

# v1 stream names (frozen semantics for v1).

WORKFLOW_TRIGGER_V1 = "workflow.trigger.v1"
WORKFLOW_RUN_COMPLETED_V1 = "workflow.run.completed.v1"

# Market-signal triggers emitted by the signal relays.
SIGNAL_TRIGGER_TYPES = frozenset({"price_swing", "volume_spike", "orderbook_imbalance"})
TRIGGER_TYPES = SIGNAL_TRIGGER_TYPES | {"periodic", "manual"}


def trigger_stream(agent_id: str) -> str:
    """Per-agent trigger stream; one consumer loop per agent reads it."""

    return f"{WORKFLOW_TRIGGER_V1}:{agent_id}"


def dlq_stream(base_stream: str) -> str:
    return f"dlq.{base_stream}"
