from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from predarena.contracts.streams import WORKFLOW_RUN_COMPLETED_V1, trigger_stream
from predarena.core.ids import new_event_id, run_id_for_signal
from predarena.core.message_bus import RedisStreamBus
from predarena.core.models import EventEnvelope

from .orchestrator import TradingWorkflow, WorkflowResult
from .triggers import Trigger

logger = logging.getLogger(__name__)

SIGNAL_PAUSE_SECONDS = 1.0


def run_completed_event(ev: EventEnvelope, result: WorkflowResult) -> EventEnvelope:
    return EventEnvelope(
        event_id=new_event_id(),
        trace_id=ev.trace_id,
        produced_at=datetime.now(timezone.utc),
        schema=WORKFLOW_RUN_COMPLETED_V1,
        schema_version=1,
        payload={
            "agent_id": result.agent_id,
            "run_id": result.run_id,
            "ts": datetime.now(timezone.utc).isoformat(),
            "decision": result.decision.value,
            "orders": [o.order_id for o in result.orders if o.order_id],
        },
        source_service="predarena-workflow",
    )


class SignalListener:
    """Runs the trading workflow once per trigger event on an agent's stream.

    The run id is derived from the event id, so a redelivered event resumes
    the same run from its checkpoints instead of starting a new one.
    """

    def __init__(
        self,
        bus: RedisStreamBus,
        workflow: TradingWorkflow,
        *,
        group: str,
        consumer: str,
        pause_seconds: float = SIGNAL_PAUSE_SECONDS,
    ) -> None:
        self._bus = bus
        self._workflow = workflow
        self._group = group
        self._consumer = consumer
        self._pause_seconds = pause_seconds

    async def handle(self, agent_id: str, ev: EventEnvelope) -> WorkflowResult:
        if ev.agent_id != agent_id:
            raise ValueError(f"trigger for {ev.agent_id!r} arrived on stream of {agent_id!r}")
        trigger = Trigger.from_envelope(ev)
        logger.info(f"[signals:{agent_id}] {trigger.trigger_type} signal {ev.event_id}")
        result = await self._workflow.run(agent_id, trigger, run_id=run_id_for_signal(agent_id, ev.event_id))
        await self._bus.publish(WORKFLOW_RUN_COMPLETED_V1, run_completed_event(ev, result))
        return result

    async def listen(self, agent_id: str, *, stop_after_messages: Optional[int] = None) -> None:
        async def _handler(ev: EventEnvelope) -> None:
            await self.handle(agent_id, ev)

        await self._bus.run_worker(
            stream=trigger_stream(agent_id),
            group=self._group,
            consumer=self._consumer,
            handler=_handler,
            stop_after_messages=stop_after_messages,
            pause_seconds=self._pause_seconds,
        )
