from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional, Sequence

from predarena.core.ids import new_run_id

from .durable import CheckpointStore, InMemoryCheckpointStore, WorkflowStepError
from .orchestrator import TradingWorkflow, WorkflowResult
from .triggers import Trigger

logger = logging.getLogger(__name__)

MAX_RESUME_ATTEMPTS = 3
PENDING_RUN_STEP = "pending_run"


class Scheduler:
    """Periodic trigger: one workflow run per agent every interval.

    The run id of a tick is stored before the run starts and cleared when it
    finishes, so a run that failed or was killed partway is resumed from its
    checkpoints on the next tick (also after a process restart when the store
    is Redis-backed). A run is given up after MAX_RESUME_ATTEMPTS starts.
    """

    def __init__(
        self,
        workflow: TradingWorkflow,
        agents: Sequence[str],
        *,
        interval_seconds: float,
        checkpoints: Optional[CheckpointStore] = None,
        max_resume_attempts: int = MAX_RESUME_ATTEMPTS,
        ttl_seconds: int = 7 * 24 * 3600,
        sleep=asyncio.sleep,
    ) -> None:
        self._workflow = workflow
        self._agents = list(agents)
        self._interval = interval_seconds
        self._checkpoints = checkpoints if checkpoints is not None else InMemoryCheckpointStore()
        self._max_resume_attempts = max_resume_attempts
        self._ttl = ttl_seconds
        self._sleep = sleep

    @staticmethod
    def _key(agent_id: str) -> str:
        return f"schedule:{agent_id}"

    def pending_run(self, agent_id: str) -> Optional[dict]:
        raw = self._checkpoints.load(self._key(agent_id), PENDING_RUN_STEP)
        return json.loads(raw) if raw else None

    def _set_pending(self, agent_id: str, pending: Optional[dict]) -> None:
        self._checkpoints.save(self._key(agent_id), PENDING_RUN_STEP, json.dumps(pending), ttl_seconds=self._ttl)

    def _claim_run(self, agent_id: str) -> str:
        pending = self.pending_run(agent_id)
        if pending and pending["attempts"] < self._max_resume_attempts:
            pending = {"run_id": pending["run_id"], "attempts": pending["attempts"] + 1}
            logger.info(f"[scheduler:{agent_id}] resuming run {pending['run_id']} (attempt {pending['attempts']})")
        else:
            if pending:
                logger.warning("scheduled_run_abandoned", extra={"agent_id": agent_id, "run_id": pending["run_id"]})
            pending = {"run_id": new_run_id(), "attempts": 1}
        self._set_pending(agent_id, pending)
        return pending["run_id"]

    async def tick(self) -> list[WorkflowResult]:
        results: list[WorkflowResult] = []
        for agent_id in self._agents:
            run_id = self._claim_run(agent_id)
            try:
                results.append(await self._workflow.run(agent_id, Trigger.periodic(), run_id=run_id))
            except WorkflowStepError as e:
                logger.warning("scheduled_run_failed", extra={"agent_id": agent_id, "run_id": e.run_id, "step": e.step})
                continue
            except Exception:
                logger.exception("scheduled_run_crashed", extra={"agent_id": agent_id, "run_id": run_id})
                continue
            self._set_pending(agent_id, None)
        return results

    async def run_forever(self, *, max_ticks: Optional[int] = None) -> None:
        ticks = 0
        while True:
            await self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                return
            await self._sleep(self._interval)
