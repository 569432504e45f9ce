from __future__ import annotations

import os
from typing import Any, Optional, Protocol

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
import uvicorn

from predarena.contracts.streams import trigger_stream
from predarena.core.models import EventEnvelope
from predarena.core.settings import WorkflowSettings
from predarena.ledger.models import AgentSession
from predarena.ledger.repository import Ledger
from predarena.workflow.triggers import build_trigger_event


class TriggerPublisher(Protocol):
    async def publish(self, stream: str, event: EventEnvelope) -> str:
        ...


class TriggerRequest(BaseModel):
    trigger_type: str = "manual"
    details: dict[str, Any] = Field(default_factory=dict)


def create_app(ledger: Ledger, workflow: WorkflowSettings, publisher: Optional[TriggerPublisher] = None) -> FastAPI:
    app = FastAPI(title="predarena API")

    def _session_id() -> str:
        return ledger.get_or_create_running_session(workflow.session_name, workflow.starting_capital).session_id

    def _agent(agent_id: str) -> AgentSession:
        agent = ledger.get_agent_session(_session_id(), agent_id)
        if agent is None:
            raise HTTPException(status_code=404, detail=f"no session for agent {agent_id}")
        return agent

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/sessions/current/leaderboard")
    def leaderboard() -> dict:
        session_id = _session_id()
        agents = ledger.list_agent_sessions(session_id)
        return {
            "session_id": session_id,
            "name": workflow.session_name,
            "agents": [
                {
                    "rank": i + 1,
                    "agent_id": a.agent_id,
                    "agent_name": a.agent_name,
                    "current_value": str(a.current_value),
                    "total_pnl": str(a.total_pnl),
                    "total_tokens": a.total_tokens,
                }
                for i, a in enumerate(agents)
            ],
        }

    @app.get("/agents/{agent_id:path}/balances")
    def balances(agent_id: str) -> dict:
        agent = _agent(agent_id)
        return {
            "agent_id": agent_id,
            "wallet_addresses": agent.wallet_addresses,
            "chain_balances": {k: str(v) for k, v in agent.chain_balances.items()},
            "current_value": str(agent.current_value),
            "updated_at": agent.updated_at.isoformat(),
        }

    @app.get("/agents/{agent_id:path}/positions")
    def positions(agent_id: str) -> dict:
        agent = _agent(agent_id)
        return {"agent_id": agent_id, "positions": [p.to_dict() for p in ledger.list_positions(agent.agent_session_id)]}

    @app.get("/agents/{agent_id:path}/trades")
    def trades(agent_id: str, limit: int = 100) -> dict:
        agent = _agent(agent_id)
        rows = ledger.list_trades(agent.agent_session_id, limit=max(1, min(limit, 500)))
        return {"agent_id": agent_id, "trades": [t.to_dict() for t in rows]}

    @app.post("/agents/{agent_id:path}/trigger", status_code=202)
    async def trigger(agent_id: str, body: TriggerRequest) -> dict:
        if publisher is None:
            raise HTTPException(status_code=503, detail="trigger stream not configured")
        ev = build_trigger_event(agent_id=agent_id, trigger_type=body.trigger_type, details=body.details)
        try:
            message_id = await publisher.publish(trigger_stream(agent_id), ev)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return {"event_id": ev.event_id, "stream": trigger_stream(agent_id), "message_id": message_id}

    return app


def main() -> None:
    from predarena.core.message_bus import RedisStreamBus
    from predarena.core.settings import load_settings
    from predarena.ledger.postgres import PostgresLedger

    s = load_settings(os.getenv("PREDARENA_CONFIG", "config/settings.yaml"))
    app = create_app(PostgresLedger(s.postgres_dsn), s.workflow, RedisStreamBus(s.redis_url))
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
