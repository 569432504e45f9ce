from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping, Optional, Protocol

from predarena.core.ids import stable_id

from .models import AgentSession, DecisionRecord, Position, TradeRecord, TradingSession, apply_position_delta


class Ledger(Protocol):
    """Bookkeeping store.

    Every write is an idempotent upsert so a workflow step that re-executes after
    a crash produces the same rows: decisions are keyed by decision_id, trades by
    settlement_ref, and a position delta is applied only together with a newly
    inserted trade.
    """

    def get_or_create_running_session(self, name: str, starting_capital: Decimal) -> TradingSession:
        ...

    def get_or_create_agent_session(
        self,
        *,
        session_id: str,
        agent_id: str,
        agent_name: str,
        wallet_addresses: Mapping[str, str],
        starting_capital: Decimal,
    ) -> AgentSession:
        ...

    def get_agent_session(self, session_id: str, agent_id: str) -> Optional[AgentSession]:
        ...

    def list_agent_sessions(self, session_id: str) -> list[AgentSession]:
        ...

    def record_decision(self, decision: DecisionRecord, *, tokens_used: int = 0) -> bool:
        """Insert once; token usage is added to the agent session only on first insert."""
        ...

    def record_trade(self, trade: TradeRecord) -> bool:
        """Insert once; the position delta is applied only on first insert."""
        ...

    def update_session_value(self, agent_session_id: str, *, chain_balances: Mapping[str, Decimal]) -> AgentSession:
        ...

    def list_positions(self, agent_session_id: str) -> list[Position]:
        ...

    def list_trades(self, agent_session_id: str, limit: int = 100) -> list[TradeRecord]:
        ...


def session_id_for(name: str) -> str:
    return stable_id("trading-session", name)


def agent_session_id_for(session_id: str, agent_id: str) -> str:
    return stable_id("agent-session", session_id, agent_id)


class InMemoryLedger:
    """In-memory implementation for testing and local runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, TradingSession] = {}
        self._agents: dict[str, AgentSession] = {}
        self._decisions: dict[str, DecisionRecord] = {}
        self._trades: dict[str, TradeRecord] = {}
        self._positions: dict[tuple[str, str, str], Position] = {}

    def get_or_create_running_session(self, name: str, starting_capital: Decimal) -> TradingSession:
        with self._lock:
            for s in self._sessions.values():
                if s.name == name and s.status == "running":
                    return s
            session = TradingSession(
                session_id=session_id_for(name),
                name=name,
                status="running",
                starting_capital=starting_capital,
                started_at=datetime.now(timezone.utc),
            )
            self._sessions[session.session_id] = session
            return session

    def get_or_create_agent_session(
        self,
        *,
        session_id: str,
        agent_id: str,
        agent_name: str,
        wallet_addresses: Mapping[str, str],
        starting_capital: Decimal,
    ) -> AgentSession:
        key = agent_session_id_for(session_id, agent_id)
        with self._lock:
            existing = self._agents.get(key)
            if existing is not None:
                return existing
            agent = AgentSession(
                agent_session_id=key,
                session_id=session_id,
                agent_id=agent_id,
                agent_name=agent_name,
                starting_capital=starting_capital,
                current_value=starting_capital,
                wallet_addresses=dict(wallet_addresses),
            )
            self._agents[key] = agent
            return agent

    def get_agent_session(self, session_id: str, agent_id: str) -> Optional[AgentSession]:
        return self._agents.get(agent_session_id_for(session_id, agent_id))

    def list_agent_sessions(self, session_id: str) -> list[AgentSession]:
        agents = [a for a in self._agents.values() if a.session_id == session_id]
        agents.sort(key=lambda a: a.current_value, reverse=True)
        return agents

    def record_decision(self, decision: DecisionRecord, *, tokens_used: int = 0) -> bool:
        with self._lock:
            if decision.decision_id in self._decisions:
                return False
            self._decisions[decision.decision_id] = decision
            agent = self._agents.get(decision.agent_session_id)
            if agent is not None and tokens_used > 0:
                agent.total_tokens += tokens_used
            return True

    def get_decision(self, decision_id: str) -> Optional[DecisionRecord]:
        return self._decisions.get(decision_id)

    def record_trade(self, trade: TradeRecord) -> bool:
        with self._lock:
            if trade.settlement_ref in self._trades:
                return False
            self._trades[trade.settlement_ref] = trade
            key = (trade.agent_session_id, trade.instrument_id, trade.outcome)
            updated = apply_position_delta(self._positions.get(key), trade)
            if updated is None:
                self._positions.pop(key, None)
            else:
                self._positions[key] = updated
            return True

    def update_session_value(self, agent_session_id: str, *, chain_balances: Mapping[str, Decimal]) -> AgentSession:
        with self._lock:
            agent = self._agents[agent_session_id]
            agent.chain_balances = dict(chain_balances)
            agent.current_value = sum(chain_balances.values(), Decimal(0))
            agent.total_pnl = agent.current_value - agent.starting_capital
            agent.updated_at = datetime.now(timezone.utc)
            return replace(agent)

    def list_positions(self, agent_session_id: str) -> list[Position]:
        return [p for p in self._positions.values() if p.agent_session_id == agent_session_id]

    def list_trades(self, agent_session_id: str, limit: int = 100) -> list[TradeRecord]:
        trades = [t for t in self._trades.values() if t.agent_session_id == agent_session_id]
        trades.sort(key=lambda t: t.created_at, reverse=True)
        return trades[:limit]
