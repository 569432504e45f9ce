from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from .models import AgentSession, DecisionRecord, Position, TradeAction, TradeRecord, TradingSession, apply_position_delta
from .repository import agent_session_id_for, session_id_for

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS trading_sessions (
    id VARCHAR(64) PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('setup', 'running', 'paused', 'completed')),
    starting_capital NUMERIC NOT NULL,
    started_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_trading_sessions_running
    ON trading_sessions(name) WHERE status = 'running';

CREATE TABLE IF NOT EXISTS agent_sessions (
    id VARCHAR(64) PRIMARY KEY,
    session_id VARCHAR(64) NOT NULL REFERENCES trading_sessions(id) ON DELETE CASCADE,
    agent_id TEXT NOT NULL,
    agent_name TEXT NOT NULL,
    wallet_addresses JSONB NOT NULL DEFAULT '{}',
    chain_balances JSONB NOT NULL DEFAULT '{}',
    starting_capital NUMERIC NOT NULL,
    current_value NUMERIC NOT NULL,
    total_pnl NUMERIC NOT NULL DEFAULT 0,
    total_tokens BIGINT NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (session_id, agent_id)
);

CREATE TABLE IF NOT EXISTS agent_decisions (
    id VARCHAR(64) PRIMARY KEY,
    agent_session_id VARCHAR(64) NOT NULL REFERENCES agent_sessions(id) ON DELETE CASCADE,
    trigger_type TEXT NOT NULL
        CHECK (trigger_type IN ('price_swing', 'volume_spike', 'orderbook_imbalance', 'periodic', 'manual')),
    trigger_details JSONB,
    instrument_id TEXT,
    instrument_title TEXT,
    decision TEXT NOT NULL CHECK (decision IN ('buy', 'sell', 'hold', 'skip')),
    reasoning TEXT NOT NULL,
    confidence NUMERIC CHECK (confidence >= 0 AND confidence <= 1),
    portfolio_value_after NUMERIC NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS agent_trades (
    id VARCHAR(64) PRIMARY KEY,
    decision_id VARCHAR(64) REFERENCES agent_decisions(id) ON DELETE SET NULL,
    agent_session_id VARCHAR(64) NOT NULL REFERENCES agent_sessions(id) ON DELETE CASCADE,
    instrument_id TEXT NOT NULL,
    instrument_title TEXT,
    venue TEXT NOT NULL,
    outcome TEXT NOT NULL CHECK (outcome IN ('yes', 'no')),
    action TEXT NOT NULL CHECK (action IN ('buy', 'sell', 'redeem')),
    quantity NUMERIC NOT NULL,
    price NUMERIC NOT NULL,
    notional NUMERIC NOT NULL,
    settlement_ref TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_agent_trades_session ON agent_trades(agent_session_id, created_at DESC);

CREATE TABLE IF NOT EXISTS agent_positions (
    agent_session_id VARCHAR(64) NOT NULL REFERENCES agent_sessions(id) ON DELETE CASCADE,
    instrument_id TEXT NOT NULL,
    outcome TEXT NOT NULL CHECK (outcome IN ('yes', 'no')),
    instrument_title TEXT,
    venue TEXT NOT NULL,
    quantity NUMERIC NOT NULL,
    avg_entry_price NUMERIC,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (agent_session_id, instrument_id, outcome)
);
"""


class PostgresLedger:
    """PostgreSQL implementation for production.

    Tables are created by `ensure_schema()` (see SCHEMA_SQL). Trade insert and the
    matching position delta commit in the same transaction, so a position can
    never drift from the trades that produced it.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn = None

    def _get_conn(self):
        if self._conn is None:
            import psycopg2  # type: ignore

            self._conn = psycopg2.connect(self._dsn)
        return self._conn

    def ensure_schema(self) -> None:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @staticmethod
    def _rows(cur) -> list[dict[str, Any]]:
        cols = [d[0] for d in cur.description]
        return [dict(zip(cols, row)) for row in cur.fetchall()]

    @staticmethod
    def _agent_from_row(d: dict[str, Any]) -> AgentSession:
        return AgentSession(
            agent_session_id=d["id"],
            session_id=d["session_id"],
            agent_id=d["agent_id"],
            agent_name=d["agent_name"],
            starting_capital=Decimal(d["starting_capital"]),
            current_value=Decimal(d["current_value"]),
            total_pnl=Decimal(d["total_pnl"]),
            wallet_addresses=dict(d.get("wallet_addresses") or {}),
            chain_balances={k: Decimal(str(v)) for k, v in (d.get("chain_balances") or {}).items()},
            total_tokens=int(d.get("total_tokens") or 0),
            status=d.get("status", "active"),
            updated_at=d.get("updated_at") or datetime.now(timezone.utc),
        )

    def get_or_create_running_session(self, name: str, starting_capital: Decimal) -> TradingSession:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO trading_sessions (id, name, status, starting_capital, started_at)
                VALUES (%s, %s, 'running', %s, NOW())
                ON CONFLICT (id) DO NOTHING
                """,
                (session_id_for(name), name, starting_capital),
            )
            cur.execute(
                "SELECT * FROM trading_sessions WHERE name = %s AND status = 'running' ORDER BY created_at LIMIT 1",
                (name,),
            )
            d = self._rows(cur)[0]
        conn.commit()
        return TradingSession(
            session_id=d["id"],
            name=d["name"],
            status=d["status"],
            starting_capital=Decimal(d["starting_capital"]),
            started_at=d.get("started_at"),
        )

    def get_or_create_agent_session(
        self,
        *,
        session_id: str,
        agent_id: str,
        agent_name: str,
        wallet_addresses: Mapping[str, str],
        starting_capital: Decimal,
    ) -> AgentSession:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO agent_sessions (
                    id, session_id, agent_id, agent_name, wallet_addresses, starting_capital, current_value
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (session_id, agent_id) DO NOTHING
                """,
                (
                    agent_session_id_for(session_id, agent_id),
                    session_id,
                    agent_id,
                    agent_name,
                    json.dumps(dict(wallet_addresses)),
                    starting_capital,
                    starting_capital,
                ),
            )
            cur.execute("SELECT * FROM agent_sessions WHERE session_id = %s AND agent_id = %s", (session_id, agent_id))
            d = self._rows(cur)[0]
        conn.commit()
        return self._agent_from_row(d)

    def get_agent_session(self, session_id: str, agent_id: str) -> Optional[AgentSession]:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM agent_sessions WHERE session_id = %s AND agent_id = %s", (session_id, agent_id))
            rows = self._rows(cur)
        return self._agent_from_row(rows[0]) if rows else None

    def list_agent_sessions(self, session_id: str) -> list[AgentSession]:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM agent_sessions WHERE session_id = %s ORDER BY current_value DESC", (session_id,))
            return [self._agent_from_row(d) for d in self._rows(cur)]

    def record_decision(self, decision: DecisionRecord, *, tokens_used: int = 0) -> bool:
        conn = self._get_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO agent_decisions (
                        id, agent_session_id, trigger_type, trigger_details, instrument_id, instrument_title,
                        decision, reasoning, confidence, portfolio_value_after, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (
                        decision.decision_id,
                        decision.agent_session_id,
                        decision.trigger_type,
                        json.dumps(decision.trigger_details),
                        decision.instrument_id,
                        decision.instrument_title,
                        decision.decision.value,
                        decision.reasoning,
                        decision.confidence,
                        decision.portfolio_value_after,
                        decision.created_at,
                    ),
                )
                inserted = cur.rowcount == 1
                if inserted and tokens_used > 0:
                    cur.execute(
                        "UPDATE agent_sessions SET total_tokens = total_tokens + %s, updated_at = NOW() WHERE id = %s",
                        (tokens_used, decision.agent_session_id),
                    )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return inserted

    def record_trade(self, trade: TradeRecord) -> bool:
        conn = self._get_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO agent_trades (
                        id, decision_id, agent_session_id, instrument_id, instrument_title, venue,
                        outcome, action, quantity, price, notional, settlement_ref, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (settlement_ref) DO NOTHING
                    """,
                    (
                        trade.trade_id,
                        trade.decision_id,
                        trade.agent_session_id,
                        trade.instrument_id,
                        trade.instrument_title,
                        trade.venue,
                        trade.outcome,
                        trade.action.value,
                        trade.quantity,
                        trade.price,
                        trade.notional,
                        trade.settlement_ref,
                        trade.created_at,
                    ),
                )
                inserted = cur.rowcount == 1
                if inserted:
                    self._apply_position(cur, trade)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return inserted

    def _apply_position(self, cur, trade: TradeRecord) -> None:
        cur.execute(
            """
            SELECT * FROM agent_positions
            WHERE agent_session_id = %s AND instrument_id = %s AND outcome = %s
            FOR UPDATE
            """,
            (trade.agent_session_id, trade.instrument_id, trade.outcome),
        )
        rows = self._rows(cur)
        current = self._position_from_row(rows[0]) if rows else None
        updated = apply_position_delta(current, trade)
        if updated is None:
            cur.execute(
                "DELETE FROM agent_positions WHERE agent_session_id = %s AND instrument_id = %s AND outcome = %s",
                (trade.agent_session_id, trade.instrument_id, trade.outcome),
            )
            return
        cur.execute(
            """
            INSERT INTO agent_positions (
                agent_session_id, instrument_id, outcome, instrument_title, venue, quantity, avg_entry_price
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (agent_session_id, instrument_id, outcome) DO UPDATE SET
                quantity = EXCLUDED.quantity,
                avg_entry_price = EXCLUDED.avg_entry_price,
                instrument_title = COALESCE(EXCLUDED.instrument_title, agent_positions.instrument_title),
                updated_at = NOW()
            """,
            (
                updated.agent_session_id,
                updated.instrument_id,
                updated.outcome,
                updated.instrument_title,
                updated.venue,
                updated.quantity,
                updated.avg_entry_price,
            ),
        )

    def update_session_value(self, agent_session_id: str, *, chain_balances: Mapping[str, Decimal]) -> AgentSession:
        value = sum(chain_balances.values(), Decimal(0))
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE agent_sessions SET
                    chain_balances = %s,
                    current_value = %s,
                    total_pnl = %s - starting_capital,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (json.dumps({k: str(v) for k, v in chain_balances.items()}), value, value, agent_session_id),
            )
            rows = self._rows(cur)
        conn.commit()
        if not rows:
            raise KeyError(agent_session_id)
        return self._agent_from_row(rows[0])

    @staticmethod
    def _position_from_row(d: dict[str, Any]) -> Position:
        return Position(
            agent_session_id=d["agent_session_id"],
            instrument_id=d["instrument_id"],
            outcome=d["outcome"],
            quantity=Decimal(d["quantity"]),
            venue=d["venue"],
            avg_entry_price=Decimal(d["avg_entry_price"]) if d.get("avg_entry_price") is not None else None,
            instrument_title=d.get("instrument_title"),
        )

    def list_positions(self, agent_session_id: str) -> list[Position]:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM agent_positions WHERE agent_session_id = %s", (agent_session_id,))
            return [self._position_from_row(d) for d in self._rows(cur)]

    def list_trades(self, agent_session_id: str, limit: int = 100) -> list[TradeRecord]:
        conn = self._get_conn()
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM agent_trades WHERE agent_session_id = %s ORDER BY created_at DESC LIMIT %s",
                (agent_session_id, limit),
            )
            return [
                TradeRecord(
                    trade_id=d["id"],
                    decision_id=d["decision_id"],
                    agent_session_id=d["agent_session_id"],
                    instrument_id=d["instrument_id"],
                    instrument_title=d.get("instrument_title"),
                    venue=d["venue"],
                    outcome=d["outcome"],
                    action=TradeAction(d["action"]),
                    quantity=Decimal(d["quantity"]),
                    price=Decimal(d["price"]),
                    notional=Decimal(d["notional"]),
                    settlement_ref=d["settlement_ref"],
                    created_at=d["created_at"],
                )
                for d in self._rows(cur)
            ]
