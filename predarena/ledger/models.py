"""Bookkeeping records written by the trading workflow."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from predarena.core.units import ZERO


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    REDEEM = "redeem"

    @property
    def sign(self) -> int:
        return 1 if self is TradeAction.BUY else -1


class DecisionLabel(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"
    SKIP = "skip"


@dataclass(frozen=True)
class TradingSession:
    session_id: str
    name: str
    status: str
    starting_capital: Decimal
    started_at: Optional[datetime] = None


@dataclass
class AgentSession:
    agent_session_id: str
    session_id: str
    agent_id: str
    agent_name: str
    starting_capital: Decimal
    current_value: Decimal
    total_pnl: Decimal = ZERO
    wallet_addresses: dict[str, str] = field(default_factory=dict)
    chain_balances: dict[str, Decimal] = field(default_factory=dict)
    total_tokens: int = 0
    status: str = "active"
    updated_at: datetime = field(default_factory=_now_utc)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        for k in ("starting_capital", "current_value", "total_pnl"):
            d[k] = str(d[k])
        d["chain_balances"] = {k: str(v) for k, v in self.chain_balances.items()}
        d["updated_at"] = self.updated_at.isoformat()
        return d


@dataclass(frozen=True)
class DecisionRecord:
    decision_id: str
    agent_session_id: str
    trigger_type: str
    trigger_details: dict[str, Any]
    decision: DecisionLabel
    reasoning: str
    portfolio_value_after: Decimal
    confidence: Optional[float] = None
    instrument_id: Optional[str] = None
    instrument_title: Optional[str] = None
    created_at: datetime = field(default_factory=_now_utc)

    def __post_init__(self) -> None:
        if self.confidence is not None and not (0.0 <= self.confidence <= 1.0):
            raise ValueError("confidence must be within [0, 1]")


def normalize_confidence(value: Any) -> Optional[float]:
    """Coerce an engine-reported confidence into [0, 1].

    Percentages (1, 100] are scaled down; anything else out of range, non-numeric
    or NaN becomes None so it cannot sink the decision row.
    """

    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(v) or v < 0.0:
        return None
    if v <= 1.0:
        return v
    if v <= 100.0:
        return v / 100.0
    return None


@dataclass(frozen=True)
class TradeRecord:
    """One executed order. Immutable once written; keyed by settlement_ref (the prefixed order id)."""

    trade_id: str
    decision_id: Optional[str]
    agent_session_id: str
    instrument_id: str
    venue: str
    outcome: str
    action: TradeAction
    quantity: Decimal
    price: Decimal
    notional: Decimal
    settlement_ref: str
    instrument_title: Optional[str] = None
    created_at: datetime = field(default_factory=_now_utc)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["action"] = self.action.value
        for k in ("quantity", "price", "notional"):
            d[k] = str(d[k])
        d["created_at"] = self.created_at.isoformat()
        return d


@dataclass(frozen=True)
class Position:
    agent_session_id: str
    instrument_id: str
    outcome: str
    quantity: Decimal
    venue: str
    avg_entry_price: Optional[Decimal] = None
    instrument_title: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.agent_session_id, self.instrument_id, self.outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_session_id": self.agent_session_id,
            "instrument_id": self.instrument_id,
            "instrument_title": self.instrument_title,
            "outcome": self.outcome,
            "venue": self.venue,
            "quantity": str(self.quantity),
            "avg_entry_price": str(self.avg_entry_price) if self.avg_entry_price is not None else None,
        }


def apply_position_delta(current: Optional[Position], trade: TradeRecord) -> Optional[Position]:
    """New position after `trade`; None when the quantity reaches zero."""

    delta = trade.quantity * trade.action.sign
    old_qty = current.quantity if current else ZERO
    new_qty = old_qty + delta
    if new_qty <= ZERO:
        return None

    avg = current.avg_entry_price if current else None
    if trade.action is TradeAction.BUY:
        old_cost = old_qty * (avg or ZERO)
        avg = (old_cost + trade.quantity * trade.price) / new_qty
    return Position(
        agent_session_id=trade.agent_session_id,
        instrument_id=trade.instrument_id,
        outcome=trade.outcome,
        quantity=new_qty,
        venue=trade.venue,
        avg_entry_price=avg,
        instrument_title=trade.instrument_title or (current.instrument_title if current else None),
    )
