"""Interface to the decision engine and the toolkit it trades through."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol, Union

from predarena.execution.models import (
    CancelResult,
    OrderRequest,
    OrderResult,
    OrderValidationError,
    Outcome,
    Side,
    Venue,
)
from predarena.execution.router import OrderRouter
from predarena.ledger.models import DecisionLabel, Position, TradeAction
from predarena.signers.registry import SignerSet

from .triggers import Trigger

logger = logging.getLogger(__name__)


class StepBudgetExceeded(RuntimeError):
    pass


@dataclass(frozen=True)
class DecisionContext:
    agent_id: str
    agent_name: str
    agent_session_id: str
    trigger: Trigger
    chain_balances: dict[str, Decimal]
    positions: list[Position]
    wallet_addresses: dict[str, str]
    max_steps: int


@dataclass(frozen=True)
class DecisionOutcome:
    decision: DecisionLabel
    reasoning: str
    confidence: Optional[float] = None
    instrument_id: Optional[str] = None
    instrument_title: Optional[str] = None
    tokens_used: int = 0
    portfolio_value: Optional[Decimal] = None


@dataclass(frozen=True)
class ExecutedOrder:
    request: OrderRequest
    result: OrderResult
    instrument_title: Optional[str] = None
    action: Optional[TradeAction] = None

    @property
    def trade_action(self) -> TradeAction:
        if self.action is not None:
            return self.action
        return TradeAction.BUY if self.request.side is Side.BUY else TradeAction.SELL

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "result": self.result.to_dict(),
            "instrument_title": self.instrument_title,
            "action": self.action.value if self.action is not None else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ExecutedOrder":
        return cls(
            request=OrderRequest.from_dict(d["request"]),
            result=OrderResult.from_dict(d["result"]),
            instrument_title=d.get("instrument_title"),
            action=TradeAction(d["action"]) if d.get("action") else None,
        )


class DecisionEngine(Protocol):
    async def decide(self, context: DecisionContext, toolkit: "TradingToolkit") -> DecisionOutcome:
        ...


class HoldDecisionEngine:
    """Never trades. Used when no engine is configured."""

    async def decide(self, context: DecisionContext, toolkit: "TradingToolkit") -> DecisionOutcome:
        return DecisionOutcome(
            decision=DecisionLabel.HOLD,
            reasoning=f"no decision engine configured; {context.trigger.trigger_type} trigger ignored",
        )


class TradingToolkit:
    """The only way a decision engine can move money.

    Each call spends one step of the budget. Every order goes to the router
    exactly once and its result is kept, so the workflow can record what
    actually happened regardless of what the engine reports.
    """

    def __init__(self, router: OrderRouter, signers: Optional[SignerSet], *, max_steps: int) -> None:
        self._router = router
        self._signers = signers
        self.max_steps = max_steps
        self.steps_used = 0
        self.executed: list[ExecutedOrder] = []

    @property
    def steps_remaining(self) -> int:
        return self.max_steps - self.steps_used

    def use_step(self) -> None:
        if self.steps_used >= self.max_steps:
            raise StepBudgetExceeded(f"step budget of {self.max_steps} exhausted")
        self.steps_used += 1

    async def place_order(
        self, request: Union[OrderRequest, dict[str, Any]], *, instrument_title: Optional[str] = None
    ) -> OrderResult:
        self.use_step()
        venue: Optional[Venue] = request.venue if isinstance(request, OrderRequest) else None
        try:
            if not isinstance(request, OrderRequest):
                request = OrderRequest.from_dict(request)
                venue = request.venue
            result = await self._router.place_order(request, self._signers)
        except OrderValidationError as e:
            # Rejected before reaching a venue; the engine may retry with other parameters.
            logger.info(f"order rejected before submission: {e}")
            return OrderResult.failed(venue or Venue.KALSHI, str(e))

        self.executed.append(ExecutedOrder(request, result, instrument_title))
        return result

    async def redeem_position(
        self,
        instrument_id: str,
        outcome: Union[Outcome, str],
        quantity: Any,
        *,
        venue: Union[Venue, str] = Venue.KALSHI,
        instrument_title: Optional[str] = None,
    ) -> OrderResult:
        """Cash in outcome tokens of a resolved market; recorded as a redeem trade."""

        self.use_step()
        venue_value = getattr(venue, "value", venue)
        try:
            request = OrderRequest.from_dict(
                {
                    "venue": venue_value,
                    "instrument_id": instrument_id,
                    "side": Side.SELL.value,
                    "outcome": getattr(outcome, "value", outcome),
                    "quantity": quantity,
                }
            )
            result = await self._router.redeem_position(request, self._signers)
        except OrderValidationError as e:
            logger.info(f"redemption rejected before submission: {e}")
            return OrderResult.failed(Venue.KALSHI, str(e))

        self.executed.append(ExecutedOrder(request, result, instrument_title, TradeAction.REDEEM))
        return result

    async def cancel_order(self, order_id: str) -> CancelResult:
        self.use_step()
        return await self._router.cancel_order(order_id, self._signers)

    async def get_order_status(self, order_id: str) -> OrderResult:
        self.use_step()
        return await self._router.get_order_status(order_id, self._signers)


@dataclass(frozen=True)
class DecisionStepResult:
    """Checkpointed output of the decide-and-execute step."""

    outcome: DecisionOutcome
    orders: list[ExecutedOrder] = field(default_factory=list)
    steps_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        o = self.outcome
        return {
            "outcome": {
                "decision": o.decision.value,
                "reasoning": o.reasoning,
                "confidence": o.confidence,
                "instrument_id": o.instrument_id,
                "instrument_title": o.instrument_title,
                "tokens_used": o.tokens_used,
                "portfolio_value": str(o.portfolio_value) if o.portfolio_value is not None else None,
            },
            "orders": [e.to_dict() for e in self.orders],
            "steps_used": self.steps_used,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DecisionStepResult":
        o = d["outcome"]
        outcome = DecisionOutcome(
            decision=DecisionLabel(o["decision"]),
            reasoning=o["reasoning"],
            confidence=o.get("confidence"),
            instrument_id=o.get("instrument_id"),
            instrument_title=o.get("instrument_title"),
            tokens_used=int(o.get("tokens_used") or 0),
            portfolio_value=Decimal(o["portfolio_value"]) if o.get("portfolio_value") is not None else None,
        )
        return cls(
            outcome=outcome,
            orders=[ExecutedOrder.from_dict(e) for e in d.get("orders", [])],
            steps_used=int(d.get("steps_used") or 0),
        )
