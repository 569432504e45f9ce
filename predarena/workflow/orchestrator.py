"""The trading workflow: one durable run per agent trigger.

Steps, each checkpointed under (run_id, step):

1. resolve_session        global running session
2. resolve_agent_session  agent sub-session with wallet addresses
3. decide_and_execute     decision engine + order submission (fire-once boundary)
4. confirm_fills          poll open/partial orders to a terminal state
5. record_results         decision, trades and positions (never rolls back trades)
6. notify_signal_relays   best effort
7. refresh_balances       on-chain USDC for every agent session in the session
8. rebalance              starts a bridge in the background, never fails the run
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional

from predarena.chains.polygon_rpc import PolygonRpcClient
from predarena.chains.solana_rpc import SolanaRpcClient
from predarena.core.ids import decision_id_for_run, new_run_id, stable_id
from predarena.core.settings import WorkflowSettings
from predarena.execution.models import OrderResult, Side
from predarena.execution.router import OrderRouter
from predarena.ledger.models import DecisionLabel, DecisionRecord, TradeRecord, normalize_confidence
from predarena.ledger.repository import Ledger
from predarena.rebalance.policy import BalanceState
from predarena.rebalance.rebalancer import Rebalancer
from predarena.settlement.fills import FillConfirmer
from predarena.signers.registry import SignerSet, WalletRegistry

from .decision import (
    DecisionContext,
    DecisionEngine,
    DecisionOutcome,
    DecisionStepResult,
    ExecutedOrder,
    TradingToolkit,
)
from .durable import CheckpointStore, DurableRun
from .triggers import SignalRelayNotifier, Trigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowResult:
    run_id: str
    agent_id: str
    agent_session_id: str
    decision: DecisionLabel
    orders: list[OrderResult]
    recorded: bool
    trades_recorded: int
    balances: dict[str, Decimal] = field(default_factory=dict)
    rebalance: Optional[dict[str, Any]] = None
    replayed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "agent_id": self.agent_id,
            "agent_session_id": self.agent_session_id,
            "decision": self.decision.value,
            "orders": [o.to_dict() for o in self.orders],
            "recorded": self.recorded,
            "trades_recorded": self.trades_recorded,
            "balances": {k: str(v) for k, v in self.balances.items()},
            "rebalance": self.rebalance,
            "replayed": list(self.replayed),
        }


def _label_from_orders(orders: list[ExecutedOrder]) -> DecisionLabel:
    for e in orders:
        if e.result.success:
            return DecisionLabel.BUY if e.request.side is Side.BUY else DecisionLabel.SELL
    return DecisionLabel.SKIP


def _balances_to_wire(b: Mapping[str, Decimal]) -> dict[str, str]:
    return {k: str(v) for k, v in b.items()}


def _balances_from_wire(b: Mapping[str, str]) -> dict[str, Decimal]:
    return {k: Decimal(v) for k, v in b.items()}


class TradingWorkflow:
    def __init__(
        self,
        *,
        settings: WorkflowSettings,
        ledger: Ledger,
        registry: WalletRegistry,
        router: OrderRouter,
        engine: DecisionEngine,
        checkpoints: CheckpointStore,
        fills: FillConfirmer,
        solana: SolanaRpcClient,
        polygon: PolygonRpcClient,
        rebalancer: Optional[Rebalancer] = None,
        relays: Optional[SignalRelayNotifier] = None,
        agent_names: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._registry = registry
        self._router = router
        self._engine = engine
        self._checkpoints = checkpoints
        self._fills = fills
        self._solana = solana
        self._polygon = polygon
        self._rebalancer = rebalancer
        self._relays = relays
        self._agent_names = dict(agent_names or {})

    async def run(self, agent_id: str, trigger: Trigger, run_id: Optional[str] = None) -> WorkflowResult:
        """Execute (or resume) one run. Raises WorkflowStepError; resume with the same run_id."""

        run = DurableRun(run_id or new_run_id(), self._checkpoints, ttl_seconds=self._settings.checkpoint_ttl_seconds)
        signers = self._registry.resolve(agent_id)
        logger.info(f"[workflow:{agent_id}] run {run.run_id} started by {trigger.trigger_type} trigger")

        session_id = await run.step("resolve_session", self._resolve_session)
        agent_session_id = await run.step(
            "resolve_agent_session", lambda: self._resolve_agent_session(session_id, agent_id, signers)
        )
        decided = await run.step(
            "decide_and_execute",
            lambda: self._decide_and_execute(session_id, agent_id, agent_session_id, trigger, signers),
            encode=lambda r: r.to_dict(),
            decode=DecisionStepResult.from_dict,
        )
        confirmed = await run.step(
            "confirm_fills",
            lambda: self._fills.confirm_all([e.result for e in decided.orders], signers),
            encode=lambda rs: [r.to_dict() for r in rs],
            decode=lambda rs: [OrderResult.from_dict(r) for r in rs],
        )
        recorded = await run.step(
            "record_results",
            lambda: self._record_results(run.run_id, session_id, agent_id, agent_session_id, trigger, decided, confirmed),
        )
        await run.step("notify_signal_relays", lambda: self._notify_relays(decided.orders, confirmed))
        balances = await run.step(
            "refresh_balances",
            lambda: self._refresh_balances(session_id, agent_session_id),
            encode=_balances_to_wire,
            decode=_balances_from_wire,
        )
        rebalance = await run.step("rebalance", lambda: self._rebalance(agent_id, signers, balances))

        logger.info(
            f"[workflow:{agent_id}] run {run.run_id} finished: {decided.outcome.decision.value}, "
            f"{len(confirmed)} order(s), {recorded['trades_recorded']} trade(s) recorded"
        )
        return WorkflowResult(
            run_id=run.run_id,
            agent_id=agent_id,
            agent_session_id=agent_session_id,
            decision=decided.outcome.decision,
            orders=confirmed,
            recorded=bool(recorded["recorded"]),
            trades_recorded=int(recorded["trades_recorded"]),
            balances=balances,
            rebalance=rebalance,
            replayed=list(run.replayed),
        )

    async def _resolve_session(self) -> str:
        session = await asyncio.to_thread(
            self._ledger.get_or_create_running_session, self._settings.session_name, self._settings.starting_capital
        )
        return session.session_id

    async def _resolve_agent_session(self, session_id: str, agent_id: str, signers: SignerSet) -> str:
        agent = await asyncio.to_thread(
            lambda: self._ledger.get_or_create_agent_session(
                session_id=session_id,
                agent_id=agent_id,
                agent_name=self._agent_names.get(agent_id, agent_id),
                wallet_addresses=signers.addresses,
                starting_capital=self._settings.starting_capital,
            )
        )
        return agent.agent_session_id

    async def _decide_and_execute(
        self, session_id: str, agent_id: str, agent_session_id: str, trigger: Trigger, signers: SignerSet
    ) -> DecisionStepResult:
        agent = await asyncio.to_thread(self._ledger.get_agent_session, session_id, agent_id)
        positions = await asyncio.to_thread(self._ledger.list_positions, agent_session_id)
        context = DecisionContext(
            agent_id=agent_id,
            agent_name=self._agent_names.get(agent_id, agent_id),
            agent_session_id=agent_session_id,
            trigger=trigger,
            chain_balances=dict(agent.chain_balances) if agent else {},
            positions=positions,
            wallet_addresses=signers.addresses,
            max_steps=self._settings.max_steps,
        )
        toolkit = TradingToolkit(self._router, signers, max_steps=self._settings.max_steps)

        try:
            outcome = await self._engine.decide(context, toolkit)
        except Exception as e:
            if not toolkit.executed:
                raise
            # Orders already went out: finish the step so they get recorded instead of resubmitted.
            logger.exception(
                "decision_engine_failed_after_orders",
                extra={"agent_id": agent_id, "orders": [x.result.order_id for x in toolkit.executed]},
            )
            outcome = DecisionOutcome(
                decision=_label_from_orders(toolkit.executed),
                reasoning=f"decision engine failed after placing orders: {e}",
            )

        logger.info(
            f"[workflow:{agent_id}] decision {outcome.decision.value} after {toolkit.steps_used} step(s), "
            f"{len(toolkit.executed)} order(s) submitted"
        )
        return DecisionStepResult(outcome=outcome, orders=list(toolkit.executed), steps_used=toolkit.steps_used)

    async def _record_results(
        self,
        run_id: str,
        session_id: str,
        agent_id: str,
        agent_session_id: str,
        trigger: Trigger,
        decided: DecisionStepResult,
        confirmed: list[OrderResult],
    ) -> dict[str, Any]:
        # Executed trades are recorded even when the decision row cannot be;
        # they then carry no decision id.
        outcome = decided.outcome
        decision_id = decision_id_for_run(run_id)
        decision_ok = await self._record_decision(decision_id, session_id, agent_id, agent_session_id, trigger, outcome)
        trade_decision_id = decision_id if decision_ok else None

        trades_recorded = 0
        trades_failed = 0
        for executed, result in zip(decided.orders, confirmed):
            if not result.order_id or result.filled_quantity <= 0:
                continue
            req = executed.request
            trade = TradeRecord(
                trade_id=stable_id("trade", run_id, result.order_id),
                decision_id=trade_decision_id,
                agent_session_id=agent_session_id,
                instrument_id=req.instrument_id,
                venue=req.venue.value,
                outcome=req.outcome.value,
                action=executed.trade_action,
                quantity=result.filled_quantity,
                price=result.avg_price,
                notional=result.total_cost,
                settlement_ref=result.order_id,
                instrument_title=executed.instrument_title,
            )
            try:
                if await asyncio.to_thread(self._ledger.record_trade, trade):
                    trades_recorded += 1
            except Exception:
                # The order already happened on-chain; never undo or repeat it.
                trades_failed += 1
                logger.exception("record_trade_failed", extra={"run_id": run_id, "settlement_ref": trade.settlement_ref})

        return {
            "recorded": decision_ok and trades_failed == 0,
            "trades_recorded": trades_recorded,
            "trades_failed": trades_failed,
            "decision_id": trade_decision_id,
        }

    async def _record_decision(
        self,
        decision_id: str,
        session_id: str,
        agent_id: str,
        agent_session_id: str,
        trigger: Trigger,
        outcome: DecisionOutcome,
    ) -> bool:
        try:
            portfolio_value = outcome.portfolio_value
            if portfolio_value is None:
                agent = await asyncio.to_thread(self._ledger.get_agent_session, session_id, agent_id)
                portfolio_value = agent.current_value if agent else self._settings.starting_capital
            confidence = normalize_confidence(outcome.confidence)
            if confidence != outcome.confidence:
                logger.warning(
                    "decision_confidence_normalized",
                    extra={"decision_id": decision_id, "reported": outcome.confidence, "stored": confidence},
                )
            decision = DecisionRecord(
                decision_id=decision_id,
                agent_session_id=agent_session_id,
                trigger_type=trigger.trigger_type,
                trigger_details=dict(trigger.details),
                decision=outcome.decision,
                reasoning=outcome.reasoning,
                portfolio_value_after=portfolio_value,
                confidence=confidence,
                instrument_id=outcome.instrument_id,
                instrument_title=outcome.instrument_title,
            )
            await asyncio.to_thread(lambda: self._ledger.record_decision(decision, tokens_used=outcome.tokens_used))
        except Exception:
            logger.exception("record_decision_failed", extra={"decision_id": decision_id, "agent_id": agent_id})
            return False
        return True

    async def _notify_relays(self, orders: list[ExecutedOrder], confirmed: list[OrderResult]) -> dict[str, int]:
        if self._relays is None:
            return {}
        traded = [e.request.instrument_id for e, r in zip(orders, confirmed) if r.success]
        if not traded:
            return {}
        return await self._relays.notify(traded)

    async def _refresh_balances(self, session_id: str, agent_session_id: str) -> dict[str, Decimal]:
        agents = await asyncio.to_thread(self._ledger.list_agent_sessions, session_id)
        own: dict[str, Decimal] = {}
        for agent in agents:
            addresses = agent.wallet_addresses
            try:
                balances = {
                    "solana": await self._solana.get_usdc_balance(addresses["solana"])
                    if addresses.get("solana")
                    else Decimal(0),
                    "polygon": await self._polygon.get_usdc_balance(addresses["polygon"])
                    if addresses.get("polygon")
                    else Decimal(0),
                }
            except Exception as e:
                logger.warning(
                    "balance_refresh_failed",
                    extra={"agent_session_id": agent.agent_session_id, "error": str(e)},
                )
                continue
            updated = await asyncio.to_thread(
                lambda: self._ledger.update_session_value(agent.agent_session_id, chain_balances=balances)
            )
            if agent.agent_session_id == agent_session_id:
                own = dict(updated.chain_balances)
        return own

    async def _rebalance(
        self, agent_id: str, signers: SignerSet, balances: Mapping[str, Decimal]
    ) -> Optional[dict[str, Any]]:
        if self._rebalancer is None:
            return None
        if not balances:
            return {"triggered": False, "reason": "balances unavailable"}
        state = BalanceState(solana=balances.get("solana", Decimal(0)), polygon=balances.get("polygon", Decimal(0)))
        try:
            result = await self._rebalancer.check_and_trigger(agent_id, signers, state)
        except Exception as e:
            logger.exception("rebalance_check_failed", extra={"agent_id": agent_id})
            return {"triggered": False, "reason": f"rebalance check failed: {e}"}
        return result.to_dict()
