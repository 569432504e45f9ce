from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from predarena.bridge.deposit import DepositBridge
from predarena.bridge.models import BridgeDirection, BridgeTransfer
from predarena.bridge.withdrawal import WithdrawalBridge
from predarena.core.settings import RebalanceSettings
from predarena.signers.registry import SignerSet

from .policy import BalanceState, check_rebalance_needed
from .tracking import PendingBridgeTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RebalanceResult:
    triggered: bool
    reason: str
    direction: Optional[BridgeDirection] = None
    amount: Decimal = Decimal(0)

    def to_dict(self) -> dict:
        return {
            "triggered": self.triggered,
            "reason": self.reason,
            "direction": self.direction.value if self.direction else None,
            "amount": str(self.amount),
        }


class Rebalancer:
    """Evaluates the policy and starts a bridge without waiting for it."""

    def __init__(
        self,
        *,
        policy: RebalanceSettings,
        tracker: PendingBridgeTracker,
        deposit: Optional[DepositBridge],
        withdrawal: Optional[WithdrawalBridge],
    ) -> None:
        self._policy = policy
        self._tracker = tracker
        self._deposit = deposit
        self._withdrawal = withdrawal
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def check_and_trigger(self, agent_id: str, signers: SignerSet, balances: BalanceState) -> RebalanceResult:
        check = check_rebalance_needed(balances, self._policy)
        if not check.needed or check.direction is None:
            return RebalanceResult(triggered=False, reason=check.reason)

        # The tracker may be Redis-backed with a blocking client.
        if await asyncio.to_thread(self._tracker.is_pending, agent_id):
            return RebalanceResult(triggered=False, reason="bridge already pending")
        if signers.svm is None or signers.evm is None:
            return RebalanceResult(triggered=False, reason="missing svm or evm signer")

        bridge = self._deposit if check.direction is BridgeDirection.DEPOSIT else self._withdrawal
        if bridge is None:
            return RebalanceResult(triggered=False, reason=f"no bridge configured for {check.direction.value}")

        if not await asyncio.to_thread(self._tracker.try_mark, agent_id):
            return RebalanceResult(triggered=False, reason="bridge already pending")

        logger.info(f"[rebalance:{agent_id}] triggering bridge {check.direction.value} for {check.amount}: {check.reason}")
        task = asyncio.create_task(self._run_bridge(agent_id, signers, check.direction, check.amount))
        # Keep a reference so the task is not garbage collected mid-flight.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return RebalanceResult(triggered=True, reason=check.reason, direction=check.direction, amount=check.amount)

    async def _run_bridge(self, agent_id: str, signers: SignerSet, direction: BridgeDirection, amount: Decimal) -> Optional[BridgeTransfer]:
        try:
            if direction is BridgeDirection.DEPOSIT:
                result = await self._deposit.deposit(amount, signers.svm, signers.evm.address)  # type: ignore[union-attr]
            else:
                result = await self._withdrawal.withdraw(amount, signers.evm, signers.svm)  # type: ignore[union-attr]
        except Exception:
            logger.exception("rebalance_bridge_crashed", extra={"agent_id": agent_id, "direction": direction.value})
            return None
        finally:
            await asyncio.to_thread(self._tracker.clear, agent_id)

        if result.succeeded:
            logger.info(f"[rebalance:{agent_id}] bridge {result.transfer_id} completed, new balance {result.new_balance}")
        else:
            logger.warning(
                "rebalance_bridge_unfinished",
                extra={"agent_id": agent_id, "state": result.state.value, "source_tx": result.source_tx, "error": result.error},
            )
        return result

    async def drain(self) -> None:
        """Wait for in-flight bridges (shutdown and tests)."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
