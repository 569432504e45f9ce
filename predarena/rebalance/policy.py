from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from predarena.bridge.models import BridgeDirection
from predarena.core.settings import RebalanceSettings

ZERO = Decimal(0)


@dataclass(frozen=True)
class BalanceState:
    solana: Decimal
    polygon: Decimal

    @property
    def total(self) -> Decimal:
        return self.solana + self.polygon


@dataclass(frozen=True)
class RebalanceCheck:
    needed: bool
    reason: str
    direction: Optional[BridgeDirection] = None
    amount: Decimal = ZERO


def check_rebalance_needed(state: BalanceState, policy: RebalanceSettings) -> RebalanceCheck:
    """Decide whether collateral should move between chains.

    Polygon is topped up from Solana whenever it falls below its floor, as long
    as that leaves the Solana reserve intact. The reverse direction only fires
    when Solana itself is below its reserve and Polygon has a full bridge amount
    to spare above its own floor.
    """

    floor, reserve, chunk = policy.polygon_min_balance, policy.solana_reserve, policy.bridge_amount

    if state.polygon < floor:
        solana_available = state.solana - reserve
        if solana_available >= chunk:
            return RebalanceCheck(
                needed=True,
                direction=BridgeDirection.DEPOSIT,
                amount=chunk,
                reason=f"polygon ({state.polygon:.2f}) below min ({floor}), bridging {chunk}",
            )
        if state.total < floor + reserve:
            return RebalanceCheck(needed=False, reason=f"low total balance ({state.total:.2f}), rebalancing skipped")
        return RebalanceCheck(
            needed=False,
            reason=(
                f"polygon low ({state.polygon:.2f}) but solana reserve protected "
                f"(avail: {solana_available:.2f}, need: {chunk})"
            ),
        )

    if state.solana < reserve and state.polygon - floor >= chunk:
        return RebalanceCheck(
            needed=True,
            direction=BridgeDirection.WITHDRAWAL,
            amount=chunk,
            reason=f"solana ({state.solana:.2f}) below reserve ({reserve}), bridging {chunk} back",
        )

    return RebalanceCheck(needed=False, reason="balances ok")
