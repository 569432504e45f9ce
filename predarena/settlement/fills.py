from __future__ import annotations

import asyncio
import logging
from typing import Optional

from predarena.execution.models import OrderResult, OrderStatus
from predarena.execution.router import OrderRouter
from predarena.signers.registry import SignerSet

from .monitor import ORDER_FILL_POLICY, BackoffPolicy, Check, PollState, poll_for_terminal_state

logger = logging.getLogger(__name__)


def needs_confirmation(result: OrderResult) -> bool:
    return bool(result.order_id) and result.status in (OrderStatus.OPEN, OrderStatus.PARTIAL)


class FillConfirmer:
    """Polls venue order status for orders that did not settle at submission."""

    def __init__(
        self,
        router: OrderRouter,
        *,
        policy: BackoffPolicy = ORDER_FILL_POLICY,
        sleep=asyncio.sleep,
    ) -> None:
        self._router = router
        self._policy = policy
        self._sleep = sleep

    async def _check(self, order_id: str, signers: Optional[SignerSet]) -> Check[OrderResult]:
        snapshot = await self._router.get_order_status(order_id, signers)
        if snapshot.status is OrderStatus.FILLED:
            return Check.success(snapshot)
        if snapshot.status is OrderStatus.FAILED:
            return Check.failure(snapshot.error or "order failed", snapshot)
        if snapshot.status is OrderStatus.PARTIAL and snapshot.error:
            # Cancelled after a partial fill: nothing more will match.
            return Check.success(snapshot)
        return Check.pending(snapshot)

    async def confirm(self, result: OrderResult, signers: Optional[SignerSet]) -> OrderResult:
        if not needs_confirmation(result):
            return result

        outcome = await poll_for_terminal_state(
            result.order_id, lambda: self._check(result.order_id, signers), self._policy, sleep=self._sleep
        )
        latest = outcome.value or result
        if outcome.state is PollState.TIMEOUT:
            # Still resting; the last snapshot is the best record we have.
            logger.warning(
                "order_fill_unconfirmed",
                extra={"order_id": result.order_id, "status": latest.status.value, "attempts": outcome.attempts},
            )
        return latest

    async def confirm_all(self, results: list[OrderResult], signers: Optional[SignerSet]) -> list[OrderResult]:
        return [await self.confirm(r, signers) for r in results]
