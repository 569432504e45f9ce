"""Order execution router.

Mechanical only: validate, pick the venue executor, normalize the result.
No persistence and no retries live here; bookkeeping belongs to the workflow.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Mapping, Optional, Protocol

from predarena.core.units import ZERO, approx_equal, to_decimal
from predarena.signers.registry import SignerSet

from .models import (
    CancelResult,
    OrderRequest,
    OrderResult,
    OrderValidationError,
    Venue,
    prefixed_order_id,
    split_order_id,
    validate_order_request,
)

logger = logging.getLogger(__name__)

PRICE_QUANTUM = Decimal("0.000001")


class VenueExecutor(Protocol):
    venue: Venue

    async def place_order(self, request: OrderRequest, signers: SignerSet) -> OrderResult:
        ...

    async def cancel_order(self, raw_order_id: str, signers: SignerSet) -> CancelResult:
        ...

    async def get_order_status(self, raw_order_id: str, signers: SignerSet) -> OrderResult:
        ...


def _has_signer(venue: Venue, signers: Optional[SignerSet]) -> bool:
    if signers is None:
        return False
    return (signers.svm if venue.chain == "solana" else signers.evm) is not None


def normalize_result(result: OrderResult, venue: Venue) -> OrderResult:
    """Force the canonical shape: Decimal fields, venue prefix, filled*avg ~= total."""

    order_id = result.order_id
    if order_id and not order_id.startswith(f"{venue.value}:"):
        order_id = prefixed_order_id(venue, order_id)

    filled = to_decimal(result.filled_quantity)
    total = to_decimal(result.total_cost)
    avg = to_decimal(result.avg_price)
    if filled > ZERO and total > ZERO and not approx_equal(filled * avg, total):
        # Totals come from the settlement receipt; the average is derived.
        avg = (total / filled).quantize(PRICE_QUANTUM)
        if not approx_equal(filled * avg, total):
            total = filled * avg
    elif filled == ZERO:
        avg, total = ZERO, ZERO

    return replace(result, order_id=order_id, venue=venue, filled_quantity=filled, avg_price=avg, total_cost=total)


class OrderRouter:
    def __init__(self, executors: Mapping[Venue, VenueExecutor]) -> None:
        self._executors = dict(executors)

    def _executor(self, venue: Venue) -> VenueExecutor:
        ex = self._executors.get(venue)
        if ex is None:
            raise OrderValidationError(f"no executor configured for venue {venue.value}")
        return ex

    async def place_order(self, request: OrderRequest, signers: Optional[SignerSet]) -> OrderResult:
        validate_order_request(request)
        executor = self._executor(request.venue)

        if not _has_signer(request.venue, signers):
            return OrderResult.failed(request.venue, f"no signer available for {request.venue.chain}")

        result = await executor.place_order(request, signers)  # type: ignore[arg-type]
        result = normalize_result(result, request.venue)
        if not result.success:
            logger.warning(
                "order_failed",
                extra={"venue": request.venue.value, "instrument_id": request.instrument_id, "error": result.error},
            )
        else:
            logger.info(
                f"order {result.order_id} {result.status.value}: {request.side.value} {result.filled_quantity} "
                f"{request.outcome.value} @ {result.avg_price}"
            )
        return result

    async def cancel_order(self, order_id: str, signers: Optional[SignerSet]) -> CancelResult:
        try:
            venue, raw_id = split_order_id(order_id)
        except ValueError as e:
            return CancelResult(success=False, order_id=order_id, error=str(e))

        if venue is Venue.KALSHI:
            # Orders settle atomically at submission; nothing ever rests.
            return CancelResult(
                success=False,
                order_id=order_id,
                venue=venue,
                error="not cancellable: immediate-settlement orders execute at submission",
            )

        if not _has_signer(venue, signers):
            return CancelResult(success=False, order_id=order_id, venue=venue, error=f"no signer available for {venue.chain}")
        result = await self._executor(venue).cancel_order(raw_id, signers)  # type: ignore[arg-type]
        return replace(result, order_id=order_id, venue=venue)

    async def get_order_status(self, order_id: str, signers: Optional[SignerSet]) -> OrderResult:
        venue, raw_id = split_order_id(order_id)
        result = await self._executor(venue).get_order_status(raw_id, signers)  # type: ignore[arg-type]
        return normalize_result(result, venue)

    async def redeem_position(self, request: OrderRequest, signers: Optional[SignerSet]) -> OrderResult:
        """Redeem resolved outcome tokens; `request` names the instrument, outcome and quantity."""

        validate_order_request(request)
        executor = self._executor(request.venue)
        redeem = getattr(executor, "redeem_position", None)
        if redeem is None:
            return OrderResult.failed(request.venue, f"{request.venue.value} does not support redemption")
        if not _has_signer(request.venue, signers):
            return OrderResult.failed(request.venue, f"no signer available for {request.venue.chain}")

        result = normalize_result(
            await redeem(request.instrument_id, request.outcome, request.quantity, signers), request.venue
        )
        if not result.success:
            logger.warning(
                "redeem_failed",
                extra={"venue": request.venue.value, "instrument_id": request.instrument_id, "error": result.error},
            )
        else:
            logger.info(f"redemption {result.order_id}: {result.filled_quantity} {request.outcome.value} for {result.total_cost}")
        return result
