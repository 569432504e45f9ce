"""Immediate-settlement venue executor (Kalshi markets traded on Solana).

Orders execute atomically against the venue's pool when the signed transaction
lands, so there is no resting state and nothing to cancel. The quote endpoint
returns a ready-to-sign transaction; we sign it, submit it exactly once and read
the realized amounts back from the venue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx

from predarena.core.units import OUTCOME_TOKEN_DECIMALS, USDC_DECIMALS, ZERO, from_base_units, to_base_units, to_decimal
from predarena.settlement.monitor import SOURCE_FINALITY_POLICY, BackoffPolicy, PollState
from predarena.signers.registry import SignerSet

from ..models import CancelResult, OrderKind, OrderRequest, OrderResult, OrderStatus, Outcome, Side, Venue, prefixed_order_id

logger = logging.getLogger(__name__)

# Quantity-denominated buys need a USDC amount before any price is known. The
# venue only discovers the price at execution, so the funding amount is an
# estimate at a fair value of 0.5 and the realized fill comes from the receipt.
PLACEHOLDER_FAIR_VALUE = Decimal("0.5")


class ImmediateVenueError(RuntimeError):
    pass


@dataclass(frozen=True)
class ResolvedMarket:
    ticker: str
    title: str
    status: str
    settlement_mint: str
    yes_mint: str
    no_mint: str
    market_ledger: str

    def outcome_mint(self, outcome: Outcome) -> str:
        return self.yes_mint if outcome is Outcome.YES else self.no_mint

    @property
    def is_active(self) -> bool:
        return self.status == "active"


REDEEMABLE_MARKET_STATUSES = frozenset({"determined", "finalized"})
SCALAR_PCT_BASIS = Decimal(10_000)


@dataclass(frozen=True)
class RedemptionEligibility:
    redeemable: bool
    reason: str = ""
    settlement_mint: Optional[str] = None
    payout_pct: Decimal = ZERO


def redemption_eligibility(market: dict[str, Any], outcome_mint: str, settlement_mint: str) -> RedemptionEligibility:
    """Whether `outcome_mint` pays out in `market`, as returned by the metadata API.

    Redeemable once the market is determined or finalized and the settlement
    account has redemption open: the winning side pays 100%, and a scalar
    result (empty `result` with `scalarOutcomePct` in basis points) pays both
    sides pro rata. Falls back to any account with open redemption when
    `settlement_mint` has none.
    """

    status = market.get("status")
    if status not in REDEEMABLE_MARKET_STATUSES:
        return RedemptionEligibility(False, f"market is not determined (status: {status})")

    accounts = market.get("accounts") or {}
    account = accounts.get(settlement_mint)
    if account is None:
        for mint, acct in accounts.items():
            if acct.get("redemptionStatus") == "open":
                settlement_mint, account = mint, acct
                break
        else:
            return RedemptionEligibility(False, "no settlement account with open redemption")
    if account.get("redemptionStatus") != "open":
        return RedemptionEligibility(False, f"redemption is not open (status: {account.get('redemptionStatus')})")

    if outcome_mint == account.get("yesMint"):
        held = Outcome.YES
    elif outcome_mint == account.get("noMint"):
        held = Outcome.NO
    else:
        return RedemptionEligibility(False, "outcome mint does not belong to this market")

    result = market.get("result")
    if result in (Outcome.YES.value, Outcome.NO.value):
        if result != held.value:
            return RedemptionEligibility(False, f"market resolved {result}, position is {held.value}")
        return RedemptionEligibility(True, settlement_mint=settlement_mint, payout_pct=Decimal(1))

    scalar = account.get("scalarOutcomePct")
    if result == "" and scalar is not None:
        yes_pct = to_decimal(scalar) / SCALAR_PCT_BASIS
        pct = yes_pct if held is Outcome.YES else 1 - yes_pct
        if pct <= ZERO:
            return RedemptionEligibility(False, f"scalar result pays nothing to {held.value}")
        return RedemptionEligibility(True, settlement_mint=settlement_mint, payout_pct=pct)

    return RedemptionEligibility(False, "market has no result")


class ImmediateVenueApi:
    """HTTP client for the venue's metadata and quote APIs."""

    def __init__(
        self,
        *,
        quote_api_url: str,
        metadata_api_url: str,
        api_key: Optional[str],
        usdc_mint: str,
        client: Optional[httpx.AsyncClient] = None,
        cache_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        self._client = client or httpx.AsyncClient(timeout=30.0, headers=headers)
        self._headers = headers
        self._quote_url = quote_api_url.rstrip("/")
        self._metadata_url = metadata_api_url.rstrip("/")
        self.usdc_mint = usdc_mint
        self._cache: dict[str, tuple[float, ResolvedMarket]] = {}
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock

    async def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        response = await self._client.get(url, params=params, headers=self._headers)
        if response.status_code == 404:
            raise ImmediateVenueError(f"not found: {url}")
        if response.status_code >= 400:
            raise ImmediateVenueError(f"{url} failed: {response.status_code} - {response.text}")
        return response.json()

    async def resolve_market(self, ticker: str) -> ResolvedMarket:
        cached = self._cache.get(ticker)
        if cached and cached[0] > self._clock():
            return cached[1]

        data = await self._get(f"{self._metadata_url}/market/{quote(ticker, safe='')}")
        accounts = data.get("accounts") or {}
        if not accounts:
            raise ImmediateVenueError(f"market '{ticker}' has no accounts configured")
        settlement_mint = self.usdc_mint if self.usdc_mint in accounts else next(iter(accounts))
        acct = accounts[settlement_mint]
        market = ResolvedMarket(
            ticker=data.get("ticker", ticker),
            title=data.get("title", ""),
            status=str(data.get("status", "")),
            settlement_mint=settlement_mint,
            yes_mint=acct["yesMint"],
            no_mint=acct["noMint"],
            market_ledger=acct.get("marketLedger", ""),
        )
        self._cache[ticker] = (self._clock() + self._cache_ttl, market)
        return market

    async def market_by_mint(self, mint: str) -> dict[str, Any]:
        return await self._get(f"{self._metadata_url}/market/by-mint/{quote(mint, safe='')}")

    async def request_order(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        user_public_key: str,
        slippage_bps: Optional[int] = None,
    ) -> dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "userPublicKey": user_public_key,
        }
        if slippage_bps is not None:
            params["slippageBps"] = str(slippage_bps)
            params["predictionMarketSlippageBps"] = str(slippage_bps)
        return await self._get(f"{self._quote_url}/order", params=params)

    async def order_status(self, signature: str) -> dict[str, Any]:
        return await self._get(f"{self._quote_url}/order-status", params={"signature": signature})

    async def aclose(self) -> None:
        await self._client.aclose()


def _amounts_to_result(
    *,
    order_id: str,
    side: Side,
    in_amount: Any,
    out_amount: Any,
    status: OrderStatus,
) -> OrderResult:
    usdc_in = from_base_units(in_amount or 0, USDC_DECIMALS)
    usdc_out = from_base_units(out_amount or 0, USDC_DECIMALS)
    tokens_in = from_base_units(in_amount or 0, OUTCOME_TOKEN_DECIMALS)
    tokens_out = from_base_units(out_amount or 0, OUTCOME_TOKEN_DECIMALS)
    if side is Side.BUY:
        filled, total = tokens_out, usdc_in
    else:
        filled, total = tokens_in, usdc_out
    avg = total / filled if filled > ZERO else ZERO
    return OrderResult(
        order_id=order_id,
        venue=Venue.KALSHI,
        status=status,
        filled_quantity=filled,
        avg_price=avg,
        total_cost=total,
    )


class ImmediateVenueExecutor:
    venue = Venue.KALSHI

    def __init__(
        self,
        api: ImmediateVenueApi,
        rpc,
        *,
        confirmation_policy: BackoffPolicy = SOURCE_FINALITY_POLICY,
        sleep=asyncio.sleep,
    ) -> None:
        self._api = api
        self._rpc = rpc
        self._confirmation_policy = confirmation_policy
        self._sleep = sleep

    async def place_order(self, request: OrderRequest, signers: SignerSet) -> OrderResult:
        if request.kind is not OrderKind.MARKET:
            return OrderResult.failed(self.venue, "immediate-settlement venue only accepts market orders")
        svm = signers.svm
        if svm is None:
            return OrderResult.failed(self.venue, "no solana signer available")

        try:
            market = await self._api.resolve_market(request.instrument_id)
            if not market.is_active:
                return OrderResult.failed(self.venue, f"market {market.ticker} is not active (status: {market.status})")

            outcome_mint = market.outcome_mint(request.outcome)
            if request.side is Side.BUY:
                input_mint, output_mint = market.settlement_mint, outcome_mint
                amount = to_base_units(request.quantity * PLACEHOLDER_FAIR_VALUE, USDC_DECIMALS)
            else:
                input_mint, output_mint = outcome_mint, market.settlement_mint
                amount = to_base_units(request.quantity, OUTCOME_TOKEN_DECIMALS)
            if amount <= 0:
                return OrderResult.failed(self.venue, "order amount rounds to zero base units")

            quote_resp = await self._api.request_order(
                input_mint=input_mint,
                output_mint=output_mint,
                amount=amount,
                user_public_key=svm.address,
                slippage_bps=request.slippage_bps,
            )
            tx = quote_resp.get("transaction")
            if not tx:
                return OrderResult.failed(self.venue, "no transaction returned from order request")
            signed = svm.sign_transaction(tx)
        except Exception as e:
            return OrderResult.failed(self.venue, f"order preparation failed: {e}")

        return await self._submit(signed, quote_resp, request.side)

    async def redeem_position(self, instrument_id: str, outcome: Outcome, quantity: Decimal, signers: SignerSet) -> OrderResult:
        """Swap resolved outcome tokens back into the settlement mint at the payout rate."""

        svm = signers.svm
        if svm is None:
            return OrderResult.failed(self.venue, "no solana signer available")

        try:
            market = await self._api.resolve_market(instrument_id)
            outcome_mint = market.outcome_mint(outcome)
            eligibility = redemption_eligibility(
                await self._api.market_by_mint(outcome_mint), outcome_mint, market.settlement_mint
            )
            if not eligibility.redeemable:
                return OrderResult.failed(self.venue, f"not redeemable: {eligibility.reason}")

            amount = to_base_units(quantity, OUTCOME_TOKEN_DECIMALS)
            if amount <= 0:
                return OrderResult.failed(self.venue, "redemption amount rounds to zero base units")
            quote_resp = await self._api.request_order(
                input_mint=outcome_mint,
                output_mint=eligibility.settlement_mint or market.settlement_mint,
                amount=amount,
                user_public_key=svm.address,
            )
            tx = quote_resp.get("transaction")
            if not tx:
                return OrderResult.failed(self.venue, "no transaction returned from redemption request")
            signed = svm.sign_transaction(tx)
        except Exception as e:
            return OrderResult.failed(self.venue, f"redemption preparation failed: {e}")

        logger.info(f"redeeming {quantity} {outcome.value} of {instrument_id} at payout {eligibility.payout_pct}")
        return await self._submit(signed, quote_resp, Side.SELL)

    async def _submit(self, signed: str, quote_resp: dict[str, Any], side: Side) -> OrderResult:
        try:
            signature = await self._rpc.send_transaction(signed)
        except Exception as e:
            # Mechanical failure: report failure, do not attempt retries here
            # to avoid duplicate submission.
            return OrderResult.failed(self.venue, f"submission failed: {e}")

        order_id = prefixed_order_id(self.venue, signature)
        in_amount, out_amount = quote_resp.get("inAmount"), quote_resp.get("outAmount")

        if quote_resp.get("executionMode", "sync") == "async":
            # Settles off the submission path; the fill confirmer resolves it.
            return OrderResult(order_id=order_id, venue=self.venue, status=OrderStatus.OPEN)

        outcome = await self._rpc.wait_for_confirmation(signature, policy=self._confirmation_policy, sleep=self._sleep)
        if outcome.state is PollState.FAILED:
            return OrderResult.failed(self.venue, outcome.last_error or "transaction failed", order_id=order_id)
        if outcome.state is PollState.TIMEOUT:
            logger.warning("order_confirmation_timeout", extra={"order_id": order_id})
            return OrderResult(order_id=order_id, venue=self.venue, status=OrderStatus.OPEN)

        return _amounts_to_result(
            order_id=order_id, side=side, in_amount=in_amount, out_amount=out_amount, status=OrderStatus.FILLED
        )

    async def cancel_order(self, raw_order_id: str, signers: SignerSet) -> CancelResult:
        return CancelResult(
            success=False,
            order_id=prefixed_order_id(self.venue, raw_order_id),
            venue=self.venue,
            error="not cancellable: immediate-settlement orders execute at submission",
        )

    async def get_order_status(self, raw_order_id: str, signers: SignerSet) -> OrderResult:
        order_id = prefixed_order_id(self.venue, raw_order_id)
        data = await self._api.order_status(raw_order_id)
        status = data.get("status")
        if status == "failed":
            return OrderResult.failed(self.venue, "order failed at venue", order_id=order_id)

        fills = data.get("fills") or []
        # Buys spend the settlement mint; fills say which way the order went.
        side = Side.BUY
        if fills and fills[0].get("inputMint") != self._api.usdc_mint:
            side = Side.SELL

        if status == "closed":
            mapped = OrderStatus.FILLED
        elif fills:
            mapped = OrderStatus.PARTIAL
        else:
            return OrderResult(order_id=order_id, venue=self.venue, status=OrderStatus.OPEN)
        return _amounts_to_result(
            order_id=order_id, side=side, in_amount=data.get("inAmount"), out_amount=data.get("outAmount"), status=mapped
        )
