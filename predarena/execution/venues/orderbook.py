"""Order-book venue executor (Polymarket CLOB on Polygon).

Orders are signed off-chain objects posted to the CLOB. The venue settles in
whole outcome-token units and rejects non-integer fill-or-kill requests
outright, so sizes are rounded before submission: sells down, buys up.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Callable, Optional, Protocol

from predarena.core.units import ZERO, round_units_down, round_units_up, to_decimal
from predarena.signers.evm import EvmSigner
from predarena.signers.registry import SignerSet

from ..models import CancelResult, OrderKind, OrderRequest, OrderResult, OrderStatus, Side, TimeInForce, Venue, prefixed_order_id

logger = logging.getLogger(__name__)

TOKEN_ID_RE = re.compile(r"^\d{50,}$")

# Sells are capped at this share of visible bid depth so a fill-or-kill order
# is not killed by depth that disappears between query and match.
SELL_DEPTH_FRACTION = Decimal("0.8")
MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("0.99")
DEFAULT_TICK = Decimal("0.01")


@dataclass(frozen=True)
class BookLevel:
    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class OrderBook:
    token_id: str
    bids: list[BookLevel] = field(default_factory=list)  # best (highest) first
    asks: list[BookLevel] = field(default_factory=list)  # best (lowest) first
    tick_size: Decimal = DEFAULT_TICK

    @property
    def bid_depth(self) -> Decimal:
        return sum((lvl.size for lvl in self.bids), ZERO)

    @property
    def ask_depth(self) -> Decimal:
        return sum((lvl.size for lvl in self.asks), ZERO)


def is_orderbook_token_id(instrument_id: str) -> bool:
    return bool(TOKEN_ID_RE.match(instrument_id))


class OrderBookClient(Protocol):
    async def get_order_book(self, token_id: str) -> OrderBook:
        ...

    async def post_order(self, *, token_id: str, side: Side, price: Decimal, size: Decimal, order_type: str) -> dict[str, Any]:
        ...

    async def cancel(self, order_id: str) -> dict[str, Any]:
        ...

    async def get_order(self, order_id: str) -> dict[str, Any]:
        ...


class ClobOrderBookClient:
    """OrderBookClient backed by py-clob-client. Its calls are blocking, so they run in a worker thread."""

    def __init__(self, *, host: str, chain_id: int, signer: EvmSigner, funder: Optional[str] = None) -> None:
        from py_clob_client.client import ClobClient

        self._client = ClobClient(host, key=signer.private_key, chain_id=chain_id, funder=funder)
        self._creds_ready = False

    def _ensure_creds(self) -> None:
        if not self._creds_ready:
            self._client.set_api_creds(self._client.create_or_derive_api_creds())
            self._creds_ready = True

    def _book(self, token_id: str) -> OrderBook:
        summary = self._client.get_order_book(token_id)
        bids = sorted(
            (BookLevel(to_decimal(o.price), to_decimal(o.size)) for o in summary.bids or []),
            key=lambda lvl: lvl.price,
            reverse=True,
        )
        asks = sorted((BookLevel(to_decimal(o.price), to_decimal(o.size)) for o in summary.asks or []), key=lambda lvl: lvl.price)
        tick = to_decimal(getattr(summary, "tick_size", None) or DEFAULT_TICK)
        return OrderBook(token_id=token_id, bids=bids, asks=asks, tick_size=tick)

    def _post(self, token_id: str, side: Side, price: Decimal, size: Decimal, order_type: str) -> dict[str, Any]:
        from py_clob_client.clob_types import OrderArgs, OrderType
        from py_clob_client.order_builder.constants import BUY, SELL

        self._ensure_creds()
        args = OrderArgs(token_id=token_id, price=float(price), size=float(size), side=BUY if side is Side.BUY else SELL)
        signed = self._client.create_order(args)
        return self._client.post_order(signed, getattr(OrderType, order_type))

    def _cancel(self, order_id: str) -> dict[str, Any]:
        self._ensure_creds()
        return self._client.cancel(order_id)

    def _get_order(self, order_id: str) -> dict[str, Any]:
        self._ensure_creds()
        return self._client.get_order(order_id)

    async def get_order_book(self, token_id: str) -> OrderBook:
        return await asyncio.to_thread(self._book, token_id)

    async def post_order(self, *, token_id: str, side: Side, price: Decimal, size: Decimal, order_type: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._post, token_id, side, price, size, order_type)

    async def cancel(self, order_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._cancel, order_id)

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._get_order, order_id)


def marketable_price(book: OrderBook, side: Side, size: Decimal, slippage_bps: int) -> Optional[Decimal]:
    """Worst price needed to fill `size` from the book, widened by the slippage tolerance."""

    levels = book.asks if side is Side.BUY else book.bids
    if not levels:
        return None
    remaining = size
    worst = levels[0].price
    for lvl in levels:
        worst = lvl.price
        remaining -= lvl.size
        if remaining <= ZERO:
            break

    slip = Decimal(slippage_bps) / Decimal(10_000)
    tick = book.tick_size or DEFAULT_TICK
    if side is Side.BUY:
        price = (worst * (1 + slip) / tick).to_integral_value(rounding=ROUND_CEILING) * tick
        return min(price, MAX_PRICE)
    price = (worst * (1 - slip) / tick).to_integral_value(rounding=ROUND_FLOOR) * tick
    return max(price, MIN_PRICE)


def _map_post_status(raw: str, kind: OrderKind) -> OrderStatus:
    raw = (raw or "").upper()
    if raw == "MATCHED":
        return OrderStatus.FILLED
    if raw == "LIVE" and kind is OrderKind.LIMIT:
        return OrderStatus.OPEN
    return OrderStatus.PARTIAL


class OrderBookVenueExecutor:
    venue = Venue.POLYMARKET

    def __init__(self, client_factory: Callable[[EvmSigner], OrderBookClient]) -> None:
        self._client_factory = client_factory
        self._clients: dict[str, OrderBookClient] = {}

    def _client(self, signer: EvmSigner) -> OrderBookClient:
        client = self._clients.get(signer.address)
        if client is None:
            client = self._client_factory(signer)
            self._clients[signer.address] = client
        return client

    async def _sized(self, client: OrderBookClient, request: OrderRequest) -> tuple[Decimal, Optional[OrderBook], Optional[str]]:
        """Apply the depth cap and integer rounding; returns (size, book, error)."""

        book: Optional[OrderBook] = None
        size = request.quantity
        if request.side is Side.SELL:
            try:
                book = await client.get_order_book(request.instrument_id)
            except Exception as e:
                logger.warning("orderbook_depth_query_failed", extra={"token_id": request.instrument_id, "error": str(e)})
            else:
                max_sellable = book.bid_depth * SELL_DEPTH_FRACTION
                if size > max_sellable:
                    logger.info(f"sell size {size} capped to 80% of bid depth ({max_sellable})")
                    size = max_sellable
            size = round_units_down(size)
            if size < 1:
                return size, book, "insufficient liquidity: sell size below one unit after depth cap"
        else:
            size = round_units_up(size)
        return size, book, None

    async def place_order(self, request: OrderRequest, signers: SignerSet) -> OrderResult:
        if not is_orderbook_token_id(request.instrument_id):
            return OrderResult.failed(self.venue, f"invalid token id: {request.instrument_id[:16]}")
        if signers.evm is None:
            return OrderResult.failed(self.venue, "no polygon signer available")
        if request.kind is OrderKind.LIMIT and request.time_in_force is not TimeInForce.GTC:
            return OrderResult.failed(
                self.venue,
                f"limit orders only support GTC; use a market order for {request.time_in_force.value} behavior",
            )

        client = self._client(signers.evm)
        try:
            size, book, error = await self._sized(client, request)
            if error:
                return OrderResult.failed(self.venue, error)

            if request.kind is OrderKind.MARKET:
                if book is None:
                    book = await client.get_order_book(request.instrument_id)
                price = marketable_price(book, request.side, size, request.slippage_bps)
                if price is None:
                    return OrderResult.failed(self.venue, "insufficient liquidity: empty book")
                order_type = "FOK"
            else:
                price = request.limit_price  # type: ignore[assignment]
                order_type = "GTC"
        except Exception as e:
            return OrderResult.failed(self.venue, f"order preparation failed: {e}")

        try:
            resp = await client.post_order(
                token_id=request.instrument_id, side=request.side, price=price, size=size, order_type=order_type
            )
        except Exception as e:
            # Mechanical failure: report failure, do not attempt retries here
            # to avoid duplicate submission.
            return OrderResult.failed(self.venue, f"submission failed: {e}")

        order_id = prefixed_order_id(self.venue, str(resp.get("orderID") or ""))
        if resp.get("success") is False or resp.get("errorMsg"):
            return OrderResult.failed(self.venue, resp.get("errorMsg") or "order rejected", order_id=order_id)

        taking = to_decimal(resp.get("takingAmount") or "0")
        making = to_decimal(resp.get("makingAmount") or "0")
        # BUY: we take tokens and make USDC. SELL: the reverse.
        filled, total = (taking, making) if request.side is Side.BUY else (making, taking)
        status = _map_post_status(resp.get("status", ""), request.kind)
        if request.kind is OrderKind.LIMIT and filled > ZERO and total == ZERO:
            total = filled * price
        avg = total / filled if filled > ZERO else ZERO
        return OrderResult(
            order_id=order_id,
            venue=self.venue,
            status=status,
            filled_quantity=filled,
            avg_price=avg,
            total_cost=filled * avg,
        )

    async def cancel_order(self, raw_order_id: str, signers: SignerSet) -> CancelResult:
        order_id = prefixed_order_id(self.venue, raw_order_id)
        if signers.evm is None:
            return CancelResult(success=False, order_id=order_id, venue=self.venue, error="no polygon signer available")
        try:
            resp = await self._client(signers.evm).cancel(raw_order_id)
        except Exception as e:
            return CancelResult(success=False, order_id=order_id, venue=self.venue, error=str(e))
        not_canceled = resp.get("not_canceled") or {}
        if raw_order_id in not_canceled:
            return CancelResult(success=False, order_id=order_id, venue=self.venue, error=str(not_canceled[raw_order_id]))
        return CancelResult(success=True, order_id=order_id, venue=self.venue)

    async def get_order_status(self, raw_order_id: str, signers: SignerSet) -> OrderResult:
        order_id = prefixed_order_id(self.venue, raw_order_id)
        if signers.evm is None:
            return OrderResult.failed(self.venue, "no polygon signer available", order_id=order_id)
        order = await self._client(signers.evm).get_order(raw_order_id)
        raw_status = str(order.get("status", "")).upper()
        matched = to_decimal(order.get("size_matched") or "0")
        original = to_decimal(order.get("original_size") or "0")
        price = to_decimal(order.get("price") or "0")

        if raw_status == "MATCHED" or (original > ZERO and matched >= original):
            status, error = OrderStatus.FILLED, None
        elif raw_status in ("CANCELED", "CANCELLED"):
            if matched == ZERO:
                return OrderResult.failed(self.venue, "order cancelled", order_id=order_id)
            status, error = OrderStatus.PARTIAL, "order cancelled"
        elif matched > ZERO:
            status, error = OrderStatus.PARTIAL, None
        else:
            status, error = OrderStatus.OPEN, None
        return OrderResult(
            order_id=order_id,
            venue=self.venue,
            status=status,
            filled_quantity=matched,
            avg_price=price if matched > ZERO else ZERO,
            total_cost=matched * price,
            error=error,
        )
