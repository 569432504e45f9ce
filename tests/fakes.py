"""In-process stand-ins for venues, chains and bridges used across the test suite."""

from __future__ import annotations

import base64
import json
from decimal import Decimal
from typing import Any, Optional

import httpx
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from predarena.execution.models import CancelResult, OrderRequest, OrderResult, OrderStatus, Side, Venue
from predarena.execution.venues.orderbook import BookLevel, OrderBook
from predarena.settlement.monitor import PollOutcome, PollState
from predarena.signers.evm import EvmSigner
from predarena.signers.registry import SignerSet, WalletRegistry
from predarena.signers.solana import SolanaSigner

EVM_TEST_KEY = "0x" + "4c" * 32
TOKEN_ID = "71321045679252212594626385532706912750332728571942532289631379312455583992563"


async def no_sleep(_seconds: float) -> None:
    return None


def make_signers(series: str = "TEST", *, svm: bool = True, evm: bool = True) -> SignerSet:
    return SignerSet(
        series=series,
        svm=SolanaSigner(Keypair()) if svm else None,
        evm=EvmSigner(EVM_TEST_KEY) if evm else None,
    )


def make_registry(agent_id: str = "test/agent-1") -> tuple[WalletRegistry, SignerSet]:
    signers = make_signers()
    return WalletRegistry({"TEST": signers}, series_by_agent={agent_id: "TEST"}), signers


class RecordingExecutor:
    """Venue executor that fills every order at a fixed price and counts submissions."""

    def __init__(self, venue: Venue, *, price: Decimal = Decimal("0.5"), status: OrderStatus = OrderStatus.FILLED) -> None:
        self.venue = venue
        self.price = price
        self.status = status
        self.submitted: list[OrderRequest] = []
        self.status_queue: list[OrderResult] = []
        self.status_calls = 0
        self.redeemed: list[tuple[str, str, Decimal]] = []

    async def place_order(self, request: OrderRequest, signers: SignerSet) -> OrderResult:
        self.submitted.append(request)
        n = len(self.submitted)
        if self.status is OrderStatus.OPEN:
            return OrderResult(order_id=f"ord-{n}", venue=self.venue, status=OrderStatus.OPEN)
        return OrderResult(
            order_id=f"ord-{n}",
            venue=self.venue,
            status=self.status,
            filled_quantity=request.quantity,
            avg_price=self.price,
            total_cost=request.quantity * self.price,
        )

    async def redeem_position(self, instrument_id: str, outcome, quantity: Decimal, signers: SignerSet) -> OrderResult:
        self.redeemed.append((instrument_id, outcome.value, quantity))
        return OrderResult(
            order_id=f"redeem-{len(self.redeemed)}",
            venue=self.venue,
            status=OrderStatus.FILLED,
            filled_quantity=quantity,
            avg_price=Decimal(1),
            total_cost=quantity,
        )

    async def cancel_order(self, raw_order_id: str, signers: SignerSet) -> CancelResult:
        return CancelResult(success=True, order_id=f"{self.venue.value}:{raw_order_id}", venue=self.venue)

    async def get_order_status(self, raw_order_id: str, signers: SignerSet) -> OrderResult:
        self.status_calls += 1
        if self.status_queue:
            return self.status_queue.pop(0)
        return OrderResult(order_id=raw_order_id, venue=self.venue, status=OrderStatus.OPEN)


class FakeOrderBookClient:
    """Matches fill-or-kill orders against a static book at the resting prices."""

    def __init__(self, book: OrderBook, *, fail_book: bool = False) -> None:
        self.book = book
        self.fail_book = fail_book
        self.posted: list[dict[str, Any]] = []
        self.orders: dict[str, dict[str, Any]] = {}
        self.cancelled: list[str] = []

    async def get_order_book(self, token_id: str) -> OrderBook:
        if self.fail_book:
            raise RuntimeError("book unavailable")
        return self.book

    async def post_order(self, *, token_id: str, side: Side, price: Decimal, size: Decimal, order_type: str) -> dict[str, Any]:
        self.posted.append({"token_id": token_id, "side": side, "price": price, "size": size, "order_type": order_type})
        order_id = f"0xorder{len(self.posted)}"
        if order_type == "GTC":
            return {"success": True, "orderID": order_id, "status": "LIVE", "takingAmount": "", "makingAmount": ""}

        levels = self.book.asks if side is Side.BUY else self.book.bids
        remaining, cost = size, Decimal(0)
        for lvl in levels:
            crosses = lvl.price <= price if side is Side.BUY else lvl.price >= price
            if not crosses or remaining <= 0:
                break
            take = min(lvl.size, remaining)
            cost += take * lvl.price
            remaining -= take
        if remaining > 0:
            return {"success": False, "errorMsg": "order couldn't be fully filled, FOK orders are fully filled or killed"}
        if side is Side.BUY:
            return {"success": True, "orderID": order_id, "status": "matched", "takingAmount": str(size), "makingAmount": str(cost)}
        return {"success": True, "orderID": order_id, "status": "matched", "takingAmount": str(cost), "makingAmount": str(size)}

    async def cancel(self, order_id: str) -> dict[str, Any]:
        self.cancelled.append(order_id)
        return {"canceled": [order_id], "not_canceled": {}}

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return self.orders[order_id]


def book(*, bids: list[tuple[str, str]] = (), asks: list[tuple[str, str]] = ()) -> OrderBook:
    return OrderBook(
        token_id=TOKEN_ID,
        bids=[BookLevel(Decimal(p), Decimal(s)) for p, s in bids],
        asks=[BookLevel(Decimal(p), Decimal(s)) for p, s in asks],
    )


class FakeSolana:
    def __init__(self, balances: Optional[dict[str, Decimal]] = None) -> None:
        self.balances = dict(balances or {})
        self.transfers: list[tuple[str, Decimal]] = []
        self.confirmation = PollState.SUCCEEDED
        self.sent: list[str] = []

    async def get_usdc_balance(self, owner: str) -> Decimal:
        return self.balances.get(owner, Decimal(0))

    async def transfer_usdc(self, signer: SolanaSigner, destination_owner: str, amount: Decimal) -> str:
        self.transfers.append((destination_owner, amount))
        self.balances[signer.address] = self.balances.get(signer.address, Decimal(0)) - amount
        return f"sig{len(self.transfers)}"

    async def send_transaction(self, signed_tx_base64: str) -> str:
        self.sent.append(signed_tx_base64)
        return f"sent{len(self.sent)}"

    async def wait_for_confirmation(self, signature: str, *, policy=None, sleep=None) -> PollOutcome:
        return PollOutcome(state=self.confirmation, value=signature, attempts=1)


class FakePolygon:
    """Polygon balances; `credits` is the sequence of balances later reads return."""

    def __init__(self, balances: Optional[dict[str, Decimal]] = None) -> None:
        self.balances = dict(balances or {})
        self.credits: dict[str, list[Decimal]] = {}
        self.receipt_state = PollState.SUCCEEDED

    async def get_usdc_balance(self, owner: str) -> Decimal:
        queue = self.credits.get(owner)
        if queue:
            self.balances[owner] = queue.pop(0)
        return self.balances.get(owner, Decimal(0))

    async def wait_for_receipt(self, tx_hash: str, *, policy=None, sleep=None) -> PollOutcome:
        return PollOutcome(state=self.receipt_state, value={"status": "0x1"}, attempts=1)


class FakeDepositAddresses:
    def __init__(self, svm_address: str = "DepositSvmAddress1111111111111111111111111111") -> None:
        self.svm_address = svm_address

    async def get_deposit_addresses(self, polygon_address: str) -> dict[str, Any]:
        return {"evm": polygon_address, "svm": self.svm_address}


class FakeWormhole:
    def __init__(self, *, vaa_after: Optional[int] = 1, redeem_error: Optional[Exception] = None) -> None:
        self.vaa_after = vaa_after
        self.redeem_error = redeem_error
        self.fetches = 0
        self.initiated: list[Decimal] = []

    async def initiate_transfer(self, evm_signer: EvmSigner, amount: Decimal, solana_owner: str) -> str:
        self.initiated.append(amount)
        return "0xsourcetx"

    async def message_id(self, source_tx: str) -> str:
        return f"5/emitter/{source_tx}"

    async def fetch_vaa(self, message) -> Optional[str]:
        self.fetches += 1
        if self.vaa_after is not None and self.fetches >= self.vaa_after:
            return "AQAAAAMNAFakeVaa=="
        return None

    async def complete_transfer(self, svm_signer: SolanaSigner, vaa: str, solana) -> str:
        if self.redeem_error is not None:
            raise self.redeem_error
        return "redeemsig"


def unsigned_tx(payer: SolanaSigner) -> str:
    """A v0 transaction that needs `payer`'s signature, as a venue quote API would return it."""

    msg = MessageV0.try_compile(payer.pubkey, [], [], Hash.default())
    tx = VersionedTransaction.populate(msg, [Signature.default()])
    return base64.b64encode(bytes(tx)).decode("ascii")


class StreamIdle(Exception):
    """Raised by FakeStreamClient where a real blocking read would wait forever."""


class FakeStreamClient:
    """In-process subset of the async Redis client used by RedisStreamBus.

    Models consumer groups with a per-group pending list: entries move to the
    reading consumer's pending list on delivery and leave it on XACK.
    """

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.groups: dict[tuple[str, str], dict[str, Any]] = {}
        self.kv: dict[str, Any] = {}
        self._seq = 0

    async def xgroup_create(self, name: str, groupname: str, id: str = "$", mkstream: bool = False) -> bool:
        if (name, groupname) in self.groups:
            raise RuntimeError("BUSYGROUP Consumer Group name already exists")
        entries = self.streams.setdefault(name, [])
        self.groups[(name, groupname)] = {"delivered": len(entries) if id == "$" else 0, "pending": {}}
        return True

    async def xadd(self, name: str, fields: dict[str, str]) -> str:
        self._seq += 1
        msg_id = f"{self._seq}-0"
        self.streams.setdefault(name, []).append((msg_id, dict(fields)))
        return msg_id

    def _fields(self, stream: str, msg_id: str) -> Optional[dict[str, str]]:
        for mid, fields in self.streams.get(stream, []):
            if mid == msg_id:
                return fields
        return None

    async def xreadgroup(self, groupname: str, consumername: str, streams: dict[str, str], count=None, block=None):
        out = []
        for stream, start in streams.items():
            group = self.groups[(stream, groupname)]
            if start == ">":
                entries = self.streams.get(stream, [])
                fresh = entries[group["delivered"] :][: count or None]
                group["delivered"] += len(fresh)
                for msg_id, _ in fresh:
                    group["pending"][msg_id] = consumername
                items = list(fresh)
            else:
                mine = [m for m, c in group["pending"].items() if c == consumername][: count or None]
                items = [(m, self._fields(stream, m)) for m in mine]
            if items:
                out.append([stream, items])
        if not out and block is not None:
            raise StreamIdle()
        return out

    async def xautoclaim(self, name: str, groupname: str, consumername: str, min_idle_time: int = 0, start_id="0-0", count=None):
        group = self.groups[(name, groupname)]
        others = [m for m, c in group["pending"].items() if c != consumername][: count or None]
        for msg_id in others:
            group["pending"][msg_id] = consumername
        return ["0-0", [(m, self._fields(name, m)) for m in others], []]

    async def xack(self, name: str, groupname: str, *ids: str) -> int:
        pending = self.groups[(name, groupname)]["pending"]
        return sum(1 for i in ids if pending.pop(i, None) is not None)

    def pending(self, name: str, groupname: str) -> dict[str, str]:
        return dict(self.groups[(name, groupname)]["pending"])

    async def exists(self, key: str) -> int:
        return int(key in self.kv)

    async def set(self, key: str, value: str, ex=None, nx: bool = False):
        if nx and key in self.kv:
            return None
        self.kv[key] = value
        return True

    async def incr(self, key: str) -> int:
        self.kv[key] = int(self.kv.get(key, 0)) + 1
        return self.kv[key]

    async def expire(self, key: str, seconds: int) -> bool:
        return key in self.kv

    async def aclose(self) -> None:
        return None


class JsonRpcHttp:
    """httpx handler answering JSON-RPC posts from a method -> result table.

    A list value is consumed one result per call; an unknown method gets a
    JSON-RPC error object.
    """

    def __init__(self, results: dict) -> None:
        self.results = results
        self.calls: list[tuple[str, list]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.calls.append((method, body["params"]))
        if method not in self.results:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "method not found"}})
        result = self.results[method]
        if isinstance(result, list):
            result = result.pop(0)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]
