from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector

from predarena.bridge.deposit import DepositAddressClient
from predarena.bridge.models import BridgeError
from predarena.bridge.wormhole import (
    LOG_MESSAGE_PUBLISHED,
    WORMHOLE_CHAIN_POLYGON,
    WORMHOLE_CHAIN_SOLANA,
    WormholeClient,
    WormholeMessageId,
    emitter_address,
    parse_message_id,
)
from predarena.chains.polygon_rpc import PolygonRpcClient
from predarena.settlement.monitor import PollState

from tests.fakes import FakeSolana, JsonRpcHttp, make_signers, unsigned_tx

POLYGON_USDC = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
TOKEN_BRIDGE = "0x5a58505a96d1dbf8df91cb21b54419fc36e93fde"
CORE_BRIDGE = "0x7a4b5a56256163f07b2c80a7ca55abe66c4ec4d7"
BRIDGE_EMITTER = "0000000000000000000000005a58505a96d1dbf8df91cb21b54419fc36e93fde"


def _published(sequence: int, *, address: str = CORE_BRIDGE, topic: str = LOG_MESSAGE_PUBLISHED) -> dict:
    data = encode(["uint64", "uint32", "bytes", "uint8"], [sequence, 7, b"transfer-payload", 1])
    return {"address": address, "topics": [topic, "0x" + BRIDGE_EMITTER], "data": "0x" + data.hex()}


def _receipt(*logs: dict) -> dict:
    return {"status": "0x1", "logs": list(logs)}


class ScanHttp:
    """Wormholescan VAA lookups and the redeem-transaction builder."""

    def __init__(self, *, vaa_status: int = 200, vaa: object = "AQAAAAMNAGVhYQ==", transactions: object = ()) -> None:
        self.vaa_status = vaa_status
        self.vaa = vaa
        self.transactions = list(transactions)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.startswith("/api/v1/vaas/"):
            if self.vaa_status != 200:
                return httpx.Response(self.vaa_status)
            return httpx.Response(200, json={"data": {"vaa": self.vaa} if self.vaa is not None else {}})
        if request.url.path == "/build":
            return httpx.Response(200, json={"transactions": self.transactions})
        return httpx.Response(404)


def _client(rpc_results: dict, scan: ScanHttp) -> tuple[WormholeClient, JsonRpcHttp]:
    rpc = JsonRpcHttp(rpc_results)
    polygon = PolygonRpcClient(
        "https://polygon.test",
        usdc_address=POLYGON_USDC,
        client=httpx.AsyncClient(transport=httpx.MockTransport(rpc)),
    )
    wormhole = WormholeClient(
        polygon,
        token_bridge=TOKEN_BRIDGE,
        core_bridge=CORE_BRIDGE,
        api_url="https://scan.test/",
        redeem_builder_url="https://redeem.test/build",
        client=httpx.AsyncClient(transport=httpx.MockTransport(scan)),
    )
    return wormhole, rpc


def test_emitter_address_is_left_padded_lowercase_hex() -> None:
    assert emitter_address("0x5a58505a96D1dbf8dF91cB21B54419FC36e93fdE") == BRIDGE_EMITTER
    assert len(BRIDGE_EMITTER) == 64


def test_sequence_is_read_from_the_core_bridge_log() -> None:
    receipt = _receipt(
        {"address": POLYGON_USDC, "topics": ["0x" + "dd" * 32], "data": "0x"},
        _published(999, topic="0x" + "ab" * 32),
        _published(999, address="0x" + "11" * 20),
        _published(1_234_567, address=CORE_BRIDGE.upper().replace("0X", "0x")),
    )

    message = parse_message_id(receipt, core_bridge=CORE_BRIDGE, token_bridge=TOKEN_BRIDGE)

    assert message == WormholeMessageId(WORMHOLE_CHAIN_POLYGON, BRIDGE_EMITTER, 1_234_567)
    assert message.path == f"5/{BRIDGE_EMITTER}/1234567"


def test_sequence_uses_the_full_first_word() -> None:
    # Sequences above 2**32 must survive decoding.
    receipt = _receipt(_published(2**40 + 3))

    assert parse_message_id(receipt, core_bridge=CORE_BRIDGE, token_bridge=TOKEN_BRIDGE).sequence == 2**40 + 3


@pytest.mark.parametrize("receipt", [_receipt(), {"status": "0x1"}, _receipt(_published(1, topic="0x" + "00" * 32))])
def test_receipt_without_published_message_is_a_bridge_error(receipt) -> None:
    with pytest.raises(BridgeError, match="no wormhole message"):
        parse_message_id(receipt, core_bridge=CORE_BRIDGE, token_bridge=TOKEN_BRIDGE)


@pytest.mark.asyncio
async def test_message_id_reads_the_source_receipt() -> None:
    wormhole, rpc = _client({"eth_getTransactionReceipt": _receipt(_published(42))}, ScanHttp())

    message = await wormhole.message_id("0xsource")

    assert message.sequence == 42
    assert rpc.calls == [("eth_getTransactionReceipt", ["0xsource"])]


@pytest.mark.asyncio
async def test_message_id_of_unmined_transaction_is_a_bridge_error() -> None:
    wormhole, _ = _client({"eth_getTransactionReceipt": None}, ScanHttp())

    with pytest.raises(BridgeError, match="not yet mined"):
        await wormhole.message_id("0xsource")


@pytest.mark.asyncio
async def test_signed_vaa_is_fetched_by_message_path() -> None:
    scan = ScanHttp()
    wormhole, _ = _client({}, scan)

    vaa = await wormhole.fetch_vaa(WormholeMessageId(WORMHOLE_CHAIN_POLYGON, BRIDGE_EMITTER, 42))

    assert vaa == "AQAAAAMNAGVhYQ=="
    (request,) = scan.requests
    assert str(request.url) == f"https://scan.test/api/v1/vaas/5/{BRIDGE_EMITTER}/42"


@pytest.mark.asyncio
@pytest.mark.parametrize("scan", [ScanHttp(vaa_status=404), ScanHttp(vaa=None), ScanHttp(vaa="")])
async def test_unattested_vaa_reads_as_none(scan) -> None:
    wormhole, _ = _client({}, scan)

    assert await wormhole.fetch_vaa(WormholeMessageId(WORMHOLE_CHAIN_POLYGON, BRIDGE_EMITTER, 42)) is None


@pytest.mark.asyncio
async def test_scan_server_error_propagates() -> None:
    wormhole, _ = _client({}, ScanHttp(vaa_status=500))

    with pytest.raises(httpx.HTTPStatusError):
        await wormhole.fetch_vaa(WormholeMessageId(WORMHOLE_CHAIN_POLYGON, BRIDGE_EMITTER, 42))


@pytest.mark.asyncio
async def test_redeem_transactions_are_signed_and_submitted_in_order() -> None:
    signers = make_signers()
    txs = [unsigned_tx(signers.svm), unsigned_tx(signers.svm)]
    scan = ScanHttp(transactions=txs)
    wormhole, _ = _client({}, scan)
    solana = FakeSolana()

    signature = await wormhole.complete_transfer(signers.svm, "VAA", solana)

    assert signature == "sent2"
    assert len(solana.sent) == 2
    assert json.loads(scan.requests[0].content) == {"vaa": "VAA", "payer": signers.svm.address}


@pytest.mark.asyncio
async def test_unconfirmed_redeem_transaction_is_a_bridge_error() -> None:
    signers = make_signers()
    wormhole, _ = _client({}, ScanHttp(transactions=[unsigned_tx(signers.svm), unsigned_tx(signers.svm)]))
    solana = FakeSolana()
    solana.confirmation = PollState.TIMEOUT

    with pytest.raises(BridgeError, match="sent1 not confirmed"):
        await wormhole.complete_transfer(signers.svm, "VAA", solana)
    assert len(solana.sent) == 1


@pytest.mark.asyncio
async def test_empty_redeem_build_is_a_bridge_error() -> None:
    wormhole, _ = _client({}, ScanHttp(transactions=[]))

    with pytest.raises(BridgeError, match="no transactions"):
        await wormhole.redeem_transactions("VAA", "Payer111")


@pytest.mark.asyncio
async def test_transfer_locks_usdc_for_the_solana_owner() -> None:
    signers = make_signers()
    # Allowance already covers the amount, so no approval is sent.
    wormhole, rpc = _client(
        {
            "eth_call": "0x" + "ff" * 32,
            "eth_getTransactionCount": "0x1",
            "eth_gasPrice": hex(30 * 10**9),
            "eth_estimateGas": hex(120_000),
            "eth_sendRawTransaction": "0xlock",
        },
        ScanHttp(),
    )

    tx = await wormhole.initiate_transfer(signers.evm, Decimal("25"), signers.svm.address)

    assert tx == "0xlock"
    assert rpc.methods() == ["eth_call", "eth_getTransactionCount", "eth_gasPrice", "eth_estimateGas", "eth_sendRawTransaction"]
    estimate = rpc.calls[3][1][0]
    assert estimate["to"].lower() == TOKEN_BRIDGE
    selector = function_signature_to_4byte_selector("transferTokens(address,uint256,uint16,bytes32,uint256,uint32)")
    data = bytes.fromhex(estimate["data"].removeprefix("0x"))
    assert data[:4] == selector
    token, amount, chain, recipient, fee, _nonce = decode(
        ["address", "uint256", "uint16", "bytes32", "uint256", "uint32"], data[4:]
    )
    assert token.lower() == POLYGON_USDC
    assert amount == 25_000_000
    assert chain == WORMHOLE_CHAIN_SOLANA
    assert recipient == wormhole.recipient_for(signers.svm.address)
    assert fee == 0


@pytest.mark.asyncio
async def test_deposit_address_is_requested_for_the_polygon_wallet() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"address": {"svm": "DepositSvm111", "evm": "0xdeposit"}})

    client = DepositAddressClient("https://bridge.test/", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    addresses = await client.get_deposit_addresses("0xowner")

    assert addresses == {"svm": "DepositSvm111", "evm": "0xdeposit"}
    (request,) = seen
    assert request.method == "POST"
    assert str(request.url) == "https://bridge.test/deposit"
    assert json.loads(request.content) == {"address": "0xowner"}


@pytest.mark.asyncio
async def test_deposit_address_missing_or_failing() -> None:
    empty = DepositAddressClient(
        "https://bridge.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))),
    )
    assert await empty.get_deposit_addresses("0xowner") == {}

    failing = DepositAddressClient(
        "https://bridge.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502))),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await failing.get_deposit_addresses("0xowner")
