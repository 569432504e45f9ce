"""Wormhole token-bridge plumbing for Polygon -> Solana withdrawals.

Three pieces: lock USDC.e in the Polygon token bridge (two EVM transactions),
fetch the guardian-signed VAA from Wormholescan, and redeem the VAA on Solana.
Solana redemption instructions are assembled by a redeem-transaction builder
service; we only sign and submit what it returns.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from predarena.chains.polygon_rpc import PolygonRpcClient, encode_call
from predarena.core.units import USDC_DECIMALS, to_base_units
from predarena.signers.evm import EvmSigner
from predarena.signers.solana import SolanaSigner

from .models import BridgeError

logger = logging.getLogger(__name__)

WORMHOLE_CHAIN_SOLANA = 1
WORMHOLE_CHAIN_POLYGON = 5
SOLANA_TOKEN_BRIDGE_PROGRAM = Pubkey.from_string("wormDTUJ6AWPNvk59vGQbDvGJmqbDTdgWgAqcLBCgUb")

_TRANSFER_TOKENS = function_signature_to_4byte_selector("transferTokens(address,uint256,uint16,bytes32,uint256,uint32)")
LOG_MESSAGE_PUBLISHED = "0x" + keccak(text="LogMessagePublished(address,uint64,uint32,bytes,uint8)").hex().removeprefix("0x")


@dataclass(frozen=True)
class WormholeMessageId:
    emitter_chain: int
    emitter_address: str  # 32-byte hex, no 0x
    sequence: int

    @property
    def path(self) -> str:
        return f"{self.emitter_chain}/{self.emitter_address}/{self.sequence}"


def emitter_address(evm_address: str) -> str:
    return to_checksum_address(evm_address)[2:].lower().rjust(64, "0")


def wrapped_mint(origin_chain: int, origin_token: str) -> Pubkey:
    """Solana mint of the Wormhole-wrapped representation of an EVM token."""

    token_bytes = bytes.fromhex(emitter_address(origin_token))
    mint, _ = Pubkey.find_program_address(
        [b"wrapped", origin_chain.to_bytes(2, "big"), token_bytes], SOLANA_TOKEN_BRIDGE_PROGRAM
    )
    return mint


def parse_message_id(receipt: dict, *, core_bridge: str, token_bridge: str) -> WormholeMessageId:
    core = core_bridge.lower()
    for log in receipt.get("logs") or []:
        topics = log.get("topics") or []
        if str(log.get("address", "")).lower() != core or not topics or topics[0].lower() != LOG_MESSAGE_PUBLISHED:
            continue
        data = bytes.fromhex(str(log["data"]).removeprefix("0x"))
        sequence = int.from_bytes(data[0:32], "big")
        return WormholeMessageId(WORMHOLE_CHAIN_POLYGON, emitter_address(token_bridge), sequence)
    raise BridgeError("no wormhole message published in source transaction")


class WormholeClient:
    def __init__(
        self,
        polygon: PolygonRpcClient,
        *,
        token_bridge: str,
        core_bridge: str,
        api_url: str,
        redeem_builder_url: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._polygon = polygon
        self.token_bridge = to_checksum_address(token_bridge)
        self.core_bridge = to_checksum_address(core_bridge)
        self._api_url = api_url.rstrip("/")
        self._redeem_url = redeem_builder_url
        self._client = client or httpx.AsyncClient(timeout=60.0)

    def recipient_for(self, solana_owner: str) -> bytes:
        mint = wrapped_mint(WORMHOLE_CHAIN_POLYGON, self._polygon.usdc_address)
        return bytes(get_associated_token_address(Pubkey.from_string(solana_owner), mint))

    async def initiate_transfer(self, evm_signer: EvmSigner, amount: Decimal, solana_owner: str) -> str:
        """Approve + transferTokens on Polygon; returns the transferTokens tx hash."""

        units = to_base_units(amount, USDC_DECIMALS)
        approve_tx = await self._polygon.approve(
            evm_signer, token=self._polygon.usdc_address, spender=self.token_bridge, amount_base_units=units
        )
        if approve_tx is not None:
            approved = await self._polygon.wait_for_receipt(approve_tx)
            if not approved.succeeded:
                raise BridgeError(f"token bridge approval not confirmed: {approved.last_error or approved.state.value}")

        data = encode_call(
            _TRANSFER_TOKENS,
            ["address", "uint256", "uint16", "bytes32", "uint256", "uint32"],
            [self._polygon.usdc_address, units, WORMHOLE_CHAIN_SOLANA, self.recipient_for(solana_owner), 0, int(time.time()) % 2**32],
        )
        return await self._polygon.send_contract_call(evm_signer, to=self.token_bridge, data=data)

    async def message_id(self, source_tx: str) -> WormholeMessageId:
        receipt = await self._polygon.get_receipt(source_tx)
        if receipt is None:
            raise BridgeError(f"source transaction not yet mined: {source_tx}")
        return parse_message_id(receipt, core_bridge=self.core_bridge, token_bridge=self.token_bridge)

    async def fetch_vaa(self, message: WormholeMessageId) -> Optional[str]:
        """Signed VAA (base64) or None while guardians have not attested yet."""

        response = await self._client.get(f"{self._api_url}/api/v1/vaas/{message.path}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return (response.json().get("data") or {}).get("vaa") or None

    async def redeem_transactions(self, vaa: str, payer: str) -> list[str]:
        response = await self._client.post(self._redeem_url, json={"vaa": vaa, "payer": payer})
        response.raise_for_status()
        txs = response.json().get("transactions") or []
        if not txs:
            raise BridgeError("redeem builder returned no transactions")
        return list(txs)

    async def complete_transfer(self, svm_signer: SolanaSigner, vaa: str, solana) -> str:
        """Sign and submit each redeem transaction in order; returns the last signature."""

        signature = ""
        for tx in await self.redeem_transactions(vaa, svm_signer.address):
            signature = await solana.send_transaction(svm_signer.sign_transaction(tx))
            confirmed = await solana.wait_for_confirmation(signature)
            if not confirmed.succeeded:
                raise BridgeError(f"redeem transaction {signature} not confirmed: {confirmed.last_error or confirmed.state.value}")
        return signature

    async def aclose(self) -> None:
        await self._client.aclose()
