from __future__ import annotations

import itertools
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx
from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from predarena.core.units import USDC_DECIMALS, from_base_units
from predarena.settlement.monitor import SOURCE_FINALITY_POLICY, BackoffPolicy, Check, PollOutcome, poll_for_terminal_state
from predarena.signers.evm import EvmSigner

logger = logging.getLogger(__name__)

_BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")
_APPROVE = function_signature_to_4byte_selector("approve(address,uint256)")
_ALLOWANCE = function_signature_to_4byte_selector("allowance(address,address)")

# Gas estimates are padded so a slightly busier block does not revert the call.
GAS_HEADROOM = Decimal("1.2")


class PolygonRpcError(RuntimeError):
    pass


def encode_call(selector: bytes, types: list[str], args: list[Any]) -> str:
    return "0x" + (selector + encode(types, args)).hex()


def decode_uint(raw: Optional[str]) -> int:
    # Calls against an address without code return "0x".
    if not raw or raw == "0x":
        return 0
    return int(raw, 16)


class PolygonRpcClient:
    def __init__(
        self,
        rpc_url: str,
        *,
        usdc_address: str,
        chain_id: int = 137,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._rpc_url = rpc_url
        self.usdc_address = to_checksum_address(usdc_address)
        self.chain_id = chain_id
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = await self._client.post(self._rpc_url, json=payload)
        response.raise_for_status()
        result = response.json()
        if "error" in result:
            raise PolygonRpcError(f"{method} failed: {result['error']}")
        return result.get("result")

    async def eth_call(self, to: str, data: str) -> str:
        return await self._call("eth_call", [{"to": to, "data": data}, "latest"])

    async def get_erc20_balance(self, token: str, owner: str) -> Decimal:
        data = encode_call(_BALANCE_OF, ["address"], [to_checksum_address(owner)])
        raw = await self.eth_call(token, data)
        return from_base_units(decode_uint(raw), USDC_DECIMALS)

    async def get_usdc_balance(self, owner: str) -> Decimal:
        return await self.get_erc20_balance(self.usdc_address, owner)

    async def get_allowance(self, token: str, owner: str, spender: str) -> int:
        data = encode_call(_ALLOWANCE, ["address", "address"], [to_checksum_address(owner), to_checksum_address(spender)])
        return decode_uint(await self.eth_call(token, data))

    async def send_contract_call(self, signer: EvmSigner, *, to: str, data: str) -> str:
        """Build, sign and broadcast one contract call; returns the tx hash. Never rebroadcast."""

        sender = signer.address
        nonce = int(await self._call("eth_getTransactionCount", [sender, "pending"]), 16)
        gas_price = int(await self._call("eth_gasPrice", []), 16)
        gas = int(await self._call("eth_estimateGas", [{"from": sender, "to": to, "data": data}]), 16)
        tx = {
            "to": to_checksum_address(to),
            "data": data,
            "value": 0,
            "nonce": nonce,
            "gas": int(Decimal(gas) * GAS_HEADROOM),
            "gasPrice": gas_price,
            "chainId": self.chain_id,
        }
        raw = signer.sign_transaction(tx)
        tx_hash = await self._call("eth_sendRawTransaction", [raw])
        logger.info(f"polygon tx submitted from {sender} to {to}: {tx_hash}")
        return tx_hash

    async def approve(self, signer: EvmSigner, *, token: str, spender: str, amount_base_units: int) -> Optional[str]:
        """Approve `spender` unless the current allowance already covers the amount."""

        current = await self.get_allowance(token, signer.address, spender)
        if current >= amount_base_units:
            return None
        data = encode_call(_APPROVE, ["address", "uint256"], [to_checksum_address(spender), amount_base_units])
        return await self.send_contract_call(signer, to=token, data=data)

    async def get_receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])

    async def check_receipt(self, tx_hash: str) -> Check[dict]:
        receipt = await self.get_receipt(tx_hash)
        if receipt is None:
            return Check.pending()
        if int(receipt.get("status", "0x0"), 16) != 1:
            return Check.failure(f"transaction reverted: {tx_hash}", receipt)
        return Check.success(receipt)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        policy: BackoffPolicy = SOURCE_FINALITY_POLICY,
        sleep=None,
    ) -> PollOutcome[dict]:
        kwargs = {"sleep": sleep} if sleep is not None else {}
        return await poll_for_terminal_state(tx_hash, lambda: self.check_receipt(tx_hash), policy, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
