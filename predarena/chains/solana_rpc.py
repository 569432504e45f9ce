from __future__ import annotations

import base64
import itertools
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx
from solders.hash import Hash
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from predarena.core.units import USDC_DECIMALS, ZERO, from_base_units, to_base_units
from predarena.settlement.monitor import SOURCE_FINALITY_POLICY, BackoffPolicy, Check, poll_for_terminal_state
from predarena.signers.solana import SolanaSigner

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


class SolanaRpcError(RuntimeError):
    pass


class SolanaRpcClient:
    """Minimal async JSON-RPC client for the calls the trading layer needs."""

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        *,
        usdc_mint: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._rpc_url = rpc_url
        self._usdc_mint = Pubkey.from_string(usdc_mint)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)

    @property
    def usdc_mint(self) -> str:
        return str(self._usdc_mint)

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = await self._client.post(self._rpc_url, json=payload)
        response.raise_for_status()
        result = response.json()
        if "error" in result:
            raise SolanaRpcError(f"{method} failed: {result['error']}")
        return result.get("result")

    async def get_token_balance(self, owner: str, mint: str) -> Decimal:
        result = await self._call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        total = ZERO
        for acct in (result or {}).get("value", []):
            info = acct["account"]["data"]["parsed"]["info"]["tokenAmount"]
            total += from_base_units(info["amount"], int(info["decimals"]))
        return total

    async def get_usdc_balance(self, owner: str) -> Decimal:
        return await self.get_token_balance(owner, self.usdc_mint)

    async def get_latest_blockhash(self) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": "confirmed"}])
        return result["value"]["blockhash"]

    async def account_exists(self, address: str) -> bool:
        result = await self._call("getAccountInfo", [address, {"encoding": "base64"}])
        return bool(result and result.get("value"))

    async def send_transaction(self, signed_tx_base64: str) -> str:
        """Submit once. The caller never retries; a lost submission is resolved by status polling."""

        return await self._call(
            "sendTransaction",
            [signed_tx_base64, {"encoding": "base64", "preflightCommitment": "confirmed"}],
        )

    async def get_signature_status(self, signature: str) -> Optional[dict[str, Any]]:
        result = await self._call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = (result or {}).get("value") or [None]
        return values[0]

    async def check_confirmed(self, signature: str) -> Check[str]:
        status = await self.get_signature_status(signature)
        if status is None:
            return Check.pending()
        if status.get("err"):
            return Check.failure(f"transaction failed: {status['err']}")
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return Check.success(signature)
        return Check.pending()

    async def wait_for_confirmation(
        self,
        signature: str,
        *,
        policy: BackoffPolicy = SOURCE_FINALITY_POLICY,
        sleep=None,
    ):
        kwargs = {"sleep": sleep} if sleep is not None else {}
        return await poll_for_terminal_state(signature, lambda: self.check_confirmed(signature), policy, **kwargs)

    async def transfer_usdc(self, signer: SolanaSigner, destination_owner: str, amount: Decimal) -> str:
        """SPL transfer of USDC to the owner's associated token account; returns the signature."""

        dest_owner = Pubkey.from_string(destination_owner)
        source_ata = get_associated_token_address(signer.pubkey, self._usdc_mint)
        dest_ata = get_associated_token_address(dest_owner, self._usdc_mint)

        instructions = []
        if not await self.account_exists(str(dest_ata)):
            instructions.append(create_associated_token_account(signer.pubkey, dest_owner, self._usdc_mint))
        instructions.append(
            transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source_ata,
                    mint=self._usdc_mint,
                    dest=dest_ata,
                    owner=signer.pubkey,
                    amount=to_base_units(amount, USDC_DECIMALS),
                    decimals=USDC_DECIMALS,
                )
            )
        )

        blockhash = Hash.from_string(await self.get_latest_blockhash())
        message = MessageV0.try_compile(signer.pubkey, instructions, [], blockhash)
        tx = VersionedTransaction(message, [signer.keypair])
        signature = await self.send_transaction(base64.b64encode(bytes(tx)).decode("ascii"))
        logger.info(f"usdc transfer {amount} -> {destination_owner} submitted: {signature}")
        return signature

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
