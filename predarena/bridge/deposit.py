"""Deposit pathway: Solana USDC -> Polygon USDC.e through the venue-operated bridge.

The venue issues a one-time Solana deposit address bound to the agent's Polygon
wallet. We send USDC there, wait for Solana finality, then watch the Polygon
balance. Credit is only observable as a balance change, so the target is the
starting balance plus 99% of the amount sent (the bridge keeps a small fee).
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from predarena.core.ids import new_event_id
from predarena.settlement.monitor import (
    DEPOSIT_CREDIT_POLICY,
    SOURCE_FINALITY_POLICY,
    BackoffPolicy,
    Check,
    PollState,
    poll_for_terminal_state,
)
from predarena.signers.solana import SolanaSigner

from .models import BridgeDirection, BridgeTransfer, TransferState

logger = logging.getLogger(__name__)

CREDIT_TOLERANCE = Decimal("0.99")
IN_TRANSIT_ERROR = "in transit, unconfirmed: destination credit not observed before timeout; funds may still arrive"


class DepositAddressClient:
    def __init__(self, api_url: str, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._url = api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def get_deposit_addresses(self, polygon_address: str) -> dict[str, Any]:
        response = await self._client.post(f"{self._url}/deposit", json={"address": polygon_address})
        response.raise_for_status()
        return response.json().get("address") or {}

    async def aclose(self) -> None:
        await self._client.aclose()


class DepositBridge:
    def __init__(
        self,
        *,
        solana,
        polygon,
        addresses: DepositAddressClient,
        min_amount: Decimal = Decimal(0),
        finality_policy: BackoffPolicy = SOURCE_FINALITY_POLICY,
        credit_policy: BackoffPolicy = DEPOSIT_CREDIT_POLICY,
        sleep=asyncio.sleep,
    ) -> None:
        self._solana = solana
        self._polygon = polygon
        self._addresses = addresses
        self.min_amount = min_amount
        self._finality_policy = finality_policy
        self._credit_policy = credit_policy
        self._sleep = sleep

    async def deposit(self, amount: Decimal, svm_signer: SolanaSigner, polygon_address: str) -> BridgeTransfer:
        transfer = BridgeTransfer(
            transfer_id=new_event_id(),
            direction=BridgeDirection.DEPOSIT,
            amount=amount,
            state=TransferState.INITIATED,
        )
        if amount <= 0 or amount < self.min_amount:
            return transfer.advance(TransferState.FAILED, error=f"amount must be at least {self.min_amount} USDC")

        try:
            balance = await self._solana.get_usdc_balance(svm_signer.address)
            if balance < amount:
                return transfer.advance(
                    TransferState.FAILED,
                    error=f"insufficient solana USDC balance: have {balance}, need {amount}",
                )

            initial = await self._polygon.get_usdc_balance(polygon_address)
            deposit_address = (await self._addresses.get_deposit_addresses(polygon_address)).get("svm")
            if not deposit_address:
                return transfer.advance(TransferState.FAILED, error="no solana deposit address returned from bridge api")

            signature = await self._solana.transfer_usdc(svm_signer, deposit_address, amount)
        except Exception as e:
            return transfer.advance(TransferState.FAILED, error=f"deposit initiation failed: {e}")

        transfer = transfer.advance(TransferState.INITIATED, source_tx=signature)
        logger.info(f"deposit {transfer.transfer_id}: sent {amount} USDC to {deposit_address} ({signature})")

        finality = await self._solana.wait_for_confirmation(signature, policy=self._finality_policy, sleep=self._sleep)
        if finality.state is PollState.FAILED:
            return transfer.advance(TransferState.FAILED, error=f"source transaction failed: {finality.last_error}")
        if finality.state is PollState.TIMEOUT:
            return transfer.advance(TransferState.TIMEOUT, error="source transaction not confirmed; " + IN_TRANSIT_ERROR)

        target = initial + amount * CREDIT_TOLERANCE

        async def _credited() -> Check[Decimal]:
            current = await self._polygon.get_usdc_balance(polygon_address)
            return Check.success(current) if current >= target else Check.pending(current)

        credit = await poll_for_terminal_state(transfer.transfer_id, _credited, self._credit_policy, sleep=self._sleep)
        if credit.state is PollState.SUCCEEDED:
            logger.info(f"deposit {transfer.transfer_id} complete, polygon balance {credit.value}")
            return transfer.advance(TransferState.COMPLETED, new_balance=credit.value)

        logger.warning(
            "deposit_credit_timeout",
            extra={"transfer_id": transfer.transfer_id, "source_tx": signature, "target": str(target)},
        )
        return transfer.advance(TransferState.TIMEOUT, error=IN_TRANSIT_ERROR, new_balance=credit.value)
