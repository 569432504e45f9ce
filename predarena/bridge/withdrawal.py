"""Withdrawal pathway: Polygon USDC.e -> Solana through the Wormhole token bridge.

State machine::

    INITIATED --(VAA fetched)--> ATTESTED --(redeemed)--> COMPLETED
        |                            |
        +--(30 min, no VAA)--> TIMEOUT   +--(redeem error)--> FAILED

TIMEOUT keeps the source transaction hash. Funds are locked on Polygon until
someone redeems the VAA, so timeouts are handed to an operator (`resume`) and
never retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from predarena.core.ids import new_event_id
from predarena.settlement.monitor import ATTESTATION_POLICY, SOURCE_FINALITY_POLICY, BackoffPolicy, Check, PollState, poll_for_terminal_state
from predarena.signers.evm import EvmSigner
from predarena.signers.solana import SolanaSigner

from .models import BridgeDirection, BridgeTransfer, TransferState, WithdrawalQuote
from .wormhole import WormholeClient, WormholeMessageId

logger = logging.getLogger(__name__)

ATTESTATION_TIMEOUT_ERROR = (
    "attestation timeout: transfer initiated but VAA not received; complete it manually with the source tx hash"
)
BALANCE_SETTLE_SECONDS = 5.0


class WithdrawalBridge:
    def __init__(
        self,
        *,
        solana,
        polygon,
        wormhole: WormholeClient,
        min_amount: Decimal = Decimal(1),
        fee_estimate: Decimal = Decimal("0.5"),
        finality_policy: BackoffPolicy = SOURCE_FINALITY_POLICY,
        attestation_policy: BackoffPolicy = ATTESTATION_POLICY,
        sleep=asyncio.sleep,
    ) -> None:
        self._solana = solana
        self._polygon = polygon
        self._wormhole = wormhole
        self.min_amount = min_amount
        self.fee_estimate = fee_estimate
        self._finality_policy = finality_policy
        self._attestation_policy = attestation_policy
        self._sleep = sleep

    def quote(self, amount: Decimal) -> WithdrawalQuote:
        return WithdrawalQuote(
            amount=amount,
            estimated_fee=self.fee_estimate,
            estimated_time="10-30 minutes",
            min_amount=self.min_amount,
        )

    async def withdraw(self, amount: Decimal, evm_signer: EvmSigner, svm_signer: SolanaSigner) -> BridgeTransfer:
        transfer = BridgeTransfer(
            transfer_id=new_event_id(),
            direction=BridgeDirection.WITHDRAWAL,
            amount=amount,
            state=TransferState.INITIATED,
        )
        if amount < self.min_amount:
            return transfer.advance(
                TransferState.FAILED,
                error=f"minimum withdrawal amount is {self.min_amount} USDC, requested {amount}",
            )

        try:
            balance = await self._polygon.get_usdc_balance(evm_signer.address)
            if balance < amount:
                return transfer.advance(
                    TransferState.FAILED,
                    error=f"insufficient polygon USDC.e balance: have {balance}, need {amount}",
                )
            source_tx = await self._wormhole.initiate_transfer(evm_signer, amount, svm_signer.address)
        except Exception as e:
            return transfer.advance(TransferState.FAILED, error=f"withdrawal initiation failed: {e}")

        transfer = transfer.advance(TransferState.INITIATED, source_tx=source_tx)
        logger.info(f"withdrawal {transfer.transfer_id}: locked {amount} USDC.e on polygon ({source_tx})")

        mined = await self._polygon.wait_for_receipt(source_tx, policy=self._finality_policy, sleep=self._sleep)
        if mined.state is PollState.FAILED:
            return transfer.advance(TransferState.FAILED, error=f"source transaction reverted: {source_tx}")
        if mined.state is PollState.TIMEOUT:
            return transfer.advance(TransferState.TIMEOUT, error="source transaction not mined; " + ATTESTATION_TIMEOUT_ERROR)

        return await self._attest_and_complete(transfer, svm_signer)

    async def resume(self, source_tx: str, amount: Decimal, svm_signer: SolanaSigner) -> BridgeTransfer:
        """Operator entry point for a transfer that previously timed out waiting for attestation."""

        transfer = BridgeTransfer(
            transfer_id=new_event_id(),
            direction=BridgeDirection.WITHDRAWAL,
            amount=amount,
            state=TransferState.INITIATED,
            source_tx=source_tx,
        )
        return await self._attest_and_complete(transfer, svm_signer)

    async def _attest_and_complete(self, transfer: BridgeTransfer, svm_signer: SolanaSigner) -> BridgeTransfer:
        source_tx = transfer.source_tx or ""
        message: Optional[WormholeMessageId] = None

        async def _attested() -> Check[str]:
            nonlocal message
            if message is None:
                message = await self._wormhole.message_id(source_tx)
            vaa = await self._wormhole.fetch_vaa(message)
            return Check.success(vaa) if vaa else Check.pending()

        attestation = await poll_for_terminal_state(source_tx, _attested, self._attestation_policy, sleep=self._sleep)
        if attestation.state is not PollState.SUCCEEDED or not attestation.value:
            logger.warning(
                "withdrawal_attestation_timeout",
                extra={"transfer_id": transfer.transfer_id, "source_tx": source_tx, "error": attestation.last_error},
            )
            return transfer.advance(TransferState.TIMEOUT, error=ATTESTATION_TIMEOUT_ERROR)

        transfer = transfer.advance(TransferState.ATTESTED)
        try:
            destination_tx = await self._wormhole.complete_transfer(svm_signer, attestation.value, self._solana)
        except Exception as e:
            logger.warning(
                "withdrawal_redeem_failed",
                extra={"transfer_id": transfer.transfer_id, "source_tx": source_tx, "error": str(e)},
            )
            return transfer.advance(TransferState.FAILED, error=f"redeem on solana failed: {e}")

        await self._sleep(BALANCE_SETTLE_SECONDS)
        try:
            new_balance: Optional[Decimal] = await self._solana.get_usdc_balance(svm_signer.address)
        except Exception as e:
            logger.warning("withdrawal_balance_read_failed", extra={"transfer_id": transfer.transfer_id, "error": str(e)})
            new_balance = None
        logger.info(f"withdrawal {transfer.transfer_id} complete on solana: {destination_tx}")
        return transfer.advance(TransferState.COMPLETED, destination_tx=destination_tx, new_balance=new_balance)
