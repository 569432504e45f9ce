from __future__ import annotations

from decimal import Decimal

import pytest

from predarena.bridge.deposit import DepositBridge
from predarena.bridge.models import BridgeDirection, TransferState
from predarena.bridge.withdrawal import ATTESTATION_TIMEOUT_ERROR, WithdrawalBridge
from predarena.settlement.monitor import BackoffPolicy, PollState

from tests.fakes import FakeDepositAddresses, FakePolygon, FakeSolana, FakeWormhole, make_signers, no_sleep

FAST = BackoffPolicy(initial_delay=1, max_attempts=5)


def _deposit_setup(*, credits: list[str], solana_balance: str = "100"):
    signers = make_signers()
    solana = FakeSolana({signers.svm.address: Decimal(solana_balance)})
    polygon = FakePolygon()
    polygon.credits[signers.evm.address] = [Decimal(c) for c in credits]
    bridge = DepositBridge(
        solana=solana,
        polygon=polygon,
        addresses=FakeDepositAddresses(),
        finality_policy=FAST,
        credit_policy=FAST,
        sleep=no_sleep,
    )
    return bridge, solana, polygon, signers


@pytest.mark.asyncio
async def test_deposit_completes_exactly_at_ninety_nine_percent_credit() -> None:
    # initial 5; target = 5 + 0.99 * 10 = 14.9
    bridge, solana, polygon, signers = _deposit_setup(credits=["5", "5", "14.89", "14.9"])
    out = await bridge.deposit(Decimal("10"), signers.svm, signers.evm.address)

    assert out.state is TransferState.COMPLETED
    assert out.direction is BridgeDirection.DEPOSIT
    assert out.new_balance == Decimal("14.9")
    assert out.source_tx == "sig1"
    assert solana.transfers == [("DepositSvmAddress1111111111111111111111111111", Decimal("10"))]
    assert polygon.credits[signers.evm.address] == []


@pytest.mark.asyncio
async def test_deposit_credit_timeout_is_in_transit_not_failed() -> None:
    bridge, _, _, signers = _deposit_setup(credits=["5", "5", "9"])
    out = await bridge.deposit(Decimal("10"), signers.svm, signers.evm.address)

    assert out.state is TransferState.TIMEOUT
    assert "in transit" in (out.error or "")
    assert out.source_tx == "sig1"


@pytest.mark.asyncio
async def test_deposit_rejects_insufficient_source_balance() -> None:
    bridge, solana, _, signers = _deposit_setup(credits=["0"], solana_balance="3")
    out = await bridge.deposit(Decimal("10"), signers.svm, signers.evm.address)
    assert out.state is TransferState.FAILED
    assert "insufficient solana USDC balance" in (out.error or "")
    assert solana.transfers == []


@pytest.mark.asyncio
async def test_deposit_source_failure_is_failed() -> None:
    bridge, solana, _, signers = _deposit_setup(credits=["5"])
    solana.confirmation = PollState.FAILED
    out = await bridge.deposit(Decimal("10"), signers.svm, signers.evm.address)
    assert out.state is TransferState.FAILED


def _withdrawal_setup(wormhole: FakeWormhole, *, polygon_balance: str = "50", solana_after: str = "12"):
    signers = make_signers()
    solana = FakeSolana({signers.svm.address: Decimal(solana_after)})
    polygon = FakePolygon({signers.evm.address: Decimal(polygon_balance)})
    bridge = WithdrawalBridge(
        solana=solana,
        polygon=polygon,
        wormhole=wormhole,
        finality_policy=FAST,
        attestation_policy=BackoffPolicy(initial_delay=30, max_attempts=4),
        sleep=no_sleep,
    )
    return bridge, signers


@pytest.mark.asyncio
async def test_withdrawal_completes_after_attestation() -> None:
    wormhole = FakeWormhole(vaa_after=3)
    bridge, signers = _withdrawal_setup(wormhole)
    out = await bridge.withdraw(Decimal("10"), signers.evm, signers.svm)

    assert out.state is TransferState.COMPLETED
    assert out.source_tx == "0xsourcetx"
    assert out.destination_tx == "redeemsig"
    assert out.new_balance == Decimal("12")
    assert wormhole.fetches == 3


@pytest.mark.asyncio
async def test_withdrawal_attestation_timeout_keeps_source_tx() -> None:
    wormhole = FakeWormhole(vaa_after=None)
    bridge, signers = _withdrawal_setup(wormhole)
    out = await bridge.withdraw(Decimal("10"), signers.evm, signers.svm)

    assert out.state is TransferState.TIMEOUT
    assert out.source_tx == "0xsourcetx"
    assert out.error == ATTESTATION_TIMEOUT_ERROR
    assert wormhole.fetches == 4


@pytest.mark.asyncio
async def test_withdrawal_redeem_error_is_failed_after_attestation() -> None:
    wormhole = FakeWormhole(redeem_error=RuntimeError("blockhash expired"))
    bridge, signers = _withdrawal_setup(wormhole)
    out = await bridge.withdraw(Decimal("10"), signers.evm, signers.svm)
    assert out.state is TransferState.FAILED
    assert "blockhash expired" in (out.error or "")


@pytest.mark.asyncio
async def test_withdrawal_below_minimum_is_rejected() -> None:
    wormhole = FakeWormhole()
    bridge, signers = _withdrawal_setup(wormhole)
    out = await bridge.withdraw(Decimal("0.5"), signers.evm, signers.svm)
    assert out.state is TransferState.FAILED
    assert wormhole.initiated == []


@pytest.mark.asyncio
async def test_resume_completes_a_timed_out_withdrawal() -> None:
    wormhole = FakeWormhole(vaa_after=1)
    bridge, signers = _withdrawal_setup(wormhole)
    out = await bridge.resume("0xsourcetx", Decimal("10"), signers.svm)
    assert out.state is TransferState.COMPLETED
    assert wormhole.initiated == []


def test_withdrawal_quote() -> None:
    bridge, _ = _withdrawal_setup(FakeWormhole())
    q = bridge.quote(Decimal("10"))
    assert q.estimated_fee == Decimal("0.5")
    assert q.estimated_received == Decimal("9.5")
    assert q.estimated_time == "10-30 minutes"
    assert q.min_amount == Decimal("1")
