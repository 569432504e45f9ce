from __future__ import annotations

import asyncio
import threading
from decimal import Decimal

import pytest

from predarena.bridge.models import BridgeDirection, BridgeTransfer, TransferState
from predarena.core.idempotency import InMemoryIdempotencyStore
from predarena.core.settings import RebalanceSettings
from predarena.rebalance.policy import BalanceState, check_rebalance_needed
from predarena.rebalance.rebalancer import Rebalancer
from predarena.rebalance.tracking import PendingBridgeTracker

from tests.fakes import make_signers

POLICY = RebalanceSettings(
    polygon_min_balance=Decimal("10"), solana_reserve=Decimal("10"), bridge_amount=Decimal("10")
)


def _state(solana: str, polygon: str) -> BalanceState:
    return BalanceState(solana=Decimal(solana), polygon=Decimal(polygon))


def test_low_polygon_with_spare_solana_triggers_deposit() -> None:
    check = check_rebalance_needed(_state("25", "5"), POLICY)
    assert check.needed
    assert check.direction is BridgeDirection.DEPOSIT
    assert check.amount == Decimal("10")


def test_solana_reserve_is_protected() -> None:
    check = check_rebalance_needed(_state("15", "5"), POLICY)
    assert not check.needed
    assert "solana reserve protected" in check.reason


def test_low_total_balance_skips() -> None:
    check = check_rebalance_needed(_state("12", "5"), POLICY)
    assert not check.needed
    assert "low total balance" in check.reason


def test_low_solana_with_spare_polygon_triggers_withdrawal() -> None:
    check = check_rebalance_needed(_state("5", "30"), POLICY)
    assert check.needed
    assert check.direction is BridgeDirection.WITHDRAWAL


def test_healthy_balances_need_nothing() -> None:
    check = check_rebalance_needed(_state("50", "50"), POLICY)
    assert not check.needed
    assert check.reason == "balances ok"


def test_pending_tracker_expires_after_ttl() -> None:
    now = {"t": 1000.0}
    tracker = PendingBridgeTracker(InMemoryIdempotencyStore(clock=lambda: now["t"]), ttl_seconds=35 * 60)
    assert tracker.try_mark("agent-1") is True
    assert tracker.try_mark("agent-1") is False
    assert tracker.is_pending("agent-1")
    now["t"] += 35 * 60
    assert not tracker.is_pending("agent-1")


class GatedDeposit:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls: list[Decimal] = []

    async def deposit(self, amount, svm_signer, polygon_address) -> BridgeTransfer:
        self.calls.append(amount)
        await self.release.wait()
        return BridgeTransfer(
            transfer_id="t1",
            direction=BridgeDirection.DEPOSIT,
            amount=amount,
            state=TransferState.COMPLETED,
            new_balance=Decimal("15"),
        )


@pytest.mark.asyncio
async def test_rebalancer_runs_bridge_in_background_and_clears_pending() -> None:
    deposit = GatedDeposit()
    tracker = PendingBridgeTracker.in_memory()
    rebalancer = Rebalancer(policy=POLICY, tracker=tracker, deposit=deposit, withdrawal=None)
    signers = make_signers()

    first = await rebalancer.check_and_trigger("agent-1", signers, _state("25", "5"))
    assert first.triggered
    assert rebalancer.in_flight == 1
    assert tracker.is_pending("agent-1")

    second = await rebalancer.check_and_trigger("agent-1", signers, _state("25", "5"))
    assert not second.triggered
    assert second.reason == "bridge already pending"

    deposit.release.set()
    await rebalancer.drain()
    assert deposit.calls == [Decimal("10")]
    assert not tracker.is_pending("agent-1")


@pytest.mark.asyncio
async def test_rebalancer_needs_both_signers() -> None:
    rebalancer = Rebalancer(
        policy=POLICY, tracker=PendingBridgeTracker.in_memory(), deposit=GatedDeposit(), withdrawal=None
    )
    res = await rebalancer.check_and_trigger("agent-1", make_signers(evm=False), _state("25", "5"))
    assert not res.triggered
    assert "missing" in res.reason


@pytest.mark.asyncio
async def test_rebalancer_without_configured_direction_does_not_mark() -> None:
    tracker = PendingBridgeTracker.in_memory()
    rebalancer = Rebalancer(policy=POLICY, tracker=tracker, deposit=None, withdrawal=None)
    res = await rebalancer.check_and_trigger("agent-1", make_signers(), _state("5", "30"))
    assert not res.triggered
    assert not tracker.is_pending("agent-1")


class ThreadRecordingStore(InMemoryIdempotencyStore):
    """Stands in for the Redis store, whose client blocks the calling thread."""

    def __init__(self) -> None:
        super().__init__()
        self.threads: set[int] = set()

    def seen(self, key: str) -> bool:
        self.threads.add(threading.get_ident())
        return super().seen(key)

    def mark(self, key: str, *, ttl_seconds: int) -> bool:
        self.threads.add(threading.get_ident())
        return super().mark(key, ttl_seconds=ttl_seconds)

    def clear(self, key: str) -> None:
        self.threads.add(threading.get_ident())
        super().clear(key)


@pytest.mark.asyncio
async def test_pending_tracker_is_never_called_on_the_event_loop_thread() -> None:
    store = ThreadRecordingStore()
    deposit = GatedDeposit()
    rebalancer = Rebalancer(policy=POLICY, tracker=PendingBridgeTracker(store), deposit=deposit, withdrawal=None)

    res = await rebalancer.check_and_trigger("agent-1", make_signers(), _state("25", "5"))
    deposit.release.set()
    await rebalancer.drain()

    assert res.triggered
    assert store.threads
    assert threading.get_ident() not in store.threads
    assert not store.seen("agent-1")
