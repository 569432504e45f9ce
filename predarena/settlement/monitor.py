"""Generic poll-until-terminal loop.

Every asynchronous confirmation in the system (order fills, source-chain
finality, bridge attestation, destination credit) is a call to
`poll_for_terminal_state` with a different check function and backoff policy.
Nothing here knows about venues or chains.

A check function returns a `Check`: terminal success, terminal failure, or
still pending. Exceptions raised by the check are treated like "pending": the
loop logs them and keeps polling until the budget is exhausted. Exhausting the
budget yields TIMEOUT, which callers must not conflate with FAILED.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Check(Generic[T]):
    done: bool
    ok: bool = True
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def pending(cls, value: Optional[T] = None) -> "Check[T]":
        return cls(done=False, value=value)

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Check[T]":
        return cls(done=True, ok=True, value=value)

    @classmethod
    def failure(cls, error: str, value: Optional[T] = None) -> "Check[T]":
        return cls(done=True, ok=False, value=value, error=error)


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    state: PollState
    value: Optional[T]
    attempts: int
    last_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is PollState.SUCCEEDED


@dataclass(frozen=True)
class BackoffPolicy:
    initial_delay: float
    multiplier: float = 1.0
    max_delay: float | None = None
    max_attempts: int = 10

    def __post_init__(self) -> None:
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")

    @classmethod
    def fixed(cls, interval: float, *, timeout: float) -> "BackoffPolicy":
        """Fixed-interval polling that gives up after `timeout` seconds."""

        return cls(initial_delay=interval, multiplier=1.0, max_attempts=max(1, int(timeout // interval)))

    def delays(self) -> list[float]:
        """Sleep durations between consecutive attempts (one fewer than max_attempts)."""

        out: list[float] = []
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            out.append(delay if self.max_delay is None else min(delay, self.max_delay))
            delay *= self.multiplier
        return out


# Order fills: 5s, 10s, 20s, 40s, then 60s; 10 checks.
ORDER_FILL_POLICY = BackoffPolicy(initial_delay=5.0, multiplier=2.0, max_delay=60.0, max_attempts=10)
# Source chain finality for a bridge transfer.
SOURCE_FINALITY_POLICY = BackoffPolicy(initial_delay=2.0, max_attempts=30)
# Attestation-bridge signatures: every 30s for 30 minutes.
ATTESTATION_POLICY = BackoffPolicy.fixed(30.0, timeout=30 * 60)
# Venue-bridge credit on the destination chain: every 10s for 10 minutes.
DEPOSIT_CREDIT_POLICY = BackoffPolicy.fixed(10.0, timeout=10 * 60)

SleepFn = Callable[[float], Awaitable[Any]]


async def poll_for_terminal_state(
    reference_id: str,
    check_fn: Callable[[], Awaitable[Check[T]]],
    policy: BackoffPolicy,
    *,
    sleep: SleepFn = asyncio.sleep,
) -> PollOutcome[T]:
    delays = policy.delays()
    last_value: Optional[T] = None
    last_error: Optional[str] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            check = await check_fn()
        except Exception as e:
            last_error = str(e) or type(e).__name__
            logger.warning(
                "poll_check_error",
                extra={"reference_id": reference_id, "attempt": attempt, "error": last_error},
            )
        else:
            if check.value is not None:
                last_value = check.value
            if check.done:
                state = PollState.SUCCEEDED if check.ok else PollState.FAILED
                return PollOutcome(state=state, value=check.value, attempts=attempt, last_error=check.error)

        if attempt <= len(delays):
            await sleep(delays[attempt - 1])

    logger.warning(
        "poll_timeout",
        extra={"reference_id": reference_id, "attempts": policy.max_attempts, "error": last_error},
    )
    return PollOutcome(state=PollState.TIMEOUT, value=last_value, attempts=policy.max_attempts, last_error=last_error)
