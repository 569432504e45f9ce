from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from predarena.core.units import to_decimal


class TransferState(str, Enum):
    INITIATED = "initiated"
    ATTESTED = "attested"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    FAILED = "failed"


class BridgeDirection(str, Enum):
    DEPOSIT = "solana_to_polygon"
    WITHDRAWAL = "polygon_to_solana"

    @property
    def source_chain(self) -> str:
        return "solana" if self is BridgeDirection.DEPOSIT else "polygon"

    @property
    def destination_chain(self) -> str:
        return "polygon" if self is BridgeDirection.DEPOSIT else "solana"


class BridgeError(RuntimeError):
    pass


@dataclass(frozen=True)
class BridgeTransfer:
    """Process-local view of one bridge transfer. Never persisted by the ledger."""

    transfer_id: str
    direction: BridgeDirection
    amount: Decimal
    state: TransferState
    source_tx: Optional[str] = None
    destination_tx: Optional[str] = None
    error: Optional[str] = None
    new_balance: Optional[Decimal] = None

    @property
    def source_chain(self) -> str:
        return self.direction.source_chain

    @property
    def destination_chain(self) -> str:
        return self.direction.destination_chain

    @property
    def succeeded(self) -> bool:
        return self.state is TransferState.COMPLETED

    def advance(self, state: TransferState, **changes: Any) -> "BridgeTransfer":
        return replace(self, state=state, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "direction": self.direction.value,
            "source_chain": self.source_chain,
            "destination_chain": self.destination_chain,
            "amount": str(self.amount),
            "state": self.state.value,
            "source_tx": self.source_tx,
            "destination_tx": self.destination_tx,
            "error": self.error,
            "new_balance": str(self.new_balance) if self.new_balance is not None else None,
        }


@dataclass(frozen=True)
class WithdrawalQuote:
    amount: Decimal
    estimated_fee: Decimal
    estimated_time: str
    min_amount: Decimal

    @property
    def estimated_received(self) -> Decimal:
        return max(to_decimal(self.amount) - self.estimated_fee, Decimal(0))
