from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from predarena.core.units import ZERO, approx_equal, to_decimal


class Venue(str, Enum):
    """Trading venues. The value doubles as the order-id prefix."""

    KALSHI = "kalshi"  # immediate-settlement venue (Solana)
    POLYMARKET = "polymarket"  # order-book venue (Polygon)

    @property
    def chain(self) -> str:
        return "solana" if self is Venue.KALSHI else "polygon"

    @property
    def supports_limit_orders(self) -> bool:
        return self is Venue.POLYMARKET


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class Outcome(str, Enum):
    YES = "yes"
    NO = "no"


class OrderKind(str, Enum):
    MARKET = "market"
    LIMIT = "limit"


class TimeInForce(str, Enum):
    GTC = "GTC"
    FOK = "FOK"
    IOC = "IOC"


class OrderStatus(str, Enum):
    OPEN = "open"
    FILLED = "filled"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.FAILED)


class OrderValidationError(ValueError):
    """Structurally invalid order request; raised before any network call and never retried."""


DEFAULT_SLIPPAGE_BPS = 200


@dataclass(frozen=True)
class OrderRequest:
    venue: Venue
    instrument_id: str
    side: Side
    outcome: Outcome
    kind: OrderKind
    quantity: Decimal
    limit_price: Optional[Decimal] = None
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    time_in_force: TimeInForce = TimeInForce.GTC

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "OrderRequest":
        """Build from loosely-typed input (decision engine tool call). Raises OrderValidationError."""

        try:
            venue = Venue(str(d["venue"]).lower())
            side = Side(str(d["side"]).lower())
            outcome = Outcome(str(d["outcome"]).lower())
            kind = OrderKind(str(d.get("kind", "market")).lower())
            tif = TimeInForce(str(d.get("time_in_force", "GTC")).upper())
            quantity = to_decimal(d["quantity"])
            limit_price = to_decimal(d["limit_price"]) if d.get("limit_price") is not None else None
        except KeyError as e:
            raise OrderValidationError(f"missing field: {e.args[0]}") from e
        except (ValueError, ArithmeticError) as e:
            raise OrderValidationError(str(e)) from e
        return cls(
            venue=venue,
            instrument_id=str(d.get("instrument_id") or ""),
            side=side,
            outcome=outcome,
            kind=kind,
            quantity=quantity,
            limit_price=limit_price,
            slippage_bps=int(d.get("slippage_bps", DEFAULT_SLIPPAGE_BPS)),
            time_in_force=tif,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue": self.venue.value,
            "instrument_id": self.instrument_id,
            "side": self.side.value,
            "outcome": self.outcome.value,
            "kind": self.kind.value,
            "quantity": str(self.quantity),
            "limit_price": str(self.limit_price) if self.limit_price is not None else None,
            "slippage_bps": self.slippage_bps,
            "time_in_force": self.time_in_force.value,
        }


def validate_order_request(req: OrderRequest) -> None:
    if not req.instrument_id.strip():
        raise OrderValidationError("instrument_id is required")
    if not req.quantity.is_finite():
        raise OrderValidationError("quantity must be a finite number")
    if req.limit_price is not None and not req.limit_price.is_finite():
        raise OrderValidationError("limit_price must be a finite number")
    if req.quantity <= 0:
        raise OrderValidationError("quantity must be > 0")
    if req.kind is OrderKind.LIMIT and req.limit_price is None:
        raise OrderValidationError("limit_price is required for limit orders")
    if req.kind is OrderKind.MARKET and req.limit_price is not None:
        raise OrderValidationError("limit_price is only allowed for limit orders")
    if req.kind is OrderKind.LIMIT and not req.venue.supports_limit_orders:
        raise OrderValidationError(f"{req.venue.value} does not accept limit orders")
    if req.limit_price is not None and not (ZERO < req.limit_price < Decimal(1)):
        raise OrderValidationError("limit_price must be within (0, 1)")
    if not (0 <= req.slippage_bps <= 10_000):
        raise OrderValidationError("slippage_bps must be within [0, 10000]")


def prefixed_order_id(venue: Venue, raw_id: str) -> str:
    return f"{venue.value}:{raw_id}" if raw_id else ""


def split_order_id(order_id: str) -> tuple[Venue, str]:
    prefix, sep, raw = order_id.partition(":")
    if not sep or not raw:
        raise ValueError(f"invalid order id format: {order_id!r}")
    try:
        return Venue(prefix), raw
    except ValueError as e:
        raise ValueError(f"invalid order id format: {order_id!r}") from e


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    venue: Venue
    status: OrderStatus
    filled_quantity: Decimal = ZERO
    avg_price: Decimal = ZERO
    total_cost: Decimal = ZERO
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is not OrderStatus.FAILED

    @classmethod
    def failed(cls, venue: Venue, error: str, *, order_id: str = "") -> "OrderResult":
        return cls(order_id=order_id, venue=venue, status=OrderStatus.FAILED, error=error)

    def is_consistent(self) -> bool:
        return approx_equal(self.filled_quantity * self.avg_price, self.total_cost)

    def with_status(self, status: OrderStatus) -> "OrderResult":
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "venue": self.venue.value,
            "status": self.status.value,
            "filled_quantity": str(self.filled_quantity),
            "avg_price": str(self.avg_price),
            "total_cost": str(self.total_cost),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "OrderResult":
        return cls(
            order_id=d["order_id"],
            venue=Venue(d["venue"]),
            status=OrderStatus(d["status"]),
            filled_quantity=to_decimal(d["filled_quantity"]),
            avg_price=to_decimal(d["avg_price"]),
            total_cost=to_decimal(d["total_cost"]),
            error=d.get("error"),
        )


@dataclass(frozen=True)
class CancelResult:
    success: bool
    order_id: str
    venue: Optional[Venue] = None
    error: Optional[str] = None
