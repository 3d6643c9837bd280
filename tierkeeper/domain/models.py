"""
Domain models for the position lifecycle engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all prices and sizes are Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from tierkeeper.exceptions import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    """Position direction."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def entry_side(self) -> str:
        return "buy" if self is Direction.LONG else "sell"

    @property
    def close_side(self) -> str:
        return "sell" if self is Direction.LONG else "buy"


class Phase(str, Enum):
    """
    Position lifecycle phase.

    State Machine:
        INITIAL → TP1_FILLED → TP2_FILLED
        any non-terminal → COMPLETED (remote close, expiry, runner exhausted)
        any non-terminal → STOPPED_OUT (stop fill)

    Terminal Phases: COMPLETED, STOPPED_OUT
    """
    INITIAL = "initial"
    TP1_FILLED = "tp1_filled"
    TP2_FILLED = "tp2_filled"
    COMPLETED = "completed"
    STOPPED_OUT = "stopped_out"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.STOPPED_OUT)

    @property
    def rank(self) -> int:
        """Ordering used to enforce monotonic transitions. Terminal phases share the top rank."""
        return _PHASE_RANK[self]


_PHASE_RANK = {
    Phase.INITIAL: 0,
    Phase.TP1_FILLED: 1,
    Phase.TP2_FILLED: 2,
    Phase.COMPLETED: 3,
    Phase.STOPPED_OUT: 3,
}

ACTIVE_PHASES = (Phase.INITIAL, Phase.TP1_FILLED, Phase.TP2_FILLED)


class FillType(str, Enum):
    """Kind of inferred or reported fill."""
    TP1 = "tp1"
    TP2 = "tp2"
    SL = "sl"
    MANUAL = "manual"


class TrackingStatus(str, Enum):
    """Time-expiry tracker status."""
    ACTIVE = "active"
    WARNED = "warned"
    EXPIRED = "expired"
    FORCE_CLOSED = "force_closed"

    @property
    def is_open(self) -> bool:
        return self in (TrackingStatus.ACTIVE, TrackingStatus.WARNED)


class Settle(str, Enum):
    """Settlement currency of the futures market."""
    USDT = "usdt"
    BTC = "btc"


class StopUpdateReason(str, Enum):
    """Why a stop order was moved."""
    BREAK_EVEN = "break_even"
    TRAILING = "trailing"
    EMERGENCY = "emergency"


class OrderKind(str, Enum):
    """Protective order kind."""
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


@dataclass(frozen=True)
class GroupKey:
    """Credential + settlement market: the batching unit for remote calls."""
    account: str
    settle: Settle

    def __str__(self) -> str:
        return f"{self.account}:{self.settle.value}"


# ============ REMOTE VALUES ============

@dataclass(frozen=True)
class RemotePosition:
    """Open position as reported by the exchange."""
    symbol: str
    size: Decimal


@dataclass(frozen=True)
class RemoteOrder:
    """Open conditional order as reported by the exchange."""
    id: str
    symbol: str
    trigger_price: Optional[Decimal] = None


@dataclass(frozen=True)
class ConditionalOrderSpec:
    """Reduce-only trigger order closing part or all of a position."""
    symbol: str
    kind: OrderKind
    close_side: str
    size: Decimal
    trigger_price: Decimal
    reduce_only: bool = True

    def __post_init__(self):
        if self.size <= 0:
            raise ValueError(f"Conditional order size must be positive, got {self.size}")
        if self.trigger_price <= 0:
            raise ValueError(f"Trigger price must be positive, got {self.trigger_price}")


@dataclass(frozen=True)
class MarketOrderSpec:
    """Market order (entry or reduce-only flatten)."""
    symbol: str
    side: str
    size: Decimal
    reduce_only: bool = False

    def __post_init__(self):
        if self.size <= 0:
            raise ValueError(f"Market order size must be positive, got {self.size}")


# ============ REQUEST ============

@dataclass
class OpenPositionRequest:
    """
    Upstream entry request.

    Tier sizes must sum to the total size. A tier with zero size is not placed
    (single-target strategies set tp2_size and runner_size to zero).
    """
    account: str
    settle: Settle
    symbol: str
    direction: Direction
    size: Decimal
    entry_price: Decimal
    stop_price: Decimal
    tp1_size: Decimal
    tp1_price: Optional[Decimal] = None
    tp2_size: Decimal = Decimal("0")
    tp2_price: Optional[Decimal] = None
    runner_size: Decimal = Decimal("0")
    max_age_hours: Optional[float] = None

    def __post_init__(self):
        self.settle = Settle(self.settle)
        self.direction = Direction(self.direction)
        for name in ("size", "entry_price", "stop_price", "tp1_size", "tp2_size", "runner_size"):
            setattr(self, name, Decimal(str(getattr(self, name))))
        for name in ("tp1_price", "tp2_price"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, Decimal(str(value)))

        if not self.symbol:
            raise ValidationError("symbol is required")
        if self.size <= 0:
            raise ValidationError(f"size must be positive, got {self.size}")
        if self.entry_price <= 0 or self.stop_price <= 0:
            raise ValidationError("entry_price and stop_price must be positive")
        if min(self.tp1_size, self.tp2_size, self.runner_size) < 0:
            raise ValidationError("tier sizes must be non-negative")
        if self.tp1_size + self.tp2_size + self.runner_size != self.size:
            raise ValidationError(
                f"tier sizes ({self.tp1_size} + {self.tp2_size} + {self.runner_size}) "
                f"must sum to size ({self.size})"
            )
        if self.tp1_size > 0 and self.tp1_price is None:
            raise ValidationError("tp1_price is required when tp1_size > 0")
        if self.tp2_size > 0 and self.tp2_price is None:
            raise ValidationError("tp2_price is required when tp2_size > 0")
        if (self.stop_price - self.entry_price) * self.direction.sign >= 0:
            raise ValidationError(
                f"stop_price {self.stop_price} is not on the losing side of entry "
                f"{self.entry_price} for a {self.direction.value} position"
            )
        if self.max_age_hours is not None and self.max_age_hours <= 0:
            raise ValidationError("max_age_hours must be positive")

    @property
    def group(self) -> GroupKey:
        return GroupKey(self.account, self.settle)


# ============ PERSISTED RECORDS ============

@dataclass
class Position:
    """
    One opened trade and its protective orders.

    Invariants (enforced by the store on every transition):
        remaining_size >= 0
        remaining_size == 0  <=>  phase is terminal
        stop_order_id is set while the phase is non-terminal
    """
    id: str
    account: str
    settle: Settle
    symbol: str
    direction: Direction
    size: Decimal
    entry_price: Decimal
    entry_order_id: str

    tp1_size: Decimal
    tp2_size: Decimal
    runner_size: Decimal

    stop_order_id: Optional[str]
    original_stop_price: Decimal
    current_stop_price: Decimal
    tp1_order_id: Optional[str] = None
    tp2_order_id: Optional[str] = None
    tp1_price: Optional[Decimal] = None
    tp2_price: Optional[Decimal] = None

    phase: Phase = Phase.INITIAL
    remaining_size: Optional[Decimal] = None
    realized_pnl: Decimal = Decimal("0")

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.remaining_size is None:
            self.remaining_size = self.size
        if self.remaining_size < 0:
            raise ValueError(f"remaining_size must be >= 0, got {self.remaining_size}")

    @property
    def group(self) -> GroupKey:
        return GroupKey(self.account, self.settle)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def protective_order_ids(self) -> Dict[str, str]:
        """Known protective order ids keyed by role."""
        ids = {
            "tp1": self.tp1_order_id,
            "tp2": self.tp2_order_id,
            "sl": self.stop_order_id,
        }
        return {role: oid for role, oid in ids.items() if oid}

    def fill_type_for(self, order_id: str) -> Optional[FillType]:
        """Classify an order id against the stored protective orders."""
        if order_id == self.tp1_order_id:
            return FillType.TP1
        if order_id == self.tp2_order_id:
            return FillType.TP2
        if order_id == self.stop_order_id:
            return FillType.SL
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account": self.account,
            "settle": self.settle.value,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "size": str(self.size),
            "entry_price": str(self.entry_price),
            "entry_order_id": self.entry_order_id,
            "tp1_size": str(self.tp1_size),
            "tp2_size": str(self.tp2_size),
            "runner_size": str(self.runner_size),
            "tp1_order_id": self.tp1_order_id,
            "tp2_order_id": self.tp2_order_id,
            "stop_order_id": self.stop_order_id,
            "tp1_price": str(self.tp1_price) if self.tp1_price is not None else None,
            "tp2_price": str(self.tp2_price) if self.tp2_price is not None else None,
            "original_stop_price": str(self.original_stop_price),
            "current_stop_price": str(self.current_stop_price),
            "phase": self.phase.value,
            "remaining_size": str(self.remaining_size),
            "realized_pnl": str(self.realized_pnl),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class OrderFillEvent:
    """Append-only inferred fill. order_id is the idempotency key."""
    order_id: str
    position_id: str
    symbol: str
    fill_type: FillType
    fill_size: Decimal
    fill_price: Decimal
    fill_time: datetime = field(default_factory=utc_now)
    processed: bool = False
    id: Optional[int] = None


@dataclass
class ActionAudit:
    """Append-only record of a mutation attempt."""
    position_id: str
    action: str
    details: Dict[str, Any]
    success: bool
    timestamp: datetime = field(default_factory=utc_now)
    error: Optional[str] = None
    id: Optional[int] = None


@dataclass
class TimeTracking:
    """Expiry bookkeeping for one position."""
    position_id: str
    created_at: datetime
    expires_at: datetime
    warning_sent: bool = False
    force_close_attempted: bool = False
    status: TrackingStatus = TrackingStatus.ACTIVE
    updated_at: datetime = field(default_factory=utc_now)

    def minutes_to_expiry(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (self.expires_at - now).total_seconds() / 60.0


@dataclass
class StopUpdate:
    """Stop-order replacement history row."""
    position_id: str
    old_order_id: Optional[str]
    new_order_id: Optional[str]
    old_price: Optional[Decimal]
    new_price: Decimal
    reason: StopUpdateReason
    success: bool
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
