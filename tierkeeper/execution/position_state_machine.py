"""
Position phase rules and price arithmetic.

    INITIAL --tp1--> TP1_FILLED --tp2--> TP2_FILLED
       |                 |                   |
       +------ sl -------+-------------------+--> STOPPED_OUT
       +-- remote close / expiry / size exhausted --> COMPLETED

Everything here is pure: no store access, no remote calls.
"""
from decimal import Decimal
from typing import Optional, Type

from tierkeeper.domain.models import Direction, FillType, Phase, Position
from tierkeeper.exceptions import InvariantError
from tierkeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")

# Fills inferred in the same cycle are applied in ladder order
FILL_ORDER = {FillType.TP1: 0, FillType.TP2: 1, FillType.SL: 2, FillType.MANUAL: 3}

TIER_TARGET_PHASE = {
    FillType.TP1: Phase.TP1_FILLED,
    FillType.TP2: Phase.TP2_FILLED,
}


def check_invariant(condition: bool, message: str, error: Type[InvariantError] = InvariantError) -> None:
    """Assert an invariant. Raises `error` (an InvariantError) if false."""
    if not condition:
        logger.critical("INVARIANT_VIOLATION", message=message, error_type=error.__name__)
        raise error(message)


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def break_even_price(entry_price: Decimal, direction: Direction, buffer) -> Decimal:
    """Entry plus a small buffer on the profitable side, e.g. 50000 long @0.0005 -> 50025."""
    return entry_price * (Decimal("1") + _dec(buffer) * direction.sign)


def trailing_stop_price(reference_price: Decimal, direction: Direction, distance) -> Decimal:
    """Stop trailing `distance` behind the reference (the TP2 fill price)."""
    return reference_price * (Decimal("1") - _dec(distance) * direction.sign)


def realized_pnl(entry_price: Decimal, direction: Direction, fill_price: Decimal, fill_size: Decimal) -> Decimal:
    return (fill_price - entry_price) * direction.sign * fill_size


def estimate_fill_size(fill_type: FillType, position: Position) -> Decimal:
    """
    Approximate filled size from the configured tier.

    The exchange order list does not report executed quantity, so a vanished
    TP is assumed to have filled its whole tier and a vanished stop the whole
    remainder.
    """
    if fill_type == FillType.TP1:
        return position.tp1_size or ZERO
    if fill_type == FillType.TP2:
        return position.tp2_size or ZERO
    return position.remaining_size


def reference_fill_price(fill_type: FillType, position: Position, trigger_price: Optional[Decimal]) -> Decimal:
    """Trigger price of the vanished order, falling back to the stored level."""
    if trigger_price is not None and trigger_price > 0:
        return trigger_price
    if fill_type == FillType.TP1 and position.tp1_price is not None:
        return position.tp1_price
    if fill_type == FillType.TP2 and position.tp2_price is not None:
        return position.tp2_price
    return position.current_stop_price


def is_tighter_stop(candidate: Decimal, current: Decimal, direction: Direction) -> bool:
    """True when `candidate` locks in more than `current` (stops only ever tighten)."""
    return (candidate - current) * direction.sign > 0


def is_monotonic(current: Phase, target: Phase) -> bool:
    """Phases never move backwards; staying put is allowed (partial manual close, late tier fill)."""
    return target.rank >= current.rank
