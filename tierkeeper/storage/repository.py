"""
Persistence for position records and their append-only logs.

The PositionStore is the only writer of position state. Every public method
runs in its own transaction; multi-field updates are validated against the
position invariants before commit. No remote calls live here.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import json

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from tierkeeper.domain.models import (
    ACTIVE_PHASES,
    ActionAudit,
    Direction,
    FillType,
    OrderFillEvent,
    Phase,
    Position,
    Settle,
    StopUpdate,
    StopUpdateReason,
    TimeTracking,
    TrackingStatus,
    utc_now,
)
from tierkeeper.exceptions import InvalidTransitionError, PositionNotFoundError
from tierkeeper.execution.position_state_machine import check_invariant, is_monotonic
from tierkeeper.monitoring.logger import get_logger
from tierkeeper.storage.db import Base, Database

logger = get_logger(__name__)

ZERO = Decimal("0")


# ============ ORM MODELS ============

class PositionModel(Base):
    """ORM model for one opened trade."""
    __tablename__ = "positions"
    __table_args__ = (
        Index("idx_position_symbol", "symbol"),
        Index("idx_position_phase", "phase"),
        Index("idx_position_group", "account", "settle"),
    )

    id = Column(String, primary_key=True)
    account = Column(String, nullable=False)
    settle = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    size = Column(Numeric(precision=20, scale=8), nullable=False)
    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    entry_order_id = Column(String, nullable=False)

    tp1_size = Column(Numeric(precision=20, scale=8), nullable=False)
    tp2_size = Column(Numeric(precision=20, scale=8), nullable=False)
    runner_size = Column(Numeric(precision=20, scale=8), nullable=False)

    tp1_order_id = Column(String, nullable=True)
    tp2_order_id = Column(String, nullable=True)
    stop_order_id = Column(String, nullable=True)

    phase = Column(String, nullable=False, default=Phase.INITIAL.value)
    remaining_size = Column(Numeric(precision=20, scale=8), nullable=False)
    realized_pnl = Column(Numeric(precision=20, scale=8), nullable=False, default=0)

    original_stop_price = Column(Numeric(precision=20, scale=8), nullable=False)
    current_stop_price = Column(Numeric(precision=20, scale=8), nullable=False)
    tp1_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp2_price = Column(Numeric(precision=20, scale=8), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class OrderFillEventModel(Base):
    """ORM model for inferred fills (append-only, order_id unique)."""
    __tablename__ = "order_fill_events"
    __table_args__ = (
        Index("idx_fill_processed", "processed"),
        Index("idx_fill_position", "position_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, unique=True)
    position_id = Column(String, ForeignKey("positions.id"), nullable=False)
    symbol = Column(String, nullable=False)
    fill_type = Column(String, nullable=False)
    fill_size = Column(Numeric(precision=20, scale=8), nullable=False)
    fill_price = Column(Numeric(precision=20, scale=8), nullable=False)
    fill_time = Column(DateTime(timezone=True), nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class ActionAuditModel(Base):
    """ORM model for the mutation audit trail (append-only)."""
    __tablename__ = "action_audit"
    __table_args__ = (
        Index("idx_audit_position_time", "position_id", "timestamp"),
        Index("idx_audit_action", "action"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    # No FK: failed openings are audited under an id that never becomes a position
    position_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    details = Column(Text, nullable=False)  # JSON string
    timestamp = Column(DateTime(timezone=True), nullable=False)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)


class TimeTrackingModel(Base):
    """ORM model for per-position expiry bookkeeping."""
    __tablename__ = "position_time_tracking"
    __table_args__ = (
        Index("idx_tracking_status_expiry", "status", "expires_at"),
    )

    position_id = Column(String, ForeignKey("positions.id"), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    warning_sent = Column(Boolean, nullable=False, default=False)
    force_close_attempted = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default=TrackingStatus.ACTIVE.value)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class StopUpdateModel(Base):
    """ORM model for stop replacement history (append-only)."""
    __tablename__ = "stop_updates"
    __table_args__ = (
        Index("idx_stop_update_position", "position_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(String, ForeignKey("positions.id"), nullable=False)
    old_order_id = Column(String, nullable=True)
    new_order_id = Column(String, nullable=True)
    old_price = Column(Numeric(precision=20, scale=8), nullable=True)
    new_price = Column(Numeric(precision=20, scale=8), nullable=False)
    reason = Column(String, nullable=False)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)


class ExecutionLogModel(Base):
    """ORM model for monitoring execution timings (append-only)."""
    __tablename__ = "monitoring_execution_log"
    __table_args__ = (
        Index("idx_execution_time", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    details = Column(Text, nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)


# ============ HELPERS ============

def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive datetimes even for timezone=True columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json_default(obj):
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "value"):  # Enum
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _dump_details(details: Dict[str, Any]) -> str:
    try:
        return json.dumps(details, default=_json_default)
    except (TypeError, ValueError) as e:
        return json.dumps({"serialization_error": str(e), "repr": repr(details)})


def _to_position(pm: PositionModel) -> Position:
    return Position(
        id=pm.id,
        account=pm.account,
        settle=Settle(pm.settle),
        symbol=pm.symbol,
        direction=Direction(pm.direction),
        size=_dec(pm.size),
        entry_price=_dec(pm.entry_price),
        entry_order_id=pm.entry_order_id,
        tp1_size=_dec(pm.tp1_size),
        tp2_size=_dec(pm.tp2_size),
        runner_size=_dec(pm.runner_size),
        tp1_order_id=pm.tp1_order_id,
        tp2_order_id=pm.tp2_order_id,
        stop_order_id=pm.stop_order_id,
        tp1_price=_dec(pm.tp1_price),
        tp2_price=_dec(pm.tp2_price),
        original_stop_price=_dec(pm.original_stop_price),
        current_stop_price=_dec(pm.current_stop_price),
        phase=Phase(pm.phase),
        remaining_size=_dec(pm.remaining_size),
        realized_pnl=_dec(pm.realized_pnl) or ZERO,
        created_at=_utc(pm.created_at),
        updated_at=_utc(pm.updated_at),
    )


def _to_fill(fm: OrderFillEventModel) -> OrderFillEvent:
    return OrderFillEvent(
        id=fm.id,
        order_id=fm.order_id,
        position_id=fm.position_id,
        symbol=fm.symbol,
        fill_type=FillType(fm.fill_type),
        fill_size=_dec(fm.fill_size),
        fill_price=_dec(fm.fill_price),
        fill_time=_utc(fm.fill_time),
        processed=bool(fm.processed),
    )


def _to_tracking(tm: TimeTrackingModel) -> TimeTracking:
    return TimeTracking(
        position_id=tm.position_id,
        created_at=_utc(tm.created_at),
        expires_at=_utc(tm.expires_at),
        warning_sent=bool(tm.warning_sent),
        force_close_attempted=bool(tm.force_close_attempted),
        status=TrackingStatus(tm.status),
        updated_at=_utc(tm.updated_at),
    )


# ============ STORE ============

class PositionStore:
    """Transactional position store with append-only fill, audit and stop-update logs."""

    def __init__(self, db: Database):
        self.db = db

    # ---- positions ----

    def create(self, position: Position, tracking: Optional[TimeTracking] = None) -> Position:
        """Insert a new position (and its time tracker) in one transaction."""
        if position.phase is not Phase.INITIAL:
            raise InvalidTransitionError(f"New position must start in phase initial, got {position.phase.value}")
        if not position.stop_order_id:
            raise InvalidTransitionError(f"Position {position.id} cannot be created without a stop order")
        if position.remaining_size != position.size or position.size <= 0:
            raise InvalidTransitionError(
                f"New position remaining_size ({position.remaining_size}) must equal size ({position.size}) > 0"
            )

        now = utc_now()
        with self.db.get_session() as session:
            session.add(PositionModel(
                id=position.id,
                account=position.account,
                settle=position.settle.value,
                symbol=position.symbol,
                direction=position.direction.value,
                size=position.size,
                entry_price=position.entry_price,
                entry_order_id=position.entry_order_id,
                tp1_size=position.tp1_size,
                tp2_size=position.tp2_size,
                runner_size=position.runner_size,
                tp1_order_id=position.tp1_order_id,
                tp2_order_id=position.tp2_order_id,
                stop_order_id=position.stop_order_id,
                phase=position.phase.value,
                remaining_size=position.remaining_size,
                realized_pnl=position.realized_pnl,
                original_stop_price=position.original_stop_price,
                current_stop_price=position.current_stop_price,
                tp1_price=position.tp1_price,
                tp2_price=position.tp2_price,
                created_at=position.created_at,
                updated_at=now,
            ))
            if tracking is not None:
                # Position row must exist before the FK reference
                session.flush()
                session.add(TimeTrackingModel(
                    position_id=tracking.position_id,
                    created_at=tracking.created_at,
                    expires_at=tracking.expires_at,
                    warning_sent=tracking.warning_sent,
                    force_close_attempted=tracking.force_close_attempted,
                    status=tracking.status.value,
                    updated_at=now,
                ))

        position.updated_at = now
        logger.info(
            "Position stored",
            position_id=position.id,
            symbol=position.symbol,
            direction=position.direction.value,
            size=str(position.size),
        )
        return position

    def get(self, position_id: str) -> Optional[Position]:
        with self.db.get_session() as session:
            pm = session.get(PositionModel, position_id)
            return _to_position(pm) if pm else None

    def require(self, position_id: str) -> Position:
        position = self.get(position_id)
        if position is None:
            raise PositionNotFoundError(f"Unknown position {position_id}")
        return position

    def list_active(self) -> List[Position]:
        """Positions in a non-terminal phase, oldest first."""
        with self.db.get_session() as session:
            rows = (
                session.query(PositionModel)
                .filter(PositionModel.phase.in_([p.value for p in ACTIVE_PHASES]))
                .order_by(PositionModel.created_at.asc())
                .all()
            )
            return [_to_position(pm) for pm in rows]

    def count_active(self) -> int:
        with self.db.get_session() as session:
            return (
                session.query(PositionModel)
                .filter(PositionModel.phase.in_([p.value for p in ACTIVE_PHASES]))
                .count()
            )

    def apply_phase_transition(
        self,
        position_id: str,
        phase: Phase,
        remaining_size: Optional[Decimal] = None,
        realized_pnl_delta: Decimal = ZERO,
        fill_id: Optional[int] = None,
    ) -> Position:
        """
        Move a position to `phase`, optionally setting remaining size and accruing PnL.

        Terminal phases force remaining_size to zero when it is not given.
        Same-phase transitions are allowed (manual partial close, late tier fill).
        When `fill_id` is given the fill is marked processed in the same
        transaction, so a processed fill always means its state change landed.

        Raises:
            PositionNotFoundError: unknown id
            InvalidTransitionError: terminal source, backwards move, or size/terminal mismatch
        """
        with self.db.get_session() as session:
            pm = (
                session.query(PositionModel)
                .filter(PositionModel.id == position_id)
                .with_for_update()
                .first()
            )
            if pm is None:
                raise PositionNotFoundError(f"Unknown position {position_id}")

            current = Phase(pm.phase)
            check_invariant(
                not current.is_terminal,
                f"Position {position_id} is already terminal ({current.value}); cannot move to {phase.value}",
                InvalidTransitionError,
            )
            check_invariant(
                is_monotonic(current, phase),
                f"Position {position_id}: {current.value} -> {phase.value} is not a forward transition",
                InvalidTransitionError,
            )

            if remaining_size is None:
                new_remaining = ZERO if phase.is_terminal else _dec(pm.remaining_size)
            else:
                new_remaining = Decimal(str(remaining_size))

            check_invariant(
                new_remaining >= 0,
                f"Position {position_id}: remaining_size would be negative ({new_remaining})",
                InvalidTransitionError,
            )
            check_invariant(
                (new_remaining == 0) == phase.is_terminal,
                f"Position {position_id}: remaining_size {new_remaining} inconsistent with phase {phase.value}",
                InvalidTransitionError,
            )

            pm.phase = phase.value
            pm.remaining_size = new_remaining
            pm.realized_pnl = (_dec(pm.realized_pnl) or ZERO) + Decimal(str(realized_pnl_delta))
            pm.updated_at = utc_now()
            if fill_id is not None:
                fm = session.get(OrderFillEventModel, fill_id)
                if fm is not None:
                    fm.processed = True
            position = _to_position(pm)

        logger.info(
            "PHASE_TRANSITION",
            position_id=position_id,
            from_phase=current.value,
            to_phase=phase.value,
            remaining_size=str(new_remaining),
            realized_pnl=str(position.realized_pnl),
        )
        return position

    def replace_stop_order(self, position_id: str, order_id: str, price: Decimal) -> Position:
        """Point the position at a new confirmed stop order."""
        if not order_id:
            raise InvalidTransitionError(f"Position {position_id}: stop order id must not be empty")

        with self.db.get_session() as session:
            pm = (
                session.query(PositionModel)
                .filter(PositionModel.id == position_id)
                .with_for_update()
                .first()
            )
            if pm is None:
                raise PositionNotFoundError(f"Unknown position {position_id}")
            if Phase(pm.phase).is_terminal:
                raise InvalidTransitionError(
                    f"Position {position_id} is terminal ({pm.phase}); stop cannot be replaced"
                )
            pm.stop_order_id = order_id
            pm.current_stop_price = Decimal(str(price))
            pm.updated_at = utc_now()
            return _to_position(pm)

    # ---- fills ----

    def record_fill(self, event: OrderFillEvent) -> bool:
        """
        Append an inferred fill. Returns False when the order id was already recorded.
        """
        with self.db.get_session() as session:
            exists = (
                session.query(OrderFillEventModel.id)
                .filter(OrderFillEventModel.order_id == event.order_id)
                .first()
            )
            if exists:
                return False
            fm = OrderFillEventModel(
                order_id=event.order_id,
                position_id=event.position_id,
                symbol=event.symbol,
                fill_type=event.fill_type.value,
                fill_size=event.fill_size,
                fill_price=event.fill_price,
                fill_time=event.fill_time,
                processed=event.processed,
                created_at=utc_now(),
            )
            session.add(fm)
            session.flush()
            event.id = fm.id
        return True

    def fill_exists(self, order_id: str) -> bool:
        with self.db.get_session() as session:
            return (
                session.query(OrderFillEventModel.id)
                .filter(OrderFillEventModel.order_id == order_id)
                .first()
                is not None
            )

    def list_unprocessed_fills(self) -> List[OrderFillEvent]:
        with self.db.get_session() as session:
            rows = (
                session.query(OrderFillEventModel)
                .filter(OrderFillEventModel.processed.is_(False))
                .order_by(OrderFillEventModel.id.asc())
                .all()
            )
            return [_to_fill(fm) for fm in rows]

    def is_fill_processed(self, fill_id: int) -> bool:
        with self.db.get_session() as session:
            fm = session.get(OrderFillEventModel, fill_id)
            return bool(fm and fm.processed)

    def mark_fill_processed(self, fill_id: int) -> None:
        with self.db.get_session() as session:
            fm = session.get(OrderFillEventModel, fill_id)
            if fm is not None:
                fm.processed = True

    def list_fills(self, position_id: str) -> List[OrderFillEvent]:
        with self.db.get_session() as session:
            rows = (
                session.query(OrderFillEventModel)
                .filter(OrderFillEventModel.position_id == position_id)
                .order_by(OrderFillEventModel.id.asc())
                .all()
            )
            return [_to_fill(fm) for fm in rows]

    # ---- audit ----

    def log_action(
        self,
        position_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        """Append one audit record. Never updated after insert."""
        with self.db.get_session() as session:
            session.add(ActionAuditModel(
                position_id=position_id,
                action=action,
                details=_dump_details(details or {}),
                timestamp=utc_now(),
                success=success,
                error=error,
            ))

    def get_audit_log(self, position_id: str, limit: int = 100) -> List[ActionAudit]:
        with self.db.get_session() as session:
            rows = (
                session.query(ActionAuditModel)
                .filter(ActionAuditModel.position_id == position_id)
                .order_by(ActionAuditModel.id.asc())
                .limit(limit)
                .all()
            )
            return [
                ActionAudit(
                    id=am.id,
                    position_id=am.position_id,
                    action=am.action,
                    details=json.loads(am.details),
                    timestamp=_utc(am.timestamp),
                    success=bool(am.success),
                    error=am.error,
                )
                for am in rows
            ]

    def record_stop_update(self, update: StopUpdate) -> None:
        with self.db.get_session() as session:
            session.add(StopUpdateModel(
                position_id=update.position_id,
                old_order_id=update.old_order_id,
                new_order_id=update.new_order_id,
                old_price=update.old_price,
                new_price=update.new_price,
                reason=update.reason.value,
                success=update.success,
                error=update.error,
                timestamp=update.timestamp,
            ))

    def get_stop_updates(self, position_id: str) -> List[StopUpdate]:
        with self.db.get_session() as session:
            rows = (
                session.query(StopUpdateModel)
                .filter(StopUpdateModel.position_id == position_id)
                .order_by(StopUpdateModel.id.asc())
                .all()
            )
            return [
                StopUpdate(
                    position_id=sm.position_id,
                    old_order_id=sm.old_order_id,
                    new_order_id=sm.new_order_id,
                    old_price=_dec(sm.old_price),
                    new_price=_dec(sm.new_price),
                    reason=StopUpdateReason(sm.reason),
                    success=bool(sm.success),
                    error=sm.error,
                    timestamp=_utc(sm.timestamp),
                )
                for sm in rows
            ]

    def log_execution(
        self,
        position_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        with self.db.get_session() as session:
            session.add(ExecutionLogModel(
                position_id=position_id,
                action=action,
                details=_dump_details(details or {}),
                duration_ms=int(duration_ms),
                success=success,
                error=error,
                timestamp=utc_now(),
            ))

    def count_executions(self, action: Optional[str] = None) -> int:
        with self.db.get_session() as session:
            query = session.query(ExecutionLogModel)
            if action:
                query = query.filter(ExecutionLogModel.action == action)
            return query.count()

    # ---- time tracking ----

    def get_time_tracking(self, position_id: str) -> Optional[TimeTracking]:
        with self.db.get_session() as session:
            tm = session.get(TimeTrackingModel, position_id)
            return _to_tracking(tm) if tm else None

    def list_open_time_tracking(self) -> List[TimeTracking]:
        """Trackers still in active/warned status, soonest expiry first."""
        with self.db.get_session() as session:
            rows = (
                session.query(TimeTrackingModel)
                .filter(TimeTrackingModel.status.in_([
                    TrackingStatus.ACTIVE.value,
                    TrackingStatus.WARNED.value,
                ]))
                .order_by(TimeTrackingModel.expires_at.asc())
                .all()
            )
            return [_to_tracking(tm) for tm in rows]

    def update_time_tracking(self, position_id: str, **fields) -> TimeTracking:
        """Update tracker fields (warning_sent, force_close_attempted, status, expires_at)."""
        allowed = {"warning_sent", "force_close_attempted", "status", "expires_at"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown time tracking fields: {sorted(unknown)}")

        with self.db.get_session() as session:
            tm = session.get(TimeTrackingModel, position_id)
            if tm is None:
                raise PositionNotFoundError(f"No time tracking for position {position_id}")
            for name, value in fields.items():
                if name == "status":
                    value = TrackingStatus(value).value
                setattr(tm, name, value)
            tm.updated_at = utc_now()
            return _to_tracking(tm)

    def prune_time_tracking(self, older_than: datetime) -> int:
        """Delete finished trackers (expired/force_closed) last touched before `older_than`."""
        with self.db.get_session() as session:
            deleted = (
                session.query(TimeTrackingModel)
                .filter(
                    TimeTrackingModel.status.in_([
                        TrackingStatus.EXPIRED.value,
                        TrackingStatus.FORCE_CLOSED.value,
                    ]),
                    TimeTrackingModel.updated_at < older_than,
                )
                .delete(synchronize_session=False)
            )
        if deleted:
            logger.info("Pruned finished time trackers", count=deleted, older_than=older_than.isoformat())
        return deleted
