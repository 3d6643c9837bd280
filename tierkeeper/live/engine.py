"""
PositionEngine: explicitly constructed facade over the lifecycle components.

Wires the store, the gateway factory and the per-position locks into the
order mutator, fill processor, reconciler and expiry enforcer, and runs the
two independent timers (fill reconciliation, time expiry), each guarded by
its own CycleGuard.
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from tierkeeper.config.config import Config
from tierkeeper.domain.models import (
    FillType,
    GroupKey,
    OpenPositionRequest,
    OrderFillEvent,
    Position,
    Settle,
    TrackingStatus,
    utc_now,
)
from tierkeeper.domain.protocols import GatewayFactory
from tierkeeper.exceptions import UnprotectedPositionError, ValidationError
from tierkeeper.execution.fill_processor import FillProcessor
from tierkeeper.execution.order_mutation import OrderMutator
from tierkeeper.execution.time_expiry import ExpiryEnforcer
from tierkeeper.monitoring.logger import get_logger
from tierkeeper.reconciliation.reconciler import Reconciler
from tierkeeper.runtime.cycle_guard import CycleGuard
from tierkeeper.runtime.position_locks import PositionLocks
from tierkeeper.storage.repository import PositionStore

logger = get_logger(__name__)


class PositionEngine:
    """
    Position lifecycle engine.

    Usage:
        engine = PositionEngine(config, store, CcxtGatewayFactory(config))
        position_id = await engine.open_position(request)
        await engine.run_forever()
    """

    def __init__(self, config: Config, store: PositionStore, gateways: GatewayFactory):
        self.config = config
        self.store = store
        self.gateways = gateways
        self.locks = PositionLocks()

        self.mutator = OrderMutator(store, config.monitoring)
        self.fill_processor = FillProcessor(store, self.mutator, config.monitoring)
        self.reconciler = Reconciler(store, gateways, self.fill_processor, self.mutator, self.locks)
        self.expiry = ExpiryEnforcer(store, gateways, self.mutator, self.locks, config.expiry)

        self.reconcile_guard = CycleGuard("reconcile")
        self.expiry_guard = CycleGuard("expiry")

        self.active = False
        self.last_cycle_time: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.critical_alerts: List[Dict[str, Any]] = []

        self._reconcile_task: Optional[asyncio.Task] = None
        self._expiry_task: Optional[asyncio.Task] = None

    # ============ OPERATIONS ============

    async def open_position(self, request: OpenPositionRequest) -> str:
        """
        Place entry plus protective orders and start tracking the position.

        Raises:
            OrderExecutionError: entry rejected
            UnprotectedPositionError: entry live without any stop (also kept in critical_alerts)
        """
        gateway = self.gateways.for_group(request.group)
        max_age = request.max_age_hours or self.config.expiry.max_age_hours
        try:
            position = await self.mutator.open_position(request, gateway, max_age_hours=max_age)
        except UnprotectedPositionError as e:
            self.critical_alerts.append({
                "type": "unprotected_position",
                "position_id": e.position_id,
                "symbol": e.symbol,
                "entry_order_id": e.entry_order_id,
                "message": str(e),
                "timestamp": utc_now().isoformat(),
            })
            raise

        logger.info(
            "Position opened",
            position_id=position.id,
            symbol=position.symbol,
            direction=position.direction.value,
            size=str(position.size),
            group=str(position.group),
        )
        return position.id

    def get_status(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "active_count": self.store.count_active(),
            "last_cycle_time": self.last_cycle_time.isoformat() if self.last_cycle_time else None,
            "last_error": self.last_error,
            "is_running": self.reconcile_guard.is_running,
            "unprocessed_fills": len(self.store.list_unprocessed_fills()),
            "reconcile_cycles": self.reconcile_guard.total_cycles,
            "skipped_cycles": self.reconcile_guard.skipped_cycles + self.expiry_guard.skipped_cycles,
            "critical": list(self.critical_alerts),
        }

    async def extend_expiry(self, position_id: str, hours: float) -> bool:
        """Push expiry back by `hours`; re-arms the warning and the force close."""
        if hours <= 0:
            logger.warning("Expiry extension must be positive", position_id=position_id, hours=hours)
            return False

        async with self.locks.lock_for(position_id):
            position = self.store.get(position_id)
            tracking = self.store.get_time_tracking(position_id)
            if position is None or tracking is None or position.is_terminal:
                logger.warning("Cannot extend expiry", position_id=position_id)
                return False

            new_expiry = tracking.expires_at + timedelta(hours=hours)
            self.store.update_time_tracking(
                position_id,
                expires_at=new_expiry,
                warning_sent=False,
                force_close_attempted=False,
                status=TrackingStatus.ACTIVE,
            )
            self.store.log_action(position_id, "expiry_extended", {
                "previous_expiry": tracking.expires_at,
                "new_expiry": new_expiry,
                "additional_hours": hours,
            })

        logger.info("Expiry extended", position_id=position_id, symbol=position.symbol, hours=hours)
        return True

    async def force_close(self, position_id: str) -> bool:
        return await self.expiry.force_close(position_id, reason="operator")

    async def record_manual_fill(self, position_id: str, size, price) -> Position:
        """Apply an operator-reported close of `size` at `price`."""
        size = Decimal(str(size))
        price = Decimal(str(price))
        if size <= 0 or price <= 0:
            raise ValidationError("manual fill size and price must be positive")

        async with self.locks.lock_for(position_id):
            position = self.store.require(position_id)
            if position.is_terminal:
                raise ValidationError(f"Position {position_id} is already {position.phase.value}")

            event = OrderFillEvent(
                order_id=f"manual-{uuid.uuid4().hex[:16]}",
                position_id=position.id,
                symbol=position.symbol,
                fill_type=FillType.MANUAL,
                fill_size=size,
                fill_price=price,
            )
            self.store.record_fill(event)
            gateway = self.gateways.for_group(position.group)
            return await self.fill_processor.process_fill(event, gateway)

    def get_position_details(self, position_id: str) -> Dict[str, Any]:
        position = self.store.require(position_id)
        tracking = self.store.get_time_tracking(position_id)
        return {
            "position": position,
            "audit_log": self.store.get_audit_log(position_id),
            "fills": self.store.list_fills(position_id),
            "stop_updates": self.store.get_stop_updates(position_id),
            "time_tracking": tracking,
        }

    def get_time_tracking_status(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open trackers with minutes left, soonest expiry first."""
        now = now or utc_now()
        return [
            {
                "position_id": t.position_id,
                "expires_at": t.expires_at,
                "minutes_to_expiry": round(t.minutes_to_expiry(now), 1),
                "warning_sent": t.warning_sent,
                "force_close_attempted": t.force_close_attempted,
                "status": t.status.value,
            }
            for t in self.store.list_open_time_tracking()
        ]

    async def cleanup_orphaned_orders(self, account: str, settle: Settle) -> Dict[str, list]:
        """Cancel trigger orders in one group whose symbol has no open remote position."""
        gateway = self.gateways.for_group(GroupKey(account, Settle(settle)))
        return await self.mutator.cleanup_orphaned_orders(gateway)

    # ============ CYCLES ============

    async def run_reconciliation_cycle(self) -> Optional[Dict[str, int]]:
        """One guarded reconciliation pass. Returns None when the guard refused it."""
        started, reason = self.reconcile_guard.start_cycle()
        if not started:
            logger.warning("Reconciliation cycle skipped", reason=reason)
            return None

        t0 = time.monotonic()
        error = None
        summary = None
        try:
            await self.reconciler.process_unprocessed_fills()
            summary = await self.reconciler.reconcile_all()
            if summary["errors"]:
                self.last_error = f"{summary['errors']} reconciliation error(s)"
            else:
                self.last_error = None
            return summary
        except Exception as e:
            error = str(e)
            self.last_error = error
            logger.error("Reconciliation cycle failed", error=error, error_type=type(e).__name__)
            return None
        finally:
            self.last_cycle_time = utc_now()
            self.reconcile_guard.end_cycle(error=error)
            self.store.log_execution(
                "*",
                "reconciliation_cycle",
                summary or {},
                duration_ms=int((time.monotonic() - t0) * 1000),
                success=error is None,
                error=error,
            )

    async def run_expiry_sweep(self, now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
        started, reason = self.expiry_guard.start_cycle()
        if not started:
            logger.warning("Expiry sweep skipped", reason=reason)
            return None

        error = None
        try:
            return await self.expiry.sweep(now)
        except Exception as e:
            error = str(e)
            logger.error("Expiry sweep failed", error=error, error_type=type(e).__name__)
            return None
        finally:
            self.expiry_guard.end_cycle(error=error)

    # ============ TIMERS ============

    async def _run_reconciliation_loop(self) -> None:
        interval = self.config.monitoring.check_interval_seconds
        while self.active:
            try:
                await self.run_reconciliation_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Reconciliation loop iteration failed", error=str(e))
            await asyncio.sleep(interval)

    async def _run_expiry_loop(self) -> None:
        interval = self.config.expiry.sweep_interval_minutes * 60
        while self.active:
            try:
                await self.run_expiry_sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Expiry loop iteration failed", error=str(e))
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Start both timers on the running event loop."""
        if self.active:
            return
        self.active = True
        self._reconcile_task = asyncio.create_task(self._run_reconciliation_loop())
        if self.config.expiry.enabled:
            self._expiry_task = asyncio.create_task(self._run_expiry_loop())
        logger.info(
            "Engine started",
            check_interval_seconds=self.config.monitoring.check_interval_seconds,
            expiry_enabled=self.config.expiry.enabled,
            active_positions=self.store.count_active(),
        )

    async def stop(self) -> None:
        self.active = False
        for task in (self._reconcile_task, self._expiry_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconcile_task = None
        self._expiry_task = None
        await self.gateways.close_all()
        logger.info("Engine stopped")

    async def run_forever(self) -> None:
        self.start()
        try:
            await asyncio.gather(*(t for t in (self._reconcile_task, self._expiry_task) if t is not None))
        except asyncio.CancelledError:
            logger.info("Engine loop cancelled")
        finally:
            await self.stop()

    def emergency_stop(self) -> None:
        """Halt both timers immediately. Protective orders on the exchange are left as they are."""
        logger.critical("EMERGENCY_STOP", active_positions=self.store.count_active())
        self.active = False
        for task in (self._reconcile_task, self._expiry_task):
            if task is not None and not task.done():
                task.cancel()
