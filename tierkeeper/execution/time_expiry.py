"""
Time-based expiry enforcement.

Independent sweep over open time trackers:
- warning_minutes before expiry: warn once (status -> warned)
- force_close_minutes before expiry (or at expiry when closing early is
  disabled): cancel protective orders, phase -> completed, status -> force_closed

The attempt flag is set before any remote call, so a failed force close is not
retried by later sweeps. Once past expiry such a tracker is marked expired and
left for the operator.
"""
from datetime import datetime, timedelta
from typing import Dict, Optional

from tierkeeper.config.config import ExpiryConfig
from tierkeeper.domain.models import Phase, Position, TimeTracking, TrackingStatus, utc_now
from tierkeeper.domain.protocols import GatewayFactory
from tierkeeper.execution.order_mutation import OrderMutator
from tierkeeper.monitoring.logger import get_logger
from tierkeeper.runtime.position_locks import PositionLocks
from tierkeeper.storage.repository import PositionStore

logger = get_logger(__name__)


class ExpiryEnforcer:
    """Force-terminates positions that outlive their maximum age."""

    def __init__(
        self,
        store: PositionStore,
        gateways: GatewayFactory,
        mutator: OrderMutator,
        locks: PositionLocks,
        config: ExpiryConfig,
    ):
        self.store = store
        self.gateways = gateways
        self.mutator = mutator
        self.locks = locks
        self.config = config

    @property
    def force_close_threshold_minutes(self) -> float:
        return self.config.force_close_minutes if self.config.force_close_before_expiry else 0.0

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One pass over open trackers. Logs EXPIRY_SWEEP_SUMMARY."""
        now = now or utc_now()
        summary = {"checked": 0, "warned": 0, "force_closed": 0, "failed": 0, "expired": 0, "pruned": 0}

        for tracking in self.store.list_open_time_tracking():
            summary["checked"] += 1
            try:
                await self._check(tracking, now, summary)
            except Exception as e:
                summary["failed"] += 1
                logger.error("Expiry check failed", position_id=tracking.position_id, error=str(e))

        summary["pruned"] = self.store.prune_time_tracking(
            now - timedelta(hours=self.config.tracking_retention_hours)
        )
        logger.info("EXPIRY_SWEEP_SUMMARY", **summary)
        return summary

    async def _check(self, tracking: TimeTracking, now: datetime, summary: Dict[str, int]) -> None:
        position = self.store.get(tracking.position_id)
        if position is None or position.is_terminal:
            # Closed by a fill or reconciliation; nothing left to enforce
            self.store.update_time_tracking(tracking.position_id, status=TrackingStatus.EXPIRED)
            summary["expired"] += 1
            return

        minutes_left = tracking.minutes_to_expiry(now)

        if not tracking.warning_sent and minutes_left <= self.config.warning_minutes:
            self.store.update_time_tracking(
                position.id, warning_sent=True, status=TrackingStatus.WARNED
            )
            self.store.log_action(position.id, "expiry_warning", {
                "expires_at": tracking.expires_at,
                "minutes_left": round(minutes_left, 1),
            })
            logger.warning(
                "POSITION_EXPIRY_WARNING",
                position_id=position.id,
                symbol=position.symbol,
                minutes_left=round(minutes_left, 1),
            )
            summary["warned"] += 1

        if minutes_left <= self.force_close_threshold_minutes:
            if not tracking.force_close_attempted:
                if await self.force_close(position.id, reason="time_expiry"):
                    summary["force_closed"] += 1
                else:
                    summary["failed"] += 1
            elif minutes_left <= 0:
                self.store.update_time_tracking(position.id, status=TrackingStatus.EXPIRED)
                summary["expired"] += 1
                logger.error(
                    "Position past expiry after failed force close",
                    position_id=position.id,
                    symbol=position.symbol,
                    phase=position.phase.value,
                )

    async def force_close(self, position_id: str, reason: str) -> bool:
        """
        Terminate a position: optional flatten, cancel protective orders, phase -> completed.

        Returns False when the position is already terminal or the close failed.
        Never raises for remote failures.
        """
        async with self.locks.lock_for(position_id):
            position = self.store.require(position_id)
            tracking = self.store.get_time_tracking(position_id)

            if position.is_terminal:
                if tracking is not None and tracking.status.is_open:
                    self.store.update_time_tracking(position_id, status=TrackingStatus.EXPIRED)
                logger.info("Force close skipped, position already terminal", position_id=position_id)
                return False

            if tracking is not None:
                self.store.update_time_tracking(position_id, force_close_attempted=True)

            try:
                closed = await self._close(position, reason)
            except Exception as e:
                self.store.log_action(position_id, "force_close", {
                    "reason": reason, "symbol": position.symbol,
                }, success=False, error=str(e))
                logger.error("Force close failed", position_id=position_id, reason=reason, error=str(e))
                return False

        self.locks.discard(position_id)
        return closed

    async def _close(self, position: Position, reason: str) -> bool:
        gateway = self.gateways.for_group(position.group)

        if self.config.flatten_on_force_close:
            try:
                await self.mutator.flatten(position, gateway, cause=reason)
            except Exception as e:
                # Protective orders stay in place when the market close fails
                logger.error("Flatten failed, keeping protection", position_id=position.id, error=str(e))
                return False

        cancelled = await self.mutator.cancel_protective_orders(position, gateway, cause=reason)
        position = self.store.apply_phase_transition(position.id, Phase.COMPLETED)
        if self.store.get_time_tracking(position.id) is not None:
            self.store.update_time_tracking(position.id, status=TrackingStatus.FORCE_CLOSED)

        self.store.log_action(position.id, "force_close", {
            "reason": reason,
            "symbol": position.symbol,
            "cancelled": cancelled,
            "flattened": self.config.flatten_on_force_close,
        })
        logger.warning(
            "POSITION_FORCE_CLOSED",
            position_id=position.id,
            symbol=position.symbol,
            reason=reason,
            cancelled=cancelled,
        )
        return True
