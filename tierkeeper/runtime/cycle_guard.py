"""
CycleGuard: reentrancy guard for the periodic timers.

A slow cycle suppresses its own next tick rather than overlapping.

Usage:
    guard = CycleGuard("reconcile")

    started, reason = guard.start_cycle()
    if not started:
        logger.warning("Cycle skipped", reason=reason)
        return

    try:
        ...
    finally:
        guard.end_cycle()
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import uuid

from tierkeeper.monitoring.logger import get_logger

logger = get_logger(__name__)

OVERLAPPING_CYCLE = "OVERLAPPING_CYCLE"
TOO_SOON = "TOO_SOON"


@dataclass
class CycleState:
    """State of a single timer cycle."""
    cycle_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.ended_at is not None

    def duration_seconds(self) -> float:
        end = self.ended_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()


class CycleGuard:
    """Prevents overlapping runs of one named timer."""

    def __init__(self, name: str, min_cycle_interval_seconds: float = 0.0):
        self.name = name
        self.min_interval = timedelta(seconds=min_cycle_interval_seconds)

        self.current_cycle: Optional[CycleState] = None
        self.last_completed_cycle: Optional[CycleState] = None

        self.total_cycles = 0
        self.skipped_cycles = 0

    @property
    def is_running(self) -> bool:
        return self.current_cycle is not None and not self.current_cycle.is_complete

    def start_cycle(self) -> Tuple[bool, Optional[str]]:
        """
        Attempt to start a new cycle.

        Returns:
            (success, reason) - reason is OVERLAPPING_CYCLE or TOO_SOON when refused
        """
        now = datetime.now(timezone.utc)

        if self.is_running:
            self.skipped_cycles += 1
            logger.warning(
                "CYCLE_SKIPPED",
                timer=self.name,
                reason=OVERLAPPING_CYCLE,
                running_cycle=self.current_cycle.cycle_id,
                running_for_seconds=round(self.current_cycle.duration_seconds(), 2),
            )
            return False, OVERLAPPING_CYCLE

        if self.last_completed_cycle and self.min_interval:
            elapsed = now - self.last_completed_cycle.started_at
            if elapsed < self.min_interval:
                self.skipped_cycles += 1
                return False, TOO_SOON

        self.current_cycle = CycleState(cycle_id=uuid.uuid4().hex[:12], started_at=now)
        self.total_cycles += 1
        logger.debug("CYCLE_START", timer=self.name, cycle_id=self.current_cycle.cycle_id)
        return True, None

    def end_cycle(self, error: Optional[str] = None) -> Optional[CycleState]:
        """Mark the running cycle complete."""
        cycle = self.current_cycle
        if cycle is None or cycle.is_complete:
            return None

        cycle.ended_at = datetime.now(timezone.utc)
        cycle.error = error
        self.last_completed_cycle = cycle
        logger.debug(
            "CYCLE_END",
            timer=self.name,
            cycle_id=cycle.cycle_id,
            duration_seconds=round(cycle.duration_seconds(), 3),
            error=error,
        )
        return cycle
