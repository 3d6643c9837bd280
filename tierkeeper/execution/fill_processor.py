"""
Fill processing: applies one OrderFillEvent to its position.

    tp1    -> remaining -= tp1_size, accrue PnL, phase TP1_FILLED, stop to break-even
    tp2    -> remaining -= tp2_size, accrue PnL, phase TP2_FILLED, stop to trailing level
    sl     -> remaining = 0, accrue PnL, phase STOPPED_OUT, cancel leftover TPs
    manual -> partial: remaining -= size (phase unchanged); full: COMPLETED

The phase change and the fill's processed flag commit together, so an
unprocessed fill is always safe to apply again after a restart. Phases never
move backwards: a tier fill arriving after a later tier keeps the later phase.
A tier fill that exhausts the position completes it. Stops only ever tighten.
"""
import time

from tierkeeper.config.config import MonitoringConfig
from tierkeeper.domain.models import (
    FillType,
    OrderFillEvent,
    Phase,
    Position,
    StopUpdateReason,
)
from tierkeeper.domain.protocols import ExchangeGateway
from tierkeeper.execution.order_mutation import OrderMutator
from tierkeeper.execution.position_state_machine import (
    TIER_TARGET_PHASE,
    ZERO,
    break_even_price,
    is_tighter_stop,
    realized_pnl,
    trailing_stop_price,
)
from tierkeeper.monitoring.logger import get_logger
from tierkeeper.storage.repository import PositionStore

logger = get_logger(__name__)


class FillProcessor:
    """Applies fills to positions and drives the resulting stop migrations."""

    def __init__(self, store: PositionStore, mutator: OrderMutator, config: MonitoringConfig):
        self.store = store
        self.mutator = mutator
        self.config = config

    async def process_fill(self, event: OrderFillEvent, gateway: ExchangeGateway) -> Position:
        """
        Apply `event` to its position. Caller must hold the position lock.

        A fill already marked processed is a no-op. On error the fill is
        audited, marked processed (no retry loop) and the error re-raised.
        """
        started = time.monotonic()
        position = self.store.require(event.position_id)

        if event.id is not None and self.store.is_fill_processed(event.id):
            logger.info("Fill already processed", position_id=position.id, order_id=event.order_id)
            return position

        try:
            if event.fill_type in TIER_TARGET_PHASE:
                position = await self._handle_tier_fill(position, event, gateway)
            elif event.fill_type == FillType.SL:
                position = await self._handle_stop_fill(position, event, gateway)
            else:
                position = await self._handle_manual_fill(position, event, gateway)
        except Exception as e:
            logger.error(
                "Fill processing failed",
                position_id=event.position_id,
                order_id=event.order_id,
                fill_type=event.fill_type.value,
                error=str(e),
            )
            self.store.log_action(event.position_id, "fill_processing_error", {
                "order_id": event.order_id,
                "fill_type": event.fill_type,
            }, success=False, error=str(e))
            self.store.log_execution(event.position_id, "fill_processed", {
                "order_id": event.order_id,
                "fill_type": event.fill_type,
            }, duration_ms=int((time.monotonic() - started) * 1000), success=False, error=str(e))
            raise
        finally:
            if event.id is not None:
                self.store.mark_fill_processed(event.id)
            event.processed = True

        self.store.log_execution(event.position_id, "fill_processed", {
            "order_id": event.order_id,
            "fill_type": event.fill_type,
            "fill_size": event.fill_size,
            "fill_price": event.fill_price,
            "phase": position.phase,
        }, duration_ms=int((time.monotonic() - started) * 1000))
        return position

    async def _handle_tier_fill(
        self,
        position: Position,
        event: OrderFillEvent,
        gateway: ExchangeGateway,
    ) -> Position:
        if position.is_terminal:
            logger.info(
                "Tier fill on terminal position ignored",
                position_id=position.id,
                fill_type=event.fill_type.value,
                phase=position.phase.value,
            )
            return position

        target = TIER_TARGET_PHASE[event.fill_type]
        closed = min(event.fill_size, position.remaining_size)
        remaining = position.remaining_size - closed
        pnl = realized_pnl(position.entry_price, position.direction, event.fill_price, closed)
        if remaining == 0:
            phase = Phase.COMPLETED
        elif target.rank > position.phase.rank:
            phase = target
        else:
            phase = position.phase

        position = self.store.apply_phase_transition(position.id, phase, remaining, pnl, fill_id=event.id)
        self.store.log_action(position.id, f"{event.fill_type.value}_filled", {
            "order_id": event.order_id,
            "fill_size": closed,
            "fill_price": event.fill_price,
            "realized_pnl": pnl,
            "remaining_size": remaining,
            "phase": phase,
        })
        logger.info(
            "Tier fill applied",
            position_id=position.id,
            symbol=position.symbol,
            fill_type=event.fill_type.value,
            closed=str(closed),
            remaining=str(remaining),
            phase=phase.value,
        )

        if position.is_terminal:
            # No runner left; the stop and any other TP would only hang around
            await self.mutator.cancel_protective_orders(position, gateway, cause="position_exhausted")
            return position

        if event.fill_type == FillType.TP1:
            new_stop = break_even_price(position.entry_price, position.direction, self.config.break_even_buffer)
            reason = StopUpdateReason.BREAK_EVEN
        else:
            new_stop = trailing_stop_price(event.fill_price, position.direction, self.config.trailing_distance)
            reason = StopUpdateReason.TRAILING

        if not is_tighter_stop(new_stop, position.current_stop_price, position.direction):
            logger.info(
                "Stop already at or beyond target",
                position_id=position.id,
                current_stop=str(position.current_stop_price),
                target=str(new_stop),
            )
            return position

        ctx = await self.mutator.replace_stop(position, gateway, new_stop, reason)
        if ctx.failed:
            return position
        return self.store.require(position.id)

    async def restore_stop(self, position: Position, gateway: ExchangeGateway) -> Position:
        """
        Re-attempt a stop move whose phase already advanced.

        A failed replacement leaves the old, looser stop working. The target is
        break-even after tp1 and the trailing level off tp2_price after tp2.
        Caller must hold the position lock.
        """
        if position.phase == Phase.TP1_FILLED:
            target = break_even_price(position.entry_price, position.direction, self.config.break_even_buffer)
            reason = StopUpdateReason.BREAK_EVEN
        elif position.phase == Phase.TP2_FILLED and position.tp2_price is not None:
            target = trailing_stop_price(position.tp2_price, position.direction, self.config.trailing_distance)
            reason = StopUpdateReason.TRAILING
        else:
            return position

        # Compare on the tick grid, otherwise a rounded stop always looks loose
        try:
            target = await gateway.round_price(position.symbol, target)
        except Exception as e:
            logger.warning(
                "Stop restore skipped, price rounding failed",
                position_id=position.id,
                symbol=position.symbol,
                error=str(e),
            )
            return position

        if not is_tighter_stop(target, position.current_stop_price, position.direction):
            return position

        logger.warning(
            "Stop behind phase target, re-attempting",
            position_id=position.id,
            phase=position.phase.value,
            current_stop=str(position.current_stop_price),
            target=str(target),
        )
        ctx = await self.mutator.replace_stop(position, gateway, target, reason)
        if ctx.failed:
            return position
        return self.store.require(position.id)

    async def _handle_stop_fill(
        self,
        position: Position,
        event: OrderFillEvent,
        gateway: ExchangeGateway,
    ) -> Position:
        if position.is_terminal:
            logger.info("Stop fill on terminal position ignored", position_id=position.id, phase=position.phase.value)
            return position

        closed = position.remaining_size
        pnl = realized_pnl(position.entry_price, position.direction, event.fill_price, closed)
        position = self.store.apply_phase_transition(position.id, Phase.STOPPED_OUT, ZERO, pnl, fill_id=event.id)
        self.store.log_action(position.id, "sl_filled", {
            "order_id": event.order_id,
            "fill_size": closed,
            "fill_price": event.fill_price,
            "realized_pnl": pnl,
            "total_realized_pnl": position.realized_pnl,
        })
        logger.info(
            "Position stopped out",
            position_id=position.id,
            symbol=position.symbol,
            fill_price=str(event.fill_price),
            realized_pnl=str(position.realized_pnl),
        )
        await self.mutator.cancel_protective_orders(position, gateway, cause="stopped_out", roles=["tp1", "tp2"])
        return position

    async def _handle_manual_fill(
        self,
        position: Position,
        event: OrderFillEvent,
        gateway: ExchangeGateway,
    ) -> Position:
        if position.is_terminal:
            logger.info("Manual fill on terminal position ignored", position_id=position.id)
            return position

        closed = min(event.fill_size, position.remaining_size)
        remaining = position.remaining_size - closed
        pnl = realized_pnl(position.entry_price, position.direction, event.fill_price, closed)
        full_close = remaining == 0
        phase = Phase.COMPLETED if full_close else position.phase

        position = self.store.apply_phase_transition(position.id, phase, remaining, pnl, fill_id=event.id)
        self.store.log_action(position.id, "manual_filled", {
            "order_id": event.order_id,
            "fill_size": closed,
            "fill_price": event.fill_price,
            "realized_pnl": pnl,
            "remaining_size": remaining,
            "full_close": full_close,
        })
        if full_close:
            await self.mutator.cancel_protective_orders(position, gateway, cause="manual_close")
        return position
