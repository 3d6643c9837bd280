"""
Reconciliation and fill inference.

One cycle, per credential+market group:
1. list remote positions once; a tracked position missing (or zero-sized)
   remotely is completed with cause "closed_remotely" and no fill event
2. list open conditional orders once; for each surviving position diff its
   protective order ids against the ids seen last cycle. An id seen before
   and gone now is an inferred fill, typed by matching the stored tp1/tp2/sl ids
3. record each inferred fill (order id is the idempotency key) and apply it
   under the position lock

The previous-cycle snapshot is memory-only. Without one (first observation,
restart) nothing is inferred. A remote failure never counts as evidence: the
group is skipped and its snapshots stay as they were.
"""
import time
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional

from tierkeeper.domain.models import (
    GroupKey,
    OrderFillEvent,
    Phase,
    Position,
    utc_now,
)
from tierkeeper.domain.protocols import ExchangeGateway, GatewayFactory
from tierkeeper.execution.fill_processor import FillProcessor
from tierkeeper.execution.order_mutation import OrderMutator
from tierkeeper.execution.position_state_machine import (
    FILL_ORDER,
    estimate_fill_size,
    reference_fill_price,
)
from tierkeeper.monitoring.logger import get_logger
from tierkeeper.runtime.position_locks import PositionLocks
from tierkeeper.storage.repository import PositionStore

logger = get_logger(__name__)

# position id -> {order id: trigger price}
OrderSnapshot = Dict[str, Optional[Decimal]]


def infer_fills(
    position: Position,
    previous: Optional[OrderSnapshot],
    current: OrderSnapshot,
) -> List[OrderFillEvent]:
    """
    Fills implied by protective orders that vanished since `previous`.

    Returns an empty list when there is no previous snapshot. Vanished ids that
    are not the position's current tp1/tp2/sl (e.g. a replaced stop) are ignored.
    Results are ordered tp1, tp2, sl.
    """
    if previous is None:
        return []

    events = []
    for order_id, trigger in previous.items():
        if order_id in current:
            continue
        fill_type = position.fill_type_for(order_id)
        if fill_type is None:
            continue
        events.append(OrderFillEvent(
            order_id=order_id,
            position_id=position.id,
            symbol=position.symbol,
            fill_type=fill_type,
            fill_size=estimate_fill_size(fill_type, position),
            fill_price=reference_fill_price(fill_type, position, trigger),
            fill_time=utc_now(),
        ))
    events.sort(key=lambda e: FILL_ORDER[e.fill_type])
    return events


class Reconciler:
    """
    Keeps local positions in step with the exchange. Logs RECONCILE_SUMMARY per cycle.
    """

    def __init__(
        self,
        store: PositionStore,
        gateways: GatewayFactory,
        fill_processor: FillProcessor,
        mutator: OrderMutator,
        locks: PositionLocks,
    ):
        self.store = store
        self.gateways = gateways
        self.fill_processor = fill_processor
        self.mutator = mutator
        self.locks = locks
        self._order_snapshots: Dict[str, OrderSnapshot] = {}

    def snapshot_for(self, position_id: str) -> Optional[OrderSnapshot]:
        return self._order_snapshots.get(position_id)

    def forget(self, position_id: str) -> None:
        self._order_snapshots.pop(position_id, None)

    async def reconcile_all(self) -> Dict[str, int]:
        """
        Run one reconciliation cycle over every active position.

        Returns summary counts: groups, checked, closed_remotely, fills_inferred,
        fills_applied, duplicates, skipped_locked, errors.
        """
        started = time.monotonic()
        logger.info("RECONCILE_START")
        summary = {
            "groups": 0,
            "checked": 0,
            "closed_remotely": 0,
            "fills_inferred": 0,
            "fills_applied": 0,
            "duplicates": 0,
            "skipped_locked": 0,
            "errors": 0,
        }

        active = self.store.list_active()
        groups: Dict[GroupKey, List[Position]] = defaultdict(list)
        for position in active:
            groups[position.group].append(position)
        summary["groups"] = len(groups)

        for group, positions in groups.items():
            try:
                await self._reconcile_group(group, positions, summary)
            except Exception as e:
                # One failing account must not stall the others
                summary["errors"] += 1
                logger.error(
                    "Group reconciliation failed",
                    group=str(group),
                    positions=len(positions),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self._prune_snapshots()
        summary["duration_ms"] = int((time.monotonic() - started) * 1000)
        logger.info("RECONCILE_SUMMARY", **summary)
        return summary

    async def _reconcile_group(
        self,
        group: GroupKey,
        positions: List[Position],
        summary: Dict[str, int],
    ) -> None:
        gateway = self.gateways.for_group(group)

        remote_sizes = {p.symbol: p.size for p in await gateway.list_positions()}
        survivors = []
        for position in positions:
            summary["checked"] += 1
            if remote_sizes.get(position.symbol, Decimal("0")) != 0:
                survivors.append(position)
                continue
            if self.locks.is_locked(position.id):
                summary["skipped_locked"] += 1
                continue
            async with self.locks.lock_for(position.id):
                if await self._complete_closed_remotely(position.id, gateway):
                    summary["closed_remotely"] += 1
            self.locks.discard(position.id)

        if not survivors:
            return

        orders_by_symbol: Dict[str, OrderSnapshot] = defaultdict(dict)
        for order in await gateway.list_conditional_orders():
            orders_by_symbol[order.symbol][order.id] = order.trigger_price

        for position in survivors:
            if self.locks.is_locked(position.id):
                # Mutation in flight; its snapshot stays untouched until next cycle
                summary["skipped_locked"] += 1
                logger.debug("Position locked, skipping", position_id=position.id)
                continue
            try:
                async with self.locks.lock_for(position.id):
                    await self._reconcile_orders(position.id, gateway, orders_by_symbol[position.symbol], summary)
            except Exception as e:
                # Later positions of the group still get their fills inferred
                summary["errors"] += 1
                logger.error(
                    "Position reconciliation failed",
                    position_id=position.id,
                    symbol=position.symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            if position.id not in self._order_snapshots:
                self.locks.discard(position.id)

    async def _complete_closed_remotely(self, position_id: str, gateway: ExchangeGateway) -> bool:
        position = self.store.get(position_id)
        if position is None or position.is_terminal:
            return False

        position = self.store.apply_phase_transition(position.id, Phase.COMPLETED)
        self.store.log_action(position.id, "position_completed", {
            "cause": "closed_remotely",
            "symbol": position.symbol,
            "realized_pnl": position.realized_pnl,
        })
        logger.info(
            "Position closed remotely",
            position_id=position.id,
            symbol=position.symbol,
            group=str(position.group),
        )
        await self.mutator.cancel_protective_orders(position, gateway, cause="closed_remotely")
        self.forget(position.id)
        return True

    async def _reconcile_orders(
        self,
        position_id: str,
        gateway: ExchangeGateway,
        symbol_orders: OrderSnapshot,
        summary: Dict[str, int],
    ) -> None:
        # Re-read under the lock; an operator command may have moved it
        position = self.store.get(position_id)
        if position is None or position.is_terminal:
            self.forget(position_id)
            return

        tracked = set(position.protective_order_ids().values())
        current = {oid: trigger for oid, trigger in symbol_orders.items() if oid in tracked}
        previous = self._order_snapshots.get(position.id)

        if previous is None:
            logger.debug("First order snapshot", position_id=position.id, orders=len(current))
            self._order_snapshots[position.id] = current
            return

        events = infer_fills(position, previous, current)
        summary["fills_inferred"] += len(events)

        if not events:
            position = await self.fill_processor.restore_stop(position, gateway)

        for event in events:
            if not self.store.record_fill(event):
                summary["duplicates"] += 1
                logger.info("Fill already recorded", position_id=position.id, order_id=event.order_id)
                continue
            logger.info(
                "FILL_INFERRED",
                position_id=position.id,
                symbol=position.symbol,
                order_id=event.order_id,
                fill_type=event.fill_type.value,
                fill_size=str(event.fill_size),
                fill_price=str(event.fill_price),
            )
            try:
                position = await self.fill_processor.process_fill(event, gateway)
            except Exception as e:
                summary["errors"] += 1
                logger.error("Inferred fill not applied", position_id=position_id, order_id=event.order_id, error=str(e))
                return
            summary["fills_applied"] += 1
            if position.is_terminal:
                break

        if position.is_terminal:
            self.forget(position.id)
            return

        # Snapshot the post-mutation view: a replaced stop's new id joins from the next listing
        tracked = set(position.protective_order_ids().values())
        self._order_snapshots[position.id] = {
            oid: trigger for oid, trigger in symbol_orders.items() if oid in tracked
        }

    async def process_unprocessed_fills(self) -> int:
        """
        Re-dispatch fills that were recorded but never marked processed (crash mid-fill).

        Returns the number re-dispatched. Each is marked processed even on error.
        """
        pending = self.store.list_unprocessed_fills()
        if not pending:
            return 0

        logger.warning("Recovering unprocessed fills", count=len(pending))
        recovered = 0
        for event in pending:
            position = self.store.get(event.position_id)
            if position is None:
                self.store.mark_fill_processed(event.id)
                continue
            try:
                gateway = self.gateways.for_group(position.group)
                async with self.locks.lock_for(position.id):
                    await self.fill_processor.process_fill(event, gateway)
                recovered += 1
            except Exception as e:
                logger.error("Fill recovery failed", position_id=event.position_id, order_id=event.order_id, error=str(e))
                self.store.mark_fill_processed(event.id)
        return recovered

    def _prune_snapshots(self) -> None:
        active_ids = {p.id for p in self.store.list_active()}
        for position_id in list(self._order_snapshots):
            if position_id not in active_ids:
                del self._order_snapshots[position_id]
