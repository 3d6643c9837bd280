"""
Order Mutation Protocol.

The only component that places or cancels protective orders:
1. Place-before-cancel stop replacement (never a window with zero protection)
2. Position opening: entry, then the protective batch (tp1, tp2, stop) with
   compensating cancellation and an emergency stop-only fallback
3. Best-effort cancellation of protective orders on close
4. Orphaned trigger order cleanup

Every remote mutation attempt is written to the audit log right after the
remote call returns, before any dependent step runs.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from tierkeeper.config.config import MonitoringConfig
from tierkeeper.domain.models import (
    ConditionalOrderSpec,
    MarketOrderSpec,
    OpenPositionRequest,
    OrderKind,
    Position,
    StopUpdate,
    StopUpdateReason,
    TimeTracking,
    utc_now,
)
from tierkeeper.domain.protocols import ExchangeGateway
from tierkeeper.exceptions import OrderExecutionError, UnprotectedPositionError
from tierkeeper.monitoring.logger import get_logger
from tierkeeper.storage.repository import PositionStore

logger = get_logger(__name__)


@dataclass
class StopReplaceContext:
    """Context for one place-before-cancel stop replacement."""
    position_id: str
    symbol: str
    reason: StopUpdateReason
    old_stop_order_id: Optional[str]
    old_stop_price: Decimal
    new_stop_price: Decimal
    new_stop_order_id: Optional[str] = None
    old_stop_cancelled: bool = False
    failed: bool = False
    error: Optional[str] = None


@dataclass
class ProtectiveBatchResult:
    """Outcome of the creation-time protective order batch."""
    placed: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failures


class OrderMutator:
    """Executes protective-order mutations against one gateway at a time."""

    def __init__(self, store: PositionStore, config: MonitoringConfig):
        self.store = store
        self.config = config

    async def _round(self, gateway: ExchangeGateway, symbol: str, price: Decimal) -> Decimal:
        try:
            return await gateway.round_price(symbol, price)
        except Exception as e:
            logger.warning("Price rounding failed, using raw price", symbol=symbol, price=str(price), error=str(e))
            return price

    # ============ STOP REPLACEMENT ============

    async def replace_stop(
        self,
        position: Position,
        gateway: ExchangeGateway,
        new_stop_price: Decimal,
        reason: StopUpdateReason,
    ) -> StopReplaceContext:
        """
        Move the stop to `new_stop_price` for the remaining size.

        Protocol:
        1. Place NEW stop first
        2. Persist it only once the exchange returned its id
        3. Only THEN cancel the old stop; a failed cancel is logged, not fatal
           (a stale reduce-only order cannot increase exposure)
        4. If step 1 fails the old stop stays in place and nothing is persisted
        """
        new_stop_price = await self._round(gateway, position.symbol, new_stop_price)
        ctx = StopReplaceContext(
            position_id=position.id,
            symbol=position.symbol,
            reason=reason,
            old_stop_order_id=position.stop_order_id,
            old_stop_price=position.current_stop_price,
            new_stop_price=new_stop_price,
        )

        try:
            ctx.new_stop_order_id = await gateway.place_conditional_order(ConditionalOrderSpec(
                symbol=position.symbol,
                kind=OrderKind.STOP_LOSS,
                close_side=position.direction.close_side,
                size=position.remaining_size,
                trigger_price=new_stop_price,
            ))
        except Exception as e:
            ctx.failed = True
            ctx.error = str(e)
            logger.error(
                "Stop replace failed - KEEPING OLD STOP",
                position_id=position.id,
                symbol=position.symbol,
                reason=reason.value,
                error=str(e),
            )
            self.store.log_action(position.id, f"sl_update_{reason.value}", {
                "old_order_id": ctx.old_stop_order_id,
                "old_price": ctx.old_stop_price,
                "new_price": new_stop_price,
            }, success=False, error=str(e))
            self.store.record_stop_update(StopUpdate(
                position_id=position.id,
                old_order_id=ctx.old_stop_order_id,
                new_order_id=None,
                old_price=ctx.old_stop_price,
                new_price=new_stop_price,
                reason=reason,
                success=False,
                error=str(e),
            ))
            return ctx

        self.store.log_action(position.id, f"sl_update_{reason.value}", {
            "old_order_id": ctx.old_stop_order_id,
            "new_order_id": ctx.new_stop_order_id,
            "old_price": ctx.old_stop_price,
            "new_price": new_stop_price,
            "size": position.remaining_size,
        })
        self.store.replace_stop_order(position.id, ctx.new_stop_order_id, new_stop_price)
        self.store.record_stop_update(StopUpdate(
            position_id=position.id,
            old_order_id=ctx.old_stop_order_id,
            new_order_id=ctx.new_stop_order_id,
            old_price=ctx.old_stop_price,
            new_price=new_stop_price,
            reason=reason,
            success=True,
        ))

        if ctx.old_stop_order_id:
            ctx.old_stop_cancelled = await self._cancel(
                position, gateway, "sl", ctx.old_stop_order_id, cause=f"replaced_{reason.value}"
            )

        logger.info(
            "STOP_REPLACED",
            position_id=position.id,
            symbol=position.symbol,
            reason=reason.value,
            old_price=str(ctx.old_stop_price),
            new_price=str(new_stop_price),
            new_order_id=ctx.new_stop_order_id,
            old_cancelled=ctx.old_stop_cancelled,
        )
        return ctx

    # ============ CANCELLATION ============

    async def _cancel(
        self,
        position: Position,
        gateway: ExchangeGateway,
        role: str,
        order_id: str,
        cause: str,
    ) -> bool:
        """Best-effort cancel of one protective order, audited either way."""
        try:
            await gateway.cancel_conditional_order(order_id, position.symbol)
        except Exception as e:
            logger.warning(
                "Protective order cancel failed",
                position_id=position.id,
                role=role,
                order_id=order_id,
                cause=cause,
                error=str(e),
            )
            self.store.log_action(position.id, "order_cancel", {
                "role": role, "order_id": order_id, "cause": cause,
            }, success=False, error=str(e))
            return False

        self.store.log_action(position.id, "order_cancel", {
            "role": role, "order_id": order_id, "cause": cause,
        })
        return True

    async def cancel_protective_orders(
        self,
        position: Position,
        gateway: ExchangeGateway,
        cause: str,
        roles: Optional[List[str]] = None,
    ) -> Dict[str, bool]:
        """
        Cancel the position's known protective orders (all roles by default).

        Returns role -> cancelled flag. Failures never raise.
        """
        results = {}
        for role, order_id in position.protective_order_ids().items():
            if roles is not None and role not in roles:
                continue
            results[role] = await self._cancel(position, gateway, role, order_id, cause)
        return results

    # ============ OPENING ============

    def _protective_specs(self, request: OpenPositionRequest, prices: Dict[str, Decimal]) -> Dict[str, ConditionalOrderSpec]:
        close_side = request.direction.close_side
        specs = {}
        if request.tp1_size > 0:
            specs["tp1"] = ConditionalOrderSpec(
                symbol=request.symbol,
                kind=OrderKind.TAKE_PROFIT,
                close_side=close_side,
                size=request.tp1_size,
                trigger_price=prices["tp1"],
            )
        if request.tp2_size > 0:
            specs["tp2"] = ConditionalOrderSpec(
                symbol=request.symbol,
                kind=OrderKind.TAKE_PROFIT,
                close_side=close_side,
                size=request.tp2_size,
                trigger_price=prices["tp2"],
            )
        specs["sl"] = ConditionalOrderSpec(
            symbol=request.symbol,
            kind=OrderKind.STOP_LOSS,
            close_side=close_side,
            size=request.size,
            trigger_price=prices["sl"],
        )
        return specs

    async def _place_batch(
        self,
        gateway: ExchangeGateway,
        specs: Dict[str, ConditionalOrderSpec],
    ) -> ProtectiveBatchResult:
        """Submit all protective orders concurrently and collect per-role outcomes."""
        roles = list(specs)
        outcomes = await asyncio.gather(
            *(gateway.place_conditional_order(specs[role]) for role in roles),
            return_exceptions=True,
        )
        result = ProtectiveBatchResult()
        for role, outcome in zip(roles, outcomes):
            if isinstance(outcome, Exception):
                result.failures[role] = str(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.placed[role] = outcome
        return result

    async def open_position(
        self,
        request: OpenPositionRequest,
        gateway: ExchangeGateway,
        *,
        max_age_hours: float,
        position_id: Optional[str] = None,
    ) -> Position:
        """
        Open a position and protect it.

        Outcomes:
            - entry + tp1/tp2/stop all placed: normal position
            - batch partially failed: the batch stop is kept (or an emergency stop
              placed) before the take-profit legs are cancelled; position stored
              with the stop only
            - emergency stop also failed: UnprotectedPositionError (CRITICAL)

        Raises:
            OrderExecutionError: entry rejected, nothing opened
            UnprotectedPositionError: entry filled but no stop could be placed
        """
        position_id = position_id or uuid.uuid4().hex
        symbol = request.symbol
        log = logger.bind(position_id=position_id, symbol=symbol, direction=request.direction.value)

        # Step 1: entry
        try:
            entry_order_id = await gateway.place_market_order(MarketOrderSpec(
                symbol=symbol,
                side=request.direction.entry_side,
                size=request.size,
            ))
        except Exception as e:
            log.error("Entry order failed", error=str(e))
            self.store.log_action(position_id, "entry_placed", {
                "symbol": symbol, "size": request.size,
            }, success=False, error=str(e))
            raise OrderExecutionError(f"Entry order for {symbol} failed: {e}") from e

        self.store.log_action(position_id, "entry_placed", {
            "symbol": symbol,
            "side": request.direction.entry_side,
            "size": request.size,
            "entry_order_id": entry_order_id,
        })
        log.info("Entry placed", entry_order_id=entry_order_id, size=str(request.size))

        # Step 2: protective batch
        prices = {"sl": await self._round(gateway, symbol, request.stop_price)}
        if request.tp1_size > 0:
            prices["tp1"] = await self._round(gateway, symbol, request.tp1_price)
        if request.tp2_size > 0:
            prices["tp2"] = await self._round(gateway, symbol, request.tp2_price)

        specs = self._protective_specs(request, prices)
        batch = await self._place_batch(gateway, specs)
        self.store.log_action(position_id, "protective_batch", {
            "placed": batch.placed,
            "failures": batch.failures,
            "prices": prices,
        }, success=batch.complete, error="; ".join(f"{r}: {m}" for r, m in batch.failures.items()) or None)

        created_at = utc_now()
        position = Position(
            id=position_id,
            account=request.account,
            settle=request.settle,
            symbol=symbol,
            direction=request.direction,
            size=request.size,
            entry_price=request.entry_price,
            entry_order_id=entry_order_id,
            tp1_size=request.tp1_size,
            tp2_size=request.tp2_size,
            runner_size=request.runner_size,
            stop_order_id=None,
            original_stop_price=prices["sl"],
            current_stop_price=prices["sl"],
            tp1_price=prices.get("tp1"),
            tp2_price=prices.get("tp2"),
            created_at=created_at,
        )
        tracking = TimeTracking(
            position_id=position_id,
            created_at=created_at,
            expires_at=created_at + timedelta(hours=max_age_hours),
        )

        if batch.complete:
            position.tp1_order_id = batch.placed.get("tp1")
            position.tp2_order_id = batch.placed.get("tp2")
            position.stop_order_id = batch.placed["sl"]
            self._persist_new(position, tracking, emergency=False)
            return position

        log.error("Protective batch failed, rolling back", failures=batch.failures, placed=batch.placed)

        # Step 3: stop-only protection, in place before any leg is cancelled
        if "sl" in batch.placed:
            emergency_id = batch.placed.pop("sl")
            self.store.log_action(position_id, "emergency_stop_placed", {
                "symbol": symbol,
                "stop_price": prices["sl"],
                "size": request.size,
                "order_id": emergency_id,
                "kept_from_batch": True,
            })
        else:
            try:
                emergency_id = await gateway.place_conditional_order(specs["sl"])
            except Exception as e:
                self.store.log_action(position_id, "emergency_stop_placed", {
                    "symbol": symbol,
                    "stop_price": prices["sl"],
                    "size": request.size,
                    "entry_order_id": entry_order_id,
                }, success=False, error=str(e))
                await self._rollback(position, gateway, batch)
                log.critical(
                    "UNPROTECTED_POSITION",
                    entry_order_id=entry_order_id,
                    size=str(request.size),
                    batch_failures=batch.failures,
                    error=str(e),
                )
                raise UnprotectedPositionError(
                    f"Position {position_id} ({symbol}) is open with NO protective orders: {e}",
                    position_id=position_id,
                    symbol=symbol,
                    entry_order_id=entry_order_id,
                ) from e

            self.store.log_action(position_id, "emergency_stop_placed", {
                "symbol": symbol,
                "stop_price": prices["sl"],
                "size": request.size,
                "order_id": emergency_id,
            })

        # Step 4: compensate the take-profit legs that made it through
        await self._rollback(position, gateway, batch)

        position.stop_order_id = emergency_id
        self._persist_new(position, tracking, emergency=True)
        self.store.record_stop_update(StopUpdate(
            position_id=position_id,
            old_order_id=None,
            new_order_id=emergency_id,
            old_price=None,
            new_price=prices["sl"],
            reason=StopUpdateReason.EMERGENCY,
            success=True,
        ))
        log.warning("Position protected by emergency stop only", stop_order_id=emergency_id)
        return position

    async def _rollback(self, position: Position, gateway: ExchangeGateway, batch: ProtectiveBatchResult) -> None:
        for role, order_id in batch.placed.items():
            await self._cancel(position, gateway, role, order_id, cause="batch_rollback")

    def _persist_new(self, position: Position, tracking: TimeTracking, *, emergency: bool) -> None:
        try:
            self.store.create(position, tracking)
        except Exception:
            # Orders are live on the exchange but unknown locally
            logger.critical(
                "POSITION_NOT_PERSISTED",
                position_id=position.id,
                symbol=position.symbol,
                protective_orders=position.protective_order_ids(),
                exc_info=True,
            )
            raise
        self.store.log_action(position.id, "position_created", {
            **position.to_dict(),
            "emergency": emergency,
            "expires_at": tracking.expires_at,
        })

    # ============ FLATTEN / ORPHANS ============

    async def flatten(self, position: Position, gateway: ExchangeGateway, cause: str) -> str:
        """Reduce-only market close of the remaining size. Raises on failure."""
        try:
            order_id = await gateway.place_market_order(MarketOrderSpec(
                symbol=position.symbol,
                side=position.direction.close_side,
                size=position.remaining_size,
                reduce_only=True,
            ))
        except Exception as e:
            self.store.log_action(position.id, "flatten", {
                "size": position.remaining_size, "cause": cause,
            }, success=False, error=str(e))
            raise
        self.store.log_action(position.id, "flatten", {
            "size": position.remaining_size, "cause": cause, "order_id": order_id,
        })
        return order_id

    async def cleanup_orphaned_orders(self, gateway: ExchangeGateway) -> Dict[str, list]:
        """
        Cancel open trigger orders whose symbol has no open remote position.

        Returns {"cancelled": [{id, symbol}], "failures": [{id, symbol, error}]}.
        """
        open_symbols = {p.symbol for p in await gateway.list_positions() if p.size != 0}
        orders = await gateway.list_conditional_orders()
        orphans = [o for o in orders if o.symbol not in open_symbols]

        cancelled, failures = [], []
        for order in orphans:
            try:
                await gateway.cancel_conditional_order(order.id, order.symbol)
                cancelled.append({"id": order.id, "symbol": order.symbol})
            except Exception as e:
                logger.warning("Orphan cancel failed", order_id=order.id, symbol=order.symbol, error=str(e))
                failures.append({"id": order.id, "symbol": order.symbol, "error": str(e)})

        logger.info(
            "ORPHAN_CLEANUP",
            orders_seen=len(orders),
            orphans=len(orphans),
            cancelled=len(cancelled),
            failed=len(failures),
        )
        return {"cancelled": cancelled, "failures": failures}
