"""
Reconciliation flow against the stateful fake exchange.

Tests the full chain: engine opens a protected position, the exchange
executes a trigger order, the next cycle infers the fill, applies it and
migrates the stop.
"""
from decimal import Decimal

import pytest

from tierkeeper.domain.models import FillType, OrderFillEvent, Phase, Settle, StopUpdateReason
from tierkeeper.exceptions import APIError, RemoteTimeoutError


class TestFillInference:

    @pytest.mark.asyncio
    async def test_first_cycle_infers_nothing(self, engine, gateway, open_long):
        position = await open_long()
        # Already gone before the first observation: no baseline, no inference
        gateway.trigger(position.tp1_order_id)

        summary = await engine.reconciler.reconcile_all()

        assert summary["fills_inferred"] == 0
        assert engine.store.require(position.id).phase is Phase.INITIAL
        assert engine.reconciler.snapshot_for(position.id) == {
            position.tp2_order_id: Decimal("51250"),
            position.stop_order_id: Decimal("48500"),
        }

    @pytest.mark.asyncio
    async def test_tp1_then_tp2_then_runner_stop(self, engine, gateway, open_long):
        position = await open_long()
        await engine.reconciler.reconcile_all()

        gateway.trigger(position.tp1_order_id)
        summary = await engine.reconciler.reconcile_all()

        after_tp1 = engine.store.require(position.id)
        assert summary["fills_applied"] == 1
        assert after_tp1.phase is Phase.TP1_FILLED
        assert after_tp1.remaining_size == Decimal("5")
        assert after_tp1.current_stop_price == Decimal("50025")
        assert gateway.specs[after_tp1.stop_order_id].size == Decimal("5")

        # The replacement stop is picked up as a baseline, not a fill
        summary = await engine.reconciler.reconcile_all()
        assert summary["fills_inferred"] == 0
        assert after_tp1.stop_order_id in engine.reconciler.snapshot_for(position.id)

        gateway.trigger(position.tp2_order_id)
        await engine.reconciler.reconcile_all()

        after_tp2 = engine.store.require(position.id)
        assert after_tp2.phase is Phase.TP2_FILLED
        assert after_tp2.remaining_size == Decimal("2")
        assert after_tp2.current_stop_price == Decimal("50737.5")

        await engine.reconciler.reconcile_all()
        gateway.trigger(after_tp2.stop_order_id)
        await engine.reconciler.reconcile_all()

        # The runner stop flattens the exchange position, which reads as a remote close
        final = engine.store.require(position.id)
        assert final.phase is Phase.COMPLETED
        assert final.remaining_size == Decimal("0")
        assert engine.reconciler.snapshot_for(position.id) is None

        fill_types = [f.fill_type for f in engine.store.list_fills(position.id)]
        assert fill_types == [FillType.TP1, FillType.TP2]
        reasons = [u.reason for u in engine.store.get_stop_updates(position.id)]
        assert reasons == [StopUpdateReason.BREAK_EVEN, StopUpdateReason.TRAILING]

    @pytest.mark.asyncio
    async def test_failed_stop_move_retried_next_cycle(self, engine, gateway, open_long):
        position = await open_long()
        await engine.reconciler.reconcile_all()

        gateway.fail_conditional = lambda spec: True
        gateway.trigger(position.tp1_order_id)
        await engine.reconciler.reconcile_all()

        stuck = engine.store.require(position.id)
        assert stuck.phase is Phase.TP1_FILLED
        assert stuck.current_stop_price == Decimal("48500")

        gateway.fail_conditional = None
        summary = await engine.reconciler.reconcile_all()

        moved = engine.store.require(position.id)
        assert summary["fills_inferred"] == 0
        assert moved.current_stop_price == Decimal("50025")
        assert gateway.specs[moved.stop_order_id].size == Decimal("5")
        assert position.stop_order_id not in gateway.orders

        # Nothing further to do once the stop sits at its target
        calls = len(gateway.calls)
        await engine.reconciler.reconcile_all()
        assert [c[0] for c in gateway.calls[calls:]] == ["list_positions", "list_conditional_orders"]

    @pytest.mark.asyncio
    async def test_stop_vanishing_on_open_position_stops_out(self, engine, gateway, open_long):
        position = await open_long()
        await engine.reconciler.reconcile_all()

        # Stop gone while the exchange still reports size (partial execution)
        gateway.orders.pop(position.stop_order_id)
        await engine.reconciler.reconcile_all()

        result = engine.store.require(position.id)
        assert result.phase is Phase.STOPPED_OUT
        assert result.realized_pnl == Decimal("-15000")
        assert gateway.order_ids() == set()

    @pytest.mark.asyncio
    async def test_tiers_vanishing_together_apply_in_order(self, engine, gateway, open_long):
        position = await open_long()
        await engine.reconciler.reconcile_all()

        gateway.trigger(position.tp2_order_id)
        gateway.trigger(position.tp1_order_id)
        summary = await engine.reconciler.reconcile_all()

        result = engine.store.require(position.id)
        assert summary["fills_applied"] == 2
        assert result.phase is Phase.TP2_FILLED
        assert result.remaining_size == Decimal("2")
        assert [f.fill_type for f in engine.store.list_fills(position.id)] == [FillType.TP1, FillType.TP2]

    @pytest.mark.asyncio
    async def test_same_order_never_applied_twice(self, engine, gateway, open_long):
        position = await open_long()
        await engine.reconciler.reconcile_all()
        gateway.trigger(position.tp1_order_id)
        await engine.reconciler.reconcile_all()

        # Forced stale snapshot: the vanished tp1 id is seen again as missing
        snapshot = dict(engine.reconciler.snapshot_for(position.id))
        snapshot[position.tp1_order_id] = Decimal("50750")
        engine.reconciler._order_snapshots[position.id] = snapshot

        summary = await engine.reconciler.reconcile_all()

        assert summary["duplicates"] == 1
        assert summary["fills_applied"] == 0
        assert engine.store.require(position.id).remaining_size == Decimal("5")
        assert len(engine.store.list_fills(position.id)) == 1


class TestRemoteClose:

    @pytest.mark.asyncio
    async def test_position_gone_remotely_completes(self, engine, gateway, open_long):
        position = await open_long()
        await engine.reconciler.reconcile_all()

        gateway.positions[position.symbol] = Decimal("0")
        summary = await engine.reconciler.reconcile_all()

        result = engine.store.require(position.id)
        assert summary["closed_remotely"] == 1
        assert result.phase is Phase.COMPLETED
        assert result.remaining_size == Decimal("0")
        assert engine.store.list_fills(position.id) == []
        assert gateway.orders == {}

        completed = [a for a in engine.store.get_audit_log(position.id) if a.action == "position_completed"]
        assert completed[0].details["cause"] == "closed_remotely"

    @pytest.mark.asyncio
    async def test_remote_close_on_cold_start(self, engine, gateway, open_long):
        position = await open_long()
        gateway.positions[position.symbol] = Decimal("0")

        await engine.reconciler.reconcile_all()

        assert engine.store.require(position.id).phase is Phase.COMPLETED


class TestIsolation:

    @pytest.mark.asyncio
    async def test_locked_position_is_skipped(self, engine, gateway, open_long):
        position = await open_long()
        await engine.reconciler.reconcile_all()
        gateway.trigger(position.tp1_order_id)

        async with engine.locks.lock_for(position.id):
            summary = await engine.reconciler.reconcile_all()

        assert summary["skipped_locked"] == 1
        assert engine.store.require(position.id).phase is Phase.INITIAL

        # Snapshot was left alone, so the fill is still inferred next cycle
        await engine.reconciler.reconcile_all()
        assert engine.store.require(position.id).phase is Phase.TP1_FILLED

    @pytest.mark.asyncio
    async def test_failing_group_does_not_block_others(self, engine, gateways, gateway, open_long):
        usdt = await open_long()
        btc = await open_long(settle=Settle.BTC, symbol="BTC/USD:BTC")
        btc_gateway = gateways.gateways[btc.group]
        await engine.reconciler.reconcile_all()

        gateway.fail_list = APIError("gateway down")
        usdt_snapshot = engine.reconciler.snapshot_for(usdt.id)
        gateway.orders.pop(usdt.tp1_order_id)
        btc_gateway.trigger(btc.tp1_order_id)

        summary = await engine.reconciler.reconcile_all()

        assert summary["groups"] == 2
        assert summary["errors"] == 1
        assert engine.store.require(btc.id).phase is Phase.TP1_FILLED
        # A failed listing is not evidence of a fill
        assert engine.store.require(usdt.id).phase is Phase.INITIAL
        assert engine.reconciler.snapshot_for(usdt.id) == usdt_snapshot

    @pytest.mark.asyncio
    async def test_rounding_failure_does_not_block_other_positions(self, engine, gateway, open_long):
        eth = await open_long(symbol="ETH/USDT:USDT")
        btc = await open_long()
        await engine.reconciler.reconcile_all()

        # ETH reaches tp1 but its break-even move is rejected
        gateway.fail_conditional = lambda spec: True
        gateway.trigger(eth.tp1_order_id)
        await engine.reconciler.reconcile_all()
        gateway.fail_conditional = None
        assert engine.store.require(eth.id).phase is Phase.TP1_FILLED

        async def round_price(symbol, price):
            if symbol == "ETH/USDT:USDT":
                raise RemoteTimeoutError("load_markets timed out")
            return price

        gateway.round_price = round_price
        gateway.trigger(btc.tp1_order_id)
        summary = await engine.reconciler.reconcile_all()

        assert summary["errors"] == 0
        assert engine.store.require(btc.id).phase is Phase.TP1_FILLED
        assert engine.store.require(btc.id).current_stop_price == Decimal("50025")
        # Left for a later cycle
        assert engine.store.require(eth.id).current_stop_price == Decimal("48500")

    @pytest.mark.asyncio
    async def test_position_failure_does_not_block_group(self, engine, gateway, open_long, monkeypatch):
        eth = await open_long(symbol="ETH/USDT:USDT")
        btc = await open_long()
        await engine.reconciler.reconcile_all()

        restore_stop = engine.fill_processor.restore_stop

        async def failing_restore(position, gw):
            if position.id == eth.id:
                raise RuntimeError("store unavailable")
            return await restore_stop(position, gw)

        monkeypatch.setattr(engine.fill_processor, "restore_stop", failing_restore)
        gateway.trigger(btc.tp1_order_id)
        summary = await engine.reconciler.reconcile_all()

        assert summary["errors"] == 1
        assert summary["fills_applied"] == 1
        assert engine.store.require(btc.id).phase is Phase.TP1_FILLED


class TestUnprocessedFillRecovery:

    @pytest.mark.asyncio
    async def test_recorded_but_unprocessed_fill_is_applied(self, engine, gateway, open_long):
        position = await open_long()
        # Simulates a crash between recording the fill and applying it
        engine.store.record_fill(OrderFillEvent(
            order_id=position.tp1_order_id,
            position_id=position.id,
            symbol=position.symbol,
            fill_type=FillType.TP1,
            fill_size=Decimal("5"),
            fill_price=Decimal("50750"),
        ))

        recovered = await engine.reconciler.process_unprocessed_fills()

        assert recovered == 1
        assert engine.store.list_unprocessed_fills() == []
        assert engine.store.require(position.id).phase is Phase.TP1_FILLED
