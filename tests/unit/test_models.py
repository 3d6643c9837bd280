"""
Tests for domain model validation.
"""
from decimal import Decimal

import pytest

from tierkeeper.domain.models import (
    ConditionalOrderSpec,
    Direction,
    FillType,
    GroupKey,
    OrderKind,
    Phase,
    Position,
    Settle,
    TrackingStatus,
)
from tierkeeper.exceptions import ValidationError


class TestOpenPositionRequest:

    def test_valid_request_coerces_decimals(self, long_request):
        request = long_request(size=10, tp1_size="5", tp2_size=3.0, runner_size=2)
        assert request.size == Decimal("10")
        assert request.tp1_size == Decimal("5")
        assert request.group == GroupKey("main", Settle.USDT)

    def test_string_enums_accepted(self, long_request):
        request = long_request(direction="long", settle="usdt")
        assert request.direction is Direction.LONG
        assert request.settle is Settle.USDT

    def test_tiers_must_sum_to_size(self, long_request):
        with pytest.raises(ValidationError, match="must sum"):
            long_request(runner_size=Decimal("3"))

    def test_tier_price_required(self, long_request):
        with pytest.raises(ValidationError, match="tp2_price"):
            long_request(tp2_price=None)

    def test_zero_tier_needs_no_price(self, long_request):
        request = long_request(tp2_size=Decimal("0"), tp2_price=None, runner_size=Decimal("5"))
        assert request.tp2_price is None

    def test_stop_on_wrong_side_rejected(self, long_request):
        with pytest.raises(ValidationError, match="losing side"):
            long_request(stop_price=Decimal("51000"))

    def test_short_stop_above_entry(self, long_request):
        request = long_request(
            direction=Direction.SHORT,
            stop_price=Decimal("51500"),
            tp1_price=Decimal("49250"),
            tp2_price=Decimal("48750"),
        )
        assert request.direction.close_side == "buy"

    def test_non_positive_size_rejected(self, long_request):
        with pytest.raises(ValidationError):
            long_request(size=0, tp1_size=0, tp2_size=0, runner_size=0)


class TestPosition:

    def _position(self, **overrides):
        fields = dict(
            id="p1", account="main", settle=Settle.USDT, symbol="ETH/USDT:USDT",
            direction=Direction.SHORT, size=Decimal("4"), entry_price=Decimal("3000"),
            entry_order_id="m1", tp1_size=Decimal("2"), tp2_size=Decimal("2"),
            runner_size=Decimal("0"), stop_order_id="s1",
            original_stop_price=Decimal("3100"), current_stop_price=Decimal("3100"),
            tp1_order_id="t1", tp2_order_id=None,
        )
        fields.update(overrides)
        return Position(**fields)

    def test_remaining_defaults_to_size(self):
        assert self._position().remaining_size == Decimal("4")

    def test_protective_ids_skip_missing_roles(self):
        assert self._position().protective_order_ids() == {"tp1": "t1", "sl": "s1"}

    def test_fill_type_for(self):
        position = self._position()
        assert position.fill_type_for("t1") is FillType.TP1
        assert position.fill_type_for("s1") is FillType.SL
        assert position.fill_type_for("other") is None

    def test_to_dict_is_serializable(self):
        data = self._position().to_dict()
        assert data["direction"] == "short"
        assert data["size"] == "4"
        assert data["tp2_price"] is None


class TestEnums:

    def test_terminal_phases(self):
        assert Phase.COMPLETED.is_terminal and Phase.STOPPED_OUT.is_terminal
        assert not Phase.TP2_FILLED.is_terminal

    def test_tracking_status_open(self):
        assert TrackingStatus.WARNED.is_open
        assert not TrackingStatus.FORCE_CLOSED.is_open

    def test_conditional_spec_rejects_zero_size(self):
        with pytest.raises(ValueError):
            ConditionalOrderSpec(
                symbol="BTC/USDT:USDT", kind=OrderKind.STOP_LOSS, close_side="sell",
                size=Decimal("0"), trigger_price=Decimal("1"),
            )
