"""Unit tests for leverage, liquidation and PnL calculations."""

from __future__ import annotations

import math

import pytest

from heartbeat_trader import risk_math
from heartbeat_trader.errors import InvalidArgument
from heartbeat_trader.models.position import PositionSide


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------


class TestSizing:
    def test_margin_is_size_over_leverage(self):
        assert risk_math.margin(1000, 10) == pytest.approx(100)

    def test_margin_times_leverage_recovers_size(self):
        for size, lev in [(1000, 1), (2500, 7), (50_000, 125)]:
            assert risk_math.margin(size, lev) * lev == pytest.approx(size)

    def test_quantity_and_position_size_agree(self):
        qty = risk_math.quantity(1000, 50_000)
        assert qty == pytest.approx(0.02)
        assert risk_math.position_size(qty, 50_000) == pytest.approx(1000)

    def test_fee_default_rate(self):
        assert risk_math.fee(1000) == pytest.approx(0.5)

    def test_fee_zero_rate_allowed(self):
        assert risk_math.fee(1000, 0) == 0

    @pytest.mark.parametrize("leverage", [0, 0.5, 126, -3, float("nan")])
    def test_leverage_out_of_range(self, leverage):
        with pytest.raises(InvalidArgument):
            risk_math.margin(1000, leverage)

    @pytest.mark.parametrize("size", [0, -1, float("inf"), None, "abc", True])
    def test_invalid_size(self, size):
        with pytest.raises(InvalidArgument):
            risk_math.margin(size, 10)

    def test_invalid_fee_rate(self):
        with pytest.raises(InvalidArgument):
            risk_math.fee(1000, 1.5)

    def test_invalid_argument_is_value_error(self):
        """Callers catching ValueError still see risk-math rejections."""
        with pytest.raises(ValueError):
            risk_math.quantity(1000, 0)


# ---------------------------------------------------------------------------
# Liquidation
# ---------------------------------------------------------------------------


class TestLiquidation:
    def test_long_liquidation_price(self):
        """Long at 100 with 10x and 0.5% maintenance liquidates at 90.5."""
        assert risk_math.liquidation_price("long", 100, 10, 0.005) == pytest.approx(90.5)

    def test_short_liquidation_price(self):
        assert risk_math.liquidation_price(PositionSide.SHORT, 100, 10, 0.005) == pytest.approx(109.5)

    def test_long_liquidation_below_entry(self):
        for lev in (1, 2, 10, 50, 125):
            assert risk_math.liquidation_price("long", 100, lev) < 100

    def test_short_liquidation_above_entry(self):
        for lev in (2, 10, 50, 125):
            assert risk_math.liquidation_price("short", 100, lev) > 100

    def test_should_liquidate_boundaries(self):
        assert risk_math.should_liquidate("long", 90.5, 90.5) is True
        assert risk_math.should_liquidate("long", 90.6, 90.5) is False
        assert risk_math.should_liquidate("short", 109.5, 109.5) is True
        assert risk_math.should_liquidate("short", 109.4, 109.5) is False

    def test_distance_and_risk_level(self):
        assert risk_math.liquidation_distance_pct("long", 100, 90.5) == pytest.approx(9.5)
        assert risk_math.liquidation_risk_level("long", 100, 90.5) == "medium"
        assert risk_math.liquidation_risk_level("long", 100, 96) == "high"
        assert risk_math.liquidation_risk_level("long", 100, 99) == "critical"
        assert risk_math.liquidation_risk_level("long", 100, 50) == "low"

    def test_distance_negative_once_crossed(self):
        assert risk_math.liquidation_distance_pct("short", 120, 109.5) < 0

    def test_unknown_side(self):
        with pytest.raises(InvalidArgument):
            risk_math.liquidation_price("sideways", 100, 10)

    def test_invalid_maintenance_ratio(self):
        with pytest.raises(InvalidArgument):
            risk_math.liquidation_price("long", 100, 10, 1.0)


# ---------------------------------------------------------------------------
# PnL
# ---------------------------------------------------------------------------


class TestPnL:
    def test_long_pnl(self):
        assert risk_math.pnl("long", 100, 110, 2) == pytest.approx(20)

    def test_short_pnl(self):
        assert risk_math.pnl("short", 100, 110, 2) == pytest.approx(-20)

    def test_pnl_sign_symmetry(self):
        long = risk_math.pnl("long", 100, 93, 3)
        short = risk_math.pnl("short", 100, 93, 3)
        assert long == pytest.approx(-short)

    def test_roe(self):
        assert risk_math.roe(10, 100) == pytest.approx(10)
        assert risk_math.roe(-5, 100) == pytest.approx(-5)

    def test_roe_zero_margin(self):
        with pytest.raises(InvalidArgument):
            risk_math.roe(10, 0)

    def test_pnl_percent(self):
        assert risk_math.pnl_percent("long", 100, 105) == pytest.approx(5)
        assert risk_math.pnl_percent("short", 100, 105) == pytest.approx(-5)

    def test_net_pnl(self):
        assert risk_math.net_pnl(20, 0.5, 0.55) == pytest.approx(18.95)
        assert risk_math.net_pnl(20, 0.5) == pytest.approx(19.5)


# ---------------------------------------------------------------------------
# Stops
# ---------------------------------------------------------------------------


class TestStops:
    def test_stop_loss_prices(self):
        assert risk_math.stop_loss_price("long", 100, 5) == pytest.approx(95)
        assert risk_math.stop_loss_price("short", 100, 5) == pytest.approx(105)

    def test_take_profit_prices(self):
        assert risk_math.take_profit_price("long", 100, 10) == pytest.approx(110)
        assert risk_math.take_profit_price("short", 100, 10) == pytest.approx(90)

    def test_long_take_profit_above_100_pct(self):
        assert risk_math.take_profit_price("long", 100, 150) == pytest.approx(250)

    @pytest.mark.parametrize("pct", [-1, 100, 120])
    def test_stop_loss_pct_out_of_range(self, pct):
        with pytest.raises(InvalidArgument):
            risk_math.stop_loss_price("long", 100, pct)

    def test_short_take_profit_100_pct_rejected(self):
        """A 100% short target would mean a zero price."""
        with pytest.raises(InvalidArgument):
            risk_math.take_profit_price("short", 100, 100)

    def test_triggers(self):
        assert risk_math.is_stop_loss_triggered("long", 95, 95) is True
        assert risk_math.is_stop_loss_triggered("long", 96, 95) is False
        assert risk_math.is_stop_loss_triggered("short", 105, 105) is True
        assert risk_math.is_take_profit_triggered("long", 110, 110) is True
        assert risk_math.is_take_profit_triggered("short", 91, 90) is False
        assert risk_math.is_take_profit_triggered("short", 89, 90) is True

    def test_risk_reward_ratio(self):
        assert risk_math.risk_reward_ratio(100, 95, 110) == pytest.approx(2)
        assert risk_math.risk_reward_ratio(100, 105, 85) == pytest.approx(3)

    def test_risk_reward_zero_risk(self):
        with pytest.raises(InvalidArgument):
            risk_math.risk_reward_ratio(100, 100, 110)

    def test_results_are_finite(self):
        assert math.isfinite(risk_math.liquidation_price("long", 0.0001, 125))
