"""Unit tests for trader, decision and heartbeat models."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from heartbeat_trader.models.decision import ComprehensiveDecision, MicroDecision
from heartbeat_trader.models.heartbeat import HeartbeatStatus
from heartbeat_trader.models.trader import Trader


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 1, hour, minute, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Trader
# ---------------------------------------------------------------------------


class TestTraderValidation:
    def test_defaults(self):
        trader = Trader(id=1)
        assert trader.heartbeat_interval == 300
        assert trader.min_leverage <= trader.max_leverage
        assert trader.timeframes == []

    def test_min_above_max_leverage(self):
        with pytest.raises(ValidationError):
            Trader(id=1, min_leverage=20, max_leverage=10)

    def test_fractional_leverage_bounds(self):
        trader = Trader(id=1, min_leverage=1.5, max_leverage=12.5)
        assert trader.min_leverage == 1.5
        assert trader.max_leverage == 12.5

    @pytest.mark.parametrize("field,value", [
        ("aggressiveness_level", 0),
        ("aggressiveness_level", 11),
        ("max_leverage", 126),
        ("min_leverage", 0),
        ("max_positions", 0),
        ("max_position_size", 0),
        ("heartbeat_interval", 0),
    ])
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            Trader(id=1, **{field: value})

    @pytest.mark.parametrize("value", ["24:00", "7:30", "12:60", "noon"])
    def test_bad_active_time(self, value):
        with pytest.raises(ValidationError):
            Trader(id=1, active_time_start=value)


class TestActiveHours:
    def test_daytime_window(self):
        trader = Trader(id=1, active_time_start="09:00", active_time_end="17:00")
        assert trader.is_active_at(_at(9, 0)) is True
        assert trader.is_active_at(_at(16, 59)) is True
        assert trader.is_active_at(_at(17, 0)) is False
        assert trader.is_active_at(_at(8, 59)) is False

    def test_overnight_window(self):
        trader = Trader(id=1, active_time_start="22:00", active_time_end="06:00")
        assert trader.is_active_at(_at(23, 30)) is True
        assert trader.is_active_at(_at(2, 0)) is True
        assert trader.is_active_at(_at(10, 0)) is False
        assert trader.is_active_at(_at(6, 0)) is False

    def test_equal_bounds_is_empty_window(self):
        trader = Trader(id=1, active_time_start="10:00", active_time_end="10:00")
        assert not any(trader.is_active_at(_at(h)) for h in range(24))
        assert trader.is_active_at(_at(10, 0)) is False

    def test_default_window_is_all_day(self):
        trader = Trader(id=1)
        assert all(trader.is_active_at(_at(h, 59)) for h in range(24))

    def test_end_of_day_only_valid_as_end(self):
        assert Trader(id=1, active_time_start="22:00", active_time_end="24:00").is_active_at(_at(23, 59))
        with pytest.raises(ValidationError):
            Trader(id=1, active_time_end="24:30")


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def _micro(**overrides) -> dict:
    payload = {
        "interval": "1h",
        "action": "open_long",
        "confidence": 0.7,
        "reasoning": "breakout",
        "technical_signals": {"trend": "bullish", "momentum": "strong"},
    }
    payload.update(overrides)
    return payload


def _comprehensive(**overrides) -> dict:
    payload = {
        "action": "open_long",
        "confidence": 0.8,
        "reasoning": "aligned",
        "risk_assessment": {
            "level": "medium",
            "risk_reward_ratio": 2.0,
            "position_size_percent": 10,
        },
    }
    payload.update(overrides)
    return payload


class TestDecisionSchemas:
    def test_valid_micro(self):
        decision = MicroDecision.model_validate(_micro())
        assert decision.action.value == "open_long"

    def test_unknown_micro_action(self):
        with pytest.raises(ValidationError):
            MicroDecision.model_validate(_micro(action="buy_everything"))

    def test_confidence_out_of_range(self):
        with pytest.raises(ValidationError):
            MicroDecision.model_validate(_micro(confidence=1.2))

    def test_bad_trend_literal(self):
        with pytest.raises(ValidationError):
            MicroDecision.model_validate(
                _micro(technical_signals={"trend": "sideways", "momentum": "weak"})
            )

    def test_valid_comprehensive(self):
        decision = ComprehensiveDecision.model_validate(_comprehensive(leverage=5))
        assert decision.leverage == 5
        assert decision.position_size is None

    def test_comprehensive_requires_risk_assessment(self):
        payload = _comprehensive()
        del payload["risk_assessment"]
        with pytest.raises(ValidationError):
            ComprehensiveDecision.model_validate(payload)

    def test_non_positive_leverage(self):
        with pytest.raises(ValidationError):
            ComprehensiveDecision.model_validate(_comprehensive(leverage=0))


class TestHeartbeatStatus:
    def test_terminal_states(self):
        assert HeartbeatStatus.TRIGGERED.is_terminal is False
        assert HeartbeatStatus.IN_PROGRESS.is_terminal is False
        for status in (
            HeartbeatStatus.COMPLETED,
            HeartbeatStatus.FAILED,
            HeartbeatStatus.SKIPPED_NO_READERS,
            HeartbeatStatus.SKIPPED_NO_INTERVALS,
            HeartbeatStatus.SKIPPED_OUTSIDE_HOURS,
        ):
            assert status.is_terminal is True
