"""Build prompts for micro (per-timeframe) and comprehensive decisions."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from heartbeat_trader.models.heartbeat import IntervalDecision
    from heartbeat_trader.models.position import Position
    from heartbeat_trader.models.trader import Trader

logger = structlog.get_logger()

MICRO_OUTPUT_FORMAT = {
    "interval": "15m",
    "action": "open_long|open_short|hold|close_long|close_short|modify_sl_tp",
    "confidence": 0.65,
    "reasoning": "What this timeframe shows and why...",
    "technical_signals": {
        "trend": "bullish|bearish|neutral",
        "momentum": "strong|moderate|weak",
        "volume_analysis": "...",
        "key_levels": "...",
    },
    "suggested_stop_loss": None,
    "suggested_take_profit": None,
    "target_position_id": None,
}

COMPREHENSIVE_OUTPUT_FORMAT = {
    "action": "open_long|open_short|hold|close_position|modify_sl_tp|close_all",
    "confidence": 0.7,
    "reasoning": "How the timeframes were weighed...",
    "interval_analysis": [
        {"interval": "1h", "weight": 0.5, "decision": "open_long", "key_factors": "..."},
    ],
    "position_size": None,
    "leverage": None,
    "stop_loss_price": None,
    "take_profit_price": None,
    "target_position_id": None,
    "risk_assessment": {
        "level": "low|medium|high|very_high",
        "risk_reward_ratio": 2.0,
        "position_size_percent": 5.0,
    },
    "timestamp": "2026-01-01T00:00:00Z",
}

CONFIDENCE_SCALE = (
    "Confidence scale: 0.9-1.0 very strong with multiple confirmations, "
    "0.7-0.89 good and clear, 0.5-0.69 moderate with some uncertainty, "
    "0.3-0.49 weak or mixed, below 0.3 conflicting. Be honest about uncertainty."
)


class PromptBuilder:
    def build_trader_profile(self, trader: Trader) -> str:
        parts = []
        parts.append("<trader_profile>")
        parts.append(f"Name: {trader.name or trader.id}")
        parts.append(f"Strategy: {trader.trading_strategy} | Holding Period: {trader.holding_period}")
        parts.append(f"Aggressiveness: {trader.aggressiveness_level}/10 | Risk Preference: {trader.risk_preference_score}/100")
        parts.append(f"Leverage Range: {trader.min_leverage:g}x - {trader.max_leverage:g}x")
        parts.append(f"Max Positions: {trader.max_positions} | Max Position Size: {trader.max_position_size}")
        parts.append(f"Min Trade Amount: {trader.min_trade_amount} | Short Allowed: {trader.allow_short}")
        parts.append(f"Position Stop Loss: {trader.position_stop_loss}% | Position Take Profit: {trader.position_take_profit}%")
        parts.append(f"Max Drawdown: {trader.max_drawdown}% | Daily Max Loss: {trader.daily_max_loss}")
        parts.append(f"Max Consecutive Losses: {trader.max_consecutive_losses}")
        parts.append("</trader_profile>")
        return "\n".join(parts)

    def build_micro_system_prompt(self, trader: Trader) -> str:
        return "\n".join([
            "You are a crypto derivatives analyst looking at ONE timeframe.",
            "Judge only what this timeframe's data shows; another step combines timeframes.",
            "Stay within the trader profile below. Default to hold when signals are unclear.",
            CONFIDENCE_SCALE,
            self.build_trader_profile(trader),
            "Respond ONLY with a single JSON object matching the output_format.",
        ])

    def build_comprehensive_system_prompt(self, trader: Trader) -> str:
        return "\n".join([
            "You are the portfolio decision maker for a leveraged crypto trader.",
            "Weigh the per-timeframe decisions into one action. Longer timeframes set direction,",
            "shorter ones set timing. Never exceed the trader's leverage range or max position size.",
            "Include stop loss and take profit for any open action.",
            CONFIDENCE_SCALE,
            self.build_trader_profile(trader),
            "Respond ONLY with a single JSON object matching the output_format.",
        ])

    def build_micro_prompt(
        self,
        instrument: str,
        interval: str,
        reader_data: list[dict],
        positions: list[Position],
    ) -> str:
        parts = []
        parts.append("<market>")
        parts.append(f"Instrument: {instrument}")
        parts.append(f"Timeframe: {interval}")
        parts.append("</market>")

        parts.append("<reader_data>")
        if reader_data:
            for item in reader_data:
                parts.append(f"  [{item.get('reader', 'N/A')}]")
                parts.append(json.dumps(item.get("data"), default=str, indent=2))
        else:
            parts.append("  No reader data available for this timeframe")
        parts.append("</reader_data>")

        parts.extend(self._positions_section(positions))

        parts.append("<output_format>")
        parts.append("Respond with a single JSON object:")
        parts.append(json.dumps({**MICRO_OUTPUT_FORMAT, "interval": interval}, indent=2))
        parts.append("</output_format>")
        return "\n".join(parts)

    def build_comprehensive_prompt(
        self,
        instrument: str,
        micro_decisions: list[IntervalDecision],
        positions: list[Position],
    ) -> str:
        parts = []
        parts.append("<market>")
        parts.append(f"Instrument: {instrument}")
        parts.append("</market>")

        parts.append("<timeframe_decisions>")
        for item in micro_decisions:
            d = item.decision
            parts.append(
                f"  [{item.interval}] {d.action.value} conf={d.confidence:.2f} "
                f"trend={d.technical_signals.trend} momentum={d.technical_signals.momentum}"
            )
            parts.append(f"    {d.reasoning}")
            if d.suggested_stop_loss is not None or d.suggested_take_profit is not None:
                parts.append(f"    SL={d.suggested_stop_loss} TP={d.suggested_take_profit}")
        parts.append("</timeframe_decisions>")

        parts.extend(self._positions_section(positions))

        parts.append("<output_format>")
        parts.append("Respond with a single JSON object:")
        parts.append(json.dumps(COMPREHENSIVE_OUTPUT_FORMAT, indent=2))
        parts.append("</output_format>")
        return "\n".join(parts)

    @staticmethod
    def _positions_section(positions: list[Position]) -> list[str]:
        parts = ["<current_positions>"]
        if positions:
            for p in positions:
                parts.append(
                    f"  #{p.id} {p.instrument} {p.side.value}: qty={p.quantity:.6f} "
                    f"entry={p.entry_price} current={p.current_price} lever={p.leverage}x "
                    f"upl={p.unrealized_pnl:.2f} liq={p.liquidation_price:.2f} "
                    f"SL={p.stop_loss} TP={p.take_profit}"
                )
        else:
            parts.append("  No open positions")
        parts.append("</current_positions>")
        return parts
