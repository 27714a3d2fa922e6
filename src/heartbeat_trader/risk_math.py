"""Pure leverage, margin, fee, liquidation and PnL calculations.

Every function is side-effect free. Prices, sizes and quantities must be
positive finite numbers and leverage must lie in [MIN_LEVERAGE, MAX_LEVERAGE];
anything else raises InvalidArgument.

Formulas (side is "long" or "short"):

    margin            = size / leverage
    quantity          = size / price
    fee               = size * rate
    liquidation long  = entry * (1 - 1/leverage + mmr)
    liquidation short = entry * (1 + 1/leverage - mmr)
    pnl long          = (exit - entry) * quantity
    pnl short         = (entry - exit) * quantity
    roe               = pnl / margin * 100
"""

from __future__ import annotations

import math

from heartbeat_trader.errors import InvalidArgument
from heartbeat_trader.models.position import PositionSide

MIN_LEVERAGE = 1
MAX_LEVERAGE = 125
DEFAULT_FEE_RATE = 0.0005
DEFAULT_MAINTENANCE_MARGIN_RATIO = 0.005

# Distance-to-liquidation thresholds (percent of current price)
LIQUIDATION_RISK_LEVELS = (
    (2.0, "critical"),
    (5.0, "high"),
    (10.0, "medium"),
)


def _positive(name: str, value: float) -> float:
    if value is None or isinstance(value, bool):
        raise InvalidArgument(f"{name} must be a positive number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"{name} must be a positive number, got {value!r}") from None
    if not math.isfinite(number) or number <= 0:
        raise InvalidArgument(f"{name} must be > 0, got {value}")
    return number


def _finite(name: str, value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise InvalidArgument(f"{name} must be finite, got {value}")
    return number


def _leverage(value: float) -> float:
    leverage = _positive("leverage", value)
    if not MIN_LEVERAGE <= leverage <= MAX_LEVERAGE:
        raise InvalidArgument(
            f"leverage must be in [{MIN_LEVERAGE}, {MAX_LEVERAGE}], got {value}"
        )
    return leverage


def _ratio(name: str, value: float) -> float:
    ratio = _finite(name, value)
    if not 0 <= ratio < 1:
        raise InvalidArgument(f"{name} must be in [0, 1), got {value}")
    return ratio


def _side(value: PositionSide | str) -> PositionSide:
    try:
        return PositionSide(value)
    except ValueError:
        raise InvalidArgument(f"side must be 'long' or 'short', got {value!r}") from None


# --- Sizing ---


def margin(size: float, leverage: float) -> float:
    return _positive("size", size) / _leverage(leverage)


def quantity(size: float, price: float) -> float:
    return _positive("size", size) / _positive("price", price)


def position_size(qty: float, price: float) -> float:
    return _positive("quantity", qty) * _positive("price", price)


def fee(size: float, rate: float = DEFAULT_FEE_RATE) -> float:
    return _positive("size", size) * _ratio("fee rate", rate)


# --- Liquidation ---


def liquidation_price(
    side: PositionSide | str,
    entry: float,
    leverage: float,
    maintenance_margin_ratio: float = DEFAULT_MAINTENANCE_MARGIN_RATIO,
) -> float:
    side = _side(side)
    entry = _positive("entry price", entry)
    leverage = _leverage(leverage)
    mmr = _ratio("maintenance margin ratio", maintenance_margin_ratio)
    if side == PositionSide.LONG:
        return entry * (1 - 1 / leverage + mmr)
    return entry * (1 + 1 / leverage - mmr)


def should_liquidate(side: PositionSide | str, current: float, liq_price: float) -> bool:
    side = _side(side)
    current = _positive("current price", current)
    liq_price = _positive("liquidation price", liq_price)
    if side == PositionSide.LONG:
        return current <= liq_price
    return current >= liq_price


def liquidation_distance_pct(side: PositionSide | str, current: float, liq_price: float) -> float:
    """Percent the price can still move against the position before liquidation.

    Negative once the liquidation price has been crossed.
    """
    side = _side(side)
    current = _positive("current price", current)
    liq_price = _positive("liquidation price", liq_price)
    if side == PositionSide.LONG:
        return (current - liq_price) / current * 100
    return (liq_price - current) / current * 100


def liquidation_risk_level(side: PositionSide | str, current: float, liq_price: float) -> str:
    distance = liquidation_distance_pct(side, current, liq_price)
    for threshold, level in LIQUIDATION_RISK_LEVELS:
        if distance < threshold:
            return level
    return "low"


# --- PnL ---


def pnl(side: PositionSide | str, entry: float, exit_price: float, qty: float) -> float:
    side = _side(side)
    entry = _positive("entry price", entry)
    exit_price = _positive("exit price", exit_price)
    qty = _positive("quantity", qty)
    if side == PositionSide.LONG:
        return (exit_price - entry) * qty
    return (entry - exit_price) * qty


def roe(pnl_value: float, margin_value: float) -> float:
    return _finite("pnl", pnl_value) / _positive("margin", margin_value) * 100


def pnl_percent(side: PositionSide | str, entry: float, current: float) -> float:
    """Price move in the position's favour, as a percent of entry (unleveraged)."""
    side = _side(side)
    entry = _positive("entry price", entry)
    current = _positive("current price", current)
    if side == PositionSide.LONG:
        return (current - entry) / entry * 100
    return (entry - current) / entry * 100


def net_pnl(gross_pnl: float, open_fee: float, close_fee: float = 0.0) -> float:
    return _finite("pnl", gross_pnl) - _finite("open fee", open_fee) - _finite("close fee", close_fee)


# --- Stops ---


def stop_loss_price(side: PositionSide | str, entry: float, pct: float) -> float:
    side = _side(side)
    entry = _positive("entry price", entry)
    pct = _finite("stop-loss percent", pct)
    if not 0 <= pct < 100:
        raise InvalidArgument(f"stop-loss percent must be in [0, 100), got {pct}")
    if side == PositionSide.LONG:
        return entry * (1 - pct / 100)
    return entry * (1 + pct / 100)


def take_profit_price(side: PositionSide | str, entry: float, pct: float) -> float:
    side = _side(side)
    entry = _positive("entry price", entry)
    pct = _finite("take-profit percent", pct)
    if side == PositionSide.LONG:
        if pct < 0:
            raise InvalidArgument(f"take-profit percent must be >= 0, got {pct}")
        return entry * (1 + pct / 100)
    if not 0 <= pct < 100:
        raise InvalidArgument(f"take-profit percent must be in [0, 100), got {pct}")
    return entry * (1 - pct / 100)


def is_stop_loss_triggered(side: PositionSide | str, current: float, sl_price: float) -> bool:
    side = _side(side)
    current = _positive("current price", current)
    sl_price = _positive("stop-loss price", sl_price)
    if side == PositionSide.LONG:
        return current <= sl_price
    return current >= sl_price


def is_take_profit_triggered(side: PositionSide | str, current: float, tp_price: float) -> bool:
    side = _side(side)
    current = _positive("current price", current)
    tp_price = _positive("take-profit price", tp_price)
    if side == PositionSide.LONG:
        return current >= tp_price
    return current <= tp_price


def risk_reward_ratio(entry: float, sl_price: float, tp_price: float) -> float:
    entry = _positive("entry price", entry)
    sl_price = _positive("stop-loss price", sl_price)
    tp_price = _positive("take-profit price", tp_price)
    risk = abs(entry - sl_price)
    if risk == 0:
        raise InvalidArgument("stop-loss distance from entry must be non-zero")
    return abs(tp_price - entry) / risk
