"""Maps a ComprehensiveDecision onto execution gateway calls."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from heartbeat_trader.errors import ValidationError
from heartbeat_trader.models.decision import DecisionAction
from heartbeat_trader.models.heartbeat import ExecutionOutcome
from heartbeat_trader.models.position import PositionSide
from heartbeat_trader.position_engine import round_leverage

if TYPE_CHECKING:
    from heartbeat_trader.execution_gateway import LocalExecutionGateway
    from heartbeat_trader.models.decision import ComprehensiveDecision
    from heartbeat_trader.models.position import Position
    from heartbeat_trader.models.trader import Trader

logger = structlog.get_logger()

DEFAULT_LEVERAGE_FRACTION = 0.5


def resolve_leverage(decision: ComprehensiveDecision, trader: Trader) -> float:
    """Decision leverage, else half the trader's max, clamped into the trader's bounds
    and rounded to the stored leverage scale.

    Out-of-range values are clamped and the decision proceeds; a warning is
    logged so the adjustment stays visible.
    """
    requested = decision.leverage if decision.leverage else trader.max_leverage * DEFAULT_LEVERAGE_FRACTION
    leverage = min(max(requested, trader.min_leverage), trader.max_leverage)
    if leverage != requested:
        logger.warning(
            "leverage_clamped",
            trader_id=trader.id,
            requested=requested,
            applied=leverage,
            min_leverage=trader.min_leverage,
            max_leverage=trader.max_leverage,
        )
    return round_leverage(leverage)


def resolve_position_size(decision: ComprehensiveDecision, trader: Trader) -> float:
    return decision.position_size if decision.position_size else trader.min_trade_amount


class DecisionDispatcher:
    def __init__(self, gateway: LocalExecutionGateway) -> None:
        self.gateway = gateway

    async def dispatch(
        self,
        decision: ComprehensiveDecision,
        trader: Trader,
        instrument: str,
        open_positions: list[Position],
    ) -> ExecutionOutcome:
        """Execute ``decision``. Gateway and engine errors propagate to the caller."""
        action = decision.action
        if action in (DecisionAction.OPEN_LONG, DecisionAction.OPEN_SHORT):
            return await self._open(decision, trader, instrument, open_positions)
        if action in (DecisionAction.CLOSE_POSITION, DecisionAction.CLOSE_ALL):
            return await self._close(decision, open_positions)
        if action == DecisionAction.MODIFY_SL_TP:
            return await self._modify(decision)
        return ExecutionOutcome(success=True, action="none", message="hold")

    async def _open(
        self,
        decision: ComprehensiveDecision,
        trader: Trader,
        instrument: str,
        open_positions: list[Position],
    ) -> ExecutionOutcome:
        if len(open_positions) >= trader.max_positions:
            raise ValidationError(
                f"Trader {trader.id} already holds {len(open_positions)} open positions "
                f"(max {trader.max_positions})"
            )
        side = PositionSide.LONG if decision.action == DecisionAction.OPEN_LONG else PositionSide.SHORT
        leverage = resolve_leverage(decision, trader)
        size = resolve_position_size(decision, trader)
        position = await self.gateway.open_position(
            trader.id,
            instrument,
            side,
            leverage,
            size,
            stop_loss=decision.stop_loss_price,
            take_profit=decision.take_profit_price,
        )
        return ExecutionOutcome(
            success=True,
            action=decision.action.value,
            position_id=position.id,
            leverage=leverage,
            position_size=size,
            message=f"Opened {side.value} {instrument} at {position.entry_price}",
        )

    async def _close(
        self, decision: ComprehensiveDecision, open_positions: list[Position]
    ) -> ExecutionOutcome:
        target = decision.target_position_id
        if target is None:
            if not open_positions:
                raise ValidationError("No open position to close")
            target = open_positions[0].id
        result = await self.gateway.close_position(target)
        return ExecutionOutcome(
            success=True,
            action="close",
            position_id=target,
            message=f"Closed position {target} at {result.close_price}, pnl={result.realized_pnl:.4f}",
        )

    async def _modify(self, decision: ComprehensiveDecision) -> ExecutionOutcome:
        if decision.target_position_id is None:
            raise ValidationError("modify_sl_tp requires target_position_id")
        kwargs = {}
        if decision.stop_loss_price is not None:
            kwargs["stop_loss"] = decision.stop_loss_price
        if decision.take_profit_price is not None:
            kwargs["take_profit"] = decision.take_profit_price
        await self.gateway.modify_stops(decision.target_position_id, **kwargs)
        return ExecutionOutcome(
            success=True,
            action="modify_sl_tp",
            position_id=decision.target_position_id,
            message=f"SL={decision.stop_loss_price} TP={decision.take_profit_price}",
        )
