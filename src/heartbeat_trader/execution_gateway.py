"""In-process execution gateway: id-based position operations over PositionEngine."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from heartbeat_trader.errors import NotFoundError
from heartbeat_trader.position_engine import UNSET

if TYPE_CHECKING:
    from heartbeat_trader.db.repository import PositionRepository, TraderRepository
    from heartbeat_trader.models.position import CloseResult, Position, PositionSide
    from heartbeat_trader.position_engine import PositionEngine
    from heartbeat_trader.price_feed import OKXPriceFeed

logger = structlog.get_logger()


class LocalExecutionGateway:
    """Resolves ids, fills in market prices, and delegates to the engine."""

    def __init__(
        self,
        engine: PositionEngine,
        trader_repo: TraderRepository,
        position_repo: PositionRepository,
        price_feed: OKXPriceFeed,
    ) -> None:
        self.engine = engine
        self.trader_repo = trader_repo
        self.position_repo = position_repo
        self.price_feed = price_feed

    async def open_position(
        self,
        trader_id: int,
        instrument: str,
        side: PositionSide | str,
        leverage: float,
        position_size: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        entry_price: float | None = None,
    ) -> Position:
        trader = await self.trader_repo.get(trader_id)
        if trader is None:
            raise NotFoundError(f"Trader not found: {trader_id}")
        if entry_price is None:
            entry_price = await self.price_feed.get_price(instrument)
            logger.debug("entry_price_fetched", instrument=instrument, price=entry_price)
        return await self.engine.open(
            trader,
            instrument,
            side,
            leverage,
            position_size,
            entry_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

    async def close_position(
        self,
        position_id: int,
        quantity: float | None = None,
        close_price: float | None = None,
    ) -> CloseResult:
        position = await self._load(position_id)
        if close_price is None:
            close_price = await self.price_feed.get_price(position.instrument)
            logger.debug("close_price_fetched", position_id=position_id, price=close_price)
        return await self.engine.close(position, quantity=quantity, close_price=close_price)

    async def modify_stops(
        self,
        position_id: int,
        stop_loss: float | None | object = UNSET,
        take_profit: float | None | object = UNSET,
    ) -> Position:
        position = await self._load(position_id)
        return await self.engine.modify_stops(position, stop_loss=stop_loss, take_profit=take_profit)

    async def _load(self, position_id: int) -> Position:
        position = await self.position_repo.get(position_id)
        if position is None:
            raise NotFoundError(f"Position not found: {position_id}")
        return position
