"""Periodic mark-to-market of open positions (liquidation / SL / TP checks)."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from heartbeat_trader.models.position import HistoryAction

if TYPE_CHECKING:
    from heartbeat_trader.db.repository import PositionRepository
    from heartbeat_trader.position_engine import PositionEngine
    from heartbeat_trader.price_feed import OKXPriceFeed

logger = structlog.get_logger()


class PriceRefresher:
    """Background task that refreshes every open position every PRICE_REFRESH_SECONDS."""

    def __init__(
        self,
        position_repo: PositionRepository,
        engine: PositionEngine,
        price_feed: OKXPriceFeed,
        interval_seconds: float = 10,
    ) -> None:
        self.position_repo = position_repo
        self.engine = engine
        self.price_feed = price_feed
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._running = False

    def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("price_refresher_started", interval=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("price_refresher_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.refresh_all()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("price_refresher_error")

            await asyncio.sleep(self.interval_seconds)

    async def refresh_all(self) -> dict[str, int]:
        """One pass over all open positions. Returns per-outcome counts."""
        counts = {"updated": 0, "liquidated": 0, "stop_loss": 0, "take_profit": 0, "errors": 0}
        positions = await self.position_repo.get_open()
        if not positions:
            return counts

        prices = await self.price_feed.get_prices([p.instrument for p in positions])
        for position in positions:
            price = prices.get(position.instrument)
            if price is None:
                counts["errors"] += 1
                continue
            try:
                result = await self.engine.refresh_price(position, price)
            except Exception as e:
                logger.warning("position_refresh_failed", position_id=position.id, error=str(e))
                counts["errors"] += 1
                continue

            if result.trigger == HistoryAction.LIQUIDATE:
                counts["liquidated"] += 1
            elif result.trigger == HistoryAction.STOP_LOSS_TRIGGERED:
                counts["stop_loss"] += 1
            elif result.trigger == HistoryAction.TAKE_PROFIT_TRIGGERED:
                counts["take_profit"] += 1
            else:
                counts["updated"] += 1

        logger.info("positions_refreshed", **counts)
        return counts
