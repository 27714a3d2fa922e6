"""Latest market prices via the python-okx SDK."""

from __future__ import annotations

import asyncio

import structlog

from heartbeat_trader.errors import CollaboratorError

logger = structlog.get_logger()


class OKXPriceFeed:
    """Public market-data wrapper. flag='1' is demo trading, '0' live."""

    def __init__(self, flag: str = "1") -> None:
        self.flag = flag
        from okx.MarketData import MarketAPI

        self._market_api = MarketAPI(flag=flag)

    async def get_price(self, instrument: str) -> float:
        """Last traded price for ``instrument``. Raises CollaboratorError if unavailable."""
        try:
            result = await asyncio.to_thread(self._market_api.get_ticker, instId=instrument)
        except Exception as e:
            logger.warning("price_fetch_error", instrument=instrument, error=str(e))
            raise CollaboratorError(f"Price request for {instrument} failed: {e}") from e

        if not result or result.get("code") != "0" or not result.get("data"):
            msg = result.get("msg", "") if isinstance(result, dict) else ""
            raise CollaboratorError(f"No ticker for {instrument}: {msg or 'empty response'}")

        try:
            price = float(result["data"][0].get("last", 0))
        except (TypeError, ValueError) as e:
            raise CollaboratorError(f"Malformed ticker for {instrument}") from e
        if price <= 0:
            raise CollaboratorError(f"Non-positive price for {instrument}: {price}")
        return price

    async def get_prices(self, instruments: list[str]) -> dict[str, float]:
        """Prices for several instruments. Instruments that fail are left out."""
        unique = list(dict.fromkeys(instruments))
        results = await asyncio.gather(
            *(self.get_price(inst) for inst in unique), return_exceptions=True
        )
        prices: dict[str, float] = {}
        for inst, result in zip(unique, results):
            if isinstance(result, Exception):
                logger.warning("price_unavailable", instrument=inst, error=str(result))
                continue
            prices[inst] = result
        return prices
