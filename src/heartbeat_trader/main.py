"""Entry point: wire components, run the heartbeat scheduler and price refresher."""

import asyncio
import signal
import sys

import structlog

from heartbeat_trader.config import Settings
from heartbeat_trader.db.engine import create_db_engine, create_session_factory
from heartbeat_trader.db.repository import (
    HeartbeatRepository,
    InstrumentRepository,
    PositionRepository,
    ReaderRepository,
    TraderRepository,
)
from heartbeat_trader.decision_dispatcher import DecisionDispatcher
from heartbeat_trader.execution_gateway import LocalExecutionGateway
from heartbeat_trader.heartbeat_executor import HeartbeatExecutor
from heartbeat_trader.heartbeat_scheduler import HeartbeatScheduler
from heartbeat_trader.oracle_client import DecisionOracle
from heartbeat_trader.position_engine import PositionEngine
from heartbeat_trader.price_feed import OKXPriceFeed
from heartbeat_trader.price_refresher import PriceRefresher
from heartbeat_trader.prompt_builder import PromptBuilder
from heartbeat_trader.readers.executor import ReaderExecutor

logger = structlog.get_logger()


def build_components(settings: Settings, session_factory) -> dict:
    """Construct every long-lived component. Nothing is started here."""
    trader_repo = TraderRepository(session_factory)
    position_repo = PositionRepository(session_factory)
    heartbeat_repo = HeartbeatRepository(session_factory)

    price_feed = OKXPriceFeed(flag=settings.OKX_FLAG)
    engine = PositionEngine(
        position_repo,
        InstrumentRepository(session_factory),
        fee_rate=settings.FEE_RATE,
        maintenance_margin_ratio=settings.MAINTENANCE_MARGIN_RATIO,
        near_liquidation_pct=settings.NEAR_LIQUIDATION_PCT,
    )
    gateway = LocalExecutionGateway(engine, trader_repo, position_repo, price_feed)
    executor = HeartbeatExecutor(
        settings=settings,
        heartbeat_repo=heartbeat_repo,
        reader_repo=ReaderRepository(session_factory),
        position_repo=position_repo,
        reader_executor=ReaderExecutor(settings.READER_DEFAULT_TIMEOUT_SECONDS),
        oracle=DecisionOracle(settings, PromptBuilder()),
        dispatcher=DecisionDispatcher(gateway),
    )
    scheduler = HeartbeatScheduler(settings, trader_repo, heartbeat_repo, executor)
    refresher = PriceRefresher(
        position_repo, engine, price_feed, interval_seconds=settings.PRICE_REFRESH_SECONDS
    )
    return {
        "engine": engine,
        "gateway": gateway,
        "executor": executor,
        "scheduler": scheduler,
        "refresher": refresher,
    }


async def main() -> None:
    settings = Settings()

    db_engine = create_db_engine(settings)
    session_factory = create_session_factory(db_engine)
    components = build_components(settings, session_factory)
    scheduler: HeartbeatScheduler = components["scheduler"]
    refresher: PriceRefresher = components["refresher"]

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _signal_handler)
    else:
        signal.signal(signal.SIGINT, lambda *_: _signal_handler())

    try:
        refresher.start()
        if settings.SCHEDULER_ENABLED:
            await scheduler.start()
        else:
            logger.info("heartbeat_scheduler_disabled")
        await stop_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await scheduler.stop()
        await refresher.stop()
        await db_engine.dispose()
        logger.info("shutdown_complete")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
