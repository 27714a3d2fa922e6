"""Unit tests for DB repositories — mock AsyncSession."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from heartbeat_trader.db.models import HeartbeatORM, PositionHistoryORM, PositionORM, ReaderORM, TraderORM
from heartbeat_trader.db.repository import (
    HeartbeatRepository,
    InstrumentRepository,
    PositionRepository,
    ReaderRepository,
    TraderRepository,
)
from heartbeat_trader.errors import ConcurrencyConflict
from heartbeat_trader.models.heartbeat import HeartbeatRecord, HeartbeatStatus
from heartbeat_trader.models.position import HistoryAction, Position, PositionHistoryEntry, PositionSide

NOW = datetime(2026, 2, 1, 8, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_session():
    """Create a mock AsyncSession with context manager support."""
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.flush = AsyncMock()
    session.rollback = AsyncMock()
    session.execute = AsyncMock()
    session.get = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def session_factory(mock_session):
    """async_sessionmaker.__call__() returns an async context manager, not a coroutine."""
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=mock_session)
    ctx.__aexit__ = AsyncMock(return_value=False)

    factory = MagicMock()
    factory.return_value = ctx
    return factory


def _scalars(rows: list) -> MagicMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    result.scalars.return_value.first.return_value = rows[0] if rows else None
    result.scalar_one_or_none.return_value = rows[0] if rows else None
    return result


def _assign_id_on_flush(mock_session, new_id: int) -> list:
    added: list = []
    mock_session.add.side_effect = added.append

    async def flush():
        added[0].id = new_id

    mock_session.flush.side_effect = flush
    return added


def _position(**overrides) -> Position:
    data = dict(
        id=5,
        trader_id=1,
        instrument="BTC-USDT-SWAP",
        side=PositionSide.LONG,
        entry_price=100.0,
        current_price=100.0,
        leverage=10.0,
        quantity=10.0,
        position_size=1000.0,
        margin=100.0,
        open_fee=0.5,
        liquidation_price=90.5,
        opened_at=NOW,
        version=3,
    )
    data.update(overrides)
    return Position(**data)


def _trader_orm(**overrides) -> TraderORM:
    data = dict(
        id=1,
        name="alpha",
        status="enabled",
        aggressiveness_level=5,
        trading_strategy="balanced",
        holding_period="swing",
        risk_preference_score=50,
        min_leverage=1,
        max_leverage=10,
        max_positions=3,
        max_position_size=5000.0,
        min_trade_amount=10.0,
        allow_short=True,
        max_drawdown=20.0,
        stop_loss_threshold=10.0,
        position_stop_loss=5.0,
        position_take_profit=10.0,
        max_consecutive_losses=5,
        daily_max_loss=500.0,
        heartbeat_interval=300,
        active_time_start="00:00",
        active_time_end="24:00",
        preferred_instrument=None,
        timeframes=["15m", "1h"],
        reader_ids=[2, 1],
    )
    data.update(overrides)
    return TraderORM(**data)


def _reader_orm(reader_id: int, mandatory: bool = False) -> ReaderORM:
    return ReaderORM(
        id=reader_id,
        name=f"reader-{reader_id}",
        entrypoint=f"readers.r{reader_id}:read",
        mandatory=mandatory,
        timeout_ms=None,
        standard_parameters={"symbol": "instId"},
        parameter_defaults=None,
    )


# ---------------------------------------------------------------------------
# TraderRepository / InstrumentRepository / ReaderRepository
# ---------------------------------------------------------------------------


class TestTraderRepository:
    async def test_get_maps_orm(self, session_factory, mock_session):
        mock_session.get.return_value = _trader_orm()
        trader = await TraderRepository(session_factory).get(1)

        assert trader.name == "alpha"
        assert trader.timeframes == ["15m", "1h"]
        assert trader.reader_ids == [2, 1]

    async def test_get_missing(self, session_factory, mock_session):
        mock_session.get.return_value = None
        assert await TraderRepository(session_factory).get(99) is None

    async def test_get_enabled(self, session_factory, mock_session):
        mock_session.execute.return_value = _scalars([_trader_orm(), _trader_orm(id=2, name="beta")])
        traders = await TraderRepository(session_factory).get_enabled()
        assert [t.id for t in traders] == [1, 2]


class TestInstrumentRepository:
    async def test_exists(self, session_factory, mock_session):
        mock_session.execute.return_value = _scalars([7])
        assert await InstrumentRepository(session_factory).exists("BTC-USDT-SWAP") is True

    async def test_missing(self, session_factory, mock_session):
        mock_session.execute.return_value = _scalars([])
        assert await InstrumentRepository(session_factory).exists("NOPE") is False


class TestReaderRepository:
    async def test_get_many_keeps_requested_order(self, session_factory, mock_session):
        mock_session.execute.return_value = _scalars([_reader_orm(1), _reader_orm(2)])
        readers = await ReaderRepository(session_factory).get_many([2, 3, 1])

        assert [r.id for r in readers] == [2, 1]
        assert readers[0].standard_parameters == {"symbol": "instId"}
        assert readers[0].parameter_defaults == {}

    async def test_get_many_empty_skips_query(self, session_factory, mock_session):
        assert await ReaderRepository(session_factory).get_many([]) == []
        mock_session.execute.assert_not_called()

    async def test_get_mandatory(self, session_factory, mock_session):
        mock_session.execute.return_value = _scalars([_reader_orm(4, mandatory=True)])
        readers = await ReaderRepository(session_factory).get_mandatory()
        assert readers[0].mandatory is True


# ---------------------------------------------------------------------------
# PositionRepository
# ---------------------------------------------------------------------------


class TestPositionRepository:
    @pytest.fixture
    def repo(self, session_factory):
        return PositionRepository(session_factory)

    async def test_create_assigns_id_and_writes_history(self, repo, mock_session):
        added = _assign_id_on_flush(mock_session, 77)
        history = [PositionHistoryEntry(action=HistoryAction.OPEN, price=100.0, quantity=10.0)]

        created = await repo.create(_position(id=None, version=0), history)

        assert created.id == 77
        assert created.version == 0
        assert isinstance(added[0], PositionORM)
        assert added[0].side == "long"
        assert isinstance(added[1], PositionHistoryORM)
        assert added[1].position_id == 77
        assert added[1].action == "open"
        mock_session.commit.assert_awaited_once()

    async def test_apply_bumps_version(self, repo, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=1)
        history = [PositionHistoryEntry(action=HistoryAction.PRICE_UPDATE, price=101.0)]

        saved = await repo.apply(_position(current_price=101.0), history)

        assert saved.version == 4
        mock_session.add.assert_called_once()
        mock_session.commit.assert_awaited_once()

    async def test_apply_conflict_writes_nothing(self, repo, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=0)
        history = [PositionHistoryEntry(action=HistoryAction.CLOSE, price=101.0)]

        with pytest.raises(ConcurrencyConflict):
            await repo.apply(_position(), history)

        mock_session.add.assert_not_called()
        mock_session.commit.assert_not_called()
        mock_session.rollback.assert_awaited_once()

    async def test_get_maps_orm(self, repo, mock_session):
        values = _position().model_dump(exclude={"id", "version"})
        values["side"] = "long"
        values["status"] = "open"
        mock_session.get.return_value = PositionORM(id=5, version=2, **values)

        position = await repo.get(5)
        assert position.id == 5
        assert position.version == 2
        assert position.side == PositionSide.LONG

    async def test_get_history(self, repo, mock_session):
        mock_session.execute.return_value = _scalars([
            PositionHistoryORM(
                id=1, position_id=5, action="open", price=100.0, quantity=10.0,
                pnl=None, details={"leverage": 10}, created_at=NOW,
            )
        ])
        history = await repo.get_history(5)
        assert history[0].action == HistoryAction.OPEN
        assert history[0].details == {"leverage": 10}


# ---------------------------------------------------------------------------
# HeartbeatRepository
# ---------------------------------------------------------------------------


class TestHeartbeatRepository:
    @pytest.fixture
    def repo(self, session_factory):
        return HeartbeatRepository(session_factory)

    @pytest.fixture
    def record(self):
        return HeartbeatRecord(trader_id=1, triggered_at=NOW, started_at=NOW, was_within_active_hours=True)

    async def test_start_inserts_in_progress(self, repo, mock_session, record):
        mock_session.execute.return_value = _scalars([])
        added = _assign_id_on_flush(mock_session, 900)

        started = await repo.start(record)

        assert started.id == 900
        assert started.status == HeartbeatStatus.IN_PROGRESS
        assert isinstance(added[0], HeartbeatORM)
        assert added[0].status == "in_progress"
        assert added[0].triggered_at == NOW

    async def test_start_rejects_when_running(self, repo, mock_session, record):
        mock_session.execute.return_value = _scalars([123])
        with pytest.raises(ConcurrencyConflict):
            await repo.start(record)
        mock_session.add.assert_not_called()

    async def test_start_unique_index_race(self, repo, mock_session, record):
        mock_session.execute.return_value = _scalars([])
        mock_session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

        with pytest.raises(ConcurrencyConflict):
            await repo.start(record)
        mock_session.rollback.assert_awaited_once()
        mock_session.commit.assert_not_called()

    async def test_fail_stale(self, repo, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=2)
        assert await repo.fail_stale(NOW) == 2
        mock_session.commit.assert_awaited_once()

    async def test_mark_failed_only_touches_in_progress_row(self, repo, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=1)
        assert await repo.mark_failed(7, "Final save failed: boom") is True

        stmt = mock_session.execute.call_args.args[0]
        params = stmt.compile().params
        assert "in_progress" in params.values()
        assert params["status"] == "failed"
        assert params["error_message"] == "Final save failed: boom"
        mock_session.commit.assert_awaited_once()

    async def test_mark_failed_noop_when_already_terminal(self, repo, mock_session):
        mock_session.execute.return_value = MagicMock(rowcount=0)
        assert await repo.mark_failed(7, "x") is False

    async def test_get_recent_maps_json_columns(self, repo, mock_session):
        mock_session.execute.return_value = _scalars([
            HeartbeatORM(
                id=3,
                trader_id=1,
                status="completed",
                triggered_at=NOW,
                micro_decisions=[],
                final_decision=None,
                execution_action="none",
                execution_result={"success": True, "action": "none", "message": "hold"},
                readers_executed=[
                    {"reader_id": 1, "reader_name": "rsi", "interval": "1h", "success": True}
                ],
            )
        ])
        records = await repo.get_recent(1)

        assert records[0].status == HeartbeatStatus.COMPLETED
        assert records[0].execution_result.action == "none"
        assert records[0].readers_executed[0].reader_name == "rsi"
