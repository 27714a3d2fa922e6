"""DB repositories: traders, instruments, readers, positions, heartbeats."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from heartbeat_trader.db.models import (
    HeartbeatORM,
    PositionHistoryORM,
    PositionORM,
    ReaderORM,
    TraderORM,
    TradingPairORM,
)
from heartbeat_trader.errors import ConcurrencyConflict
from heartbeat_trader.models.heartbeat import HeartbeatRecord, HeartbeatStatus
from heartbeat_trader.models.position import Position, PositionHistoryEntry, PositionStatus
from heartbeat_trader.models.reader import ReaderSpec
from heartbeat_trader.models.trader import Trader

logger = structlog.get_logger()

_TRADER_FIELDS = tuple(name for name in Trader.model_fields)
_POSITION_FIELDS = tuple(name for name in Position.model_fields if name not in ("id", "version"))


def _orm_to_trader(orm: TraderORM) -> Trader:
    data = {name: getattr(orm, name) for name in _TRADER_FIELDS}
    data["timeframes"] = list(orm.timeframes or [])
    data["reader_ids"] = list(orm.reader_ids or [])
    return Trader.model_validate(data)


def _orm_to_reader(orm: ReaderORM) -> ReaderSpec:
    return ReaderSpec(
        id=orm.id,
        name=orm.name,
        entrypoint=orm.entrypoint,
        mandatory=bool(orm.mandatory),
        timeout_ms=orm.timeout_ms,
        standard_parameters=orm.standard_parameters or {},
        parameter_defaults=orm.parameter_defaults or {},
    )


def _orm_to_position(orm: PositionORM) -> Position:
    data = {name: getattr(orm, name) for name in _POSITION_FIELDS}
    data["id"] = orm.id
    data["version"] = orm.version or 0
    return Position.model_validate(data)


def _position_values(position: Position) -> dict:
    values = position.model_dump(include=set(_POSITION_FIELDS))
    values["side"] = position.side.value
    values["status"] = position.status.value
    return values


def _orm_to_history(orm: PositionHistoryORM) -> PositionHistoryEntry:
    return PositionHistoryEntry(
        id=orm.id,
        position_id=orm.position_id,
        action=orm.action,
        price=orm.price,
        quantity=orm.quantity,
        pnl=orm.pnl,
        details=orm.details or {},
        created_at=orm.created_at,
    )


def _history_orm(position_id: int, entry: PositionHistoryEntry) -> PositionHistoryORM:
    return PositionHistoryORM(
        position_id=position_id,
        action=entry.action.value,
        price=entry.price,
        quantity=entry.quantity,
        pnl=entry.pnl,
        details=entry.details,
        created_at=entry.created_at,
    )


def _heartbeat_values(record: HeartbeatRecord) -> dict:
    """Column values for a heartbeat row; nested models go to JSONB."""
    data = record.model_dump(mode="json", exclude={"id"})
    for column in ("triggered_at", "started_at", "completed_at"):
        data[column] = getattr(record, column)
    return data


def _orm_to_heartbeat(orm: HeartbeatORM) -> HeartbeatRecord:
    return HeartbeatRecord(
        id=orm.id,
        trader_id=orm.trader_id,
        status=orm.status,
        triggered_at=orm.triggered_at,
        started_at=orm.started_at,
        completed_at=orm.completed_at,
        duration_ms=orm.duration_ms,
        was_within_active_hours=orm.was_within_active_hours,
        micro_decisions=orm.micro_decisions or [],
        final_decision=orm.final_decision,
        execution_action=orm.execution_action,
        execution_result=orm.execution_result,
        readers_executed=orm.readers_executed or [],
        error_message=orm.error_message,
    )


class TraderRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, trader_id: int) -> Trader | None:
        async with self.session_factory() as session:
            orm = await session.get(TraderORM, trader_id)
            return _orm_to_trader(orm) if orm is not None else None

    async def get_enabled(self) -> list[Trader]:
        """All enabled traders in id order (the order stagger offsets are assigned in)."""
        async with self.session_factory() as session:
            stmt = select(TraderORM).where(TraderORM.status == "enabled").order_by(TraderORM.id)
            result = await session.execute(stmt)
            return [_orm_to_trader(t) for t in result.scalars().all()]


class InstrumentRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def exists(self, symbol: str) -> bool:
        """True if ``symbol`` is a known, active trading pair."""
        async with self.session_factory() as session:
            stmt = select(TradingPairORM.id).where(
                TradingPairORM.symbol == symbol,
                TradingPairORM.is_active.is_(True),
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None


class ReaderRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_many(self, reader_ids: list[int]) -> list[ReaderSpec]:
        """Readers for ``reader_ids``, in the order the ids were given. Unknown ids are dropped."""
        if not reader_ids:
            return []
        async with self.session_factory() as session:
            stmt = select(ReaderORM).where(ReaderORM.id.in_(reader_ids))
            result = await session.execute(stmt)
            by_id = {r.id: _orm_to_reader(r) for r in result.scalars().all()}
        missing = [rid for rid in reader_ids if rid not in by_id]
        if missing:
            logger.warning("readers_not_found", reader_ids=missing)
        return [by_id[rid] for rid in reader_ids if rid in by_id]

    async def get_mandatory(self) -> list[ReaderSpec]:
        async with self.session_factory() as session:
            stmt = select(ReaderORM).where(ReaderORM.mandatory.is_(True)).order_by(ReaderORM.id)
            result = await session.execute(stmt)
            return [_orm_to_reader(r) for r in result.scalars().all()]


class PositionRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, position_id: int) -> Position | None:
        async with self.session_factory() as session:
            orm = await session.get(PositionORM, position_id)
            return _orm_to_position(orm) if orm is not None else None

    async def get_open(self, trader_id: int | None = None) -> list[Position]:
        """Open positions, oldest first, optionally for one trader."""
        async with self.session_factory() as session:
            stmt = select(PositionORM).where(PositionORM.status == PositionStatus.OPEN.value)
            if trader_id is not None:
                stmt = stmt.where(PositionORM.trader_id == trader_id)
            stmt = stmt.order_by(PositionORM.opened_at, PositionORM.id)
            result = await session.execute(stmt)
            return [_orm_to_position(p) for p in result.scalars().all()]

    async def create(
        self, position: Position, history: list[PositionHistoryEntry]
    ) -> Position:
        """Insert a position and its history entries in one transaction."""
        async with self.session_factory() as session:
            orm = PositionORM(**_position_values(position), version=0)
            session.add(orm)
            await session.flush()
            position_id = orm.id
            for entry in history:
                session.add(_history_orm(position_id, entry))
            await session.commit()
            logger.info("position_created", position_id=position_id, trader_id=position.trader_id)
            return position.model_copy(update={"id": position_id, "version": 0})

    async def apply(
        self, position: Position, history: list[PositionHistoryEntry]
    ) -> Position:
        """Persist a mutated position plus its history entries atomically.

        ``position.version`` must still match the stored row and the stored
        row must still be open; otherwise nothing is written and
        ConcurrencyConflict is raised.
        """
        async with self.session_factory() as session:
            stmt = (
                update(PositionORM)
                .where(
                    PositionORM.id == position.id,
                    PositionORM.version == position.version,
                    PositionORM.status == PositionStatus.OPEN.value,
                )
                .values(**_position_values(position), version=position.version + 1)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                logger.warning(
                    "position_version_conflict",
                    position_id=position.id,
                    version=position.version,
                )
                raise ConcurrencyConflict(
                    f"Position {position.id} changed concurrently (version {position.version})"
                )
            for entry in history:
                session.add(_history_orm(position.id, entry))
            await session.commit()
            return position.model_copy(update={"version": position.version + 1})

    async def get_history(self, position_id: int) -> list[PositionHistoryEntry]:
        async with self.session_factory() as session:
            stmt = (
                select(PositionHistoryORM)
                .where(PositionHistoryORM.position_id == position_id)
                .order_by(PositionHistoryORM.created_at, PositionHistoryORM.id)
            )
            result = await session.execute(stmt)
            return [_orm_to_history(h) for h in result.scalars().all()]


class HeartbeatRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def start(self, record: HeartbeatRecord) -> HeartbeatRecord:
        """Insert ``record`` as in_progress. Raises ConcurrencyConflict if one is already running."""
        async with self.session_factory() as session:
            stmt = select(HeartbeatORM.id).where(
                HeartbeatORM.trader_id == record.trader_id,
                HeartbeatORM.status == HeartbeatStatus.IN_PROGRESS.value,
            )
            result = await session.execute(stmt)
            if result.scalars().first() is not None:
                raise ConcurrencyConflict(f"Heartbeat already running for trader {record.trader_id}")

            record = record.model_copy(update={"status": HeartbeatStatus.IN_PROGRESS})
            orm = HeartbeatORM(**_heartbeat_values(record))
            session.add(orm)
            try:
                await session.flush()
                record_id = orm.id
                await session.commit()
            except IntegrityError as e:
                # Lost the race against another process on the partial unique index
                await session.rollback()
                raise ConcurrencyConflict(
                    f"Heartbeat already running for trader {record.trader_id}"
                ) from e
            logger.info("heartbeat_record_started", record_id=record_id, trader_id=record.trader_id)
            return record.model_copy(update={"id": record_id})

    async def save(self, record: HeartbeatRecord) -> None:
        """Overwrite the stored row for ``record.id`` with the record's current state."""
        async with self.session_factory() as session:
            stmt = (
                update(HeartbeatORM)
                .where(HeartbeatORM.id == record.id)
                .values(**_heartbeat_values(record))
            )
            await session.execute(stmt)
            await session.commit()

    async def mark_failed(self, record_id: int, error_message: str) -> bool:
        """Move one in_progress row to failed, touching nothing else. Returns whether it changed."""
        async with self.session_factory() as session:
            stmt = (
                update(HeartbeatORM)
                .where(
                    HeartbeatORM.id == record_id,
                    HeartbeatORM.status == HeartbeatStatus.IN_PROGRESS.value,
                )
                .values(
                    status=HeartbeatStatus.FAILED.value,
                    completed_at=datetime.now(timezone.utc),
                    error_message=error_message,
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)

    async def get(self, record_id: int) -> HeartbeatRecord | None:
        async with self.session_factory() as session:
            orm = await session.get(HeartbeatORM, record_id)
            return _orm_to_heartbeat(orm) if orm is not None else None

    async def get_range(
        self,
        start: datetime,
        end: datetime,
        trader_id: int | None = None,
    ) -> list[HeartbeatRecord]:
        """Records triggered within [start, end], oldest first."""
        async with self.session_factory() as session:
            stmt = select(HeartbeatORM).where(
                HeartbeatORM.triggered_at >= start,
                HeartbeatORM.triggered_at <= end,
            )
            if trader_id is not None:
                stmt = stmt.where(HeartbeatORM.trader_id == trader_id)
            stmt = stmt.order_by(HeartbeatORM.triggered_at, HeartbeatORM.id)
            result = await session.execute(stmt)
            return [_orm_to_heartbeat(h) for h in result.scalars().all()]

    async def get_recent(self, trader_id: int, limit: int = 20) -> list[HeartbeatRecord]:
        async with self.session_factory() as session:
            stmt = (
                select(HeartbeatORM)
                .where(HeartbeatORM.trader_id == trader_id)
                .order_by(HeartbeatORM.triggered_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_orm_to_heartbeat(h) for h in result.scalars().all()]

    async def fail_stale(self, started_before: datetime) -> int:
        """Mark in_progress records started before ``started_before`` as failed. Returns count."""
        async with self.session_factory() as session:
            stmt = (
                update(HeartbeatORM)
                .where(
                    HeartbeatORM.status == HeartbeatStatus.IN_PROGRESS.value,
                    HeartbeatORM.started_at < started_before,
                )
                .values(
                    status=HeartbeatStatus.FAILED.value,
                    completed_at=datetime.now(timezone.utc),
                    error_message="Heartbeat abandoned while in progress",
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            count = result.rowcount or 0
            if count:
                logger.warning("stale_heartbeats_failed", count=count)
            return count
