"""Heartbeat state machine: one end-to-end decision cycle for one trader.

triggered -> in_progress -> one of
    skipped_outside_hours | skipped_no_intervals | skipped_no_readers
    | completed | failed

Eligibility is an ordered list of guards; the first guard that returns a
status ends the heartbeat with that status. Otherwise, for each configured
timeframe in order:
    1. run every reader concurrently (failures are recorded, not fatal)
    2. ask the oracle for a micro decision
then ask for a comprehensive decision and dispatch it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from heartbeat_trader.errors import ConcurrencyConflict
from heartbeat_trader.models.heartbeat import (
    ExecutionOutcome,
    HeartbeatRecord,
    HeartbeatStatus,
    IntervalDecision,
    ReaderExecution,
)
from heartbeat_trader.models.reader import ReaderContext, ReaderSpec
from heartbeat_trader.readers.executor import build_input

if TYPE_CHECKING:
    from heartbeat_trader.config import Settings
    from heartbeat_trader.db.repository import (
        HeartbeatRepository,
        PositionRepository,
        ReaderRepository,
    )
    from heartbeat_trader.decision_dispatcher import DecisionDispatcher
    from heartbeat_trader.models.trader import Trader
    from heartbeat_trader.oracle_client import DecisionOracle
    from heartbeat_trader.readers.executor import ReaderExecutor

logger = structlog.get_logger()

TRIGGERED_BY = "heartbeat-system"


@dataclass
class HeartbeatContext:
    trader: Trader
    triggered_at: datetime
    readers: list[ReaderSpec] = field(default_factory=list)


Guard = Callable[[HeartbeatContext], Awaitable[HeartbeatStatus | None]]


def merge_readers(trader_readers: list[ReaderSpec], mandatory: list[ReaderSpec]) -> list[ReaderSpec]:
    """Trader readers followed by mandatory readers, de-duplicated by id."""
    seen: set[int] = set()
    merged: list[ReaderSpec] = []
    for reader in [*trader_readers, *mandatory]:
        if reader.id in seen:
            continue
        seen.add(reader.id)
        merged.append(reader)
    return merged


class HeartbeatExecutor:
    def __init__(
        self,
        settings: Settings,
        heartbeat_repo: HeartbeatRepository,
        reader_repo: ReaderRepository,
        position_repo: PositionRepository,
        reader_executor: ReaderExecutor,
        oracle: DecisionOracle,
        dispatcher: DecisionDispatcher,
    ) -> None:
        self.settings = settings
        self.heartbeat_repo = heartbeat_repo
        self.reader_repo = reader_repo
        self.position_repo = position_repo
        self.reader_executor = reader_executor
        self.oracle = oracle
        self.dispatcher = dispatcher
        self._running: set[int] = set()
        # Evaluated in order, first non-None status wins
        self.guards: list[Guard] = [
            self._guard_active_hours,
            self._guard_timeframes,
            self._guard_readers,
        ]

    def is_running(self, trader_id: int) -> bool:
        return trader_id in self._running

    async def execute(self, trader: Trader, triggered_at: datetime | None = None) -> HeartbeatRecord:
        """Run one heartbeat. Raises ConcurrencyConflict if one is already in progress."""
        if trader.id in self._running:
            raise ConcurrencyConflict(f"Heartbeat already running for trader {trader.id}")
        self._running.add(trader.id)
        try:
            return await self._execute(trader, triggered_at or datetime.now(timezone.utc))
        finally:
            self._running.discard(trader.id)

    async def _execute(self, trader: Trader, triggered_at: datetime) -> HeartbeatRecord:
        record = HeartbeatRecord(
            trader_id=trader.id,
            triggered_at=triggered_at,
            started_at=datetime.now(timezone.utc),
            was_within_active_hours=trader.is_active_at(triggered_at),
        )
        record = await self.heartbeat_repo.start(record)
        logger.info(
            "heartbeat_transition",
            trader_id=trader.id,
            record_id=record.id,
            old=HeartbeatStatus.TRIGGERED.value,
            new=HeartbeatStatus.IN_PROGRESS.value,
        )
        start = time.monotonic()
        ctx = HeartbeatContext(trader=trader, triggered_at=triggered_at)

        try:
            status = await self._evaluate_guards(ctx)
            if status is None:
                await self._run_pipeline(ctx, record)
                status = HeartbeatStatus.COMPLETED
        except asyncio.CancelledError:
            record.error_message = "Heartbeat cancelled before completion"
            await self._finish(record, HeartbeatStatus.FAILED, start)
            raise
        except Exception as e:
            record.error_message = str(e) or type(e).__name__
            logger.warning(
                "heartbeat_failed",
                trader_id=trader.id,
                record_id=record.id,
                error_type=type(e).__name__,
                error=record.error_message,
            )
            status = HeartbeatStatus.FAILED

        await self._finish(record, status, start)
        return record

    async def _finish(self, record: HeartbeatRecord, status: HeartbeatStatus, start: float) -> None:
        old = record.status
        record.status = status
        record.completed_at = datetime.now(timezone.utc)
        record.duration_ms = int((time.monotonic() - start) * 1000)
        try:
            await self.heartbeat_repo.save(record)
        except Exception as e:
            # A row left in_progress would block every later heartbeat for this trader
            logger.error(
                "heartbeat_save_failed",
                trader_id=record.trader_id,
                record_id=record.id,
                status=status.value,
                error=str(e) or type(e).__name__,
            )
            record.status = HeartbeatStatus.FAILED
            record.error_message = f"Final save failed: {str(e) or type(e).__name__}"
            try:
                await self.heartbeat_repo.mark_failed(record.id, record.error_message)
            except Exception:
                logger.exception("heartbeat_mark_failed_error", record_id=record.id)
            status = HeartbeatStatus.FAILED
        logger.info(
            "heartbeat_transition",
            trader_id=record.trader_id,
            record_id=record.id,
            old=old.value,
            new=status.value,
            duration_ms=record.duration_ms,
        )

    # --- Guards ---

    async def _evaluate_guards(self, ctx: HeartbeatContext) -> HeartbeatStatus | None:
        for guard in self.guards:
            status = await guard(ctx)
            if status is not None:
                return status
        return None

    async def _guard_active_hours(self, ctx: HeartbeatContext) -> HeartbeatStatus | None:
        if not ctx.trader.is_active_at(ctx.triggered_at):
            return HeartbeatStatus.SKIPPED_OUTSIDE_HOURS
        return None

    async def _guard_timeframes(self, ctx: HeartbeatContext) -> HeartbeatStatus | None:
        if not ctx.trader.timeframes:
            return HeartbeatStatus.SKIPPED_NO_INTERVALS
        return None

    async def _guard_readers(self, ctx: HeartbeatContext) -> HeartbeatStatus | None:
        trader_readers = await self.reader_repo.get_many(ctx.trader.reader_ids)
        mandatory = await self.reader_repo.get_mandatory()
        ctx.readers = merge_readers(trader_readers, mandatory)
        if not ctx.readers:
            return HeartbeatStatus.SKIPPED_NO_READERS
        return None

    # --- Pipeline ---

    async def _run_pipeline(self, ctx: HeartbeatContext, record: HeartbeatRecord) -> None:
        trader = ctx.trader
        instrument = trader.preferred_instrument or self.settings.DEFAULT_INSTRUMENT
        positions = await self.position_repo.get_open(trader.id)

        for interval in trader.timeframes:
            reader_data = await self._gather(ctx, record, instrument, interval)
            decision = await self.oracle.request_micro_decision(
                instrument, interval, reader_data, positions, trader
            )
            record.micro_decisions.append(IntervalDecision(interval=interval, decision=decision))
            await self.heartbeat_repo.save(record)
            logger.info(
                "micro_decision",
                trader_id=trader.id,
                interval=interval,
                action=decision.action.value,
                confidence=decision.confidence,
                readers_ok=len(reader_data),
            )

        positions = await self.position_repo.get_open(trader.id)
        final = await self.oracle.request_comprehensive_decision(
            instrument, record.micro_decisions, positions, trader
        )
        record.final_decision = final
        record.execution_action = final.action.value
        await self.heartbeat_repo.save(record)
        logger.info(
            "comprehensive_decision",
            trader_id=trader.id,
            action=final.action.value,
            confidence=final.confidence,
        )

        try:
            outcome = await self.dispatcher.dispatch(final, trader, instrument, positions)
        except Exception as e:
            record.execution_result = ExecutionOutcome(
                success=False, action=final.action.value, error=str(e) or type(e).__name__
            )
            raise
        record.execution_result = outcome
        record.execution_action = outcome.action

    async def _gather(
        self,
        ctx: HeartbeatContext,
        record: HeartbeatRecord,
        instrument: str,
        interval: str,
    ) -> list[dict]:
        """Run every reader for one timeframe concurrently; return the successful data."""

        async def run(reader: ReaderSpec):
            context = ReaderContext(
                reader_id=reader.id,
                request_id=f"heartbeat-{record.id}",
                triggered_by=TRIGGERED_BY,
            )
            return await self.reader_executor.execute(
                reader, build_input(reader, instrument, interval), context
            )

        outputs = await asyncio.gather(*(run(r) for r in ctx.readers), return_exceptions=True)

        reader_data: list[dict] = []
        for reader, output in zip(ctx.readers, outputs):
            if isinstance(output, BaseException):
                record.readers_executed.append(
                    ReaderExecution(
                        reader_id=reader.id,
                        reader_name=reader.name,
                        interval=interval,
                        success=False,
                        error=str(output) or type(output).__name__,
                    )
                )
                continue
            record.readers_executed.append(
                ReaderExecution(
                    reader_id=reader.id,
                    reader_name=reader.name,
                    interval=interval,
                    success=output.success,
                    execution_time_ms=output.metadata.execution_time_ms,
                    error=output.error,
                )
            )
            if output.success and output.data is not None:
                reader_data.append({"reader": reader.name, "data": output.data})
        return reader_data
