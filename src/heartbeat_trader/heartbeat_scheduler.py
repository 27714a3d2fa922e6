"""Background scheduler that fires staggered heartbeats for every enabled trader."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog

from heartbeat_trader.errors import ConcurrencyConflict
from heartbeat_trader.models.heartbeat import HeartbeatStatus
from heartbeat_trader.models.timeline import HeartbeatSchedule, TimelineHeartbeat
from heartbeat_trader.models.trader import Trader, TraderStatus
from heartbeat_trader.stagger import advance_past, compute_offsets, first_trigger, triggers_between

if TYPE_CHECKING:
    from heartbeat_trader.config import Settings
    from heartbeat_trader.db.repository import HeartbeatRepository, TraderRepository
    from heartbeat_trader.heartbeat_executor import HeartbeatExecutor

logger = structlog.get_logger()

# In-memory executed-status cache window; older entries come from the store
HISTORY_RETENTION = timedelta(hours=24)


class HeartbeatScheduler:
    """Tick loop: launches due heartbeats, at most MAX_CONCURRENT_HEARTBEATS at a time."""

    def __init__(
        self,
        settings: Settings,
        trader_repo: TraderRepository,
        heartbeat_repo: HeartbeatRepository,
        executor: HeartbeatExecutor,
    ) -> None:
        self.settings = settings
        self.trader_repo = trader_repo
        self.heartbeat_repo = heartbeat_repo
        self.executor = executor
        self.schedules: dict[int, HeartbeatSchedule] = {}
        # (trader_id, scheduled_at) -> terminal status, for the timeline overlay
        self.history: dict[tuple[int, datetime], tuple[HeartbeatStatus, int | None]] = {}
        self._active: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_HEARTBEATS)
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_sweep: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self._running

    async def start(self, now: datetime | None = None) -> None:
        """Recover stale records, build schedules, start the tick loop."""
        now = now or datetime.now(timezone.utc)
        await self.sweep_stale(now)
        await self.refresh_schedules(now)
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("heartbeat_scheduler_started", traders=len(self.schedules))

    async def stop(self) -> None:
        """Stop the tick loop and cancel in-flight heartbeats."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("heartbeat_scheduler_stopped")

    async def refresh_schedules(self, now: datetime | None = None) -> None:
        """(Re)compute offsets for enabled traders. Existing schedules keep their anchor."""
        now = now or datetime.now(timezone.utc)
        traders = await self.trader_repo.get_enabled()
        offsets = compute_offsets(
            [(t.id, t.heartbeat_interval) for t in traders],
            golden_ratio=self.settings.STAGGER_GOLDEN_RATIO,
        )
        schedules: dict[int, HeartbeatSchedule] = {}
        for trader in traders:
            existing = self.schedules.get(trader.id)
            if existing and existing.interval_seconds == trader.heartbeat_interval:
                schedules[trader.id] = existing
                continue
            offset = offsets[trader.id]
            anchor = first_trigger(now, trader.heartbeat_interval, offset)
            schedules[trader.id] = HeartbeatSchedule(
                trader_id=trader.id,
                trader_name=trader.name,
                interval_seconds=trader.heartbeat_interval,
                offset_seconds=offset,
                anchor=anchor,
                next_trigger=anchor,
            )
            logger.info(
                "heartbeat_scheduled",
                trader_id=trader.id,
                interval=trader.heartbeat_interval,
                offset=offset,
                first_trigger=anchor.isoformat(),
            )
        self.schedules = schedules

    async def sweep_stale(self, now: datetime | None = None) -> int:
        """Fail in_progress records older than the heartbeat timeout."""
        now = now or datetime.now(timezone.utc)
        self._last_sweep = now
        return await self.heartbeat_repo.fail_stale(
            now - timedelta(seconds=self.settings.HEARTBEAT_TIMEOUT_SECONDS)
        )

    async def _run_loop(self) -> None:
        while self._running:
            try:
                now = datetime.now(timezone.utc)
                if self._sweep_due(now):
                    await self.sweep_stale(now)
                self.tick(now)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("heartbeat_scheduler_error")

            await asyncio.sleep(self.settings.SCHEDULER_TICK_SECONDS)

    def _sweep_due(self, now: datetime) -> bool:
        # Swept once per timeout period, so a record can be stale for at most twice the timeout
        if self._last_sweep is None:
            return True
        return (now - self._last_sweep).total_seconds() >= self.settings.HEARTBEAT_TIMEOUT_SECONDS

    def tick(self, now: datetime | None = None) -> list[int]:
        """Launch every due heartbeat whose trader is idle. Returns the launched trader ids."""
        now = now or datetime.now(timezone.utc)
        launched: list[int] = []
        for schedule in list(self.schedules.values()):
            if schedule.next_trigger > now or schedule.trader_id in self._active:
                continue
            self._active.add(schedule.trader_id)
            task = asyncio.create_task(self._run_heartbeat(schedule, schedule.next_trigger))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            launched.append(schedule.trader_id)
        return launched

    async def _run_heartbeat(self, schedule: HeartbeatSchedule, scheduled_at: datetime) -> None:
        trader_id = schedule.trader_id
        try:
            async with self._semaphore:
                trader = await self.trader_repo.get(trader_id)
                if trader is None or trader.status != TraderStatus.ENABLED:
                    logger.warning("heartbeat_trader_unavailable", trader_id=trader_id)
                    self.schedules.pop(trader_id, None)
                    return
                await self._execute(trader, scheduled_at)
        except Exception:
            logger.exception("heartbeat_run_error", trader_id=trader_id)
        finally:
            # Advance even on failure; missed beats are skipped, not replayed
            current = self.schedules.get(trader_id)
            if current is not None and current.next_trigger == scheduled_at:
                current.next_trigger = advance_past(
                    scheduled_at, current.interval_seconds, datetime.now(timezone.utc)
                )
            self._active.discard(trader_id)

    async def _execute(self, trader: Trader, scheduled_at: datetime) -> None:
        try:
            record = await asyncio.wait_for(
                self.executor.execute(trader, triggered_at=scheduled_at),
                timeout=self.settings.HEARTBEAT_TIMEOUT_SECONDS,
            )
        except ConcurrencyConflict:
            logger.warning("heartbeat_already_running", trader_id=trader.id)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "heartbeat_timeout",
                trader_id=trader.id,
                timeout=self.settings.HEARTBEAT_TIMEOUT_SECONDS,
            )
            self.history[(trader.id, scheduled_at)] = (HeartbeatStatus.FAILED, None)
            return
        self.history[(trader.id, scheduled_at)] = (record.status, record.id)
        self._prune_history(scheduled_at - HISTORY_RETENTION)
        logger.info(
            "heartbeat_completed",
            trader_id=trader.id,
            status=record.status.value,
            duration_ms=record.duration_ms,
        )

    # --- Timeline ---

    def get_timeline(self, range_start: datetime, range_end: datetime) -> list[TimelineHeartbeat]:
        """Every scheduled trigger in [range_start, range_end], with executed status if known.

        Triggers are regenerated from each schedule's anchor and interval, so
        the same range always yields the same instants.
        """
        items: list[TimelineHeartbeat] = []
        for schedule in self.schedules.values():
            for scheduled_at in triggers_between(
                schedule.anchor, schedule.interval_seconds, range_start, range_end
            ):
                status, record_id = self.history.get((schedule.trader_id, scheduled_at), (None, None))
                items.append(
                    TimelineHeartbeat(
                        trader_id=schedule.trader_id,
                        trader_name=schedule.trader_name,
                        scheduled_at=scheduled_at,
                        status=status,
                        record_id=record_id,
                    )
                )
        items.sort(key=lambda item: (item.scheduled_at, item.trader_id))
        return items

    async def load_timeline(
        self, range_start: datetime, range_end: datetime
    ) -> list[TimelineHeartbeat]:
        """Like get_timeline, with statuses taken from stored heartbeat records."""
        items = self.get_timeline(range_start, range_end)
        records = await self.heartbeat_repo.get_range(range_start, range_end)
        by_key = {(r.trader_id, r.triggered_at): r for r in records}
        for item in items:
            record = by_key.get((item.trader_id, item.scheduled_at))
            if record is not None:
                item.status = record.status
                item.record_id = record.id
        return items

    def _prune_history(self, cutoff: datetime) -> None:
        for key in [k for k in self.history if k[1] < cutoff]:
            del self.history[key]
