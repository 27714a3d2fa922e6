"""HeartbeatRecord and its audit sub-records."""

import enum
from datetime import datetime

from pydantic import BaseModel

from heartbeat_trader.models.decision import ComprehensiveDecision, MicroDecision


class HeartbeatStatus(str, enum.Enum):
    TRIGGERED = "triggered"
    IN_PROGRESS = "in_progress"
    SKIPPED_OUTSIDE_HOURS = "skipped_outside_hours"
    SKIPPED_NO_INTERVALS = "skipped_no_intervals"
    SKIPPED_NO_READERS = "skipped_no_readers"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (HeartbeatStatus.TRIGGERED, HeartbeatStatus.IN_PROGRESS)


class ReaderExecution(BaseModel):
    reader_id: int
    reader_name: str
    interval: str
    success: bool
    execution_time_ms: float = 0.0
    error: str | None = None


class IntervalDecision(BaseModel):
    interval: str
    decision: MicroDecision


class ExecutionOutcome(BaseModel):
    success: bool
    action: str  # open_long, open_short, close, modify_sl_tp, none
    position_id: int | None = None
    leverage: float | None = None
    position_size: float | None = None
    message: str = ""
    error: str | None = None


class HeartbeatRecord(BaseModel):
    id: int | None = None
    trader_id: int
    status: HeartbeatStatus = HeartbeatStatus.TRIGGERED
    triggered_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    was_within_active_hours: bool | None = None
    micro_decisions: list[IntervalDecision] = []
    final_decision: ComprehensiveDecision | None = None
    execution_action: str | None = None
    execution_result: ExecutionOutcome | None = None
    readers_executed: list[ReaderExecution] = []
    error_message: str | None = None
