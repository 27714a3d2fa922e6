"""Scheduler timeline models."""

from datetime import datetime

from pydantic import BaseModel

from heartbeat_trader.models.heartbeat import HeartbeatStatus


class HeartbeatSchedule(BaseModel):
    trader_id: int
    trader_name: str = ""
    interval_seconds: int
    offset_seconds: int
    anchor: datetime  # first trigger instant; every later trigger is anchor + k * interval
    next_trigger: datetime


class TimelineHeartbeat(BaseModel):
    trader_id: int
    trader_name: str = ""
    scheduled_at: datetime
    status: HeartbeatStatus | None = None  # None = not executed (yet)
    record_id: int | None = None
