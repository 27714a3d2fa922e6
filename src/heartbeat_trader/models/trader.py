"""Trader configuration model."""

import enum
import re
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
# End of day, accepted only as an active-hours end bound
END_OF_DAY = "24:00"


class TraderStatus(str, enum.Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


class Trader(BaseModel):
    """Trading agent configuration. Immutable for the length of one heartbeat."""

    id: int
    name: str = ""
    status: TraderStatus = TraderStatus.ENABLED

    # --- Style ---
    aggressiveness_level: int = Field(5, ge=1, le=10)
    trading_strategy: str = "balanced"
    holding_period: str = "swing"
    risk_preference_score: int = Field(50, ge=0, le=100)

    # --- Leverage / sizing ---
    min_leverage: float = Field(1.0, ge=1, le=125)
    max_leverage: float = Field(10.0, ge=1, le=125)
    max_positions: int = Field(3, ge=1)
    max_position_size: float = Field(10_000.0, gt=0)
    min_trade_amount: float = Field(10.0, gt=0)
    allow_short: bool = True

    # --- Risk bounds (percentages) ---
    max_drawdown: float = Field(20.0, ge=0)
    stop_loss_threshold: float = Field(10.0, ge=0)
    position_stop_loss: float = Field(5.0, ge=0)
    position_take_profit: float = Field(10.0, ge=0)
    max_consecutive_losses: int = Field(5, ge=0)
    daily_max_loss: float = Field(500.0, ge=0)

    # --- Schedule ---
    heartbeat_interval: int = Field(300, gt=0)  # seconds
    active_time_start: str = "00:00"  # UTC, HH:MM
    active_time_end: str = END_OF_DAY

    # --- Market data ---
    preferred_instrument: str | None = None
    timeframes: list[str] = []  # ordered, e.g. ["15m", "1h", "4h"]
    reader_ids: list[int] = []

    @field_validator("active_time_start")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value

    @field_validator("active_time_end")
    @classmethod
    def _check_end(cls, value: str) -> str:
        if value != END_OF_DAY and not _HHMM.match(value):
            raise ValueError(f"expected HH:MM or {END_OF_DAY}, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_leverage_bounds(self) -> "Trader":
        if self.min_leverage > self.max_leverage:
            raise ValueError(
                f"min_leverage ({self.min_leverage}) must be <= max_leverage ({self.max_leverage})"
            )
        return self

    def is_active_at(self, moment: datetime | None = None) -> bool:
        """True if ``moment`` (UTC) falls inside the active-hours window.

        The window is [start, end). When end < start it wraps midnight and
        covers [start, 24:00) plus [00:00, end). start == end is an empty window;
        00:00 to 24:00 is all day.
        """
        moment = moment or datetime.now(timezone.utc)
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        now = moment.hour * 60 + moment.minute
        start = _minutes(self.active_time_start)
        end = _minutes(self.active_time_end)
        if end < start:
            return now >= start or now < end
        return start <= now < end
