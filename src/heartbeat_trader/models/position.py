"""Position, PositionHistoryEntry, CloseResult Pydantic models."""

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class PositionSide(str, enum.Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"


class HistoryAction(str, enum.Enum):
    OPEN = "open"
    PRICE_UPDATE = "price_update"
    PARTIAL_CLOSE = "partial_close"
    CLOSE = "close"
    LIQUIDATE = "liquidate"
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "take_profit_triggered"
    MODIFY_SL_TP = "modify_sl_tp"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Position(BaseModel):
    id: int | None = None
    trader_id: int
    instrument: str
    side: PositionSide
    status: PositionStatus = PositionStatus.OPEN
    entry_price: float
    current_price: float
    leverage: float
    quantity: float
    position_size: float  # quantity * entry_price
    margin: float  # position_size / leverage
    open_fee: float = 0.0
    close_fee: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    stop_loss: float | None = None
    take_profit: float | None = None
    liquidation_price: float
    opened_at: datetime = Field(default_factory=_utcnow)
    closed_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


class PositionHistoryEntry(BaseModel):
    id: int | None = None
    position_id: int | None = None
    action: HistoryAction
    price: float | None = None
    quantity: float | None = None
    pnl: float | None = None
    details: dict = {}
    created_at: datetime = Field(default_factory=_utcnow)


class CloseResult(BaseModel):
    position: Position
    close_price: float
    closed_quantity: float
    close_fee: float  # fee charged by this close only
    realized_pnl: float  # gross pnl realized by this close only
    net_pnl: float  # position-level realized pnl net of all open and close fees so far
    fully_closed: bool


class RefreshResult(BaseModel):
    position: Position
    trigger: HistoryAction | None = None  # liquidate / stop_loss_triggered / take_profit_triggered
