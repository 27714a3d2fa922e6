"""MicroDecision, ComprehensiveDecision Pydantic models.

Both are closed schemas: an action outside the enums, or a confidence
outside [0, 1], fails validation when the oracle response is parsed.
"""

import enum
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class MicroAction(str, enum.Enum):
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    HOLD = "hold"
    CLOSE_LONG = "close_long"
    CLOSE_SHORT = "close_short"
    MODIFY_SL_TP = "modify_sl_tp"


class DecisionAction(str, enum.Enum):
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    HOLD = "hold"
    CLOSE_POSITION = "close_position"
    MODIFY_SL_TP = "modify_sl_tp"
    CLOSE_ALL = "close_all"


class TechnicalSignals(BaseModel):
    trend: Literal["bullish", "bearish", "neutral"]
    momentum: Literal["strong", "moderate", "weak"]
    volume_analysis: str = ""
    key_levels: str = ""


class MicroDecision(BaseModel):
    interval: str
    action: MicroAction
    confidence: float = Field(ge=0, le=1)
    reasoning: str
    technical_signals: TechnicalSignals
    suggested_stop_loss: float | None = None
    suggested_take_profit: float | None = None
    target_position_id: int | None = None


class IntervalAnalysis(BaseModel):
    interval: str
    weight: float
    decision: str
    key_factors: str = ""


class RiskAssessment(BaseModel):
    level: Literal["low", "medium", "high", "very_high"]
    risk_reward_ratio: float
    position_size_percent: float


class ComprehensiveDecision(BaseModel):
    action: DecisionAction
    confidence: float = Field(ge=0, le=1)
    reasoning: str
    interval_analysis: list[IntervalAnalysis] = []
    position_size: float | None = Field(default=None, gt=0)
    leverage: float | None = Field(default=None, gt=0)
    stop_loss_price: float | None = Field(default=None, gt=0)
    take_profit_price: float | None = Field(default=None, gt=0)
    target_position_id: int | None = None
    risk_assessment: RiskAssessment
    timestamp: datetime | None = None
