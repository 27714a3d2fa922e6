"""Reader contract models: spec, invocation context, output."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class ReaderSpec(BaseModel):
    id: int
    name: str
    entrypoint: str  # "package.module:function"
    mandatory: bool = False
    timeout_ms: int | None = None
    # Standard parameter -> reader's own parameter name, e.g. {"symbol": "instId"}
    standard_parameters: dict[str, str] = {}
    # Reader parameter -> default value encoded as JSON text
    parameter_defaults: dict[str, str] = {}


class ReaderContext(BaseModel):
    reader_id: int
    request_id: str
    triggered_by: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    environment: str = "production"


class ReaderMetadata(BaseModel):
    execution_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str | None = None


class ReaderOutput(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    metadata: ReaderMetadata = Field(default_factory=ReaderMetadata)
