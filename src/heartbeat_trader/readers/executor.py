"""Reader invocation: entrypoint resolution, input building, timeout.

A reader is any callable ``fn(parameters: dict, context: ReaderContext)``
reachable as ``"package.module:function"``. Coroutine functions are awaited,
plain functions run in a worker thread. A reader may return a ReaderOutput,
a dict shaped like one (has a ``success`` key), or bare data.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import time
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from heartbeat_trader.models.reader import ReaderContext, ReaderMetadata, ReaderOutput, ReaderSpec

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 30.0


def build_input(reader: ReaderSpec, symbol: str, interval: str) -> dict[str, Any]:
    """Reader parameters for one (symbol, interval) pair.

    Standard parameters are mapped onto the reader's own parameter names
    first; JSON-encoded defaults then fill anything still unset. A default
    that is not valid JSON is passed through as the raw string.
    """
    standard_values = {"symbol": symbol, "interval": interval}
    params: dict[str, Any] = {}
    for standard, target in reader.standard_parameters.items():
        if standard in standard_values:
            params[target] = standard_values[standard]
    for name, raw in reader.parameter_defaults.items():
        if name in params or raw is None:
            continue
        try:
            params[name] = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            params[name] = raw
    return params


def resolve_entrypoint(entrypoint: str) -> Callable[..., Any]:
    module_name, sep, attr = entrypoint.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Reader entrypoint must look like 'module:function', got {entrypoint!r}")
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise TypeError(f"Reader entrypoint {entrypoint!r} is not callable")
    return target


class ReaderExecutor:
    """Runs readers under a per-reader timeout. Never raises; failures come back as ReaderOutput."""

    def __init__(self, default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.default_timeout_seconds = default_timeout_seconds
        self._cache: dict[str, Callable[..., Any]] = {}

    def timeout_for(self, reader: ReaderSpec) -> float:
        if reader.timeout_ms:
            return reader.timeout_ms / 1000
        return self.default_timeout_seconds

    async def execute(
        self,
        reader: ReaderSpec,
        parameters: dict[str, Any],
        context: ReaderContext,
    ) -> ReaderOutput:
        start = time.monotonic()
        timeout = self.timeout_for(reader)
        try:
            fn = self._resolve(reader.entrypoint)
            raw = await asyncio.wait_for(self._invoke(fn, parameters, context), timeout=timeout)
            output = self._to_output(raw)
        except asyncio.TimeoutError:
            logger.warning("reader_timeout", reader=reader.name, timeout=timeout)
            output = ReaderOutput(success=False, error=f"Reader timed out after {timeout:.1f}s")
        except Exception as e:
            logger.warning("reader_error", reader=reader.name, error=str(e))
            output = ReaderOutput(success=False, error=str(e) or type(e).__name__)

        elapsed_ms = (time.monotonic() - start) * 1000
        output.metadata.execution_time_ms = elapsed_ms
        return output

    def _resolve(self, entrypoint: str) -> Callable[..., Any]:
        fn = self._cache.get(entrypoint)
        if fn is None:
            fn = resolve_entrypoint(entrypoint)
            self._cache[entrypoint] = fn
        return fn

    @staticmethod
    async def _invoke(fn: Callable[..., Any], parameters: dict[str, Any], context: ReaderContext) -> Any:
        if inspect.iscoroutinefunction(fn):
            return await fn(parameters, context)
        result = await asyncio.to_thread(fn, parameters, context)
        if inspect.isawaitable(result):
            return await result
        return result

    @staticmethod
    def _to_output(raw: Any) -> ReaderOutput:
        if isinstance(raw, ReaderOutput):
            return raw.model_copy(update={"metadata": raw.metadata.model_copy()})
        if isinstance(raw, dict) and "success" in raw:
            try:
                return ReaderOutput.model_validate(raw)
            except PydanticValidationError as e:
                return ReaderOutput(success=False, error=f"Malformed reader output: {e.error_count()} errors")
        return ReaderOutput(success=True, data=raw, metadata=ReaderMetadata())
