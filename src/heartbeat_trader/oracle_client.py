"""Decision Oracle: Anthropic-backed micro and comprehensive trading decisions."""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, TypeVar

import structlog
from anthropic import AsyncAnthropic
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from tenacity import retry, stop_after_attempt, wait_exponential

from heartbeat_trader.errors import CollaboratorError, CollaboratorTimeout
from heartbeat_trader.models.decision import ComprehensiveDecision, MicroDecision

if TYPE_CHECKING:
    from heartbeat_trader.config import Settings
    from heartbeat_trader.models.heartbeat import IntervalDecision
    from heartbeat_trader.models.position import Position
    from heartbeat_trader.models.trader import Trader
    from heartbeat_trader.prompt_builder import PromptBuilder

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)


class DecisionOracle:
    """Stateless per call: a fresh client per request, usage goes to the log."""

    def __init__(self, settings: Settings, prompt_builder: PromptBuilder) -> None:
        self.settings = settings
        self.prompt_builder = prompt_builder

    async def request_micro_decision(
        self,
        trading_pair: str,
        interval: str,
        reader_outputs: list[dict],
        open_positions: list[Position],
        trader: Trader,
    ) -> MicroDecision:
        system = self.prompt_builder.build_micro_system_prompt(trader)
        prompt = self.prompt_builder.build_micro_prompt(
            trading_pair, interval, reader_outputs, open_positions
        )
        text = await self._call(
            system,
            prompt,
            max_tokens=self.settings.ORACLE_MICRO_MAX_TOKENS,
            temperature=self.settings.ORACLE_MICRO_TEMPERATURE,
            purpose="micro",
        )
        decision = self._parse(text, MicroDecision)
        if decision.interval != interval:
            logger.debug("micro_interval_mismatch", expected=interval, got=decision.interval)
            decision = decision.model_copy(update={"interval": interval})
        return decision

    async def request_comprehensive_decision(
        self,
        trading_pair: str,
        micro_decisions: list[IntervalDecision],
        open_positions: list[Position],
        trader: Trader,
    ) -> ComprehensiveDecision:
        system = self.prompt_builder.build_comprehensive_system_prompt(trader)
        prompt = self.prompt_builder.build_comprehensive_prompt(
            trading_pair, micro_decisions, open_positions
        )
        text = await self._call(
            system,
            prompt,
            max_tokens=self.settings.ORACLE_COMPREHENSIVE_MAX_TOKENS,
            temperature=self.settings.ORACLE_COMPREHENSIVE_TEMPERATURE,
            purpose="comprehensive",
        )
        return self._parse(text, ComprehensiveDecision)

    async def _call(
        self,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        purpose: str,
    ) -> str:
        """API call bounded by ORACLE_TIMEOUT_SECONDS, retries included."""
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._call_api(system, user, max_tokens, temperature),
                timeout=self.settings.ORACLE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            logger.warning("oracle_timeout", purpose=purpose, timeout=self.settings.ORACLE_TIMEOUT_SECONDS)
            raise CollaboratorTimeout(
                f"Decision oracle did not answer within {self.settings.ORACLE_TIMEOUT_SECONDS}s"
            ) from e
        except Exception as e:
            logger.warning("oracle_error", purpose=purpose, error=str(e))
            raise CollaboratorError(f"Decision oracle request failed: {e}") from e

        elapsed_ms = (time.monotonic() - start) * 1000
        try:
            text = response.content[0].text
        except (AttributeError, IndexError, TypeError) as e:
            raise CollaboratorError("Decision oracle returned no text content") from e
        usage = getattr(response, "usage", None)
        logger.info(
            "oracle_call",
            purpose=purpose,
            model=self.settings.ORACLE_MODEL,
            input_tokens=getattr(usage, "input_tokens", None),
            output_tokens=getattr(usage, "output_tokens", None),
            latency_ms=round(elapsed_ms, 1),
        )
        return text

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10), reraise=True)
    async def _call_api(self, system: str, user: str, max_tokens: int, temperature: float):
        """Low-level Anthropic API call with retry."""
        client = AsyncAnthropic(api_key=self.settings.ANTHROPIC_API_KEY)
        return await client.messages.create(
            model=self.settings.ORACLE_MODEL,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )

    def _parse(self, text: str, model: type[T]) -> T:
        """Validate the response against ``model``. Anything malformed is a CollaboratorError."""
        data = self._extract_json(text)
        if data is None:
            logger.warning("oracle_unparseable", model=model.__name__, raw_text=text[:200])
            raise CollaboratorError(f"Decision oracle returned no JSON object for {model.__name__}")
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(
                "oracle_schema_violation",
                model=model.__name__,
                errors=e.error_count(),
                raw_text=text[:200],
            )
            raise CollaboratorError(f"Decision oracle output violates {model.__name__}: {e}") from e

    @staticmethod
    def _extract_json(text: str) -> dict | None:
        """Try to extract a JSON object from text."""
        if not text:
            return None
        try:
            data = json.loads(text)
            return data if isinstance(data, dict) else None
        except json.JSONDecodeError:
            pass

        try:
            start = text.index("{")
            end = text.rindex("}") + 1
            data = json.loads(text[start:end])
            return data if isinstance(data, dict) else None
        except (ValueError, json.JSONDecodeError):
            pass

        return None
