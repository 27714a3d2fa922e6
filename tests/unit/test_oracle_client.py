"""Unit tests for DecisionOracle — Anthropic AsyncClient mocked."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from heartbeat_trader.config import Settings
from heartbeat_trader.errors import CollaboratorError, CollaboratorTimeout
from heartbeat_trader.models.decision import DecisionAction, MicroAction
from heartbeat_trader.models.trader import Trader
from heartbeat_trader.oracle_client import DecisionOracle
from heartbeat_trader.prompt_builder import PromptBuilder


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        ORACLE_MODEL="claude-sonnet-4-5",
        ORACLE_TIMEOUT_SECONDS=30,
    )


@pytest.fixture
def oracle(settings):
    return DecisionOracle(settings, PromptBuilder())


@pytest.fixture
def trader():
    return Trader(id=1, name="alpha", timeframes=["1h"])


@pytest.fixture
def micro_json():
    return json.dumps({
        "interval": "1h",
        "action": "open_long",
        "confidence": 0.72,
        "reasoning": "Higher lows with rising volume",
        "technical_signals": {
            "trend": "bullish",
            "momentum": "moderate",
            "volume_analysis": "above average",
            "key_levels": "support 60000",
        },
        "suggested_stop_loss": 59000,
        "suggested_take_profit": 63000,
    })


@pytest.fixture
def comprehensive_json():
    return json.dumps({
        "action": "open_long",
        "confidence": 0.7,
        "reasoning": "1h and 4h agree",
        "interval_analysis": [
            {"interval": "1h", "weight": 0.4, "decision": "open_long", "key_factors": "trend"}
        ],
        "position_size": 500,
        "leverage": 5,
        "stop_loss_price": 59000,
        "take_profit_price": 63000,
        "risk_assessment": {
            "level": "medium",
            "risk_reward_ratio": 2.0,
            "position_size_percent": 5,
        },
    })


def _response(text: str) -> MagicMock:
    response = MagicMock()
    response.content = [MagicMock(text=text)]
    response.usage = MagicMock(input_tokens=1200, output_tokens=150)
    return response


# ---------------------------------------------------------------------------
# _extract_json
# ---------------------------------------------------------------------------


class TestExtractJson:
    def test_plain_json(self):
        assert DecisionOracle._extract_json('{"a": 1}') == {"a": 1}

    def test_embedded_in_prose(self):
        text = 'Here is my answer:\n```json\n{"a": 1}\n```\nGood luck.'
        assert DecisionOracle._extract_json(text) == {"a": 1}

    def test_no_json(self):
        assert DecisionOracle._extract_json("I would hold.") is None

    def test_empty(self):
        assert DecisionOracle._extract_json("") is None

    def test_array_is_not_an_object(self):
        assert DecisionOracle._extract_json("[1, 2]") is None


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class TestMicroDecision:
    async def test_parses_micro(self, oracle, trader, micro_json):
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            mock_api = MockClient.return_value
            mock_api.messages.create = AsyncMock(return_value=_response(micro_json))

            decision = await oracle.request_micro_decision(
                "BTC-USDT-SWAP", "1h", [{"reader": "rsi", "data": {"rsi": 61}}], [], trader
            )

        assert decision.action == MicroAction.OPEN_LONG
        assert decision.confidence == 0.72
        kwargs = mock_api.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-sonnet-4-5"
        assert kwargs["max_tokens"] == 1000
        assert "Timeframe: 1h" in kwargs["messages"][0]["content"]
        assert "<trader_profile>" in kwargs["system"]

    async def test_interval_forced_to_request(self, oracle, trader, micro_json):
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            MockClient.return_value.messages.create = AsyncMock(return_value=_response(micro_json))
            decision = await oracle.request_micro_decision("BTC-USDT-SWAP", "4h", [], [], trader)
        assert decision.interval == "4h"

    async def test_malformed_action(self, oracle, trader, micro_json):
        bad = json.loads(micro_json)
        bad["action"] = "moon"
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            MockClient.return_value.messages.create = AsyncMock(return_value=_response(json.dumps(bad)))
            with pytest.raises(CollaboratorError):
                await oracle.request_micro_decision("BTC-USDT-SWAP", "1h", [], [], trader)

    async def test_prose_only_response(self, oracle, trader):
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            MockClient.return_value.messages.create = AsyncMock(return_value=_response("Just hold."))
            with pytest.raises(CollaboratorError):
                await oracle.request_micro_decision("BTC-USDT-SWAP", "1h", [], [], trader)


class TestComprehensiveDecision:
    async def test_parses_comprehensive(self, oracle, trader, comprehensive_json):
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            mock_api = MockClient.return_value
            mock_api.messages.create = AsyncMock(return_value=_response(comprehensive_json))
            decision = await oracle.request_comprehensive_decision("BTC-USDT-SWAP", [], [], trader)

        assert decision.action == DecisionAction.OPEN_LONG
        assert decision.leverage == 5
        assert decision.risk_assessment.level == "medium"
        assert mock_api.messages.create.call_args.kwargs["temperature"] == 0.5

    async def test_confidence_out_of_range(self, oracle, trader, comprehensive_json):
        bad = json.loads(comprehensive_json)
        bad["confidence"] = 7
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            MockClient.return_value.messages.create = AsyncMock(return_value=_response(json.dumps(bad)))
            with pytest.raises(CollaboratorError):
                await oracle.request_comprehensive_decision("BTC-USDT-SWAP", [], [], trader)


# ---------------------------------------------------------------------------
# _call() — timeouts, errors, retry
# ---------------------------------------------------------------------------


class TestCall:
    async def test_timeout(self, oracle):
        with patch.object(oracle, "_call_api", AsyncMock(side_effect=asyncio.TimeoutError())):
            with pytest.raises(CollaboratorTimeout):
                await oracle._call("sys", "user", 100, 0.5, purpose="micro")

    async def test_empty_content(self, oracle):
        response = MagicMock()
        response.content = []
        with patch.object(oracle, "_call_api", AsyncMock(return_value=response)):
            with pytest.raises(CollaboratorError):
                await oracle._call("sys", "user", 100, 0.5, purpose="micro")

    async def test_retries_then_succeeds(self, oracle):
        """Two transient API errors, then a good response (tenacity retry)."""
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            mock_api = MockClient.return_value
            mock_api.messages.create = AsyncMock(
                side_effect=[Exception("overloaded"), Exception("overloaded"), _response("ok")]
            )
            text = await oracle._call("sys", "user", 100, 0.5, purpose="micro")

        assert text == "ok"
        assert mock_api.messages.create.await_count == 3

    async def test_gives_up_after_three_attempts(self, oracle):
        with patch("heartbeat_trader.oracle_client.AsyncAnthropic") as MockClient:
            mock_api = MockClient.return_value
            mock_api.messages.create = AsyncMock(side_effect=Exception("API Error"))
            with pytest.raises(CollaboratorError, match="API Error"):
                await oracle._call("sys", "user", 100, 0.5, purpose="comprehensive")

        assert mock_api.messages.create.await_count == 3
