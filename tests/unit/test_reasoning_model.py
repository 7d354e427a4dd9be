"""
Reasoning model client: intent parsing, prompt rendering, provider error mapping.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from tradeloop.ai.reasoning_model import (
    OpenAICompatibleModel,
    build_system_prompt,
    build_user_context,
    model_factory,
    parse_intent,
)
from tradeloop.config.config import ReasoningConfig
from tradeloop.domain.models import Bias, Strategy
from tradeloop.exceptions import (
    ConfigurationError,
    NonRetryableProviderError,
    ProviderOverloadedError,
    RateLimitedError,
)

URLS = {"openai": "https://api.openai.com/v1/"}


def _response(status=200, body=None, headers=None, text=""):
    resp = MagicMock()
    resp.status = status
    resp.headers = headers or {}
    resp.json = AsyncMock(return_value=body or {})
    resp.text = AsyncMock(return_value=text)
    return resp


def _client_session(*responses):
    """Patchable aiohttp.ClientSession returning ``responses`` in order."""
    session = MagicMock()
    post_cms = []
    for resp in responses:
        cm = MagicMock()
        if isinstance(resp, BaseException):
            cm.__aenter__ = AsyncMock(side_effect=resp)
        else:
            cm.__aenter__ = AsyncMock(return_value=resp)
        cm.__aexit__ = AsyncMock(return_value=False)
        post_cms.append(cm)
    session.post = MagicMock(side_effect=post_cms)
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=session_cm), session


def _completion(content):
    return {"choices": [{"message": {"content": content}}], "usage": {"prompt_tokens": 10, "completion_tokens": 5}}


def _model(max_retries=0):
    return OpenAICompatibleModel("openai", "gpt-test", "sk-test", URLS, max_retries=max_retries, base_delay_seconds=0)


class TestParseIntent:

    def test_bare_json(self):
        intent = parse_intent('{"bias": "LONG", "confidence": 0.8, "reasoning": "trend", "leverage": 2}')

        assert intent.bias == Bias.LONG
        assert intent.confidence == 0.8
        assert intent.leverage == 2

    def test_fenced_json(self):
        intent = parse_intent('Here you go:\n```json\n{"bias": "short", "confidence": 0.7}\n```')

        assert intent.bias == Bias.SHORT

    def test_embedded_json(self):
        intent = parse_intent('I think {"bias": "close", "confidence": 0.9} is right')

        assert intent.bias == Bias.CLOSE

    def test_confidence_is_clamped(self):
        assert parse_intent('{"bias": "hold", "confidence": 1.7}').confidence == 1.0
        assert parse_intent('{"bias": "hold", "confidence": "abc"}').confidence == 0.0

    def test_invalid_bias(self):
        with pytest.raises(NonRetryableProviderError, match="Invalid bias"):
            parse_intent('{"bias": "buy", "confidence": 0.9}')

    @pytest.mark.parametrize("text", ["", "no json here", "{not json}"])
    def test_unparseable(self, text):
        with pytest.raises(NonRetryableProviderError):
            parse_intent(text)

    def test_extra_fields_kept_in_raw(self):
        intent = parse_intent('{"bias": "long", "confidence": 0.9, "market": "BTC-PERP", "stop": 95000}')

        assert intent.to_dict()["stop"] == 95000


def test_system_prompt_lists_constraints():
    prompt = build_system_prompt("Buy dips.", {
        "allow_long": True,
        "allow_short": False,
        "entry_behaviors": ["trend"],
        "min_confidence": 0.7,
        "max_leverage": 3.0,
        "max_position_usd": 5000.0,
    })

    assert "Buy dips." in prompt
    assert "Allowed directions: long" in prompt
    assert "Entries below 70% confidence are rejected" in prompt
    assert "integer from 1 to 3" in prompt
    assert "$5,000" in prompt


def test_user_context_sections():
    text = build_user_context({
        "market": "BTC-PERP",
        "market_data": {"price": 100000.0},
        "account": {"equity": 100000.0},
        "positions": [],
        "indicators": {"rsi": {"value": 55.0, "period": 14}},
        "recent_decisions": [{
            "timestamp": "2026-01-01T00:00:00+00:00", "bias": "long", "confidence": 0.8,
            "reasoning": "trend", "action_summary": "Opened long",
        }],
        "recent_trades": [{
            "timestamp": "2026-01-01T00:00:00+00:00", "market": "BTC-PERP", "side": "buy",
            "action": "open", "price": 100000.0, "size": 0.1, "realized_pnl": None,
        }],
    })

    assert text.startswith("Market: BTC-PERP")
    assert "CURRENT POSITION: None (flat)" in text
    assert "RSI(14): 55.0" in text
    assert "RECENT DECISIONS (your last 1 decisions)" in text
    assert "1. [2026-01-01T00:00:00+00:00] OPEN buy BTC-PERP" in text
    assert text.endswith("Respond with JSON only.")


def test_unknown_provider_rejected():
    with pytest.raises(ConfigurationError):
        OpenAICompatibleModel("acme", "m", "k", URLS)


def test_factory_requires_api_key():
    factory = model_factory(ReasoningConfig(api_keys={"deepseek": "sk"}))
    strategy = Strategy(id="s", user_id="u", name="n", model_provider="OpenAI", model_name="gpt", prompt="")

    with pytest.raises(ConfigurationError, match="No API key configured"):
        factory(strategy)


@pytest.mark.asyncio
async def test_call_returns_intent():
    client, session = _client_session(_response(body=_completion('{"bias": "long", "confidence": 0.75}')))

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        intent = await _model().call("system", "user")

    assert intent.bias == Bias.LONG
    url = session.post.call_args.args[0]
    assert url == "https://api.openai.com/v1/chat/completions"
    assert session.post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_rate_limit_maps_to_retryable():
    client, _ = _client_session(_response(status=429, headers={"Retry-After": "3"}))

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        with pytest.raises(RateLimitedError) as exc:
            await _model().call("system", "user")

    assert exc.value.retry_after == 3.0
    assert exc.value.status == 429


@pytest.mark.parametrize("status", [502, 503, 529])
@pytest.mark.asyncio
async def test_overload_maps_to_retryable(status):
    client, _ = _client_session(_response(status=status))

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        with pytest.raises(ProviderOverloadedError):
            await _model().call("system", "user")


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    client, session = _client_session(_response(status=401, text="invalid api key"))

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        with pytest.raises(NonRetryableProviderError, match="401"):
            await _model(max_retries=3).call("system", "user")

    assert session.post.call_count == 1


@pytest.mark.asyncio
async def test_timeout_maps_to_overloaded():
    client, _ = _client_session(asyncio.TimeoutError())

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        with pytest.raises(ProviderOverloadedError, match="timed out"):
            await _model().call("system", "user")


@pytest.mark.asyncio
async def test_connection_error_is_non_retryable():
    client, _ = _client_session(aiohttp.ClientConnectionError("refused"))

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        with pytest.raises(NonRetryableProviderError):
            await _model().call("system", "user")


@pytest.mark.asyncio
async def test_overload_is_retried_then_succeeds():
    client, session = _client_session(
        _response(status=503),
        _response(body=_completion('{"bias": "neutral", "confidence": 0.4}')),
    )

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client), \
         patch("tradeloop.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        intent = await _model(max_retries=2).call("system", "user")

    assert intent.bias == Bias.NEUTRAL
    assert session.post.call_count == 2
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_empty_content_is_non_retryable():
    client, _ = _client_session(_response(body={"choices": []}))

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        with pytest.raises(NonRetryableProviderError, match="no content"):
            await _model().call("system", "user")


@pytest.mark.asyncio
async def test_non_json_body_is_non_retryable():
    resp = _response(text="<html>upstream error</html>")
    resp.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
    client, session = _client_session(resp)

    with patch("tradeloop.ai.reasoning_model.aiohttp.ClientSession", client):
        with pytest.raises(NonRetryableProviderError, match="invalid JSON body"):
            await _model(max_retries=3).call("system", "user")

    assert session.post.call_count == 1
