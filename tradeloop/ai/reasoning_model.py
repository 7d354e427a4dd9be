"""
Reasoning-model client.

Talks to any OpenAI-compatible chat completions endpoint over aiohttp and turns
the reply into an ``Intent``. Provider base URLs are injected at construction
time from ``ReasoningConfig.provider_base_urls``.
"""
import asyncio
import json
import re
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from tradeloop.config.config import ReasoningConfig
from tradeloop.domain.models import Bias, Intent, Strategy
from tradeloop.exceptions import (
    ConfigurationError,
    NonRetryableProviderError,
    ProviderOverloadedError,
    RateLimitedError,
    RetryableProviderError,
)
from tradeloop.monitoring.logger import get_logger
from tradeloop.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

OVERLOADED_STATUSES = {502, 503, 529}
RATE_LIMITED_STATUS = 429

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

SYSTEM_PROMPT_HEADER = """You are a trading decision engine that manages both entries AND exits.

Return ONLY valid JSON matching this interface:
{ "market": string, "bias": "long"|"short"|"hold"|"neutral"|"close", "confidence": number (0..1),
  "leverage": number, "reasoning": string }

BIAS OPTIONS:
- "long": enter a new long position (only when NO position is open)
- "short": enter a new short position (only when NO position is open)
- "hold": keep the current position open as-is (only when a position IS open)
- "neutral": stay flat, do nothing (only when NO position is open)
- "close": exit the current position to lock in profit, cut a loss or reduce risk

If you HAVE an open position choose "hold", "close" or the opposite direction to reverse.
If you have NO open position choose "long", "short" or "neutral"."""


class IntentPayload(BaseModel):
    """Wire shape of a model reply."""
    model_config = ConfigDict(extra="allow")

    market: Optional[str] = None
    bias: Bias
    confidence: float = 0.0
    reasoning: str = ""
    leverage: Optional[float] = Field(default=None, gt=0)

    @field_validator("bias", mode="before")
    @classmethod
    def lowercase_bias(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if value != value:
            return 0.0
        return max(0.0, min(1.0, value))

    @field_validator("reasoning", mode="before")
    @classmethod
    def coerce_reasoning(cls, v: Any) -> str:
        return "" if v is None else str(v)


def parse_intent(text: str) -> Intent:
    """
    Parse a model reply into an ``Intent``.

    Accepts a bare JSON object, a fenced ```json block, or a JSON object
    embedded in surrounding prose.

    Raises:
        NonRetryableProviderError: If no valid intent can be extracted
    """
    if not text or not text.strip():
        raise NonRetryableProviderError("Model returned no content")

    fenced = _FENCE_RE.search(text)
    if fenced:
        candidate = fenced.group(1)
    else:
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise NonRetryableProviderError("Model did not return a JSON object")
        candidate = text[start:end + 1]

    try:
        raw = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise NonRetryableProviderError(f"Model returned invalid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise NonRetryableProviderError("Model did not return a JSON object")

    try:
        payload = IntentPayload.model_validate(raw)
    except PydanticValidationError as e:
        raise NonRetryableProviderError(
            "Invalid bias: must be 'long', 'short', 'hold', 'neutral', or 'close'"
            if any(err["loc"] == ("bias",) for err in e.errors())
            else f"Model returned an invalid intent: {e.error_count()} errors"
        ) from e

    return Intent(
        bias=payload.bias,
        confidence=payload.confidence,
        reasoning=payload.reasoning,
        leverage=payload.leverage,
        raw=raw,
    )


def build_system_prompt(strategy_prompt: str, constraints: Dict[str, Any]) -> str:
    """System prompt: the response contract, the strategy's own prompt and its hard limits."""
    lines = [SYSTEM_PROMPT_HEADER, "", "STRATEGY:", strategy_prompt.strip() or "(none)", "", "CONSTRAINTS:"]

    directions = []
    if constraints.get("allow_long", True):
        directions.append("long")
    if constraints.get("allow_short", True):
        directions.append("short")
    lines.append(f"- Allowed directions: {', '.join(directions) if directions else 'none (exits only)'}")

    behaviors = constraints.get("entry_behaviors") or []
    if behaviors:
        lines.append(f"- Allowed entry types: {', '.join(behaviors)}")
    if constraints.get("min_confidence") is not None:
        lines.append(f"- Entries below {constraints['min_confidence'] * 100:.0f}% confidence are rejected")
    if constraints.get("max_leverage") is not None:
        lines.append(
            f"- Leverage: integer from 1 to {constraints['max_leverage']:g}; default to 1 if unsure"
        )
    if constraints.get("max_position_usd") is not None:
        lines.append(f"- Max position size: ${constraints['max_position_usd']:,.0f}")
    return "\n".join(lines)


def _format_position(position: Optional[Dict[str, Any]]) -> str:
    if not position:
        return "CURRENT POSITION: None (flat)"
    entry = position.get("avg_entry")
    pnl = position.get("unrealized_pnl")
    entry_str = f"${entry:.2f}" if entry is not None else "N/A"
    pnl_str = f"${pnl:.2f}" if pnl is not None else "$0"
    return (
        f"CURRENT POSITION: {str(position.get('side', '')).upper()} {position.get('size')} units "
        f"@ {entry_str} entry, Unrealized PnL: {pnl_str}"
    )


def _format_indicators(indicators: Dict[str, Any]) -> Optional[str]:
    parts: List[str] = []
    if "rsi" in indicators:
        parts.append(f"RSI({indicators['rsi']['period']}): {indicators['rsi']['value']:.1f}")
    if "atr" in indicators:
        parts.append(f"ATR({indicators['atr']['period']}): {indicators['atr']['value']:.4f}")
    if "volatility" in indicators:
        vol = indicators["volatility"]
        parts.append(f"Volatility({vol['window']}): {vol['value']:.2f}%")
    ema = indicators.get("ema") or {}
    for key in ("fast", "slow"):
        if key in ema:
            parts.append(f"EMA({ema[key]['period']}): {ema[key]['value']:.2f}")
    if not parts:
        return None
    return "TECHNICAL INDICATORS:\n" + "\n".join(parts)


def _format_decisions(decisions: List[Dict[str, Any]]) -> str:
    rows = []
    for i, d in enumerate(decisions, 1):
        reason = f", Reason: {d['reasoning']}" if d.get("reasoning") else ""
        rows.append(
            f"{i}. [{d['timestamp']}] Bias: {d['bias']}, Confidence: {d['confidence'] * 100:.0f}%"
            f"{reason} -> {d['action_summary']}"
        )
    return f"RECENT DECISIONS (your last {len(decisions)} decisions):\n" + "\n".join(rows)


def _format_trades(trades: List[Dict[str, Any]]) -> str:
    rows = []
    for i, t in enumerate(trades, 1):
        pnl = t.get("realized_pnl")
        pnl_str = f" -> PnL: {'+' if pnl >= 0 else ''}${pnl:.2f}" if pnl is not None else ""
        rows.append(
            f"{i}. [{t['timestamp']}] {t['action'].upper()} {t['side']} {t['market']} "
            f"@ ${t['price']:.2f} (size: {t['size']:.6f}){pnl_str}"
        )
    return f"RECENT TRADES (last {len(trades)} executed trades):\n" + "\n".join(rows)


def build_user_context(context: Dict[str, Any]) -> str:
    """
    Render the per-market decision context.

    Expected keys: ``market``, ``market_data``, ``account``, ``positions`` and
    optionally ``current_position``, ``indicators``, ``recent_decisions`` and
    ``recent_trades``. Missing optional sections are left out.
    """
    current = context.get("current_position")
    parts = [
        f"Market: {context['market']}",
        _format_position(current),
        f"Account snapshot (JSON):\n{json.dumps(context.get('account') or {}, default=str)}",
        f"Market data snapshot (JSON):\n{json.dumps(context.get('market_data') or {}, default=str)}",
        f"All positions snapshot (JSON):\n{json.dumps(context.get('positions') or [], default=str)}",
    ]

    indicators = _format_indicators(context.get("indicators") or {})
    if indicators:
        parts.append(indicators)
    if context.get("recent_decisions"):
        parts.append(_format_decisions(context["recent_decisions"]))
    if context.get("recent_trades"):
        parts.append(_format_trades(context["recent_trades"]))

    parts.append(
        "You have an open position. Choose: 'hold' to keep it, 'close' to exit, or the opposite direction to reverse."
        if current
        else "No open position. Choose: 'long' or 'short' to enter, or 'neutral' to stay flat."
    )
    parts.append("Respond with JSON only.")
    return "\n\n".join(parts)


def _retry_after(headers: Any) -> Optional[float]:
    value = headers.get("Retry-After") if headers else None
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class OpenAICompatibleModel:
    """Chat-completions client implementing the ``ReasoningModel`` protocol."""

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str,
        provider_base_urls: Dict[str, str],
        *,
        timeout_seconds: float = 60.0,
        max_retries: int = 5,
        base_delay_seconds: float = 1.5,
        max_backoff_seconds: float = 30.0,
        temperature: float = 0.2,
    ):
        self.provider = provider.lower()
        base_url = provider_base_urls.get(self.provider)
        if not base_url:
            raise ConfigurationError(f"Unknown model provider: {provider}")
        if not model or not model.strip():
            raise ConfigurationError("Missing model name")
        self.base_url = base_url.rstrip("/")
        self.model = model.strip()
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self._post_with_retry = retry_on_transient_errors(
            max_retries=max_retries,
            base_delay=base_delay_seconds,
            max_backoff=max_backoff_seconds,
            transient_errors=(RetryableProviderError,),
        )(self._post)

    async def call(self, system_prompt: str, user_context: str) -> Intent:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_context},
            ],
            "stream": False,
            "temperature": self.temperature,
        }
        data = await self._post_with_retry(payload)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise NonRetryableProviderError("Model returned no content", provider=self.provider)

        usage = data.get("usage") or {}
        logger.info(
            "MODEL_CALL_COMPLETED",
            provider=self.provider,
            model=self.model,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )
        return parse_intent(content)

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            ) as session:
                async with session.post(url, json=payload, headers=headers) as resp:
                    if resp.status == RATE_LIMITED_STATUS:
                        raise RateLimitedError(
                            f"Model call rate limited ({resp.status})",
                            provider=self.provider,
                            status=resp.status,
                            retry_after=_retry_after(resp.headers),
                        )
                    if resp.status in OVERLOADED_STATUSES:
                        raise ProviderOverloadedError(
                            f"Model provider overloaded ({resp.status})",
                            provider=self.provider,
                            status=resp.status,
                            retry_after=_retry_after(resp.headers),
                        )
                    if resp.status >= 400:
                        body = await resp.text()
                        raise NonRetryableProviderError(
                            f"Model call failed ({resp.status}): {body[:300]}",
                            provider=self.provider,
                            status=resp.status,
                        )
                    try:
                        return await resp.json(content_type=None)
                    except ValueError as e:
                        raise NonRetryableProviderError(
                            f"Model returned invalid JSON body: {e}",
                            provider=self.provider,
                            status=resp.status,
                        ) from e
        except asyncio.TimeoutError as e:
            raise ProviderOverloadedError(
                f"Model call timed out after {self.timeout_seconds:g}s", provider=self.provider
            ) from e
        except aiohttp.ClientError as e:
            raise NonRetryableProviderError(f"Model call failed: {e}", provider=self.provider) from e


def model_factory(config: ReasoningConfig):
    """
    Build a ``ReasoningModelFactory`` bound to the configured providers.

    Raises:
        ConfigurationError: (from the returned factory) for unknown providers or missing keys
    """
    def factory(strategy: Strategy) -> OpenAICompatibleModel:
        provider = (strategy.model_provider or "").lower()
        api_key = config.api_keys.get(provider)
        if not api_key:
            raise ConfigurationError(f"No API key configured for provider: {strategy.model_provider}")
        return OpenAICompatibleModel(
            provider,
            strategy.model_name,
            api_key,
            config.provider_base_urls,
            timeout_seconds=config.timeout_seconds,
            max_retries=config.max_retries,
            base_delay_seconds=config.base_delay_seconds,
            max_backoff_seconds=config.max_backoff_seconds,
            temperature=config.temperature,
        )

    return factory
