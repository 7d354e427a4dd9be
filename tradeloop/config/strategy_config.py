"""
Strategy filter configuration.

Strategies are stored with a free-form ``filters`` document (camelCase keys as
written by the strategy editor). ``normalize_strategy_filters`` is the single
upgrade step that turns that document into a canonical, fully-defaulted
``StrategyFilters`` model; gate and exit code only ever reads the model.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tradeloop.domain.models import ExitMode
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.65


class _FilterModel(BaseModel):
    """Accepts both snake_case and camelCase keys; unknown keys are ignored."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class EntryBehaviors(_FilterModel):
    trend: bool = True
    breakout: bool = True
    mean_reversion: bool = True

    @property
    def any_enabled(self) -> bool:
        return self.trend or self.breakout or self.mean_reversion

    def allows(self, entry_type: str) -> bool:
        if entry_type == "trend":
            return self.trend
        if entry_type == "breakout":
            return self.breakout
        if entry_type == "mean_reversion":
            return self.mean_reversion
        return True


class EntryConfirmation(_FilterModel):
    min_signals: int = Field(default=1, ge=1, le=10)
    require_volatility_condition: bool = False
    volatility_min: Optional[float] = Field(default=None, ge=0.0)
    volatility_max: Optional[float] = Field(default=None, ge=0.0)


class EntryTiming(_FilterModel):
    max_slippage_pct: Optional[float] = Field(default=None, ge=0.0)
    wait_for_close: bool = False
    boundary_tolerance_seconds: int = Field(default=30, ge=0, le=3600)


class EntryRules(_FilterModel):
    mode: Literal["signal", "trend", "breakout", "meanReversion"] = "signal"
    behaviors: Optional[EntryBehaviors] = None
    confirmation: EntryConfirmation = Field(default_factory=EntryConfirmation)
    timing: EntryTiming = Field(default_factory=EntryTiming)


class ExitRules(_FilterModel):
    mode: ExitMode = ExitMode.SIGNAL
    take_profit_pct: Optional[float] = Field(default=None, gt=0.0)
    stop_loss_pct: Optional[float] = Field(default=None, gt=0.0)
    trailing_stop_pct: Optional[float] = Field(default=None, gt=0.0)
    initial_stop_loss_pct: Optional[float] = Field(default=None, gt=0.0)
    max_hold_minutes: Optional[float] = Field(default=None, gt=0.0)
    # Emergency guardrails, active in signal mode
    max_loss_protection_pct: Optional[float] = Field(default=None, gt=0.0)
    max_profit_cap_pct: Optional[float] = Field(default=None, gt=0.0)


class TradeControl(_FilterModel):
    max_trades_per_hour: int = Field(default=2, ge=0)
    max_trades_per_day: int = Field(default=10, ge=0)
    cooldown_minutes: float = Field(default=15, ge=0)
    min_hold_minutes: float = Field(default=5, ge=0)
    allow_reentry_same_direction: bool = False


class ConfidenceControl(_FilterModel):
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    confidence_scaling: bool = False


class EntryExit(_FilterModel):
    entry: EntryRules = Field(default_factory=EntryRules)
    exit: ExitRules = Field(default_factory=ExitRules)
    trade_control: TradeControl = Field(default_factory=TradeControl)
    confidence_control: ConfidenceControl = Field(default_factory=ConfidenceControl)


class Guardrails(_FilterModel):
    allow_long: bool = True
    allow_short: bool = True
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RiskLimits(_FilterModel):
    max_position_usd: float = Field(default=10000, gt=0)
    max_leverage: float = Field(default=2, ge=1)
    max_daily_loss_pct: float = Field(default=5, gt=0)


class CandleInputs(_FilterModel):
    enabled: bool = True
    count: int = Field(default=200, ge=1, le=5000)
    timeframe: str = "5m"


class OrderbookInputs(_FilterModel):
    enabled: bool = False
    depth: int = Field(default=20, ge=1, le=500)


class PeriodIndicator(_FilterModel):
    enabled: bool = False
    period: int = Field(default=14, ge=2)


class VolatilityIndicator(_FilterModel):
    enabled: bool = False
    window: int = Field(default=50, ge=2)


class EmaIndicator(_FilterModel):
    enabled: bool = False
    fast: int = Field(default=12, ge=2)
    slow: int = Field(default=26, ge=2)


class IndicatorInputs(_FilterModel):
    rsi: PeriodIndicator = Field(default_factory=PeriodIndicator)
    atr: PeriodIndicator = Field(default_factory=PeriodIndicator)
    volatility: VolatilityIndicator = Field(default_factory=VolatilityIndicator)
    ema: EmaIndicator = Field(default_factory=EmaIndicator)

    @property
    def any_enabled(self) -> bool:
        return self.rsi.enabled or self.atr.enabled or self.volatility.enabled or self.ema.enabled


class AIInputs(_FilterModel):
    candles: CandleInputs = Field(default_factory=CandleInputs)
    orderbook: OrderbookInputs = Field(default_factory=OrderbookInputs)
    indicators: IndicatorInputs = Field(default_factory=IndicatorInputs)
    include_recent_decisions: bool = True
    recent_decisions_count: int = Field(default=5, ge=0, le=100)
    include_recent_trades: bool = True
    recent_trades_count: int = Field(default=10, ge=0, le=100)
    include_position_state: bool = True


class StrategyFilters(_FilterModel):
    """Canonical strategy filters. Build with ``normalize_strategy_filters``."""

    entry_exit: EntryExit = Field(default_factory=EntryExit)
    guardrails: Guardrails = Field(default_factory=Guardrails)
    risk: RiskLimits = Field(default_factory=RiskLimits)
    ai_inputs: AIInputs = Field(default_factory=AIInputs)
    markets: List[str] = Field(default_factory=list)
    cadence_seconds: Optional[int] = None
    market_processing_mode: Literal["round-robin", "all"] = "round-robin"

    @property
    def behaviors(self) -> EntryBehaviors:
        # Always populated after normalization
        return self.entry_exit.entry.behaviors or EntryBehaviors()

    @property
    def min_confidence(self) -> float:
        return self.entry_exit.confidence_control.min_confidence

    @property
    def exit_rules(self) -> ExitRules:
        return self.entry_exit.exit

    @property
    def trade_control(self) -> TradeControl:
        return self.entry_exit.trade_control


_LEGACY_BEHAVIOR_MODES = {
    "trend": "trend",
    "breakout": "breakout",
    "meanReversion": "mean_reversion",
}


def normalize_strategy_filters(raw: Optional[Dict[str, Any]]) -> StrategyFilters:
    """
    Upgrade a stored filters document to canonical ``StrategyFilters``.

    - Entry behaviors missing: derived from the legacy entry mode
      (``signal`` enables all three, otherwise only the named one).
    - Minimum confidence: ``confidenceControl`` wins over ``guardrails``,
      default 0.65. Both are set to the resolved value.

    Raises:
        pydantic.ValidationError: If the document has invalid values
    """
    filters = StrategyFilters.model_validate(raw or {})
    entry = filters.entry_exit.entry

    if entry.behaviors is None:
        if entry.mode in _LEGACY_BEHAVIOR_MODES:
            only = _LEGACY_BEHAVIOR_MODES[entry.mode]
            entry.behaviors = EntryBehaviors(
                trend=only == "trend",
                breakout=only == "breakout",
                mean_reversion=only == "mean_reversion",
            )
        else:
            entry.behaviors = EntryBehaviors()

    cc_min = filters.entry_exit.confidence_control.min_confidence
    gr_min = filters.guardrails.min_confidence
    if cc_min is not None and gr_min is not None and cc_min != gr_min:
        logger.warning(
            "MIN_CONFIDENCE_CONFLICT",
            confidence_control=cc_min,
            guardrails=gr_min,
            using="confidence_control",
        )
    resolved = cc_min if cc_min is not None else gr_min
    if resolved is None:
        resolved = DEFAULT_MIN_CONFIDENCE
    filters.entry_exit.confidence_control.min_confidence = resolved
    filters.guardrails.min_confidence = resolved

    return filters
