"""
Technical indicators for the decision context.

Manual implementations using pandas. Each ``latest_*`` helper returns the most
recent value, or None when there are not enough candles.
"""
import pandas as pd
import numpy as np
from typing import Any, Dict, List, Optional

from tradeloop.config.strategy_config import IndicatorInputs
from tradeloop.domain.models import Candle
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)


class Indicators:
    """Indicator calculations over candles (oldest first)."""

    @staticmethod
    def latest_rsi(candles: List[Candle], period: int = 14) -> Optional[float]:
        """
        Relative Strength Index with Wilder smoothing.

        Seeded with the simple average of the first ``period`` gains/losses.

        Returns:
            RSI in [0, 100], or None with fewer than period + 1 candles
        """
        if len(candles) < period + 1:
            logger.debug("Insufficient candles for RSI calculation", candles=len(candles), period=period)
            return None

        df = Indicators._candles_to_df(candles)
        delta = df['close'].diff().dropna()
        gain = delta.where(delta > 0, 0.0)
        loss = -delta.where(delta < 0, 0.0)

        avg_gain = Indicators._wilder_smooth(gain, period)
        avg_loss = Indicators._wilder_smooth(loss, period)

        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        rsi = 100 - (100 / (1 + rs))
        return float(min(100.0, max(0.0, rsi)))

    @staticmethod
    def latest_atr(candles: List[Candle], period: int = 14) -> Optional[float]:
        """
        Average True Range as the simple mean of the last ``period`` true ranges.

        Returns:
            ATR in price units, or None with fewer than period + 1 candles
        """
        if len(candles) < period + 1:
            logger.debug("Insufficient candles for ATR calculation", candles=len(candles), period=period)
            return None

        df = Indicators._candles_to_df(candles)

        # True Range = max(high-low, abs(high-prev_close), abs(low-prev_close))
        high_low = df['high'] - df['low']
        high_close = np.abs(df['high'] - df['close'].shift())
        low_close = np.abs(df['low'] - df['close'].shift())
        tr = pd.concat([high_low, high_close, low_close], axis=1).max(axis=1).iloc[1:]

        return float(tr.iloc[-period:].mean())

    @staticmethod
    def latest_volatility(candles: List[Candle], window: int = 50) -> Optional[float]:
        """
        Population standard deviation of percentage close-to-close returns
        over the last ``window`` candles.

        Returns:
            Volatility in percent, or None with fewer than ``window`` candles
        """
        if len(candles) < window or window < 2:
            logger.debug("Insufficient candles for volatility calculation", candles=len(candles), window=window)
            return None

        df = Indicators._candles_to_df(candles[-window:])
        returns = df['close'].pct_change().dropna() * 100
        if returns.empty:
            return None
        return float(abs(returns.std(ddof=0)))

    @staticmethod
    def latest_ema(candles: List[Candle], period: int) -> Optional[float]:
        """
        Exponential Moving Average seeded with the SMA of the first ``period`` closes.

        Returns:
            EMA value, or None with fewer than ``period`` candles
        """
        if len(candles) < period:
            logger.debug("Insufficient candles for EMA calculation", candles=len(candles), period=period)
            return None

        closes = Indicators._candles_to_df(candles)['close']
        seeded = closes.iloc[period - 1:].copy()
        seeded.iloc[0] = closes.iloc[:period].mean()
        ema = seeded.ewm(alpha=2 / (period + 1), adjust=False).mean()
        return float(ema.iloc[-1])

    @staticmethod
    def _wilder_smooth(values: pd.Series, period: int) -> float:
        seeded = values.iloc[period - 1:].copy()
        seeded.iloc[0] = values.iloc[:period].mean()
        return float(seeded.ewm(alpha=1 / period, adjust=False).mean().iloc[-1])

    @staticmethod
    def _candles_to_df(candles: List[Candle]) -> pd.DataFrame:
        """
        Convert list of Candles to pandas DataFrame.

        Args:
            candles: List of Candle objects

        Returns:
            DataFrame with OHLCV columns indexed by timestamp
        """
        if not candles:
            return pd.DataFrame()

        n = len(candles)
        timestamps = np.empty(n, dtype='datetime64[ns]')
        opens = np.empty(n, dtype=np.float64)
        highs = np.empty(n, dtype=np.float64)
        lows = np.empty(n, dtype=np.float64)
        closes = np.empty(n, dtype=np.float64)
        volumes = np.empty(n, dtype=np.float64)

        for i, c in enumerate(candles):
            timestamps[i] = np.datetime64(c.timestamp.replace(tzinfo=None), 'ns')
            opens[i] = float(c.open)
            highs[i] = float(c.high)
            lows[i] = float(c.low)
            closes[i] = float(c.close)
            volumes[i] = float(c.volume)

        df = pd.DataFrame({
            'timestamp': timestamps,
            'open': opens,
            'high': highs,
            'low': lows,
            'close': closes,
            'volume': volumes,
        })
        df.set_index('timestamp', inplace=True)

        return df


def calculate_indicators(candles: List[Candle], settings: IndicatorInputs) -> Dict[str, Any]:
    """
    Build the indicators snapshot for the enabled indicators.

    Indicators without enough data are left out. A failing indicator is logged
    and skipped so the rest of the snapshot survives.
    """
    snapshot: Dict[str, Any] = {}
    if not candles or not settings.any_enabled:
        return snapshot

    if settings.rsi.enabled:
        value = _safe(Indicators.latest_rsi, candles, settings.rsi.period, name="rsi")
        if value is not None:
            snapshot["rsi"] = {"value": value, "period": settings.rsi.period}

    if settings.atr.enabled:
        value = _safe(Indicators.latest_atr, candles, settings.atr.period, name="atr")
        if value is not None:
            snapshot["atr"] = {"value": value, "period": settings.atr.period}

    if settings.volatility.enabled:
        value = _safe(Indicators.latest_volatility, candles, settings.volatility.window, name="volatility")
        if value is not None:
            snapshot["volatility"] = {"value": value, "window": settings.volatility.window}

    if settings.ema.enabled:
        fast = _safe(Indicators.latest_ema, candles, settings.ema.fast, name="ema_fast")
        slow = _safe(Indicators.latest_ema, candles, settings.ema.slow, name="ema_slow")
        ema: Dict[str, Any] = {}
        if fast is not None:
            ema["fast"] = {"value": fast, "period": settings.ema.fast}
        if slow is not None:
            ema["slow"] = {"value": slow, "period": settings.ema.slow}
        if ema:
            snapshot["ema"] = ema

    return snapshot


def _safe(func, candles: List[Candle], param: int, *, name: str) -> Optional[float]:
    try:
        value = func(candles, param)
    except (ValueError, ArithmeticError, IndexError) as e:
        logger.warning("INDICATOR_FAILED", indicator=name, error=str(e))
        return None
    if value is None or not np.isfinite(value):
        return None
    return value
