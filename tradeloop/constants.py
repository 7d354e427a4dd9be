"""
System-wide constants for the tick engine.

Centralizes the numeric policies that change observable trading behavior.
"""
from decimal import Decimal

# Ledger policies
# A closing order whose size lands within this fraction of the open position
# closes the whole position instead of leaving dust.
CLOSE_CLAMP_BAND = Decimal("0.05")
# Positions smaller than this are deleted, never stored.
POSITION_EPSILON = Decimal("1e-8")
FEE_DECIMALS = 6

# Simulated broker fee default (basis points)
DEFAULT_FEE_BPS = 5

# Entry sizing
MIN_ORDER_USD = Decimal("10")
DEFAULT_EQUITY_FRACTION = Decimal("0.1")
LEVERAGE_SAFETY_MARGIN = Decimal("0.99")

# Entry timing
# Assumed market-order slippage for the timing gate (fraction of price).
ESTIMATED_SLIPPAGE_PCT = 0.0005
DEFAULT_ENTRY_SLIPPAGE_BPS = 30
MAX_ENTRY_SLIPPAGE_BPS = 100

# Confirmation
CONFIDENCE_STEP_PER_SIGNAL = 0.1

# Entry behavior classification thresholds
TREND_EMA_DIVERGENCE_PCT = 1.0
BREAKOUT_ATR_PCT = 2.0
RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0

# Reconciliation
RECONCILIATION_TOLERANCE = 0.01
