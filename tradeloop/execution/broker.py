"""
Broker routing by session mode.

``simulated`` and ``competition`` settle on the simulated ledger; only ``live``
reaches the exchange broker, which refuses anything else on its own as well.
"""
from tradeloop.domain.models import OrderRequest, OrderResult, SessionMode
from tradeloop.domain.protocols import Broker
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)


class BrokerRouter:
    """Single Broker entry point selecting the implementation from ``request.mode``."""

    def __init__(self, simulated: Broker, exchange: Broker):
        self.simulated = simulated
        self.exchange = exchange

    def broker_for(self, mode: SessionMode) -> Broker:
        if mode == SessionMode.LIVE:
            return self.exchange
        return self.simulated

    async def place_order(self, request: OrderRequest) -> OrderResult:
        broker = self.broker_for(request.mode)
        logger.debug(
            "ORDER_ROUTED",
            mode=request.mode.value,
            broker=type(broker).__name__,
            market=request.market,
            side=request.side.value,
        )
        return await broker.place_order(request)
