"""
Order Gateway Interface

Boundary to the component that actually places orders on an exchange:
- Abstract async gateway consumed by every executor
- Fill report returned by order placement
- Deterministic simulated fill used when no gateway is attached
- Paper gateway that fills at the requested price and records traffic
"""

from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
from abc import ABC, abstractmethod
import structlog

from ..core.exceptions import OrderGatewayError
from ..core.types import OrderSide

logger = structlog.get_logger(__name__)


@dataclass
class FillReport:
    """Result of one order placement"""
    order_id: str
    filled_amount: Optional[float] = None
    avg_price: Optional[float] = None
    status: str = "filled"
    simulated: bool = False


class OrderGateway(ABC):
    """Places and cancels orders on behalf of the executors"""

    @abstractmethod
    async def place_order(
        self,
        exchange_id: Optional[str],
        symbol: str,
        side: OrderSide,
        amount: float,
        price: Optional[float],
        options: Optional[Dict[str, Any]] = None
    ) -> FillReport:
        """
        Place an order and wait for its fill

        Args:
            exchange_id: Target exchange
            symbol: Instrument
            side: Order side
            amount: Quantity
            price: Limit price, None for a market order
            options: Tags such as task id or child order id

        Returns:
            Fill report; missing amount / price fields default to the request
        """

    @abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        """Request cancellation; the result is an acknowledgement only"""


def simulated_fill(order_id: str, amount: float, price: Optional[float]) -> FillReport:
    """Fill the full amount at the requested price"""
    if price is None or price <= 0:
        raise OrderGatewayError(f"No price available to simulate fill for {order_id}")
    return FillReport(order_id=order_id, filled_amount=amount, avg_price=price,
                      status="simulated", simulated=True)


@dataclass
class PaperOrder:
    """Order seen by the paper gateway"""
    order_id: str
    exchange_id: Optional[str]
    symbol: str
    side: OrderSide
    amount: float
    price: Optional[float]
    options: Dict[str, Any] = field(default_factory=dict)


class PaperGateway(OrderGateway):
    """Gateway that fills every order immediately at its requested price"""

    def __init__(self, fallback_price: Optional[float] = None):
        self.fallback_price = fallback_price
        self.orders: List[PaperOrder] = []
        self.canceled: List[str] = []
        self._sequence = 0

    async def place_order(
        self,
        exchange_id: Optional[str],
        symbol: str,
        side: OrderSide,
        amount: float,
        price: Optional[float],
        options: Optional[Dict[str, Any]] = None
    ) -> FillReport:
        self._sequence += 1
        options = dict(options or {})
        order_id = options.get('order_id') or f"paper_{self._sequence}"

        self.orders.append(PaperOrder(
            order_id=order_id,
            exchange_id=exchange_id,
            symbol=symbol,
            side=side,
            amount=amount,
            price=price,
            options=options
        ))

        fill_price = price if price is not None else self.fallback_price
        if fill_price is None:
            raise OrderGatewayError(f"Paper gateway has no price for {symbol} market order")

        logger.debug("Paper order filled", order_id=order_id, symbol=symbol,
                     side=side.value, amount=amount, price=fill_price)

        return FillReport(order_id=order_id, filled_amount=amount, avg_price=fill_price)

    async def cancel_order(self, order_id: str) -> bool:
        self.canceled.append(order_id)
        return True

    @property
    def filled_volume(self) -> float:
        return sum(order.amount for order in self.orders)
