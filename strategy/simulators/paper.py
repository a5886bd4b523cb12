import itertools
import uuid
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from strategy.execution_types import FILLED, OrderTicket


class PaperTradingSimulator:
    """Simulation-mode exchange: market orders fill instantly, resting orders fill when the price crosses them."""

    def __init__(self, initial_balance: float = 1000.0, quote_asset: str = "USDT") -> None:
        self.quote_asset = quote_asset
        self._balance = initial_balance
        self._orders: Dict[str, OrderTicket] = {}
        self._list_ids = itertools.count(1)

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def orders(self) -> Mapping[str, OrderTicket]:
        return MappingProxyType(self._orders)

    def create_order(
        self,
        symbol: str,
        order_type: str,
        side: str,
        qty: float,
        price: Optional[float] = None,
        stop_price: Optional[float] = None,
    ) -> Optional[OrderTicket]:
        if qty <= 0:
            return None
        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        ticket = OrderTicket(
            symbol=symbol,
            side=side.upper(),
            type=order_type,
            quantity=qty,
            status="NEW",
            price=price,
            stop_price=stop_price,
            client_order_id=order_id,
        )
        if order_type == "MARKET":
            ticket.status = FILLED
            ticket.executed_qty = qty
            ticket.avg_price = price
            notional = qty * (price or 0.0)
            self._balance += -notional if side.upper() == "BUY" else notional
        self._orders[order_id] = ticket
        return ticket

    def create_oco(
        self,
        symbol: str,
        qty: float,
        price: float,
        stop_price: float,
        stop_limit_price: float,
    ) -> Optional[OrderTicket]:
        list_id = next(self._list_ids)
        take_profit = self.create_order(symbol, "LIMIT_MAKER", "SELL", qty, price=price)
        stop = self.create_order(symbol, "STOP_LOSS_LIMIT", "SELL", qty, price=stop_limit_price,
                                 stop_price=stop_price)
        if take_profit is None or stop is None:
            return None
        for leg in (take_profit, stop):
            leg.order_list_id = list_id
        return OrderTicket(
            symbol=symbol,
            side="SELL",
            type="OCO",
            quantity=qty,
            status="EXECUTING",
            client_order_id=f"paper-list-{list_id}",
            order_list_id=list_id,
            legs=[take_profit, stop],
        )

    def fill(self, order_id: str, price: Optional[float] = None) -> Optional[OrderTicket]:
        """Mark a resting order filled, e.g. when a simulated price crosses it."""
        ticket = self._orders.get(order_id)
        if ticket is None or ticket.status != "NEW":
            return ticket
        ticket.status = FILLED
        ticket.executed_qty = ticket.quantity
        ticket.avg_price = price or ticket.price
        if ticket.side == "SELL":
            self._balance += ticket.quantity * (ticket.avg_price or 0.0)
        if ticket.order_list_id is not None:
            for other in self._orders.values():
                if other is not ticket and other.order_list_id == ticket.order_list_id and other.status == "NEW":
                    other.status = "EXPIRED"
        return ticket

    def match_price(self, symbol: str, price: float) -> List[OrderTicket]:
        """Fill resting sell orders the market price has crossed; returns the fills.

        Limit legs fill once price reaches their limit, stop legs once price
        falls to their trigger. Both fill at their own limit price.
        """
        filled: List[OrderTicket] = []
        for ticket in list(self._orders.values()):
            if ticket.symbol != symbol or ticket.side != "SELL" or ticket.status != "NEW":
                continue
            if ticket.stop_price is not None:
                crossed = price <= ticket.stop_price
            else:
                crossed = ticket.price is not None and price >= ticket.price
            if crossed:
                filled.append(self.fill(ticket.client_order_id, ticket.price))
        return filled

    def get_order(self, order_id: str) -> Optional[OrderTicket]:
        return self._orders.get(order_id)

    def open_orders(self, symbol: str) -> List[OrderTicket]:
        return [o for o in self._orders.values() if o.symbol == symbol and o.status == "NEW"]

    def cancel(self, order_id: str) -> bool:
        ticket = self._orders.get(order_id)
        if ticket is None or ticket.status != "NEW":
            return False
        ticket.status = "CANCELED"
        return True
