from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


FILLED = "FILLED"


@dataclass
class OrderIntent:
    """Desired order before it reaches the exchange."""

    symbol: str
    side: str
    type: str
    quantity: float
    price: Optional[float] = None
    stop_price: Optional[float] = None
    time_in_force: Optional[str] = None


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and simulated flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    executed_qty: float = 0.0
    avg_price: Optional[float] = None
    order_list_id: Optional[int] = None
    legs: List["OrderTicket"] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None
    error_code: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, intent: OrderIntent, error: str, code: Optional[int] = None) -> "OrderTicket":
        return cls(
            symbol=intent.symbol,
            side=intent.side,
            type=intent.type,
            quantity=intent.quantity,
            status="REJECTED",
            price=intent.price,
            stop_price=intent.stop_price,
            success=False,
            error=error,
            error_code=code,
        )

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    @property
    def is_filled(self) -> bool:
        return self.status == FILLED and self.executed_qty > 0

    @property
    def fill_price(self) -> Optional[float]:
        """Average fill price, falling back to the limit price."""
        if self.avg_price:
            return self.avg_price
        return self.price or None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
            "executed_qty": self.executed_qty,
            "avg_price": self.avg_price,
            "success": self.success,
        }
        if self.order_list_id is not None:
            data["order_list_id"] = self.order_list_id
            data["legs"] = [leg.id for leg in self.legs]
        if self.error:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data
