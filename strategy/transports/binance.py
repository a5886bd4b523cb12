import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ingest.binance_rest import BinanceRESTClient, ExchangeError

from strategy.execution_types import OrderTicket


__all__ = ["BinanceTransport", "SymbolInfo", "ExchangeError"]


@dataclass
class SymbolInfo:
    symbol: str
    base_asset: str
    quote_asset: str
    status: str
    min_qty: float = 0.0
    max_qty: Optional[float] = None
    step_size: Optional[float] = None
    min_notional: float = 0.0
    tick_size: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_trading(self) -> bool:
        return self.status == "TRADING"


class BinanceTransport:
    """Thin adapter around the Binance spot REST endpoints with typed responses."""

    def __init__(self, rest: BinanceRESTClient) -> None:
        self._rest = rest
        self._lock = asyncio.Lock()

    @property
    def rest(self) -> BinanceRESTClient:
        return self._rest

    async def fetch_exchange_info(self) -> Dict[str, Any]:
        data = await self._rest.public_request("/v3/exchangeInfo")
        return data if isinstance(data, dict) else {}

    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        data = await self._rest.public_request("/v3/exchangeInfo", params={"symbol": symbol})
        if not isinstance(data, dict):
            return None
        for payload in data.get("symbols") or []:
            if payload.get("symbol") == symbol:
                return self._parse_symbol_info(payload)
        return None

    async def fetch_24h_tickers(self) -> Dict[str, Dict[str, Any]]:
        payload = await self._rest.public_request("/v3/ticker/24hr")
        if not isinstance(payload, list):
            return {}
        return {item["symbol"]: item for item in payload if isinstance(item, dict) and item.get("symbol")}

    async def fetch_price(self, symbol: str) -> Optional[float]:
        data = await self._rest.public_request("/v3/ticker/price", params={"symbol": symbol})
        if not isinstance(data, dict):
            return None
        return self._as_float(data.get("price"))

    async def fetch_balance(self, asset: str) -> Optional[float]:
        data = await self._rest.signed_request("/v3/account")
        if not isinstance(data, dict):
            return None
        for item in data.get("balances") or []:
            if item.get("asset") == asset:
                return self._as_float(item.get("free")) or 0.0
        return 0.0

    async def place_market_order(self, symbol: str, side: str, qty: float) -> Optional[OrderTicket]:
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "MARKET",
            "quantity": self._fmt(qty),
            "newOrderRespType": "FULL",
            "newClientOrderId": self._client_order_id(),
        }
        data = await self._rest.signed_request("/v3/order", params=params, method="POST")
        return self._parse_order_ack(data)

    async def place_limit_order(
        self,
        symbol: str,
        side: str,
        price: float,
        qty: float,
        tif: str = "GTC",
    ) -> Optional[OrderTicket]:
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "LIMIT",
            "timeInForce": tif,
            "quantity": self._fmt(qty),
            "price": self._fmt(price),
            "newOrderRespType": "RESULT",
            "newClientOrderId": self._client_order_id(),
        }
        data = await self._rest.signed_request("/v3/order", params=params, method="POST")
        return self._parse_order_ack(data)

    async def place_stop_loss_limit_order(
        self,
        symbol: str,
        side: str,
        stop_price: float,
        price: float,
        qty: float,
    ) -> Optional[OrderTicket]:
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "STOP_LOSS_LIMIT",
            "timeInForce": "GTC",
            "quantity": self._fmt(qty),
            "price": self._fmt(price),
            "stopPrice": self._fmt(stop_price),
            "newOrderRespType": "RESULT",
            "newClientOrderId": self._client_order_id(),
        }
        data = await self._rest.signed_request("/v3/order", params=params, method="POST")
        return self._parse_order_ack(data)

    async def place_oco_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        price: float,
        stop_price: float,
        stop_limit_price: float,
    ) -> Optional[OrderTicket]:
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "quantity": self._fmt(qty),
            "price": self._fmt(price),
            "stopPrice": self._fmt(stop_price),
            "stopLimitPrice": self._fmt(stop_limit_price),
            "stopLimitTimeInForce": "GTC",
            "listClientOrderId": self._client_order_id(),
        }
        data = await self._rest.signed_request("/v3/order/oco", params=params, method="POST")
        ticket = self._parse_order_list(data)
        if ticket is not None and not data.get("orderReports"):
            # Recovered through an order-list lookup, which only lists leg ids
            legs = []
            for leg in ticket.legs:
                full = await self.fetch_order(symbol, leg.exchange_order_id) if leg.exchange_order_id else None
                legs.append(full or leg)
            ticket.legs = legs
        return ticket

    async def fetch_order(self, symbol: str, order_id: int) -> Optional[OrderTicket]:
        data = await self._rest.signed_request("/v3/order", params={"symbol": symbol, "orderId": order_id})
        return self._parse_order_ack(data)

    async def fetch_open_orders(self, symbol: str) -> List[OrderTicket]:
        payload = await self._rest.signed_request("/v3/openOrders", params={"symbol": symbol})
        if not isinstance(payload, list):
            return []
        orders: List[OrderTicket] = []
        for item in payload:
            ticket = self._parse_order_ack(item)
            if ticket:
                orders.append(ticket)
        return orders

    async def fetch_my_trades(self, symbol: str, order_id: int) -> List[Dict[str, Any]]:
        payload = await self._rest.signed_request("/v3/myTrades", params={"symbol": symbol, "orderId": order_id})
        return payload if isinstance(payload, list) else []

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        await self._rest.signed_request(
            "/v3/order",
            params={"symbol": symbol, "orderId": order_id},
            method="DELETE",
        )

    async def close(self) -> None:
        async with self._lock:
            await self._rest.close()

    def _parse_symbol_info(self, payload: Dict[str, Any]) -> SymbolInfo:
        min_qty = 0.0
        max_qty = None
        step_size = None
        tick_size = None
        min_notional = 0.0
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER" and tick_size is None:
                tick_size = self._as_float(filt.get("tickSize"))
            elif ftype == "LOT_SIZE":
                min_qty = self._as_float(filt.get("minQty")) or 0.0
                max_qty = self._as_float(filt.get("maxQty"))
                step_size = self._as_float(filt.get("stepSize"))
            elif ftype in ("MIN_NOTIONAL", "NOTIONAL"):
                min_notional = max(min_notional, self._as_float(filt.get("minNotional")) or 0.0)
        return SymbolInfo(
            symbol=payload.get("symbol"),
            base_asset=payload.get("baseAsset", ""),
            quote_asset=payload.get("quoteAsset", ""),
            status=payload.get("status", ""),
            min_qty=min_qty,
            max_qty=max_qty or None,
            step_size=step_size or None,
            min_notional=min_notional,
            tick_size=tick_size or None,
            raw=payload,
        )

    def _parse_order_ack(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        price = self._as_float(payload.get("price"))
        stop_price = self._as_float(payload.get("stopPrice"))
        quantity = self._as_float(payload.get("origQty") or payload.get("quantity")) or 0.0
        executed = self._as_float(payload.get("executedQty")) or 0.0
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "LIMIT",
            quantity=quantity,
            status=payload.get("status"),
            price=price or None,
            stop_price=stop_price or None,
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            executed_qty=executed,
            avg_price=self._average_price(payload, executed),
            order_list_id=self._as_int(payload.get("orderListId")) if payload.get("orderListId", -1) != -1 else None,
            raw=payload,
        )

    def _parse_order_list(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        reports = payload.get("orderReports") or []
        legs = [leg for leg in (self._parse_order_ack(r) for r in reports) if leg]
        if not legs:
            legs = [
                OrderTicket(
                    symbol=o.get("symbol", payload.get("symbol", "")),
                    side="SELL",
                    type="UNKNOWN",
                    quantity=0.0,
                    client_order_id=o.get("clientOrderId"),
                    exchange_order_id=self._as_int(o.get("orderId")),
                )
                for o in payload.get("orders") or []
            ]
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=legs[0].side if legs else "SELL",
            type="OCO",
            quantity=legs[0].quantity if legs else 0.0,
            status=payload.get("listOrderStatus"),
            client_order_id=payload.get("listClientOrderId"),
            order_list_id=self._as_int(payload.get("orderListId")),
            legs=legs,
            raw=payload,
        )

    def _average_price(self, payload: Dict[str, Any], executed: float) -> Optional[float]:
        fills = payload.get("fills") or []
        if fills:
            qty = sum(self._as_float(f.get("qty")) or 0.0 for f in fills)
            if qty > 0:
                notional = sum(
                    (self._as_float(f.get("price")) or 0.0) * (self._as_float(f.get("qty")) or 0.0)
                    for f in fills
                )
                return notional / qty
        quote_qty = self._as_float(payload.get("cummulativeQuoteQty"))
        if quote_qty and executed > 0:
            return quote_qty / executed
        return None

    @staticmethod
    def _client_order_id() -> str:
        """Unique per placement and reused by retries so the order can be looked up."""
        return f"lsnp-{uuid.uuid4().hex[:28]}"

    @staticmethod
    def _fmt(value: float) -> str:
        text = f"{value:.8f}".rstrip("0").rstrip(".")
        return text or "0"

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
