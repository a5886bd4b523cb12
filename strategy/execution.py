import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from api.metrics import metrics
from ingest.binance_rest import ExchangeError, FatalExchangeError, OrderRejectedError
from risk.safety_policy import SafetyPolicy
from strategy import calculator
from strategy.execution_types import OrderIntent, OrderTicket
from strategy.simulators.paper import PaperTradingSimulator
from strategy.transports.binance import BinanceTransport, SymbolInfo


logger = logging.getLogger(__name__)

# Cancel responses that mean the order is already gone
BENIGN_CANCEL_CODES = (-2011, -2013)


@dataclass
class CachedSymbol:
    info: SymbolInfo
    fetched_at: float


class OrderGateway:
    """Validate and submit spot orders through the exchange client or the simulator.

    Exchange failures come back as unsuccessful ``OrderTicket`` values rather
    than exceptions, so callers can branch on ``ticket.success``.
    """

    def __init__(
        self,
        transport: BinanceTransport,
        quote_asset: str = 'USDT',
        simulation_mode: bool = False,
        simulator: Optional[PaperTradingSimulator] = None,
        safety_policy: Optional[SafetyPolicy] = None,
        symbol_cache_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.quote_asset = quote_asset
        self.simulation_mode = simulation_mode
        self.simulator = simulator or PaperTradingSimulator(quote_asset=quote_asset)
        self.safety_policy = safety_policy
        self.symbol_cache_ttl_s = symbol_cache_ttl_s
        self._clock = clock
        self._symbols: Dict[str, CachedSymbol] = {}

    async def get_symbol_info(self, symbol: str, refresh: bool = False) -> Optional[SymbolInfo]:
        cached = self._symbols.get(symbol)
        now = self._clock()
        if cached and not refresh and now - cached.fetched_at < self.symbol_cache_ttl_s:
            return cached.info
        try:
            info = await self.transport.fetch_symbol_info(symbol)
        except ExchangeError as exc:
            self._log_transport_error(f"symbol info {symbol}", exc)
            return cached.info if cached else None
        if info is not None:
            self._symbols[symbol] = CachedSymbol(info, now)
        return info

    async def get_price(self, symbol: str) -> Optional[float]:
        try:
            return await self.transport.fetch_price(symbol)
        except ExchangeError as exc:
            self._log_transport_error(f"price {symbol}", exc)
            return None

    async def get_balance(self, asset: Optional[str] = None) -> Optional[float]:
        if self.simulation_mode:
            return self.simulator.balance
        try:
            return await self.transport.fetch_balance(asset or self.quote_asset)
        except ExchangeError as exc:
            self._log_transport_error("fetch balance", exc)
            return None

    def _conform(self, intent: OrderIntent, info: Optional[SymbolInfo],
                 reference_price: Optional[float]) -> Tuple[Optional[OrderIntent], Optional[str]]:
        """Round quantity and prices to the symbol's filters, or explain why it cannot be sent."""
        if info is None:
            return None, f"no symbol info for {intent.symbol}"
        if not info.is_trading:
            return None, f"{intent.symbol} is not trading (status={info.status})"

        qty = calculator.floor_to_step(intent.quantity, info.step_size)
        if info.max_qty:
            qty = min(qty, calculator.floor_to_step(info.max_qty, info.step_size))
        if qty <= 0 or qty < info.min_qty:
            return None, f"quantity {intent.quantity} below LOT_SIZE minimum {info.min_qty}"

        price = calculator.round_to_tick(intent.price, info.tick_size) if intent.price else None
        stop_price = calculator.round_to_tick(intent.stop_price, info.tick_size) if intent.stop_price else None
        notional_price = price or reference_price
        if notional_price and info.min_notional and qty * notional_price < info.min_notional:
            return None, f"notional {qty * notional_price:.4f} below minimum {info.min_notional}"

        return OrderIntent(
            symbol=intent.symbol,
            side=intent.side,
            type=intent.type,
            quantity=qty,
            price=price,
            stop_price=stop_price,
            time_in_force=intent.time_in_force,
        ), None

    async def market_buy(self, symbol: str, quantity: float, reference_price: Optional[float] = None,
                         risk_amount: float = 0.0) -> OrderTicket:
        return await self._market_order(symbol, 'BUY', quantity, reference_price, risk_amount)

    async def market_sell(self, symbol: str, quantity: float,
                          reference_price: Optional[float] = None) -> OrderTicket:
        return await self._market_order(symbol, 'SELL', quantity, reference_price, 0.0)

    async def _market_order(self, symbol: str, side: str, quantity: float,
                            reference_price: Optional[float], risk_amount: float) -> OrderTicket:
        intent = OrderIntent(symbol=symbol, side=side, type='MARKET', quantity=quantity)
        info = await self.get_symbol_info(symbol)
        if reference_price is None:
            reference_price = await self.get_price(symbol)
        conformed, reason = self._conform(intent, info, reference_price)
        if conformed is None:
            return self._reject(intent, reason)

        if self.safety_policy is not None:
            notional = conformed.quantity * (reference_price or 0.0)
            decision = self.safety_policy.check_order(symbol, side, notional, risk_amount)
            if not decision.allowed:
                return OrderTicket.failed(conformed, f"blocked by safety policy: {decision.reason}")

        if self.simulation_mode:
            if not reference_price:
                return self._reject(conformed, "no reference price for simulated fill")
            ticket = self.simulator.create_order(symbol, 'MARKET', side, conformed.quantity, price=reference_price)
            return self._accepted(conformed, ticket)

        started = time.monotonic()
        try:
            ticket = await self.transport.place_market_order(symbol, side, conformed.quantity)
        except ExchangeError as exc:
            return self._failed(conformed, exc)
        metrics.record_order_send_latency(time.monotonic() - started)

        if ticket is not None and ticket.executed_qty > 0 and not ticket.avg_price:
            ticket.avg_price = await self._average_from_trades(symbol, ticket)
        return self._accepted(conformed, ticket)

    async def place_oco(self, symbol: str, quantity: float, take_profit: float,
                        stop_price: float, stop_limit_price: float) -> OrderTicket:
        intent = OrderIntent(symbol=symbol, side='SELL', type='OCO', quantity=quantity,
                             price=take_profit, stop_price=stop_price)
        info = await self.get_symbol_info(symbol)
        conformed, reason = self._conform(intent, info, stop_limit_price)
        if conformed is None:
            return self._reject(intent, reason)
        limit_price = calculator.floor_to_step(stop_limit_price, info.tick_size)

        if self.simulation_mode:
            ticket = self.simulator.create_oco(symbol, conformed.quantity, conformed.price,
                                               conformed.stop_price, limit_price)
            return self._accepted(conformed, ticket)
        try:
            ticket = await self.transport.place_oco_order(
                symbol, 'SELL', conformed.quantity, conformed.price, conformed.stop_price, limit_price
            )
        except ExchangeError as exc:
            return self._failed(conformed, exc)
        if ticket is not None and (ticket.order_list_id is None or len(ticket.legs) != 2):
            return self._reject(conformed, "bracket acknowledgement missing order list or legs")
        return self._accepted(conformed, ticket)

    async def place_limit_sell(self, symbol: str, quantity: float, price: float) -> OrderTicket:
        intent = OrderIntent(symbol=symbol, side='SELL', type='LIMIT', quantity=quantity,
                             price=price, time_in_force='GTC')
        conformed, reason = self._conform(intent, await self.get_symbol_info(symbol), price)
        if conformed is None:
            return self._reject(intent, reason)
        if self.simulation_mode:
            ticket = self.simulator.create_order(symbol, 'LIMIT', 'SELL', conformed.quantity, price=conformed.price)
            return self._accepted(conformed, ticket)
        try:
            ticket = await self.transport.place_limit_order(symbol, 'SELL', conformed.price, conformed.quantity)
        except ExchangeError as exc:
            return self._failed(conformed, exc)
        return self._accepted(conformed, ticket)

    async def place_stop_loss(self, symbol: str, quantity: float, stop_price: float,
                              limit_price: float) -> OrderTicket:
        intent = OrderIntent(symbol=symbol, side='SELL', type='STOP_LOSS_LIMIT', quantity=quantity,
                             price=limit_price, stop_price=stop_price, time_in_force='GTC')
        info = await self.get_symbol_info(symbol)
        conformed, reason = self._conform(intent, info, limit_price)
        if conformed is None:
            return self._reject(intent, reason)
        # Limit leg rounds down so it stays at or below the trigger
        conformed.price = calculator.floor_to_step(limit_price, info.tick_size)
        if self.simulation_mode:
            ticket = self.simulator.create_order(symbol, 'STOP_LOSS_LIMIT', 'SELL', conformed.quantity,
                                                 price=conformed.price, stop_price=conformed.stop_price)
            return self._accepted(conformed, ticket)
        try:
            ticket = await self.transport.place_stop_loss_limit_order(
                symbol, 'SELL', conformed.stop_price, conformed.price, conformed.quantity
            )
        except ExchangeError as exc:
            return self._failed(conformed, exc)
        return self._accepted(conformed, ticket)

    async def _match_simulated(self, symbol: str) -> None:
        price = await self.get_price(symbol)
        if price:
            for ticket in self.simulator.match_price(symbol, price):
                logger.info("Simulated %s %s filled at %s (market %s)", symbol, ticket.type, ticket.avg_price, price)

    async def get_order(self, symbol: str, order_id: str) -> Optional[OrderTicket]:
        if self.simulation_mode:
            await self._match_simulated(symbol)
            return self.simulator.get_order(order_id)
        numeric_id = self._parse_order_identifier(order_id)
        if numeric_id is None:
            return None
        try:
            return await self.transport.fetch_order(symbol, numeric_id)
        except ExchangeError as exc:
            self._log_transport_error(f"order status {symbol}/{order_id}", exc)
            return None

    async def get_open_orders(self, symbol: str) -> Optional[List[OrderTicket]]:
        """Open orders for a symbol, or None when the exchange could not be read."""
        if self.simulation_mode:
            await self._match_simulated(symbol)
            return self.simulator.open_orders(symbol)
        try:
            return await self.transport.fetch_open_orders(symbol)
        except ExchangeError as exc:
            self._log_transport_error(f"open orders {symbol}", exc)
            return None

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        if self.simulation_mode:
            self.simulator.cancel(order_id)
            metrics.record_order_cancelled()
            return True
        numeric_id = self._parse_order_identifier(order_id)
        if numeric_id is None:
            logger.error("Cannot cancel %s: non-numeric order id %s", symbol, order_id)
            return False
        try:
            await self.transport.cancel_order(symbol, numeric_id)
        except OrderRejectedError as exc:
            if exc.code in BENIGN_CANCEL_CODES or 'Unknown order' in (exc.msg or ''):
                logger.info("Order %s/%s already gone: %s", symbol, order_id, exc.msg)
                return True
            self._log_transport_error(f"cancel order {symbol}/{order_id}", exc)
            return False
        except ExchangeError as exc:
            self._log_transport_error(f"cancel order {symbol}/{order_id}", exc)
            return False
        metrics.record_order_cancelled()
        return True

    async def close(self):
        await self.transport.close()

    async def _average_from_trades(self, symbol: str, ticket: OrderTicket) -> Optional[float]:
        if ticket.exchange_order_id is None:
            return None
        try:
            trades = await self.transport.fetch_my_trades(symbol, ticket.exchange_order_id)
        except ExchangeError as exc:
            self._log_transport_error(f"fills {symbol}", exc)
            return None
        qty = sum(float(t.get('qty', 0)) for t in trades)
        if qty <= 0:
            return None
        return sum(float(t.get('price', 0)) * float(t.get('qty', 0)) for t in trades) / qty

    def _accepted(self, intent: OrderIntent, ticket: Optional[OrderTicket]) -> OrderTicket:
        if ticket is None:
            return self._reject(intent, "empty order acknowledgement")
        metrics.record_order_placed(intent.type)
        logger.info(
            "%s %s %s qty=%s accepted (id=%s status=%s)",
            intent.type,
            intent.side,
            intent.symbol,
            intent.quantity,
            ticket.id,
            ticket.status,
        )
        if self.safety_policy is not None and intent.side == 'BUY':
            self.safety_policy.record_success(intent.symbol, ticket.as_dict())
        return ticket

    def _reject(self, intent: OrderIntent, reason: str) -> OrderTicket:
        metrics.record_order_rejected(intent.type)
        logger.warning("%s %s %s rejected locally: %s", intent.type, intent.side, intent.symbol, reason)
        return OrderTicket.failed(intent, reason)

    def _failed(self, intent: OrderIntent, error: ExchangeError) -> OrderTicket:
        metrics.record_order_rejected(intent.type)
        metrics.record_api_error(type(error).__name__)
        self._log_transport_error(f"{intent.type} {intent.side} {intent.symbol}", error)
        if self.safety_policy is not None:
            self.safety_policy.record_error(intent.symbol, str(error))
        return OrderTicket.failed(intent, error.msg or str(error), error.code)

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, FatalExchangeError):
            logger.critical("Binance %s failed fatally (status=%s, msg=%s)", action, error.status, error.msg)
        elif isinstance(error, ExchangeError):
            logger.error(
                "Binance %s failed (code=%s, msg=%s)",
                action,
                error.code,
                error.msg,
            )
        else:
            logger.error("%s failed: %s", action, error)

    @staticmethod
    def _parse_order_identifier(order_id: Any) -> Optional[int]:
        try:
            return int(order_id)
        except (TypeError, ValueError):
            return None
