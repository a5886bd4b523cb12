import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from api import alerts
from api.metrics import metrics
from config.settings import BotSettings
from ingest.listing_diff import ListingEvent
from orchestration.environment import EnvironmentProfile
from orchestration.persistence import PositionStore
from risk.position_sizer import HIGH, RiskManager
from risk.safety_policy import SafetyPolicy
from strategy import calculator
from strategy.execution import OrderGateway
from strategy.execution_types import FILLED, OrderTicket


logger = logging.getLogger(__name__)

PROTECTION_LOST_STATUSES = ('CANCELED', 'EXPIRED', 'REJECTED', 'EXPIRED_IN_MATCH')


class PositionStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CloseReason(Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    MANUAL = "MANUAL"


class ReconciliationError(Exception):
    pass


@dataclass
class Position:
    symbol: str
    side: str
    quantity: float
    entry_price: float
    order_id: str
    environment: str
    entry_time: float = field(default_factory=time.time)
    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    order_list_id: Optional[int] = None
    protection_method: Optional[str] = None
    status: PositionStatus = PositionStatus.OPEN
    pnl_status: str = calculator.BREAK_EVEN
    current_price: Optional[float] = None
    pnl: float = 0.0
    pnl_percent: float = 0.0
    exit_price: Optional[float] = None
    exit_time: Optional[float] = None
    close_reason: Optional[CloseReason] = None

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def is_protected(self) -> bool:
        return bool(self.take_profit_order_id and self.stop_loss_order_id)

    @property
    def protection_order_ids(self) -> List[str]:
        return [oid for oid in (self.take_profit_order_id, self.stop_loss_order_id) if oid]

    def mark(self, price: float) -> None:
        self.current_price = price
        self.pnl, self.pnl_percent = calculator.calculate_pnl(self.entry_price, price, self.quantity)
        self.pnl_status = calculator.pnl_status(self.pnl_percent)

    def clear_protection(self) -> None:
        self.take_profit_order_id = None
        self.stop_loss_order_id = None
        self.order_list_id = None
        self.protection_method = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'side': self.side,
            'quantity': self.quantity,
            'entry_price': self.entry_price,
            'entry_time': self.entry_time,
            'order_id': self.order_id,
            'environment': self.environment,
            'take_profit_price': self.take_profit_price,
            'stop_loss_price': self.stop_loss_price,
            'take_profit_order_id': self.take_profit_order_id,
            'stop_loss_order_id': self.stop_loss_order_id,
            'protection_order_ids': self.protection_order_ids,
            'order_list_id': self.order_list_id,
            'protection_method': self.protection_method,
            'status': self.status.value,
            'pnl_status': self.pnl_status,
            'current_price': self.current_price,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
            'exit_price': self.exit_price,
            'exit_time': self.exit_time,
            'close_reason': self.close_reason.value if self.close_reason else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        reason = data.get('close_reason')
        return cls(
            symbol=data['symbol'],
            side=data.get('side', 'BUY'),
            quantity=float(data['quantity']),
            entry_price=float(data['entry_price']),
            order_id=str(data['order_id']),
            environment=data.get('environment', ''),
            entry_time=float(data.get('entry_time') or time.time()),
            take_profit_price=data.get('take_profit_price'),
            stop_loss_price=data.get('stop_loss_price'),
            take_profit_order_id=data.get('take_profit_order_id'),
            stop_loss_order_id=data.get('stop_loss_order_id'),
            order_list_id=data.get('order_list_id'),
            protection_method=data.get('protection_method'),
            status=PositionStatus(data.get('status', 'OPEN')),
            pnl_status=data.get('pnl_status', calculator.BREAK_EVEN),
            current_price=data.get('current_price'),
            pnl=float(data.get('pnl') or 0.0),
            pnl_percent=float(data.get('pnl_percent') or 0.0),
            exit_price=data.get('exit_price'),
            exit_time=data.get('exit_time'),
            close_reason=CloseReason(reason) if reason else None,
        )


@dataclass
class BuyResult:
    success: bool
    symbol: str
    position: Optional[Position] = None
    order: Optional[OrderTicket] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'symbol': self.symbol,
            'position': self.position.to_dict() if self.position else None,
            'order': self.order.as_dict() if self.order else None,
            'error': self.error,
        }


@dataclass
class ProtectionResult:
    success: bool
    symbol: str
    method: Optional[str] = None
    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    order_ids: List[str] = field(default_factory=list)
    order_list_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'symbol': self.symbol,
            'method': self.method,
            'take_profit_price': self.take_profit_price,
            'stop_loss_price': self.stop_loss_price,
            'order_ids': self.order_ids,
            'order_list_id': self.order_list_id,
            'error': self.error,
        }


class PositionManager:
    """Own the open positions and drive them from entry fill to close.

    Each symbol has its own lock, so entry, protection, reconciliation and
    manual close never interleave for the same position.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        risk_manager: RiskManager,
        store: PositionStore,
        settings: BotSettings,
        environment: EnvironmentProfile,
        notifier=None,
        safety_policy: Optional[SafetyPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.risk_manager = risk_manager
        self.store = store
        self.settings = settings
        self.environment = environment
        self.notifier = notifier or alerts.alert_webhook
        self.safety_policy = safety_policy
        self._clock = clock

        self.positions: Dict[str, Position] = {}
        self.closed_positions: List[Position] = []
        self.balance: float = 0.0
        self.balance_updated_at: float = 0.0
        self.running = False
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        return lock

    @property
    def max_positions(self) -> int:
        return min(self.environment.max_positions, self.settings.trading.max_positions)

    async def load_active_positions(self) -> int:
        try:
            rows = await self.store.get_active_positions()
        except Exception as exc:
            logger.error("Failed to load active positions: %s", exc)
            return 0
        for row in rows:
            position = Position.from_dict(row)
            if position.environment and position.environment != self.environment.name:
                continue
            self.positions[position.symbol] = position
        logger.info("Restored %s open positions", len(self.positions))
        self._update_metrics()
        return len(self.positions)

    async def refresh_balance(self, force: bool = False) -> Optional[float]:
        now = self._clock()
        if not force and self.balance_updated_at and now - self.balance_updated_at < self.settings.exchange.balance_refresh_s:
            return self.balance
        balance = await self.gateway.get_balance()
        if balance is None:
            return self.balance if self.balance_updated_at else None
        self.balance = balance
        self.balance_updated_at = now
        metrics.update_balance(balance)
        return balance

    async def execute_buy(self, listing: ListingEvent) -> BuyResult:
        symbol = listing.symbol
        async with self._lock_for(symbol):
            try:
                return await self._execute_buy_locked(listing)
            except Exception as exc:
                logger.exception("Buy for %s failed unexpectedly", symbol)
                return await self._buy_failure(symbol, f"unexpected error: {exc}", 'BUY_ORDER_ERROR')

    async def _execute_buy_locked(self, listing: ListingEvent) -> BuyResult:
        symbol = listing.symbol
        trading = self.settings.trading

        existing = self.positions.get(symbol)
        if existing is not None and existing.is_open:
            return await self._buy_failure(symbol, 'position already open')
        open_count = len(self.positions)
        if open_count >= self.max_positions:
            return await self._buy_failure(symbol, f'max positions reached ({open_count}/{self.max_positions})')

        if self.environment.is_real_money:
            assessment = self.risk_manager.assess_listing_risk(listing, now=self._clock())
            if assessment['level'] == HIGH:
                return await self._buy_failure(
                    symbol, 'high-risk listing blocked: ' + '; '.join(assessment['reasons'])
                )

        balance = await self.refresh_balance()
        if balance is None:
            return await self._buy_failure(symbol, 'balance unavailable', 'BUY_ORDER_ERROR')

        size = self.risk_manager.size_order(balance, open_count)
        size = self.risk_manager.adjust_for_environment(size, balance, self.environment.is_real_money)
        size = min(size, self.environment.max_order_value)
        if size < trading.base_order_size:
            return await self._buy_failure(symbol, 'Insufficient balance')
        if not self.risk_manager.is_risk_acceptable(balance, open_count, size, self.max_positions):
            return await self._buy_failure(symbol, 'risk limits exceeded')

        info = await self.gateway.get_symbol_info(symbol)
        if info is None:
            return await self._buy_failure(symbol, 'symbol info unavailable', 'BUY_ORDER_ERROR')
        price = listing.price or await self.gateway.get_price(symbol)
        if not price:
            return await self._buy_failure(symbol, 'price unavailable', 'BUY_ORDER_ERROR')

        quantity = calculator.calculate_quantity(
            size, price, info, max_value=self.environment.max_order_value)
        if quantity <= 0:
            return await self._buy_failure(symbol, f'no valid quantity for {size:.2f} {trading.quote_asset}')

        risk_amount = quantity * price * trading.stop_loss_pct
        ticket = await self.gateway.market_buy(symbol, quantity, reference_price=price, risk_amount=risk_amount)
        if not ticket.success:
            return await self._buy_failure(symbol, ticket.error or 'order rejected', 'BUY_ORDER_ERROR', ticket)
        if ticket.executed_qty <= 0:
            return await self._buy_failure(symbol, 'entry order not filled', 'BUY_ORDER_ERROR', ticket)

        held_qty = self._net_quantity(ticket, info.base_asset)
        held_qty = calculator.floor_to_step(held_qty, info.step_size)
        position = Position(
            symbol=symbol,
            side='BUY',
            quantity=held_qty,
            entry_price=ticket.fill_price or price,
            order_id=ticket.id,
            environment=self.environment.name,
            entry_time=self._clock(),
        )
        position.mark(position.entry_price)
        self.positions[symbol] = position
        # Balance changed; next read goes to the exchange
        self.balance_updated_at = 0.0
        self._update_metrics()

        try:
            await self.store.save_position(position.to_dict())
        except Exception as exc:
            logger.error("Position %s filled but could not be persisted: %s", symbol, exc)

        logger.info(
            "Bought %s qty=%s at %.8f (order %s)",
            symbol,
            position.quantity,
            position.entry_price,
            position.order_id,
        )
        self.notifier.send(alerts.BUY_EXECUTED, {
            'message': f'Bought {position.quantity} {symbol} at {position.entry_price}',
            'position': position.to_dict(),
        })
        return BuyResult(True, symbol, position=position, order=ticket)

    @staticmethod
    def _net_quantity(ticket: OrderTicket, base_asset: str) -> float:
        """Executed quantity minus any commission charged in the base asset."""
        commission = 0.0
        for fill in ticket.raw.get('fills') or []:
            if base_asset and fill.get('commissionAsset') == base_asset:
                try:
                    commission += float(fill.get('commission') or 0.0)
                except (TypeError, ValueError):
                    continue
        return max(0.0, ticket.executed_qty - commission)

    async def _buy_failure(self, symbol: str, error: str, error_type: str = 'BUY_REJECTED',
                           ticket: Optional[OrderTicket] = None) -> BuyResult:
        logger.warning("Buy %s not executed: %s", symbol, error)
        await self._record_error(error_type, symbol, error)
        return BuyResult(False, symbol, order=ticket, error=error)

    async def _record_error(self, error_type: str, symbol: str, error: str) -> None:
        try:
            await self.store.save_error({'type': error_type, 'symbol': symbol, 'error': error})
        except Exception as exc:
            logger.error("Failed to record %s for %s: %s", error_type, symbol, exc)

    async def set_take_profit_stop_loss(self, buy_result: BuyResult) -> ProtectionResult:
        if not buy_result.success or buy_result.position is None:
            return ProtectionResult(False, buy_result.symbol, error='no filled position to protect')
        symbol = buy_result.symbol
        async with self._lock_for(symbol):
            position = self.positions.get(symbol)
            if position is None or position is not buy_result.position or not position.is_open:
                return ProtectionResult(False, symbol, error='position is not open')
            if position.is_protected:
                return self._protection_result(position)
            return await self._protect_locked(position)

    async def _protect_locked(self, position: Position) -> ProtectionResult:
        trading = self.settings.trading
        symbol = position.symbol
        info = await self.gateway.get_symbol_info(symbol)
        tick = info.tick_size if info else None
        take_profit, stop_loss = calculator.calculate_protection_prices(
            position.entry_price, trading.take_profit_pct, trading.stop_loss_pct, tick
        )
        limit_price = calculator.stop_limit_price(stop_loss, trading.stop_limit_offset_pct, tick)
        position.take_profit_price = take_profit
        position.stop_loss_price = stop_loss

        error = None
        attempts = max(1, self.settings.protection_max_attempts)
        for attempt in range(1, attempts + 1):
            if trading.use_oco:
                error = await self._place_bracket(position, take_profit, stop_loss, limit_price)
                if error is None:
                    break
                logger.warning("OCO bracket for %s failed (%s); falling back to separate orders", symbol, error)
            error = await self._place_separate(position, take_profit, stop_loss, limit_price)
            if error is None:
                break
            logger.warning("Protection attempt %s/%s for %s failed: %s", attempt, attempts, symbol, error)

        await self._persist(position)
        if error is not None:
            logger.error("Position %s left unprotected: %s", symbol, error)
            await self._record_error('PROTECTION_ERROR', symbol, error)
            self.notifier.send(alerts.ERROR, {
                'message': f'{symbol} has no take-profit/stop-loss protection: {error}',
                'symbol': symbol,
            })
            self._update_metrics()
            return ProtectionResult(False, symbol, take_profit_price=take_profit,
                                    stop_loss_price=stop_loss, error=error)

        logger.info(
            "Protected %s via %s: TP=%.8f SL=%.8f (limit %.8f)",
            symbol,
            position.protection_method,
            take_profit,
            stop_loss,
            limit_price,
        )
        self._update_metrics()
        return self._protection_result(position)

    async def _place_bracket(self, position: Position, take_profit: float, stop_loss: float,
                             limit_price: float) -> Optional[str]:
        ticket = await self.gateway.place_oco(position.symbol, position.quantity, take_profit, stop_loss, limit_price)
        if not ticket.success:
            return ticket.error or 'bracket rejected'
        tp_leg = next((leg for leg in ticket.legs if leg.stop_price is None), None)
        sl_leg = next((leg for leg in ticket.legs if leg.stop_price is not None), None)
        if tp_leg is None or sl_leg is None:
            # Leg types unknown; Binance lists the stop leg first
            tp_leg, sl_leg = ticket.legs[-1], ticket.legs[0]
        position.take_profit_order_id = tp_leg.id
        position.stop_loss_order_id = sl_leg.id
        position.order_list_id = ticket.order_list_id
        position.protection_method = 'OCO'
        return None

    async def _place_separate(self, position: Position, take_profit: float, stop_loss: float,
                              limit_price: float) -> Optional[str]:
        symbol = position.symbol
        tp = await self.gateway.place_limit_sell(symbol, position.quantity, take_profit)
        if not tp.success:
            return f'take-profit rejected: {tp.error}'
        sl = await self.gateway.place_stop_loss(symbol, position.quantity, stop_loss, limit_price)
        if not sl.success:
            # Never leave a lone take-profit behind
            if not await self.gateway.cancel_order(symbol, tp.id):
                logger.critical("Could not cancel lone take-profit %s for %s", tp.id, symbol)
            return f'stop-loss rejected: {sl.error}'
        position.take_profit_order_id = tp.id
        position.stop_loss_order_id = sl.id
        position.order_list_id = None
        position.protection_method = 'SEPARATE'
        return None

    @staticmethod
    def _protection_result(position: Position) -> ProtectionResult:
        return ProtectionResult(
            True,
            position.symbol,
            method=position.protection_method,
            take_profit_price=position.take_profit_price,
            stop_loss_price=position.stop_loss_price,
            order_ids=position.protection_order_ids,
            order_list_id=position.order_list_id,
        )

    async def reconcile(self) -> List[Position]:
        """One reconciliation pass over every open position; returns the ones that closed."""
        closed: List[Position] = []
        for symbol in list(self.positions):
            try:
                position = await self.reconcile_position(symbol)
            except ReconciliationError as exc:
                logger.error("Reconciliation failed for %s: %s", symbol, exc)
                await self._record_error('RECONCILIATION_ERROR', symbol, str(exc))
                continue
            if position is not None:
                closed.append(position)
        self._update_metrics()
        return closed

    async def reconcile_position(self, symbol: str) -> Optional[Position]:
        lock = self._lock_for(symbol)
        if lock.locked():
            logger.debug("Reconciliation for %s already in progress; skipping", symbol)
            return None
        async with lock:
            position = self.positions.get(symbol)
            if position is None or not position.is_open:
                return None
            try:
                return await self._reconcile_locked(position)
            except ReconciliationError:
                raise
            except Exception as exc:
                raise ReconciliationError(f"{symbol}: {exc}") from exc

    async def _reconcile_locked(self, position: Position) -> Optional[Position]:
        symbol = position.symbol
        price = await self.gateway.get_price(symbol)
        if price:
            position.mark(price)

        if not position.is_protected:
            await self._persist(position)
            return None

        open_orders = await self.gateway.get_open_orders(symbol)
        if open_orders is None:
            raise ReconciliationError(f"{symbol}: open orders unavailable")
        open_ids = {order.id for order in open_orders}

        legs = (
            (position.take_profit_order_id, CloseReason.TAKE_PROFIT),
            (position.stop_loss_order_id, CloseReason.STOP_LOSS),
        )
        lost = 0
        for order_id, reason in legs:
            if order_id in open_ids:
                continue
            order = await self.gateway.get_order(symbol, order_id)
            if order is None:
                raise ReconciliationError(f"{symbol}: status of order {order_id} unavailable")
            if order.status == FILLED:
                return await self._close_from_fill(position, order, reason)
            if order.status in PROTECTION_LOST_STATUSES:
                lost += 1

        if lost:
            logger.error("Protection for %s was cancelled outside the bot", symbol)
            for order_id in position.protection_order_ids:
                if order_id in open_ids:
                    await self.gateway.cancel_order(symbol, order_id)
            position.clear_protection()
            await self._record_error('PROTECTION_LOST', symbol, 'protection orders no longer open')
            self.notifier.send(alerts.WARNING, {
                'message': f'{symbol} protection orders were cancelled; position is unprotected',
                'symbol': symbol,
            })
        await self._persist(position)
        return None

    async def _close_from_fill(self, position: Position, order: OrderTicket, reason: CloseReason) -> Optional[Position]:
        sibling = position.stop_loss_order_id if reason is CloseReason.TAKE_PROFIT else position.take_profit_order_id
        if position.order_list_id is None and sibling:
            await self.gateway.cancel_order(position.symbol, sibling)
        target = position.take_profit_price if reason is CloseReason.TAKE_PROFIT else position.stop_loss_price
        exit_price = order.fill_price or target or position.current_price or position.entry_price
        return await self._finalize_close(position, reason, exit_price)

    async def _filled_leg(self, position: Position, order_ids: Dict[str, CloseReason]):
        """First protection leg the exchange reports FILLED, as (order, reason)."""
        for order_id, reason in order_ids.items():
            order = await self.gateway.get_order(position.symbol, order_id)
            if order is not None and order.status == FILLED:
                return order, reason
        return None

    async def close_position(self, symbol: str, reason: CloseReason = CloseReason.MANUAL) -> Optional[Position]:
        async with self._lock_for(symbol):
            position = self.positions.get(symbol)
            if position is None or not position.is_open:
                logger.warning("Close requested for %s but no open position exists", symbol)
                return None
            legs = {}
            if position.take_profit_order_id:
                legs[position.take_profit_order_id] = CloseReason.TAKE_PROFIT
            if position.stop_loss_order_id:
                legs[position.stop_loss_order_id] = CloseReason.STOP_LOSS
            for order_id in legs:
                await self.gateway.cancel_order(symbol, order_id)
            # A leg may have filled before or during the cancel
            filled = await self._filled_leg(position, legs)
            if filled is not None:
                order, leg_reason = filled
                logger.warning("%s was already closed by its %s order", symbol, leg_reason.value)
                return await self._close_from_fill(position, order, leg_reason)
            position.clear_protection()

            price = await self.gateway.get_price(symbol)
            ticket = await self.gateway.market_sell(symbol, position.quantity, reference_price=price)
            if not ticket.success:
                error = ticket.error or 'sell rejected'
                logger.error("Close of %s failed (%s); restoring protection", symbol, error)
                await self._record_error('SELL_ORDER_ERROR', symbol, error)
                protection = await self._protect_locked(position)
                self.notifier.send(alerts.ERROR, {
                    'message': f'Failed to close {symbol}: {error}; protection restored: {protection.success}',
                    'symbol': symbol,
                })
                return None
            exit_price = ticket.fill_price or price or position.current_price or position.entry_price
            return await self._finalize_close(position, reason, exit_price)

    async def _finalize_close(self, position: Position, reason: CloseReason, exit_price: float) -> Optional[Position]:
        if not position.is_open:
            logger.warning("Refusing to close %s twice", position.symbol)
            return None
        position.mark(exit_price)
        position.exit_price = exit_price
        position.exit_time = self._clock()
        position.close_reason = reason
        position.status = PositionStatus.CLOSED
        self.positions.pop(position.symbol, None)
        self.closed_positions.append(position)

        await self._persist(position)
        if self.safety_policy is not None:
            self.safety_policy.record_realized_pnl(position.pnl)
        await self.refresh_balance(force=True)
        metrics.record_position_closed(reason.value)
        metrics.record_pnl(position.pnl)
        self._update_metrics()

        logger.info(
            "Closed %s (%s) exit=%.8f pnl=%.4f (%.2f%%)",
            position.symbol,
            reason.value,
            exit_price,
            position.pnl,
            position.pnl_percent,
        )
        self.notifier.send(alerts.POSITION_CLOSED, {
            'message': f'{position.symbol} closed by {reason.value}: pnl {position.pnl:.4f}',
            'position': position.to_dict(),
        })
        return position

    async def _persist(self, position: Position) -> None:
        try:
            await self.store.update_position(position.to_dict())
        except Exception as exc:
            logger.error("Failed to persist position %s: %s", position.symbol, exc)

    def _update_metrics(self) -> None:
        unprotected = sum(1 for p in self.positions.values() if not p.is_protected)
        metrics.update_positions(len(self.positions), unprotected)

    async def run_reconciliation_loop(self):
        self.running = True
        interval = self.settings.reconciliation_interval_s
        try:
            while self.running:
                try:
                    await self.reconcile()
                except asyncio.CancelledError:
                    break
                except Exception:
                    logger.exception("Reconciliation pass failed")
                try:
                    await asyncio.sleep(interval)
                except asyncio.CancelledError:
                    break
        finally:
            self.running = False

    def status(self) -> Dict[str, Any]:
        return {
            'open_positions': [p.to_dict() for p in self.positions.values()],
            'open_count': len(self.positions),
            'max_positions': self.max_positions,
            'closed_count': len(self.closed_positions),
            'realized_pnl': sum(p.pnl for p in self.closed_positions),
            'balance': self.balance,
        }
