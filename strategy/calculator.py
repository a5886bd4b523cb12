from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional, Tuple

from strategy.transports.binance import SymbolInfo

IN_PROFIT = "IN_PROFIT"
IN_LOSS = "IN_LOSS"
BREAK_EVEN = "BREAK_EVEN"


def _quantize(value: float, step: Optional[float], rounding) -> float:
    if not step or step <= 0:
        return value
    step_d = Decimal(str(step))
    units = (Decimal(str(value)) / step_d).to_integral_value(rounding=rounding)
    return float(units * step_d)


def floor_to_step(value: float, step: Optional[float]) -> float:
    return _quantize(value, step, ROUND_DOWN)


def round_to_tick(price: float, tick: Optional[float]) -> float:
    return _quantize(price, tick, ROUND_HALF_UP)


def calculate_quantity(
    order_size: float,
    price: float,
    info: Optional[SymbolInfo],
    max_value: Optional[float] = None,
) -> float:
    """Quote amount -> base quantity honoring LOT_SIZE and MIN_NOTIONAL.

    Meeting MIN_NOTIONAL may raise the order value above ``order_size``, but
    never above ``max_value`` (``order_size`` when omitted). Returns 0.0 when
    no valid quantity exists for the symbol.
    """
    if price <= 0 or order_size <= 0:
        return 0.0
    qty = order_size / price
    if info is None:
        return qty

    if info.max_qty:
        qty = min(qty, info.max_qty)
    qty = floor_to_step(qty, info.step_size)

    if info.min_notional and qty * price < info.min_notional:
        # Round up to the next step so the notional filter is actually met
        qty = info.min_notional / price
        if info.step_size:
            stepped = floor_to_step(qty, info.step_size)
            if stepped < qty:
                stepped = float(Decimal(str(stepped)) + Decimal(str(info.step_size)))
            qty = stepped
        cap = order_size if max_value is None else max(max_value, order_size)
        if qty * price > cap:
            return 0.0

    if qty < info.min_qty or qty <= 0:
        return 0.0
    if info.max_qty and qty > info.max_qty:
        return 0.0
    return qty


def calculate_protection_prices(
    entry_price: float,
    take_profit_pct: float,
    stop_loss_pct: float,
    tick_size: Optional[float] = None,
) -> Tuple[float, float]:
    take_profit = round_to_tick(entry_price * (1 + take_profit_pct), tick_size)
    stop_loss = round_to_tick(entry_price * (1 - stop_loss_pct), tick_size)
    return take_profit, stop_loss


def stop_limit_price(stop_price: float, offset_pct: float, tick_size: Optional[float] = None) -> float:
    """Limit price for a stop-loss-limit sell, below the trigger so it can fill in a fast market."""
    raw = Decimal(str(stop_price)) * (Decimal(1) - Decimal(str(offset_pct)))
    return floor_to_step(float(raw), tick_size)


def calculate_pnl(entry_price: float, exit_price: float, quantity: float) -> Tuple[float, float]:
    pnl = (exit_price - entry_price) * quantity
    pnl_percent = ((exit_price / entry_price) - 1) * 100 if entry_price else 0.0
    return pnl, pnl_percent


def pnl_status(pnl_percent: float) -> str:
    if pnl_percent > 0:
        return IN_PROFIT
    if pnl_percent < 0:
        return IN_LOSS
    return BREAK_EVEN
