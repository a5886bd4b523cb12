import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from api.metrics import metrics
from monitoring.order_auditor import OrderAuditor


logger = logging.getLogger(__name__)

ORDER_ATTEMPT = 'ORDER_ATTEMPT'
ORDER_BLOCKED = 'ORDER_BLOCKED'
ORDER_SUCCESS = 'ORDER_SUCCESS'
ORDER_ERROR = 'ORDER_ERROR'


@dataclass
class SafetyDecision:
    allowed: bool
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class DailyStats:
    day: str
    realized_pnl: float = 0.0
    realized_loss: float = 0.0
    trades: int = 0
    blocked: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            'day': self.day,
            'realized_pnl': self.realized_pnl,
            'realized_loss': self.realized_loss,
            'trades': self.trades,
            'blocked': self.blocked,
        }


def _utc_day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%Y-%m-%d')


class SafetyPolicy:
    """Extra guard rails for real-money environments.

    Entries are blocked when the notional exceeds ``max_order_value`` or when
    today's realized loss plus the candidate's risk would pass
    ``daily_loss_limit``. Every decision is written to the audit trail.
    """

    def __init__(
        self,
        max_order_value: float,
        daily_loss_limit: float,
        quote_asset: str = 'USDT',
        large_order_threshold: Optional[float] = None,
        auditor: Optional[OrderAuditor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_order_value = max_order_value
        self.daily_loss_limit = daily_loss_limit
        self.quote_asset = quote_asset
        self.large_order_threshold = large_order_threshold
        self.auditor = auditor or OrderAuditor()
        self._clock = clock
        self.daily = DailyStats(day=_utc_day(clock()))

    @classmethod
    def from_settings(cls, settings, max_order_value: Optional[float] = None,
                      auditor: Optional[OrderAuditor] = None) -> 'SafetyPolicy':
        trading = settings.trading
        return cls(
            max_order_value=max_order_value or trading.max_order_size,
            daily_loss_limit=trading.base_order_size * settings.safety.daily_loss_multiplier,
            quote_asset=trading.quote_asset,
            large_order_threshold=trading.base_order_size * settings.safety.large_order_multiplier,
            auditor=auditor,
        )

    def _roll_day(self) -> None:
        today = _utc_day(self._clock())
        if today != self.daily.day:
            logger.info("Daily safety stats reset (previous: %s)", self.daily.as_dict())
            self.daily = DailyStats(day=today)

    def check_order(self, symbol: str, side: str, notional: float, risk_amount: float = 0.0) -> SafetyDecision:
        self._roll_day()
        details = {'symbol': symbol, 'side': side, 'notional': notional, 'risk_amount': risk_amount}
        self.auditor.record(ORDER_ATTEMPT, details)

        decision = self._evaluate(symbol, side, notional, risk_amount)
        for warning in decision.warnings:
            logger.warning("Safety warning for %s: %s", symbol, warning)
        if not decision.allowed:
            self.daily.blocked += 1
            metrics.record_order_blocked(decision.reason or 'unknown')
            logger.warning("Order blocked for %s: %s", symbol, decision.reason)
            self.auditor.record(ORDER_BLOCKED, {**details, 'reason': decision.reason})
        return decision

    def _evaluate(self, symbol: str, side: str, notional: float, risk_amount: float) -> SafetyDecision:
        warnings: List[str] = []
        if not symbol.endswith(self.quote_asset):
            return SafetyDecision(False, f'symbol is not quoted in {self.quote_asset}')
        if side.upper() != 'BUY':
            # Exits only ever reduce exposure
            return SafetyDecision(True)
        if notional > self.max_order_value:
            return SafetyDecision(
                False,
                f'order value {notional:.2f} exceeds limit {self.max_order_value:.2f}',
            )
        projected = self.daily.realized_loss + max(risk_amount, 0.0)
        if projected > self.daily_loss_limit:
            return SafetyDecision(
                False,
                f'daily loss limit reached ({projected:.2f} > {self.daily_loss_limit:.2f})',
            )
        if self.large_order_threshold and notional > self.large_order_threshold:
            warnings.append(f'large order {notional:.2f} above {self.large_order_threshold:.2f}')
        return SafetyDecision(True, warnings=warnings)

    def record_success(self, symbol: str, order: Dict[str, Any]) -> None:
        self._roll_day()
        self.daily.trades += 1
        self.auditor.record(ORDER_SUCCESS, {'symbol': symbol, 'order': order})

    def record_error(self, symbol: str, error: str) -> None:
        self.auditor.record(ORDER_ERROR, {'symbol': symbol, 'error': error})

    def record_realized_pnl(self, pnl: float) -> None:
        self._roll_day()
        self.daily.realized_pnl += pnl
        if pnl < 0:
            self.daily.realized_loss += -pnl

    def remaining_loss_budget(self) -> float:
        self._roll_day()
        return max(0.0, self.daily_loss_limit - self.daily.realized_loss)

    def report(self) -> Dict[str, Any]:
        self._roll_day()
        return {
            'max_order_value': self.max_order_value,
            'daily_loss_limit': self.daily_loss_limit,
            'remaining_loss_budget': self.remaining_loss_budget(),
            'daily': self.daily.as_dict(),
        }
