from typing import Any, Dict, Optional
import logging
import time

from config.settings import RiskSettings, TradingSettings


logger = logging.getLogger(__name__)

LOW = 'LOW'
MEDIUM = 'MEDIUM'
HIGH = 'HIGH'


class RiskManager:
    def __init__(self, trading: Optional[TradingSettings] = None, risk: Optional[RiskSettings] = None,
                 min_volume_24h: float = 1_000_000.0):
        trading = trading or TradingSettings()
        risk = risk or RiskSettings()
        self.base_order_size = trading.base_order_size
        self.max_order_size = trading.max_order_size
        self.max_positions = trading.max_positions
        self.account_risk_pct = risk.account_risk_pct
        self.position_risk_pct = risk.position_risk_pct
        self.balance_utilization = risk.balance_utilization
        self.high_risk_change_pct = risk.high_risk_change_pct
        self.environment_adjustment = risk.environment_adjustment
        self.min_volume_24h = min_volume_24h

    @classmethod
    def from_settings(cls, settings) -> 'RiskManager':
        return cls(settings.trading, settings.risk, settings.filters.min_volume_24h)

    def size_order(self, balance: float, open_count: int) -> float:
        """Quote amount for the next entry: the tightest of every cap."""
        try:
            caps = {
                'base': self.base_order_size,
                'max_order': self.max_order_size,
                'position_risk': balance * self.position_risk_pct,
                'account_risk': (balance * self.account_risk_pct) / (open_count + 1),
                'available': balance * self.balance_utilization,
            }
            binding = min(caps, key=caps.get)
            size = max(0.0, caps[binding])
            logger.debug("Order size %.4f bound by %s (balance=%.2f open=%s)", size, binding, balance, open_count)
            return size
        except Exception as exc:
            logger.error("Order sizing failed, using base amount: %s", exc)
            return self.base_order_size

    def is_risk_acceptable(self, balance: float, open_count: int, candidate: float,
                           max_positions: Optional[int] = None) -> bool:
        ceiling = max_positions if max_positions is not None else self.max_positions
        if open_count >= ceiling:
            logger.warning("Position ceiling reached (%s/%s)", open_count, ceiling)
            return False
        if candidate > balance * self.balance_utilization:
            logger.warning("Order %.2f exceeds usable balance %.2f", candidate, balance * self.balance_utilization)
            return False
        if candidate * (open_count + 1) > balance * self.account_risk_pct:
            logger.warning(
                "Aggregate exposure %.2f exceeds account risk budget %.2f",
                candidate * (open_count + 1),
                balance * self.account_risk_pct,
            )
            return False
        return True

    def adjust_for_environment(self, size: float, balance: float, is_real_money: bool) -> float:
        if not self.environment_adjustment:
            return size
        if is_real_money:
            return min(size, self.max_order_size * 0.8)
        return min(size * 2, balance * 0.5)

    def assess_listing_risk(self, listing: Any, now: Optional[float] = None) -> Dict[str, Any]:
        """Heuristic risk grade for a fresh listing based on momentum, liquidity and staleness."""
        now = now if now is not None else time.time()
        change = abs(float(getattr(listing, 'price_change_percent', 0.0) or 0.0))
        quote_volume = float(getattr(listing, 'quote_volume', 0.0) or 0.0)
        detected_at = getattr(listing, 'detected_at', None) or now

        level = LOW
        reasons = []
        if change > self.high_risk_change_pct:
            level = HIGH
            reasons.append(f'price moved {change:.1f}% in 24h')
        if quote_volume < self.min_volume_24h:
            level = HIGH if level == HIGH else MEDIUM
            reasons.append(f'quote volume {quote_volume:.0f} below {self.min_volume_24h:.0f}')
        if now - detected_at > 60:
            level = HIGH if level == HIGH else MEDIUM
            reasons.append(f'detected {now - detected_at:.0f}s ago')
        return {'level': level, 'reasons': reasons}
