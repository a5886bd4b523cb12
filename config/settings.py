"""Typed views over the raw configuration tree.

Components receive these dataclasses instead of reaching into the global
config, so tests can build a complete bot from a plain dict.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

DEFAULT_STABLECOINS = (
    'USDT', 'USDC', 'BUSD', 'TUSD', 'USDP', 'DAI',
    'FRAX', 'GUSD', 'USDJ', 'EUR', 'GBP', 'AUD',
)


class ConfigurationError(Exception):
    """Raised when configuration or an environment profile is unusable."""


def get_config_section(source: Any, section: str) -> Dict:
    """Return a dictionary section from Config, SectionProxy or plain dict objects."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
        return candidate if isinstance(candidate, dict) else {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        to_dict = getattr(candidate, 'to_dict', None)
        if callable(to_dict):
            candidate = to_dict()
        if isinstance(candidate, dict):
            return candidate

    return {}


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _as_float(value: Any, default: float) -> float:
    if value is None or value == '':
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected a number, got {value!r}") from exc


def _as_int(value: Any, default: int) -> int:
    return int(_as_float(value, default))


@dataclass
class TradingSettings:
    quote_asset: str = 'USDT'
    base_order_size: float = 10.0
    max_order_size: float = 100.0
    max_positions: int = 5
    take_profit_pct: float = 0.05
    stop_loss_pct: float = 0.03
    use_oco: bool = True
    stop_limit_offset_pct: float = 0.01
    simulation_mode: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], simulation_mode: bool = False) -> 'TradingSettings':
        return cls(
            quote_asset=str(data.get('quote_asset', 'USDT')).upper(),
            base_order_size=_as_float(data.get('base_order_size'), 10.0),
            max_order_size=_as_float(data.get('max_order_size'), 100.0),
            max_positions=_as_int(data.get('max_positions'), 5),
            take_profit_pct=_as_float(data.get('default_take_profit_pct'), 0.05),
            stop_loss_pct=_as_float(data.get('default_stop_loss_pct'), 0.03),
            use_oco=_as_bool(data.get('use_oco'), True),
            stop_limit_offset_pct=_as_float(data.get('stop_limit_offset_pct'), 0.01),
            simulation_mode=simulation_mode,
        )


@dataclass
class RiskSettings:
    account_risk_pct: float = 0.02
    position_risk_pct: float = 0.01
    balance_utilization: float = 0.95
    high_risk_change_pct: float = 50.0
    environment_adjustment: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RiskSettings':
        return cls(
            account_risk_pct=_as_float(data.get('max_account_risk_pct'), 0.02),
            position_risk_pct=_as_float(data.get('max_position_risk_pct'), 0.01),
            balance_utilization=_as_float(data.get('use_of_balance'), 0.95),
            high_risk_change_pct=_as_float(data.get('high_risk_change_pct'), 50.0),
            environment_adjustment=_as_bool(data.get('environment_adjustment'), False),
        )


@dataclass
class ListingFilterSettings:
    min_volume_24h: float = 1_000_000.0
    exclude_stablecoins: bool = True
    exclude_tokens: Tuple[str, ...] = ()
    stablecoins: Tuple[str, ...] = DEFAULT_STABLECOINS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ListingFilterSettings':
        stablecoins = data.get('stablecoins') or DEFAULT_STABLECOINS
        return cls(
            min_volume_24h=_as_float(data.get('min_volume_24h'), 1_000_000.0),
            exclude_stablecoins=_as_bool(data.get('exclude_stablecoins'), True),
            exclude_tokens=tuple(str(t).upper() for t in (data.get('exclude_tokens') or [])),
            stablecoins=tuple(str(t).upper() for t in stablecoins),
        )


@dataclass
class StreamSettings:
    connect_timeout_s: float = 30.0
    heartbeat_interval_s: float = 30.0
    heartbeat_timeout_s: float = 60.0
    reconnect_max_attempts: int = 5
    reconnect_delay_s: float = 5.0
    polling_interval_s: float = 5.0
    delisting_check_every: int = 12
    queue_size: int = 1000
    detection_window_s: float = 300.0
    processed_cache_size: int = 1000

    @classmethod
    def from_sections(cls, ws: Dict[str, Any], polling: Dict[str, Any],
                      monitor: Dict[str, Any]) -> 'StreamSettings':
        return cls(
            connect_timeout_s=_as_float(ws.get('connect_timeout_s'), 30.0),
            heartbeat_interval_s=_as_float(ws.get('heartbeat_interval_s'), 30.0),
            heartbeat_timeout_s=_as_float(ws.get('heartbeat_timeout_s'), 60.0),
            reconnect_max_attempts=_as_int(ws.get('reconnect_max_attempts'), 5),
            reconnect_delay_s=_as_float(ws.get('reconnect_delay_s'), 5.0),
            polling_interval_s=_as_float(polling.get('interval_s'), 5.0),
            delisting_check_every=_as_int(polling.get('delisting_check_every'), 12),
            queue_size=_as_int(monitor.get('queue_size'), 1000),
            detection_window_s=_as_float(monitor.get('detection_window_s'), 300.0),
            processed_cache_size=_as_int(monitor.get('processed_cache_size'), 1000),
        )


@dataclass
class ExchangeSettings:
    rest_timeout_s: float = 15.0
    recv_window: int = 5000
    weight_limit: int = 1200
    weight_window_s: float = 60.0
    retry_max_attempts: int = 3
    retry_delay_s: float = 1.0
    retry_backoff: float = 2.0
    retry_after_default_s: float = 60.0
    retry_after_max_s: float = 120.0
    symbol_cache_ttl_s: float = 300.0
    balance_refresh_s: float = 60.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExchangeSettings':
        return cls(
            rest_timeout_s=_as_float(data.get('rest_timeout_s'), 15.0),
            recv_window=_as_int(data.get('recv_window'), 5000),
            weight_limit=_as_int(data.get('weight_limit'), 1200),
            weight_window_s=_as_float(data.get('weight_window_s'), 60.0),
            retry_max_attempts=_as_int(data.get('retry_max_attempts'), 3),
            retry_delay_s=_as_float(data.get('retry_delay_s'), 1.0),
            retry_backoff=_as_float(data.get('retry_backoff'), 2.0),
            retry_after_default_s=_as_float(data.get('retry_after_default_s'), 60.0),
            retry_after_max_s=_as_float(data.get('retry_after_max_s'), 120.0),
            symbol_cache_ttl_s=_as_float(data.get('symbol_cache_ttl_s'), 300.0),
            balance_refresh_s=_as_float(data.get('balance_refresh_s'), 60.0),
        )


@dataclass
class SafetySettings:
    daily_loss_multiplier: float = 10.0
    large_order_multiplier: float = 5.0
    min_listing_volume_multiplier: float = 3.0
    audit_log: str = 'logs/order_audit.jsonl'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SafetySettings':
        return cls(
            daily_loss_multiplier=_as_float(data.get('daily_loss_multiplier'), 10.0),
            large_order_multiplier=_as_float(data.get('large_order_multiplier'), 5.0),
            min_listing_volume_multiplier=_as_float(data.get('min_listing_volume_multiplier'), 3.0),
            audit_log=str(data.get('audit_log') or 'logs/order_audit.jsonl'),
        )


@dataclass
class BotSettings:
    trading: TradingSettings = field(default_factory=TradingSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    filters: ListingFilterSettings = field(default_factory=ListingFilterSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)
    exchange: ExchangeSettings = field(default_factory=ExchangeSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    environments: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    default_environment: str = 'testnet'
    reconciliation_interval_s: float = 10.0
    protection_max_attempts: int = 2
    monitoring: Dict[str, Any] = field(default_factory=dict)
    database: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, source: Any = None) -> 'BotSettings':
        if source is None:
            from config.config_loader import config as source

        app = get_config_section(source, 'app')
        simulation_mode = _as_bool(app.get('simulation_mode'), False)
        settings = cls(
            trading=TradingSettings.from_dict(get_config_section(source, 'trading'), simulation_mode),
            risk=RiskSettings.from_dict(get_config_section(source, 'risk')),
            filters=ListingFilterSettings.from_dict(get_config_section(source, 'filters')),
            stream=StreamSettings.from_sections(
                get_config_section(source, 'websocket'),
                get_config_section(source, 'polling'),
                get_config_section(source, 'monitor'),
            ),
            exchange=ExchangeSettings.from_dict(get_config_section(source, 'exchange')),
            safety=SafetySettings.from_dict(get_config_section(source, 'safety')),
            environments=dict(get_config_section(source, 'environments')),
            default_environment=str(app.get('environment') or 'testnet'),
            reconciliation_interval_s=_as_float(
                get_config_section(source, 'reconciliation').get('interval_s'), 10.0
            ),
            protection_max_attempts=_as_int(
                get_config_section(source, 'protection').get('max_attempts'), 2
            ),
            monitoring=dict(get_config_section(source, 'monitoring')),
            database=dict(get_config_section(source, 'database')),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        errors = self.errors()
        if errors:
            raise ConfigurationError('; '.join(errors))

    def errors(self) -> List[str]:
        errors: List[str] = []
        t = self.trading
        r = self.risk
        if t.base_order_size <= 0:
            errors.append('trading.base_order_size must be positive')
        if t.max_order_size < t.base_order_size:
            errors.append('trading.max_order_size must be >= base_order_size')
        if t.max_positions <= 0:
            errors.append('trading.max_positions must be positive')
        for name, value in (
            ('trading.default_take_profit_pct', t.take_profit_pct),
            ('trading.default_stop_loss_pct', t.stop_loss_pct),
            ('risk.max_account_risk_pct', r.account_risk_pct),
            ('risk.max_position_risk_pct', r.position_risk_pct),
            ('risk.use_of_balance', r.balance_utilization),
        ):
            if not 0 < value <= 1:
                errors.append(f'{name} must be within (0, 1]')
        if not 0 <= t.stop_limit_offset_pct < 1:
            errors.append('trading.stop_limit_offset_pct must be within [0, 1)')
        if self.exchange.retry_max_attempts < 1:
            errors.append('exchange.retry_max_attempts must be >= 1')
        if self.exchange.weight_limit <= 0:
            errors.append('exchange.weight_limit must be positive')
        if self.stream.queue_size <= 0:
            errors.append('monitor.queue_size must be positive')
        if self.default_environment not in self.environments:
            errors.append(f"app.environment '{self.default_environment}' has no profile")
        return errors
