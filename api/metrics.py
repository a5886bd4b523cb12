import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config
from config.settings import get_config_section


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

_MONITOR_STATES = ('DISCONNECTED', 'CONNECTING', 'CONNECTED', 'DEGRADED', 'TERMINATED')


def _monitoring_section():
    return get_config_section(config, 'monitoring')


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_section().get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.listings_detected = Counter('listings_detected_total', 'New listings detected', ['source'])
        self.delistings_detected = Counter('delistings_detected_total', 'Delistings detected')
        self.dropped_events = Counter('dropped_events_total', 'Total dropped inbound events', ['reason'])
        self.queue_depth = Gauge('queue_depth', 'Internal buffer depth', ['buffer'])

        self.monitor_state = Gauge('stream_monitor_state', 'Market stream monitor state', ['state'])
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.fallback_activations = Counter('polling_fallback_total', 'Switches from push feed to polling')
        self.poll_failures = Counter('poll_failures_total', 'Failed polling cycles')

        self.api_weight_used = Gauge('api_weight_used', 'Request weight used in the current window')
        self.api_errors = Counter('api_errors_total', 'Exchange API errors', ['kind'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to return/ACK')

        self.orders_placed = Counter('orders_placed_total', 'Total orders placed', ['type'])
        self.orders_rejected = Counter('orders_rejected_total', 'Total orders rejected', ['type'])
        self.orders_blocked = Counter('orders_blocked_total', 'Orders blocked by safety policy', ['reason'])
        self.orders_cancelled = Counter('orders_cancelled_total', 'Total orders cancelled')

        self.positions_open = Gauge('positions_open', 'Open positions')
        self.positions_closed = Counter('positions_closed_total', 'Total closed positions', ['reason'])
        self.unprotected_positions = Gauge('positions_unprotected', 'Open positions without protection orders')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')
        self.balance = Gauge('account_balance', 'Free quote asset balance')

    def record_listing(self, source: str):
        self.listings_detected.labels(source=source).inc()

    def record_delisting(self):
        self.delistings_detected.inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)

    def update_monitor_state(self, state: str):
        for candidate in _MONITOR_STATES:
            self.monitor_state.labels(state=candidate).set(1 if candidate == state else 0)

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_fallback(self):
        self.fallback_activations.inc()

    def record_poll_failure(self):
        self.poll_failures.inc()

    def update_api_weight(self, used: int):
        self.api_weight_used.set(used)

    def record_api_error(self, kind: str):
        self.api_errors.labels(kind=kind).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_order_placed(self, order_type: str):
        self.orders_placed.labels(type=order_type).inc()

    def record_order_rejected(self, order_type: str):
        self.orders_rejected.labels(type=order_type).inc()

    def record_order_blocked(self, reason: str):
        self.orders_blocked.labels(reason=reason).inc()

    def record_order_cancelled(self):
        self.orders_cancelled.inc()

    def update_positions(self, open_count: int, unprotected: int = 0):
        self.positions_open.set(open_count)
        self.unprotected_positions.set(unprotected)

    def record_position_closed(self, reason: str):
        self.positions_closed.labels(reason=reason).inc()

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def update_balance(self, balance: float):
        self.balance.set(balance)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
