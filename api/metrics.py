import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.orders_placed = Counter('orders_placed_total', 'Total orders submitted', ['direction'])
        self.orders_filled = Counter('orders_filled_total', 'Total orders reported filled', ['direction'])
        self.orders_rejected = Counter('orders_rejected_total', 'Total orders refused by the broker')
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to report')

        self.stream_messages = Counter('stream_messages_total', 'Market data payloads received', ['topic'])
        self.stream_reconnects = Counter('stream_reconnects_total', 'Market data stream restarts')

        self.session_events = Counter('session_events_total', 'Session timer events emitted', ['event'])
        self.pnl_realized = Gauge('pnl_realized_total', 'Realized P/L summed over all sells')
        self.open_positions = Gauge('open_positions', 'Instruments currently held by the executor')

        self.backtest_configs = Counter('backtest_configs_evaluated_total', 'Backtest configurations evaluated')

    def record_order_placed(self, direction: str):
        self.orders_placed.labels(direction=direction).inc()

    def record_order_filled(self, direction: str):
        self.orders_filled.labels(direction=direction).inc()

    def record_order_rejected(self):
        self.orders_rejected.inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(max(0.0, latency_seconds))

    def record_stream_message(self, topic: str):
        self.stream_messages.labels(topic=topic).inc()

    def record_stream_reconnect(self):
        self.stream_reconnects.inc()

    def record_session_event(self, event: str):
        self.session_events.labels(event=event).inc()

    def record_pnl(self, total: float):
        self.pnl_realized.set(total)

    def update_open_positions(self, count: int):
        self.open_positions.set(count)

    def record_backtest_config(self):
        self.backtest_configs.inc()


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
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
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
