"""
Prometheus Metrics Service for the Trade Lifecycle Engine

Tracks:
- Monitor cycles (count, duration, errors)
- Lifecycle transitions by event type
- Price feed failures
- Open positions and circuit breaker state
- API latencies
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST, CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
import time
import logging

logger = logging.getLogger(__name__)

# Create a custom registry to avoid conflicts
registry = CollectorRegistry()

# ============== MONITOR CYCLE METRICS ==============
monitor_cycles_total = Counter(
    'lifecycle_monitor_cycles_total',
    'Total number of monitor cycles run',
    ['status'],
    registry=registry
)

monitor_cycle_duration = Histogram(
    'lifecycle_monitor_cycle_duration_seconds',
    'Time spent in one monitor cycle',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry
)

lifecycle_errors_total = Counter(
    'lifecycle_errors_total',
    'Per-position errors by kind',
    ['kind'],
    registry=registry
)

# ============== TRADING METRICS ==============
lifecycle_transitions_total = Counter(
    'lifecycle_transitions_total',
    'Lifecycle events written',
    ['event_type'],
    registry=registry
)

trades_closed_total = Counter(
    'lifecycle_trades_closed_total',
    'Fully resolved trades',
    ['outcome', 'exit_reason'],
    registry=registry
)

open_positions_gauge = Gauge(
    'lifecycle_open_positions',
    'Positions under management at the end of the last cycle',
    registry=registry
)

bot_paused_gauge = Gauge(
    'lifecycle_bot_paused',
    'Circuit breaker state (1=paused, 0=running)',
    registry=registry
)

# ============== PRICE FEED METRICS ==============
price_fetch_failures_total = Counter(
    'lifecycle_price_fetch_failures_total',
    'Price oracle failures (timeouts included)',
    ['symbol'],
    registry=registry
)

price_fetch_latency = Histogram(
    'lifecycle_price_fetch_latency_seconds',
    'Price oracle call latency',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry
)

# ============== API METRICS ==============
api_request_duration = Histogram(
    'lifecycle_api_request_duration_seconds',
    'API request duration',
    ['method', 'endpoint', 'status'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry
)

http_request_size = Histogram(
    'lifecycle_http_request_size_bytes',
    'HTTP request size in bytes',
    ['method', 'endpoint'],
    registry=registry
)

# ============== SYSTEM METRICS ==============
component_status_gauge = Gauge(
    'lifecycle_component_status',
    'Component status (1=up, 0=down)',
    ['component'],
    registry=registry
)


class MetricsService:
    """Service for managing Prometheus metrics"""

    def __init__(self):
        self.instrumentator = None
        self._start_time = time.time()

    def init_fastapi_instrumentation(self, app):
        """Initialize FastAPI instrumentation"""
        self.instrumentator = Instrumentator(
            should_group_status_codes=False,
            should_ignore_untemplated=True,
            should_respect_env_var=True,
            excluded_handlers=["/metrics", "/api/health"],
            env_var_name="ENABLE_METRICS",
        )

        self.instrumentator.add(self._http_request_duration_metric())
        self.instrumentator.add(self._http_request_size_metric())

        self.instrumentator.instrument(app)

        logger.info("FastAPI instrumentation initialized")

    def _http_request_duration_metric(self):
        """HTTP request duration by route"""
        def instrumentation(info):
            api_request_duration.labels(
                method=info.request.method,
                endpoint=info.modified_handler,
                status=info.response.status_code if info.response else 500
            ).observe(info.modified_duration)
        return instrumentation

    def _http_request_size_metric(self):
        """HTTP request size by route"""
        def instrumentation(info):
            if info.request.headers.get("content-length"):
                http_request_size.labels(
                    method=info.request.method,
                    endpoint=info.modified_handler
                ).observe(int(info.request.headers["content-length"]))
        return instrumentation

    # ============== MONITOR METHODS ==============
    def record_cycle(self, status: str, duration: float):
        """Record a finished monitor cycle"""
        monitor_cycles_total.labels(status=status).inc()
        monitor_cycle_duration.observe(duration)

    def record_error(self, kind: str):
        lifecycle_errors_total.labels(kind=kind).inc()

    # ============== TRADING METHODS ==============
    def record_transition(self, event_type: str):
        """Record a persisted lifecycle event"""
        lifecycle_transitions_total.labels(event_type=event_type).inc()

    def record_trade_closed(self, outcome: str, exit_reason: str):
        trades_closed_total.labels(outcome=outcome, exit_reason=exit_reason).inc()

    def update_open_positions(self, count: int):
        open_positions_gauge.set(count)

    def update_bot_paused(self, paused: bool):
        bot_paused_gauge.set(1 if paused else 0)

    # ============== PRICE FEED METHODS ==============
    def record_price_failure(self, symbol: str):
        price_fetch_failures_total.labels(symbol=symbol).inc()

    def record_price_latency(self, duration: float):
        price_fetch_latency.observe(duration)

    # ============== SYSTEM METHODS ==============
    def update_component_status(self, component: str, is_up: bool):
        """Update component status"""
        component_status_gauge.labels(component=component).set(1 if is_up else 0)

    def get_uptime(self) -> float:
        """Get service uptime in seconds"""
        return time.time() - self._start_time


# Global metrics service instance
metrics_service = MetricsService()


def get_metrics():
    """Generate Prometheus metrics"""
    return generate_latest(registry)


def get_metrics_content_type():
    """Get Prometheus metrics content type"""
    return CONTENT_TYPE_LATEST
