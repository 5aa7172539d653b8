"""
Prometheus metrics blueprint.

Exposes /metrics with HTTP request metrics and the settlement metrics
(quote conversions, voucher redemptions, expiry sweep, settlement latency).
Restrict it to the monitoring network in production.
"""
from contextlib import contextmanager
from flask import Blueprint, Response, request, g
from prometheus_client import Counter, Histogram, generate_latest, CollectorRegistry, CONTENT_TYPE_LATEST
from prometheus_client import multiprocess, REGISTRY
import time
import os

metrics_bp = Blueprint('metrics', __name__)

# Multi-process mode under Gunicorn
MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

if MULTIPROCESS_MODE:
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
else:
    registry = REGISTRY

_REGISTER_IN = None if MULTIPROCESS_MODE else registry

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'blueprint', 'http_status'],
    registry=_REGISTER_IN
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['method', 'blueprint'],
    registry=_REGISTER_IN,
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# Settlement metrics
quote_conversions_total = Counter(
    'quote_conversions_total',
    'Quote to order conversions by result',
    ['result'],  # converted, already_converted, rejected, failed
    registry=_REGISTER_IN
)

voucher_redemptions_total = Counter(
    'voucher_redemptions_total',
    'Voucher debits by settlement flow',
    ['flow'],  # quote, checkout
    registry=_REGISTER_IN
)

quotes_expired_total = Counter(
    'quotes_expired_total',
    'Quotes moved to EXPIRED by the sweep',
    registry=_REGISTER_IN
)

settlement_duration_seconds = Histogram(
    'settlement_duration_seconds',
    'Time spent inside a settlement transaction',
    ['operation'],  # convert_to_order, checkout, confirm_payment
    registry=_REGISTER_IN,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
)


@contextmanager
def track_settlement(operation):
    """Observe the duration of a settlement, successful or not."""
    started = time.perf_counter()
    try:
        yield
    finally:
        settlement_duration_seconds.labels(operation=operation).observe(time.perf_counter() - started)


def setup_metrics_instrumentation(app):
    """Register before/after request hooks that record HTTP metrics."""

    @app.before_request
    def before_request_metrics():
        g._metrics_started = time.perf_counter()

    @app.after_request
    def after_request_metrics(response):
        started = g.pop('_metrics_started', None)
        if started is None:
            return response
        try:
            blueprint = request.blueprint or 'app'
            http_request_duration_seconds.labels(
                method=request.method, blueprint=blueprint
            ).observe(time.perf_counter() - started)
            http_requests_total.labels(
                method=request.method, blueprint=blueprint, http_status=response.status_code
            ).inc()
        except Exception as e:
            # Metrics never break the request
            app.logger.warning(f"Failed to record metrics: {e}")
        return response


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus metrics endpoint (unauthenticated, firewall it)."""
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)
