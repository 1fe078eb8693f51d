"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) and count (counter) per endpoint
- Active requests (gauge)
- Entitlement resolutions by outcome (counter)
- Paddle API call latency by operation and outcome (histogram)
- Webhook events by type and result (counter)
- Usage recorded and quota rejections per meter (counter)
- Error rates (counter) by error type

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "entitlements_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.005,  # 5ms (fast path, no network)
        0.010,
        0.025,
        0.050,
        0.100,
        0.250,
        0.500,
        1.000,  # 1s (reconciliation round trip)
        2.500,
        5.000,
        10.000,
    ),
)

http_requests_total = Counter(
    "entitlements_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "entitlements_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# ENTITLEMENT METRICS
# ============================================================================

# current | free_rolled | reconciled | lapsed | provisioned | provision_race | unseeded
entitlement_resolutions_total = Counter(
    "entitlements_resolutions_total",
    "Entitlement resolutions by outcome",
    labelnames=["outcome"],
)

# ============================================================================
# PADDLE METRICS
# ============================================================================

paddle_request_duration_seconds = Histogram(
    "entitlements_paddle_request_duration_seconds",
    "Paddle API call latency",
    labelnames=["operation", "outcome"],
    buckets=(0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000, 10.000, 30.000, 120.000),
)

paddle_requests_total = Counter(
    "entitlements_paddle_requests_total",
    "Total Paddle API calls",
    labelnames=["operation", "outcome"],
)

webhook_events_total = Counter(
    "entitlements_webhook_events_total",
    "Paddle webhook events by type and result",
    labelnames=["event_type", "result"],
)

# ============================================================================
# USAGE METRICS
# ============================================================================

usage_recorded_total = Counter(
    "entitlements_usage_recorded_total",
    "Metered usage recorded (minutes, exports or summaries)",
    labelnames=["meter"],
)

quota_rejections_total = Counter(
    "entitlements_quota_rejections_total",
    "Usage requests rejected for exceeding quota or lacking entitlement",
    labelnames=["meter", "reason"],
)

errors_total = Counter(
    "entitlements_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_entitlement_resolution(outcome: str) -> None:
    """Track which branch of entitlement resolution served a request."""
    entitlement_resolutions_total.labels(outcome=outcome).inc()


def track_paddle_request(operation: str, outcome: str, duration_seconds: float) -> None:
    """
    Track a Paddle API call.

    Args:
        operation: Gateway operation (get_subscription, cancel_subscription, ...)
        outcome: success, not_found, error or transport_error
        duration_seconds: Call duration
    """
    paddle_request_duration_seconds.labels(operation=operation, outcome=outcome).observe(
        duration_seconds
    )
    paddle_requests_total.labels(operation=operation, outcome=outcome).inc()


def track_webhook_event(event_type: str, result: str) -> None:
    webhook_events_total.labels(event_type=event_type, result=result).inc()


def track_usage_recorded(meter: str, quantity: int) -> None:
    usage_recorded_total.labels(meter=meter).inc(quantity)


def track_quota_rejection(meter: str, reason: str) -> None:
    """
    Track a rejected usage request.

    Args:
        meter: transcription, export or summary
        reason: not_entitled or quota_exceeded
    """
    quota_rejections_total.labels(meter=meter, reason=reason).inc()


def track_error(error_type: str, endpoint: str) -> None:
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
