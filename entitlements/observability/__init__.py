"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- logging_middleware.py / middleware.py: request logging and metric middleware
"""

from entitlements.observability.metrics import (
    track_entitlement_resolution,
    track_paddle_request,
    track_quota_rejection,
    track_request,
    track_usage_recorded,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_entitlement_resolution",
    "track_paddle_request",
    "track_webhook_event",
    "track_usage_recorded",
    "track_quota_rejection",
]
