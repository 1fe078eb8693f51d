"""
Observability middleware for automatic metric tracking.

PrometheusMiddleware tracks every HTTP request (latency, count, in-flight)
and counts unhandled exceptions by type.
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from entitlements.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_FEATURE_SEGMENT = re.compile(r"/api/user/features/[^/]+")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /api/user/features/archive_access -> /api/user/features/{feature}
        /api/transcription/limits -> /api/transcription/limits (unchanged)
    """
    return _FEATURE_SEGMENT.sub("/api/user/features/{feature}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware for automatic Prometheus metric tracking."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            track_error(error_type=type(exc).__name__, endpoint=endpoint)
            raise
        finally:
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=time.perf_counter() - start_time,
            )

        return response
