"""
FastAPI application for the entitlements service.

Provides REST API for:
- Quota checks and usage recording (transcription, exports, summaries)
- Current plan, subscription status and feature gates
- Billing operations (auto-renew, plan change, payment method)
- Paddle webhook ingestion
- Health monitoring and Prometheus metrics
"""

from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from entitlements.billing.operations import (
    InvalidPlanChangeError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from entitlements.billing.paddle_client import PaddleError
from entitlements.billing.usage import EntitlementUnavailableError
from entitlements.billing.webhooks import WebhookPayloadError, WebhookSignatureError
from entitlements.config import ConfigurationError, Settings, get_settings
from entitlements.observability.logging import configure_logging, get_logger
from entitlements.observability.logging_middleware import (
    SlowRequestLogger,
    StructuredLoggingMiddleware,
)
from entitlements.observability.metrics import generate_metrics, track_error
from entitlements.observability.middleware import PrometheusMiddleware
from entitlements.rate_limits import limiter
from entitlements.routers import subscription_router, usage_router, user_router, webhooks_router
from entitlements.routers.responses import error_response
from entitlements.services import EntitlementServices
from entitlements.storage.database import StorageError
from entitlements.utils.periods import utcnow

logger = get_logger(__name__)

# (status code, error code, retryable) per domain exception.
# Handlers are looked up along the exception's MRO, so subclasses
# (PaddleNotFoundError, PaddleConfigurationError) inherit their parent's entry.
ERROR_RESPONSES: dict[type[Exception], tuple[int, str, bool]] = {
    ConfigurationError: (status.HTTP_503_SERVICE_UNAVAILABLE, "not_configured", True),
    PaddleError: (status.HTTP_502_BAD_GATEWAY, "upstream_error", True),
    StorageError: (status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", True),
    SubscriptionNotFoundError: (status.HTTP_404_NOT_FOUND, "subscription_not_found", False),
    SubscriptionConflictError: (status.HTTP_409_CONFLICT, "subscription_conflict", False),
    InvalidPlanChangeError: (status.HTTP_400_BAD_REQUEST, "invalid_request", False),
    EntitlementUnavailableError: (status.HTTP_403_FORBIDDEN, "not_entitled", False),
    WebhookSignatureError: (status.HTTP_401_UNAUTHORIZED, "invalid_signature", False),
    WebhookPayloadError: (status.HTTP_400_BAD_REQUEST, "invalid_payload", False),
}

HTTP_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: "invalid_request",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
}


async def domain_error_handler(request: Request, exc: Exception) -> Response:
    """Map a domain exception to its status code and uniform body."""
    for exc_type in type(exc).__mro__:
        if exc_type in ERROR_RESPONSES:
            status_code, code, retryable = ERROR_RESPONSES[exc_type]
            break
    else:
        status_code, code, retryable = status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", True

    message = str(exc)
    if status_code >= 500:
        track_error(type(exc).__name__, request.url.path)
        logger.error(
            "Request failed",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=message,
        )
        if isinstance(exc, StorageError):
            # Driver messages are not for end users
            message = "Internal error, please try again"
    else:
        logger.warning(
            "Request rejected",
            path=request.url.path,
            method=request.method,
            code=code,
            error=message,
        )
    return error_response(status_code, message, code, retryable)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    response = error_response(
        exc.status_code,
        str(exc.detail),
        HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
        exc.status_code >= 500,
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    """Handle request body and parameter validation errors."""
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, message, "invalid_request", False)


async def value_error_handler(request: Request, exc: ValueError) -> Response:
    """Handle validation errors raised below the HTTP layer."""
    logger.warning(f"Validation error on {request.url.path}: {exc}")
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), "invalid_request", False)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    return error_response(
        status.HTTP_429_TOO_MANY_REQUESTS,
        f"Rate limit exceeded: {exc.detail}",
        "rate_limited",
        True,
    )


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to the global settings)
        transport: Optional httpx transport for the Paddle client (tests)
        clock: Source of "now" shared by every component
    """
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
        service_name=settings.logging.service_name,
        service_version=settings.logging.service_version,
        environment=settings.logging.environment,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Opens the row store and the Paddle client on startup and closes
        them on shutdown.
        """
        logger.info("=== Entitlements Service Starting ===")
        services = await EntitlementServices.create(settings, transport=transport, clock=clock)
        app.state.services = services
        logger.info(
            "=== Service Ready ===",
            paddle_configured=settings.paddle.is_configured,
            webhook_secret_configured=bool(settings.paddle.endpoint_secret_key),
        )
        try:
            yield
        finally:
            logger.info("=== Shutting down ===")
            await services.close()
            logger.info("=== Shutdown complete ===")

    app = FastAPI(
        title="Entitlements API",
        description="Subscription reconciliation, quota enforcement and Paddle billing operations",
        version=settings.logging.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Rate limiter state
    app.state.limiter = limiter

    for exc_type in ERROR_RESPONSES:
        app.add_exception_handler(exc_type, domain_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    cors_origins = settings.cors.origins_list
    if "*" in cors_origins:
        logger.warning(
            "CORS allows ALL origins (*) - configure CORS_ALLOWED_ORIGINS for production!"
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=settings.cors.methods_list,
        allow_headers=settings.cors.headers_list,
        max_age=settings.cors.max_age,
    )

    # Processed in reverse order of registration:
    # PrometheusMiddleware (innermost), SlowRequestLogger, StructuredLoggingMiddleware (outermost)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        SlowRequestLogger,
        warning_threshold_ms=settings.logging.slow_request_warning_ms,
        error_threshold_ms=settings.logging.slow_request_error_ms,
    )
    app.add_middleware(StructuredLoggingMiddleware)

    app.include_router(usage_router)
    app.include_router(user_router)
    app.include_router(subscription_router)
    app.include_router(webhooks_router)

    @app.get("/health", tags=["Health"])
    async def health(request: Request):
        """
        Readiness summary.

        Degraded when the Free plan is missing: new users cannot be
        provisioned until the catalog is seeded.
        """
        services: EntitlementServices = request.app.state.services
        free_plan = await services.database.get_plan_by_name(settings.entitlement.free_plan_name)
        return {
            "status": "healthy" if free_plan is not None else "degraded",
            "free_plan_seeded": free_plan is not None,
            "paddle_configured": settings.paddle.is_configured,
            "webhook_secret_configured": bool(settings.paddle.endpoint_secret_key),
        }

    @app.get("/metrics", tags=["Health"])
    async def metrics():
        """Prometheus metrics in exposition format."""
        data, content_type = generate_metrics()
        return Response(content=data, media_type=content_type)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    service = get_settings().service
    uvicorn.run(
        "entitlements.main:app",
        host=service.host,
        port=service.port,
        reload=service.reload,
        workers=service.workers,
    )
