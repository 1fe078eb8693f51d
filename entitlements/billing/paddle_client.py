"""
Paddle Billing API client.

Thin async gateway over the Paddle REST API:
- Bearer-token auth, JSON in and out, no response caching
- Non-2xx responses become PaddleError with the most specific message available
- 404 becomes PaddleNotFoundError so callers can tell "gone" from "unreachable"
- No automatic retries: callers decide whether a failure is fatal
"""

import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError

from entitlements.config import ConfigurationError, PaddleConfig
from entitlements.models.paddle import PaddleSubscription, PaddleUrlPayload
from entitlements.observability.metrics import track_paddle_request

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY_CHARS = 500


class PaddleError(Exception):
    """Paddle API call failed (transport error, timeout or non-2xx response)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PaddleNotFoundError(PaddleError):
    """The requested Paddle resource does not exist."""

    pass


class PaddleConfigurationError(ConfigurationError):
    """Paddle credentials are missing."""

    pass


def extract_error_message(response: httpx.Response) -> str:
    """
    Pick the most specific error message from a failed Paddle response.

    Order: ``error.message``, then ``message``, then the raw body text.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if payload.get("message"):
            return str(payload["message"])

    body = response.text[:_MAX_ERROR_BODY_CHARS]
    return f"Paddle request failed ({response.status_code}): {body}"


class PaddleClient:
    """
    Async Paddle API client.

    One instance is created at application startup and shared; the
    underlying httpx connection pool is closed on shutdown.
    """

    def __init__(self, config: PaddleConfig, transport: httpx.AsyncBaseTransport | None = None):
        """
        Initialize Paddle client.

        Args:
            config: Paddle configuration
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
            transport=transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Cache-Control": "no-cache",
            },
        )

        if not config.is_configured:
            logger.warning("Paddle API key not configured - remote reconciliation disabled")

    @property
    def is_enabled(self) -> bool:
        return self.config.is_configured

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Perform one API call.

        Returns:
            Decoded JSON body, or None for 204 / empty responses

        Raises:
            PaddleConfigurationError: If no API key is configured
            PaddleNotFoundError: On 404
            PaddleError: On transport failure, timeout or any other non-2xx
        """
        if not self.config.is_configured:
            raise PaddleConfigurationError("PADDLE_API_KEY is not set")

        start_time = time.perf_counter()
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
        except httpx.TimeoutException as e:
            track_paddle_request(operation, "timeout", time.perf_counter() - start_time)
            logger.error(
                "Paddle request timed out",
                extra={"operation": operation, "path": path},
            )
            raise PaddleError(f"Paddle request timed out ({operation})") from e
        except httpx.HTTPError as e:
            track_paddle_request(operation, "transport_error", time.perf_counter() - start_time)
            logger.error(
                "Paddle request failed",
                extra={"operation": operation, "path": path, "error": str(e)},
            )
            raise PaddleError(f"Paddle request failed ({operation}): {e}") from e

        duration = time.perf_counter() - start_time

        if response.status_code == 404:
            track_paddle_request(operation, "not_found", duration)
            raise PaddleNotFoundError(extract_error_message(response), status_code=404)

        if response.is_error:
            track_paddle_request(operation, "error", duration)
            message = extract_error_message(response)
            logger.error(
                "Paddle returned error response",
                extra={
                    "operation": operation,
                    "path": path,
                    "status_code": response.status_code,
                    "error": message,
                },
            )
            raise PaddleError(message, status_code=response.status_code)

        track_paddle_request(operation, "success", duration)

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise PaddleError(
                f"Paddle returned a non-JSON body ({operation})", status_code=response.status_code
            ) from e

    @staticmethod
    def _subscription_from(payload: dict[str, Any] | None) -> PaddleSubscription | None:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return None
        try:
            return PaddleSubscription.model_validate(data)
        except ValidationError as e:
            raise PaddleError("Paddle returned an unexpected payload (subscription)") from e

    @staticmethod
    def _url_from(payload: dict[str, Any] | None) -> str | None:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return None
        try:
            return PaddleUrlPayload.model_validate(data).resolved_url
        except ValidationError as e:
            raise PaddleError("Paddle returned an unexpected payload (url)") from e

    async def get_subscription(self, subscription_id: str) -> PaddleSubscription:
        """
        Fetch a subscription.

        Raises:
            PaddleNotFoundError: If Paddle has no such subscription (or returns no data)
        """
        payload = await self._request("get_subscription", "GET", f"/subscriptions/{subscription_id}")
        subscription = self._subscription_from(payload)
        if subscription is None:
            raise PaddleNotFoundError(f"Paddle returned no data for subscription {subscription_id}")
        return subscription

    async def update_subscription(
        self, subscription_id: str, body: dict[str, Any], operation: str = "update_subscription"
    ) -> PaddleSubscription | None:
        """PATCH a subscription with an arbitrary body."""
        payload = await self._request(operation, "PATCH", f"/subscriptions/{subscription_id}", json=body)
        return self._subscription_from(payload)

    async def change_price(
        self, subscription_id: str, price_id: str, quantity: int = 1
    ) -> PaddleSubscription | None:
        """Replace the subscription items and bill the prorated difference now."""
        return await self.update_subscription(
            subscription_id,
            {
                "items": [{"price_id": price_id, "quantity": quantity}],
                "proration_billing_mode": "prorated_immediately",
            },
            operation="change_price",
        )

    async def clear_scheduled_change(self, subscription_id: str) -> PaddleSubscription | None:
        """Undo a pending scheduled change (e.g. a cancellation at period end)."""
        return await self.update_subscription(
            subscription_id, {"scheduled_change": None}, operation="clear_scheduled_change"
        )

    async def schedule_change(
        self, subscription_id: str, price_id: str, quantity: int = 1
    ) -> PaddleSubscription | None:
        """Schedule an item update to take effect at the next renewal."""
        payload = await self._request(
            "schedule_change",
            "POST",
            f"/subscriptions/{subscription_id}/schedule_change",
            json={
                "action": "update",
                "items": [{"price_id": price_id, "quantity": quantity}],
                "effective_at": "next_billing_period",
            },
        )
        return self._subscription_from(payload)

    async def cancel_subscription(
        self, subscription_id: str, effective_from: str = "next_billing_period"
    ) -> PaddleSubscription | None:
        """Cancel a subscription (by default at the end of the current period)."""
        payload = await self._request(
            "cancel_subscription",
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            json={"effective_from": effective_from},
        )
        return self._subscription_from(payload)

    async def create_portal_session(self, customer_id: str, return_url: str) -> str | None:
        """Create a hosted billing portal session and return its URL."""
        payload = await self._request(
            "create_portal_session",
            "POST",
            "/billing-portal/sessions",
            json={"customer_id": customer_id, "return_url": return_url},
        )
        return self._url_from(payload)

    async def create_update_payment_method_link(
        self, subscription_id: str, return_url: str
    ) -> str | None:
        """Create a hosted update-payment-method link for a subscription."""
        payload = await self._request(
            "update_payment_method",
            "POST",
            f"/subscriptions/{subscription_id}/update-payment-method",
            json={"success_url": return_url, "cancel_url": return_url},
        )
        return self._url_from(payload)

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()
