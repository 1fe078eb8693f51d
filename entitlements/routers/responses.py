"""Uniform error bodies: ``{"error", "code", "retryable"}``."""

from typing import Any

from fastapi.responses import JSONResponse


def error_response(
    status_code: int, message: str, code: str, retryable: bool, **extra: Any
) -> JSONResponse:
    """
    Build an error response.

    ``retryable`` is False when the user has to act (subscribe, upgrade,
    fix the request) and True for upstream or persistence failures.
    """
    content: dict[str, Any] = {"error": message, "code": code, "retryable": retryable}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)
