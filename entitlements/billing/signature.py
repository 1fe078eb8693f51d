"""
Paddle webhook signature verification.

Header format: ``Paddle-Signature: ts=1699999999;h1=<hex hmac>``
Signed payload: ``"{ts}:{raw body}"`` with HMAC-SHA256 over the endpoint secret.

Verification never raises: a missing header, missing secret, malformed
structure or stale timestamp is a rejection, indistinguishable from a forged
signature.
"""

import hashlib
import hmac
import logging
import time

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Paddle-Signature"


def parse_signature_header(header: str | None) -> tuple[str, str] | None:
    """
    Split a Paddle-Signature header into (timestamp, hex digest).

    Returns:
        tuple or None if either part is missing
    """
    if not header:
        return None

    fields: dict[str, str] = {}
    for part in header.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep and key and value:
            fields[key] = value

    ts = fields.get("ts")
    h1 = fields.get("h1")
    if not ts or not h1:
        return None
    return ts, h1


def compute_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of ``"{timestamp}:{raw_body}"``."""
    signed_payload = timestamp.encode("utf-8") + b":" + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_paddle_signature(
    raw_body: bytes,
    header: str | None,
    secret: str | None,
    tolerance_seconds: int = 0,
    now: float | None = None,
) -> bool:
    """
    Verify a Paddle webhook signature.

    Args:
        raw_body: Request body exactly as received
        header: Value of the Paddle-Signature header
        secret: Endpoint secret key
        tolerance_seconds: Max distance between ``ts`` and ``now`` (0 = unchecked)
        now: Current unix time (defaults to the system clock)

    Returns:
        bool: True only if the timestamp is fresh and the digest matches byte for byte
    """
    if not secret:
        logger.error("Webhook signature check failed: endpoint secret not configured")
        return False

    parsed = parse_signature_header(header)
    if parsed is None:
        logger.warning("Webhook signature header missing or malformed")
        return False

    timestamp, received = parsed
    if tolerance_seconds > 0 and not _is_fresh(timestamp, tolerance_seconds, now):
        return False

    try:
        received_bytes = bytes.fromhex(received)
    except ValueError:
        logger.warning("Webhook signature digest is not hex")
        return False

    expected_bytes = bytes.fromhex(compute_signature(raw_body, timestamp, secret))
    if len(received_bytes) != len(expected_bytes):
        return False

    # Constant-time comparison (prevents timing attacks)
    return hmac.compare_digest(received_bytes, expected_bytes)


def _is_fresh(timestamp: str, tolerance_seconds: int, now: float | None) -> bool:
    try:
        signed_at = int(timestamp)
    except ValueError:
        logger.warning("Webhook signature timestamp is not an integer")
        return False

    current_time = time.time() if now is None else now
    age_seconds = current_time - signed_at
    if age_seconds > tolerance_seconds:
        logger.warning(
            f"Webhook signature expired: age={age_seconds:.0f}s, tolerance={tolerance_seconds}s"
        )
        return False
    if age_seconds < -tolerance_seconds:
        logger.warning(f"Webhook signature timestamp in future: skew={abs(age_seconds):.0f}s")
        return False
    return True


def build_signature_header(raw_body: bytes, secret: str, timestamp: int | None = None) -> str:
    """
    Build a Paddle-Signature header value for a body.

    Used to sign simulated deliveries when exercising a webhook endpoint.
    """
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return f"ts={ts};h1={compute_signature(raw_body, ts, secret)}"
