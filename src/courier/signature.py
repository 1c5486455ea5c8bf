"""HMAC signature generation and verification for webhooks.

Signature Format:
    X-Webhook-Signature: sha256=abc123def456...

The signature is the hex HMAC of the raw request body. Replay protection
comes from the timestamp embedded in the body (``webhook.timestamp``):
a verifier rejects bodies whose timestamp is further from its own clock
than the tolerance, even when the digest matches.

Example:
    >>> from courier.signature import format_signature, sign_payload, verify_signature
    >>>
    >>> secret = "whsec_test_secret_key"
    >>> payload = b'{"event": {"id": "evt_123"}, "webhook": {"timestamp": "..."}}'
    >>>
    >>> header = format_signature(sign_payload(payload, secret))
    >>> print(header)
    'sha256=a1b2c3d4...'
    >>>
    >>> verify_signature(payload, header, secret)
    True
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "SIGNATURE_HEADER",
    "SUPPORTED_ALGORITHMS",
    "TIMESTAMP_HEADER",
    "SignatureError",
    "extract_timestamp",
    "format_signature",
    "parse_signature",
    "sign_payload",
    "verify_signature",
]

# Header names for webhook signatures
SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

SUPPORTED_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha1": hashlib.sha1,
    "sha512": hashlib.sha512,
}


class SignatureError(Exception):
    """Error during signature parsing or generation."""

    pass


def sign_payload(payload: bytes, secret: str, algorithm: str = "sha256") -> str:
    """Generate the HMAC hex digest of a webhook payload.

    Args:
        payload: Raw request body bytes
        secret: Webhook secret for signing
        algorithm: Digest algorithm (sha256, sha1 or sha512)

    Returns:
        Hex-encoded digest

    Raises:
        SignatureError: If the algorithm is not supported
    """
    digestmod = SUPPORTED_ALGORITHMS.get(algorithm)
    if digestmod is None:
        raise SignatureError(f"Unsupported signature algorithm: {algorithm}")

    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=digestmod,
    ).hexdigest()


def format_signature(digest: str, algorithm: str = "sha256") -> str:
    """Format a digest as a signature header value (``algo=digest``)."""
    return f"{algorithm}={digest}"


def parse_signature(signature: str) -> tuple[str, str]:
    """Parse signature header into components.

    A bare hex digest is accepted and treated as sha256.

    Args:
        signature: Signature string (e.g., "sha256=abc123...")

    Returns:
        Tuple of (algorithm, hex_digest)

    Raises:
        SignatureError: If signature format is invalid
    """
    signature = signature.strip()
    if not signature:
        raise SignatureError("Empty signature")

    if "=" in signature:
        algorithm, digest = signature.split("=", 1)
        algorithm = algorithm.strip().lower()
        digest = digest.strip()
    else:
        algorithm, digest = "sha256", signature

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise SignatureError(f"Unsupported signature algorithm: {algorithm}")

    if not digest:
        raise SignatureError("Missing signature digest")

    try:
        bytes.fromhex(digest)
    except ValueError as e:
        raise SignatureError(f"Signature digest is not hex: {digest[:16]}") from e

    return algorithm, digest.lower()


def extract_timestamp(payload: bytes) -> float | None:
    """Read the embedded delivery timestamp from a JSON payload.

    Looks at ``webhook.timestamp`` first, then a top-level ``timestamp``.
    Accepts ISO 8601 strings and Unix seconds.

    Returns:
        Unix timestamp, or None if the payload carries no usable timestamp
    """
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(body, dict):
        return None

    raw: Any = None
    webhook = body.get("webhook")
    if isinstance(webhook, dict):
        raw = webhook.get("timestamp")
    if raw is None:
        raw = body.get("timestamp")

    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def verify_signature(
    payload: bytes,
    signature: str,
    secrets: str | Sequence[str],
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Verify webhook signature with replay protection.

    Args:
        payload: Raw request body bytes
        signature: Signature header value
        secrets: Secret, or list of valid secrets (supports rotation)
        tolerance_seconds: Maximum distance between the embedded timestamp
            and now (default: 5 minutes)
        now: Current Unix time (defaults to time.time())

    Returns:
        True if the digest matches one of the secrets and the embedded
        timestamp (if any) is within tolerance, False otherwise

    Raises:
        SignatureError: If no secrets are provided

    Example:
        >>> payload = b'{"webhook": {"timestamp": "2025-01-01T00:00:00+00:00"}}'
        >>> verify_signature(payload, "sha256=abc123...", ["whsec_current", "whsec_previous"])
        False

    Security Notes:
        - Uses timing-safe comparison to prevent timing attacks
        - Enforces the embedded timestamp to blunt replay
        - Supports multiple secrets for zero-downtime rotation
    """
    if isinstance(secrets, str):
        secrets = [secrets]
    if not secrets:
        raise SignatureError("No secrets provided for verification")

    try:
        algorithm, provided = parse_signature(signature)
    except SignatureError:
        return False

    matched = False
    for secret in secrets:
        expected = sign_payload(payload, secret, algorithm)
        # Timing-safe comparison
        if hmac.compare_digest(expected, provided):
            matched = True
            break

    if not matched:
        return False

    timestamp = extract_timestamp(payload)
    if timestamp is None:
        return True

    current_time = time.time() if now is None else now
    return abs(current_time - timestamp) <= tolerance_seconds
