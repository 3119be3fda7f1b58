"""
Utility functions for the webhook service.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify the provider's X-Hub-Signature-256 header.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex HMAC-SHA256 of body>"
        secret: Provider app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        logger.info("HMAC signature verification: missing or malformed header")
        return False

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature[len(SIGNATURE_PREFIX):])
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def utc_now_iso() -> str:
    """Server time as ISO-8601 UTC with millisecond precision."""
    return _iso(datetime.now(timezone.utc))


def epoch_to_iso(epoch_seconds: str) -> str:
    """
    Convert the provider's string-encoded epoch seconds to ISO-8601 UTC.

    Raises:
        ValueError: if the value is not an integer number of seconds
    """
    return _iso(datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc))
