"""
Stripe webhook signature verification.

Stripe sends `Stripe-Signature: t=<unix ts>,v1=<hex>[,v1=<hex>...]` where
each v1 is HMAC-SHA256(secret, "<t>.<raw body>"). A request is accepted when
any v1 matches and the timestamp is within the tolerance window.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional

import structlog

logger = structlog.get_logger()


class WebhookSignatureError(Exception):
    """Raised when a webhook signature header is missing, malformed or wrong."""


def compute_signature(secret: str, timestamp: str, payload: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[str, list[str]]:
    timestamp = ""
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Raise WebhookSignatureError unless the header signs this payload."""
    if not header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    timestamp, signatures = parse_signature_header(header)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed Stripe-Signature header")

    try:
        ts = int(timestamp)
    except ValueError as e:
        raise WebhookSignatureError("Invalid signature timestamp") from e

    now = time.time() if now is None else now
    if abs(now - ts) > tolerance_seconds:
        logger.warning("stripe_webhook_timestamp_outside_tolerance",
                       age_s=int(now - ts), tolerance_s=tolerance_seconds)
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("No matching v1 signature")
