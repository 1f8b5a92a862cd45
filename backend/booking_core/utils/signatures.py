import hashlib
import hmac
import logging
import time
from typing import Optional, Tuple

from . import metrics
from .errors import AuthenticityError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Gateway-Signature"


def _hmac_hex(secret: str, timestamp: int, raw: bytes) -> str:
    signed = f"{int(timestamp)}.".encode("utf-8") + raw
    return hmac.new(key=secret.encode("utf-8"), msg=signed, digestmod=hashlib.sha256).hexdigest()


def sign_payload(secret: str, raw: bytes, timestamp: Optional[int] = None) -> str:
    """Build a ``t=<unix>,v1=<hex>`` header value for ``raw``."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={_hmac_hex(secret, ts, raw)}"


def _parse_header(header: str) -> Tuple[Optional[int], list]:
    ts: Optional[int] = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                ts = int(value)
            except ValueError:
                ts = None
        elif key == "v1" and value:
            candidates.append(value)
    return ts, candidates


def _reject(reason: str) -> AuthenticityError:
    metrics.incr("webhook.signature_rejected", tags={"reason": reason})
    return AuthenticityError("Webhook signature verification failed", {"signature": reason})


def verify_signature(
    raw: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[int] = None,
) -> int:
    """Check ``header`` against ``raw``; returns the signed timestamp.

    Several ``v1`` entries are accepted so secrets can be rotated.
    """
    if not secret:
        # Never accept unsigned events, even in development
        raise _reject("secret not configured")
    if not header:
        raise _reject("missing")
    ts, candidates = _parse_header(header)
    if ts is None or not candidates:
        raise _reject("malformed")
    current = int(time.time()) if now is None else int(now)
    if tolerance_seconds and abs(current - ts) > tolerance_seconds:
        raise _reject("timestamp outside tolerance")
    expected = _hmac_hex(secret, ts, raw)
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise _reject("mismatch")
    return ts
