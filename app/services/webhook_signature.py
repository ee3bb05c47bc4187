from __future__ import annotations

import hashlib
import hmac
import time

SIGNATURE_HEADER_NAME = "elevenlabs-signature"
DEFAULT_MAX_SKEW_SECONDS = 300


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    max_skew_seconds: int = DEFAULT_MAX_SKEW_SECONDS,
    now: float | None = None,
) -> bool:
    """Checks a ``t=<unix>,v0=<hex>`` webhook signature against the raw body.

    The MAC covers ``"{t}." + raw_body`` exactly as received, so callers must
    pass the request bytes before any JSON parsing. Timestamps outside
    ``max_skew_seconds`` of ``now`` are rejected even when the MAC matches.
    """
    if not secret or not signature_header:
        return False

    fields = _parse_signature_header(signature_header)
    raw_timestamp = fields.get("t")
    provided_mac = fields.get("v0")
    if raw_timestamp is None or provided_mac is None:
        return False
    if not raw_timestamp.isascii() or not raw_timestamp.isdigit():
        return False

    try:
        provided_digest = bytes.fromhex(provided_mac)
    except ValueError:
        return False

    current_time = int(time.time() if now is None else now)
    if abs(current_time - int(raw_timestamp)) > max_skew_seconds:
        return False

    expected_digest = hmac.new(
        key=secret.encode("utf-8"),
        msg=raw_timestamp.encode("ascii") + b"." + raw_body,
        digestmod=hashlib.sha256,
    ).digest()
    return hmac.compare_digest(expected_digest, provided_digest)


def build_signature_header(raw_body: bytes, secret: str, timestamp: int | None = None) -> str:
    signed_at = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(
        key=secret.encode("utf-8"),
        msg=f"{signed_at}.".encode("ascii") + raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"t={signed_at},v0={mac}"


def _parse_signature_header(signature_header: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for chunk in signature_header.split(","):
        key, separator, value = chunk.strip().partition("=")
        if not separator:
            continue
        key = key.strip()
        if key and key not in fields:
            fields[key] = value.strip()
    return fields
