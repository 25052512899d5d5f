"""HMAC-SHA256 request signing shared with the external task system.

signature = "sha256=" + hex(HMAC_SHA256(secret, "<unix-ts>." + canonical_json(body)))

Canonical JSON is ``json.dumps(body, sort_keys=True, separators=(",", ":"))``;
the consuming system must serialize identically for signatures to match.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass

HEADER_AGENT_ID = "X-Agent-Id"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_SIGNATURE = "X-Signature"
MAX_SKEW_SECONDS = 300


def canonical_json(body) -> str:
    """Sorted keys, compact separators, arrays in given order."""
    return json.dumps(body, sort_keys=True, separators=(",", ":"))


def sign(body, secret: str, timestamp: int | None = None) -> tuple[int, str]:
    """Return ``(timestamp, signature)`` for a body."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    message = f"{ts}.{canonical_json(body)}"
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return ts, f"sha256={digest}"


@dataclass
class VerifyResult:
    valid: bool
    error: str | None = None


def _header(headers, name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def verify(headers, body, secret: str, now: int | None = None) -> VerifyResult:
    """Check agent id, timestamp window, and signature of a request."""
    timestamp = _header(headers, HEADER_TIMESTAMP)
    signature = _header(headers, HEADER_SIGNATURE)
    agent_id = _header(headers, HEADER_AGENT_ID)

    if not timestamp or not signature or not agent_id:
        return VerifyResult(False, "Missing required headers")

    try:
        ts = int(timestamp)
    except ValueError:
        return VerifyResult(False, "Invalid timestamp")

    current = int(time.time()) if now is None else int(now)
    if abs(current - ts) > MAX_SKEW_SECONDS:
        return VerifyResult(False, "Request timestamp expired")

    _, expected = sign(body, secret, ts)
    if not hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogateescape")):
        return VerifyResult(False, "Invalid signature")

    return VerifyResult(True)


def build_headers(agent_id: str, body, secret: str, timestamp: int | None = None) -> dict[str, str]:
    """Complete header set for an outgoing signed request."""
    ts, signature = sign(body, secret, timestamp)
    return {
        HEADER_AGENT_ID: agent_id,
        HEADER_TIMESTAMP: str(ts),
        HEADER_SIGNATURE: signature,
        "Content-Type": "application/json",
    }
