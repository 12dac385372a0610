"""Request authentication for the Slack events endpoint and the HTTP ingress."""

from __future__ import annotations

import hmac
import time
from hashlib import sha256

SLACK_SIGNATURE_HEADER = "X-Slack-Signature"
SLACK_TIMESTAMP_HEADER = "X-Slack-Request-Timestamp"
VERSION = "v0"
DEFAULT_TOLERANCE = 60 * 5  # five minutes
BEARER_PREFIX = "Bearer "


def compute_signature(signing_secret: str, timestamp: str, body: str) -> str:
    """Return the Slack ``v0=`` signature for *body* sent at *timestamp*."""

    basestring = f"{VERSION}:{timestamp}:{body}".encode("utf-8")
    digest = hmac.new(signing_secret.encode("utf-8"), basestring, sha256).hexdigest()
    return f"{VERSION}={digest}"


def is_valid_slack_request(
    *, signing_secret: str, timestamp: str, body: str, signature: str, tolerance: int = DEFAULT_TOLERANCE
) -> bool:
    """Check the Slack signature and reject stale timestamps to stop replays."""

    if not timestamp or not signature:
        return False

    try:
        request_ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    if abs(int(time.time()) - request_ts) > tolerance:
        return False

    return hmac.compare_digest(compute_signature(signing_secret, timestamp, body), signature)


def extract_bearer_token(header: str | None) -> str | None:
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def is_valid_bearer_token(token: str | None, expected: str) -> bool:
    """Constant-time comparison of an ingress API key."""

    if not token or not expected:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
