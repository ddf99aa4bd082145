"""Bearer-secret and Slack request-signature verification.

WHY: Every externally reachable endpoint is guarded either by the shared
bearer secret (stage-to-stage calls) or by Slack's HMAC signing scheme
(Events API). Both checks must be constant-time so response timing does
not leak how much of a secret matched.

HOW: Pure functions over header values and raw body bytes. The Slack base
string is "v0:{timestamp}:{body}", signed with HMAC-SHA256 and rendered as
"v0=" + lowercase hex. Timestamps further than five minutes from now are
rejected to stop replays.

RULES:
- All secret comparisons use hmac.compare_digest
- Signatures are computed over the exact raw body bytes, never re-encoded JSON
- Missing or malformed headers simply fail verification (no exceptions)
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional

from mtglog.config import SLACK_MAX_CLOCK_SKEW_S, SLACK_SIGNATURE_VERSION


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_bearer(authorization: Optional[str], secret: str) -> bool:
    """Check an Authorization header against the shared bearer secret."""
    token = extract_bearer(authorization)
    if token is None:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def compute_slack_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Compute the Slack ``X-Slack-Signature`` value for a request."""
    base = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{SLACK_SIGNATURE_VERSION}={digest}"


def verify_slack_signature(
    secret: str,
    timestamp: Optional[str],
    signature: Optional[str],
    body: bytes,
    now: Optional[float] = None,
) -> bool:
    """Verify a Slack request signature and its replay window.

    RULES:
    - Fails if either header is missing or the timestamp is not an integer
    - Fails if |now - timestamp| > 300 seconds, even with a valid signature
    - Any single-byte change to body invalidates the signature
    """
    if not timestamp or not signature:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > SLACK_MAX_CLOCK_SKEW_S:
        return False
    expected = compute_slack_signature(secret, timestamp, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
