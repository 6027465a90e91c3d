"""
Security gate for the gateway webhook.

Runs before any business logic: rate limiting, payload validation and
authentication of the event source. Nothing in this module writes to the
datastore.
"""

import hashlib
import hmac
import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from fastapi import Request, status
from sqlalchemy.orm import Session

from evolution_ingest.bounded_store import BoundedTTLStore
from evolution_ingest.schemas import WebhookEnvelope
from evolution_ingest.storage import get_instance_by_name

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"
TOKEN_HEADERS = ("apikey", "x-api-key")
GENERIC_ERROR = "An error occurred processing your request"


class WebhookRejected(Exception):
    """A request refused by the gate; rendered as {"error": ...}."""

    def __init__(self, status_code: int, error: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.headers = headers or {}


# =============================================================================
# Rate limiting
# =============================================================================

@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        now = time.time() if now is None else now
        return {
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat(),
            "Retry-After": str(max(0, math.ceil(self.reset_at - now))),
        }


class _Window:
    __slots__ = ("count", "reset_at")

    def __init__(self, reset_at: float):
        self.count = 0
        self.reset_at = reset_at


class RateLimiter:
    """
    Fixed-window request counter keyed by client identifier.

    Counters live in a BoundedTTLStore so the number of tracked clients
    stays bounded; pass a different store to share counters elsewhere.
    A full store never drops a live window: an untracked client is let
    through until expired windows free room.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        max_keys: int = 10_000,
        store: Optional[BoundedTTLStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._store = store if store is not None else BoundedTTLStore(
            max_entries=max_keys, ttl_seconds=window_seconds, clock=clock, evict_live=False
        )

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        window = self._store.get(key)
        if window is None or window.reset_at <= now:
            window = _Window(reset_at=now + self.window_seconds)
            if not self._store.set(key, window, ttl=self.window_seconds):
                logger.warning(f"Rate limit store full, not tracking {key}")

        window.count += 1

        return RateLimitDecision(
            allowed=window.count <= self.max_requests,
            remaining=max(0, self.max_requests - window.count),
            reset_at=window.reset_at,
        )

    def enforce(self, key: str) -> RateLimitDecision:
        decision = self.check(key)
        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {key}")
            raise WebhookRejected(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "Rate limit exceeded",
                headers=decision.headers(self._clock()),
            )
        return decision


def client_identifier(request: Request) -> str:
    """Forwarded-for first hop, then the CDN header, then the direct peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# =============================================================================
# Payload validation
# =============================================================================

def validate_webhook_payload(payload: Any) -> Optional[str]:
    """Returns None if valid, error message if invalid."""
    if not isinstance(payload, dict):
        return "Invalid payload format"
    for field in ("event", "instance"):
        value = payload.get(field)
        if not isinstance(value, str) or not value:
            return f"Missing or invalid {field} field"
    return None


def parse_webhook_payload(raw_body: bytes) -> WebhookEnvelope:
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"Invalid JSON: {e}")
        raise WebhookRejected(status.HTTP_400_BAD_REQUEST, "Invalid JSON")

    error = validate_webhook_payload(payload)
    if error:
        logger.warning(f"Invalid payload: {error}")
        raise WebhookRejected(status.HTTP_400_BAD_REQUEST, error)

    return WebhookEnvelope.model_validate(payload)


# =============================================================================
# Authentication
# =============================================================================

def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature, optionally prefixed with "sha256="
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False

    candidate = signature.strip().lower()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(expected_signature, candidate)


@dataclass
class AuthResult:
    method: str  # hmac | token | permissive
    instance: Any
    weak: bool = False


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # plain dicts are case sensitive, starlette Headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                value = candidate
                break
    return value or None


def _security_alert(reason: str, client_id: str, raw_body: bytes) -> None:
    logger.error(
        f"SECURITY ALERT: {reason}",
        extra={
            "client": client_id,
            "payload_preview": raw_body[:100].decode("utf-8", errors="replace"),
        },
    )


def authenticate(
    db: Session,
    envelope: WebhookEnvelope,
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
    client_id: str = "unknown",
    gateway_key: Optional[str] = None,
) -> AuthResult:
    """
    Resolve who sent the event; first successful method wins.

    1. HMAC signature over the raw body (signature header + configured secret)
    2. Per-instance token (apikey / x-api-key header); the gateway's global
       key is accepted as well
    3. Permissive: no credentials at all, accepted if the instance exists.
       The gateway does not reliably send auth headers, so this path stays
       open and the request is tagged as weakly authenticated.

    Raises WebhookRejected with 401 (bad credentials) or 404 (unknown instance).
    """
    instance_name = envelope.instance
    signature = _header(headers, SIGNATURE_HEADER)

    if signature and secret:
        if not verify_hmac_signature(raw_body, signature, secret):
            _security_alert("invalid webhook signature", client_id, raw_body)
            raise WebhookRejected(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
        instance = get_instance_by_name(db, instance_name)
        if instance is None:
            logger.warning(f"Signed event for unknown instance: {instance_name}")
            raise WebhookRejected(status.HTTP_404_NOT_FOUND, "Instance not found")
        logger.debug(f"Signature verified for instance: {instance_name}")
        return AuthResult(method="hmac", instance=instance)

    token = next((t for t in (_header(headers, h) for h in TOKEN_HEADERS) if t), None)
    if token:
        instance = get_instance_by_name(db, instance_name)
        if instance is None:
            logger.warning(f"Token presented for unknown instance: {instance_name}")
            raise WebhookRejected(status.HTTP_404_NOT_FOUND, "Instance not found")
        for expected in (instance.instance_token, gateway_key):
            if expected and hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8")):
                return AuthResult(method="token", instance=instance)
        _security_alert("invalid instance token", client_id, raw_body)
        raise WebhookRejected(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    instance = get_instance_by_name(db, instance_name)
    if instance is None:
        logger.warning(f"Unauthenticated event for unknown instance: {instance_name}")
        raise WebhookRejected(status.HTTP_404_NOT_FOUND, "Instance not found")

    logger.warning(f"Accepting unauthenticated event for known instance: {instance_name}")
    return AuthResult(method="permissive", instance=instance, weak=True)


def sanitize_error(error: BaseException, is_production: bool) -> str:
    """Generic message in production, detailed otherwise."""
    if is_production:
        return GENERIC_ERROR
    return str(error) or error.__class__.__name__
