"""
Webhook Verification Module

Authenticates GitHub webhook deliveries and parses them into an Envelope.

Security:
- HMAC SHA256 over the raw request body, checked before any JSON decoding
- Constant-time signature comparison
"""
import hashlib
import hmac
import json
import logging
from typing import Optional

from pydantic import ValidationError

from build_failure_monitor.errors import InvalidSignature, MalformedPayload
from build_failure_monitor.schemas import EVENT_MODELS, Envelope, UnknownEvent

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the ``X-Hub-Signature-256`` header value GitHub would send for this body."""
    digest = hmac.new(secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256)
    return SIGNATURE_PREFIX + digest.hexdigest()


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: str) -> None:
    """
    Check the delivery signature.

    Raises:
        InvalidSignature: secret not configured, header missing or malformed,
            or digest mismatch
    """
    if not secret:
        logger.error("Webhook secret is not configured; rejecting delivery")
        raise InvalidSignature("Webhook secret is not configured")
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        raise InvalidSignature("Missing or malformed X-Hub-Signature-256 header")

    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature_header.strip().lower()):
        raise InvalidSignature("Webhook signature mismatch")


def parse_event(event_type: str, payload: dict):
    """Decode a payload into the model registered for its event type."""
    model = EVENT_MODELS.get(event_type)
    if model is None:
        return UnknownEvent(event_type=event_type or "unknown", payload=payload)
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload(f"Invalid {event_type} payload: {e.error_count()} errors") from e


def parse_envelope(raw_body: bytes, event_type: str, delivery_id: Optional[str] = None) -> Envelope:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload("Delivery body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise MalformedPayload("Delivery body must be a JSON object")

    return Envelope(
        event_type=event_type,
        delivery_id=delivery_id,
        event=parse_event(event_type, payload),
        payload=payload,
    )


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    event_type: str,
    delivery_id: Optional[str] = None,
) -> Envelope:
    """Verify and parse one delivery. Pure: no side effects beyond logging."""
    verify_signature(raw_body, signature_header, secret)
    return parse_envelope(raw_body, event_type, delivery_id)
