"""
Provider webhook signature verification.

Signature checking is delegated to the Stripe SDK. The replay window is
enforced here so a stale delivery surfaces as its own error instead of a
generic signature failure. The body must be verified exactly as received,
before any JSON parsing.
"""
import json
import time
from typing import Callable, Dict, Optional

import stripe
import structlog
from pydantic import ValidationError

from payment_events.core.exceptions import InvalidSignature, StaleTimestamp
from payment_events.integrations.events import WebhookEvent

logger = structlog.get_logger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def _signed_timestamp(signature_header: str) -> int:
    """Timestamp from a header the SDK has already accepted."""
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            return int(value)
    raise InvalidSignature("Signature header has no timestamp")


def verify(
    raw_body: bytes,
    signature_header: str,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> WebhookEvent:
    """
    Verify a webhook delivery and deserialize it.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the signature header
        secret: Endpoint signing secret
        tolerance_seconds: Allowed distance between signed timestamp and wall clock
        now: Current unix time (defaults to the wall clock)

    Returns:
        WebhookEvent: The verified event

    Raises:
        InvalidSignature: Header malformed, no matching signature, or body not an event
        StaleTimestamp: Signed timestamp outside the replay window
    """
    if not signature_header:
        raise InvalidSignature("Missing signature header")

    try:
        payload_text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidSignature("Payload is not valid UTF-8")

    try:
        # tolerance=None: the SDK only checks the signature, the window is ours
        stripe.WebhookSignature.verify_header(
            payload_text, signature_header, secret, tolerance=None
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(e.user_message or str(e))

    timestamp = _signed_timestamp(signature_header)
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise StaleTimestamp(timestamp=timestamp, tolerance_seconds=tolerance_seconds)

    try:
        payload: Dict = json.loads(payload_text)
        return WebhookEvent.model_validate(payload)
    except (ValueError, ValidationError) as e:
        raise InvalidSignature(f"Signed payload is not a valid event: {e}")


class WebhookVerifier:
    """Verifier bound to one endpoint secret and replay window."""

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize webhook verifier.

        Args:
            secret: Endpoint signing secret
            tolerance_seconds: Replay window in seconds
            clock: Source of the current unix time
        """
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def verify(self, raw_body: bytes, signature_header: str) -> WebhookEvent:
        """Verify a delivery against this endpoint's secret."""
        event = verify(
            raw_body,
            signature_header,
            self.secret,
            tolerance_seconds=self.tolerance_seconds,
            now=self.clock(),
        )
        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event
