"""
Exception classes for the payment-event core.

Every exception carries:
1. A stable error code (for client handling)
2. A user message (safe to show to callers)
3. An HTTP status (for API responses)

Propagation:
- Verification and catalog errors are terminal and surface to the caller
- Provider errors are classified so only transient ones are retried
- Job processing errors never leave the job; they are recorded as job status
"""

from typing import Any, Dict, Optional


class PaymentEventsError(Exception):
    """Base exception for all payment-event core errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "internal_error",
        user_message: Optional[str] = None,
        http_status: int = 500,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or "An error occurred. Please try again."
        self.http_status = http_status
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
            }
        }


# ============================================================================
# WEBHOOK VERIFICATION ERRORS
# ============================================================================

class VerificationError(PaymentEventsError):
    """
    Webhook could not be authenticated.

    Terminal for the request: the provider's own retry policy is relied upon.
    Details are logged but never returned to the unauthenticated caller.
    """

    def __init__(self, message: str, error_code: str = "verification_failed", **kwargs: Any):
        super().__init__(
            message=message,
            error_code=error_code,
            user_message="Webhook rejected.",
            http_status=400,
            **kwargs,
        )


class InvalidSignature(VerificationError):
    """Header missing, malformed, or no signature matches the payload."""

    def __init__(self, message: str = "Invalid webhook signature", **kwargs: Any):
        super().__init__(message=message, error_code="invalid_signature", **kwargs)


class StaleTimestamp(VerificationError):
    """Signed timestamp falls outside the replay window."""

    def __init__(self, timestamp: int, tolerance_seconds: int, **kwargs: Any):
        super().__init__(
            message=(
                f"Webhook timestamp {timestamp} outside tolerance of {tolerance_seconds}s"
            ),
            error_code="stale_timestamp",
            timestamp=timestamp,
            tolerance_seconds=tolerance_seconds,
            **kwargs,
        )


# ============================================================================
# PURCHASE / CATALOG ERRORS
# ============================================================================

class IntegrityMismatch(PaymentEventsError):
    """
    Integrity token or paid total does not match the purchased line items.

    Informational: the purchase is still recorded, flagged for review.
    """

    CODE = "integrity_mismatch"

    def __init__(self, session_id: str, **kwargs: Any):
        super().__init__(
            message=f"Integrity token mismatch for session {session_id}",
            error_code=self.CODE,
            user_message="Purchase flagged for review.",
            http_status=409,
            session_id=session_id,
            **kwargs,
        )


class UnknownProduct(PaymentEventsError):
    """Product id (or alias) is not in the catalog."""

    def __init__(self, product_id: str, **kwargs: Any):
        super().__init__(
            message=f"Unknown product: {product_id}",
            error_code="unknown_product",
            user_message=f"Product '{product_id}' was not found.",
            http_status=404,
            product_id=product_id,
            **kwargs,
        )
        self.product_id = product_id


class UnknownAction(PaymentEventsError):
    """Account update action is not one of upgrade/downgrade."""

    def __init__(self, action: Any, **kwargs: Any):
        super().__init__(
            message=f"Unknown account action: {action!r}",
            error_code="unknown_action",
            user_message="Unsupported account action.",
            http_status=400,
            action=action,
            **kwargs,
        )


class CheckoutError(PaymentEventsError):
    """Checkout request is malformed (e.g. both or neither of product/items)."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="invalid_checkout",
            user_message=message,
            http_status=400,
            **kwargs,
        )


# ============================================================================
# PROVIDER ERRORS
# ============================================================================

class ProviderError(PaymentEventsError):
    """Payment provider call failed."""

    def __init__(
        self,
        message: str,
        error_code: str = "provider_error",
        original_error: Optional[Exception] = None,
        **kwargs: Any,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            user_message="The payment provider rejected the request.",
            http_status=402,
            **kwargs,
        )
        self.original_error = original_error


class TransientProviderError(ProviderError):
    """Network, rate limit or provider-side failure. Safe to retry."""

    def __init__(self, message: str, original_error: Optional[Exception] = None, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="provider_unavailable",
            original_error=original_error,
            **kwargs,
        )
        self.user_message = "The payment provider is temporarily unavailable."
        self.http_status = 502


class PermanentProviderError(ProviderError):
    """Declined card, invalid request. Retrying cannot help."""

    def __init__(self, message: str, original_error: Optional[Exception] = None, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="provider_declined",
            original_error=original_error,
            **kwargs,
        )


# ============================================================================
# QUOTA / JOB ERRORS
# ============================================================================

class QuotaExceeded(PaymentEventsError):
    """Account exceeded its tier allowance. Not retried."""

    def __init__(self, reason: str, user_id: str, tier: str, **kwargs: Any):
        super().__init__(
            message=f"Quota exceeded for user {user_id} ({tier}): {reason}",
            error_code="quota_exceeded",
            user_message=reason,
            http_status=403,
            user_id=user_id,
            tier=tier,
            **kwargs,
        )
        self.reason = reason
        self.user_id = user_id
        self.tier = tier


class JobNotFound(PaymentEventsError):
    """No job with the given id."""

    def __init__(self, job_id: Any, **kwargs: Any):
        super().__init__(
            message=f"Job not found: {job_id}",
            error_code="job_not_found",
            user_message="Job not found.",
            http_status=404,
            job_id=str(job_id),
            **kwargs,
        )


class JobNotReplayable(PaymentEventsError):
    """Only jobs still pending can be replayed; terminal states are final."""

    def __init__(self, job_id: Any, status: str, **kwargs: Any):
        super().__init__(
            message=f"Job {job_id} is {status}; only pending jobs can be replayed",
            error_code="job_not_replayable",
            user_message=f"Job is already {status}.",
            http_status=409,
            job_id=str(job_id),
            status=status,
            **kwargs,
        )
