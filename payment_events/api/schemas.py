"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class CheckoutItemRequest(BaseModel):
    """One line of a bulk checkout."""

    product_id: str = Field(..., min_length=1, description="Catalog id or alias")
    quantity: int = Field(default=1, ge=1, description="Units of the product")


class CheckoutRequest(BaseModel):
    """Request schema for creating a checkout. Exactly one of product_id or items."""

    product_id: Optional[str] = Field(default=None, description="Single catalog product")
    items: Optional[List[CheckoutItemRequest]] = Field(default=None, description="Bulk items")
    success_url: str = Field(..., description="Redirect after payment")
    cancel_url: str = Field(..., description="Redirect on cancel")
    user_id: Optional[str] = Field(default=None, description="Account the purchase belongs to")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {"product_id": "lore_pack", "quantity": 2},
                        {"product_id": "sticker_pack", "quantity": 1},
                    ],
                    "success_url": "https://example.com/success",
                    "cancel_url": "https://example.com/cancel",
                    "user_id": "user_123",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for checkout creation."""

    url: str = Field(..., description="Where to send the buyer")
    session_id: Optional[str] = Field(default=None, description="Provider session id")
    integrity_token: Optional[str] = Field(default=None, description="Token stored in session metadata")
    mode: str = Field(..., description="payment or subscription")
    static_link: bool = Field(..., description="True when the product's payment link was returned")


class ChargeRequest(BaseModel):
    """Request schema for a direct charge."""

    user_id: str = Field(..., min_length=1, description="User identifier")
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code")
    source: str = Field(..., min_length=1, description="Provider payment source token")
    description: Optional[str] = Field(default=None, description="Charge description")
    coupon: Optional[str] = Field(default=None, max_length=64, description="Discount code")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Provider expects lower-case currency codes."""
        return v.lower()


class ChargeResponse(BaseModel):
    """Response schema for a charge."""

    id: str = Field(..., description="Provider charge id")
    status: str = Field(..., description="Charge status")
    amount: int = Field(..., description="Charged amount in minor units")
    currency: str = Field(..., description="Currency code")


class RefundRequest(BaseModel):
    """Request schema for refunding a charge."""

    charge_id: str = Field(..., min_length=1, description="Provider charge id")
    user_id: str = Field(..., min_length=1, description="User identifier")


class RefundResponse(BaseModel):
    """Response schema for refund."""

    refund_id: str = Field(..., description="Provider refund id")
    charge_id: str = Field(..., description="Refunded charge")
    status: str = Field(..., description="Refund status")
    amount: int = Field(..., description="Refunded amount in minor units")


class LoreDropRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="User identifier")


class LoreDropResponse(BaseModel):
    user_id: str
    tier: str
    count: int = Field(..., description="Lore drops used including this one")
    limit: int = Field(..., description="Tier allowance")


class JobResponse(BaseModel):
    """Response schema for a job."""

    id: str
    job_type: str
    payload: Dict[str, Any]
    status: str
    outcome: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the provider. Never carries details."""

    received: bool
