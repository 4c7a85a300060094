"""
Typed views over provider webhook events.

Only the fields the core reads are declared; everything else is kept
(``extra="allow"``) so the raw snapshot stored on a Purchase is complete.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
CHARGE_REFUNDED = "charge.refunded"

# Set on PaymentIntents created by our own checkout sessions
CHECKOUT_ORIGIN_KEY = "origin"
CHECKOUT_ORIGIN = "checkout"


class EventData(BaseModel):
    """Envelope around the event's subject object."""

    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any]


class WebhookEvent(BaseModel):
    """A verified provider event."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: EventData

    @property
    def subject(self) -> Dict[str, Any]:
        """The raw object the event is about."""
        return self.data.object


class CheckoutLineItem(BaseModel):
    """An expanded line item as reported by the provider."""

    model_config = ConfigDict(extra="allow")

    quantity: int = 1
    amount_total: Optional[int] = None
    price: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def product_id(self) -> Optional[str]:
        """Catalog id carried on the line, the price, or the provider product."""
        return (
            self.metadata.get("product_id")
            or (self.price.get("metadata") or {}).get("product_id")
            or self.price.get("product")
        )

    @property
    def unit_amount(self) -> Optional[int]:
        """Unit price in minor units, if the provider reported one."""
        return self.price.get("unit_amount")


class CheckoutSessionObject(BaseModel):
    """Subject of ``checkout.session.completed``."""

    model_config = ConfigDict(extra="allow")

    id: str
    mode: str = "payment"
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None
    payment_intent: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    line_items: Optional[Dict[str, Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        """Account the purchase belongs to, if the checkout named one."""
        return self.metadata.get("user_id") or self.client_reference_id

    @property
    def expanded_line_items(self) -> List[CheckoutLineItem]:
        """Line items included in the event payload (empty when not expanded)."""
        if not self.line_items:
            return []
        return [CheckoutLineItem.model_validate(item) for item in self.line_items.get("data", [])]


class PaymentIntentObject(BaseModel):
    """Subject of ``payment_intent.succeeded``."""

    model_config = ConfigDict(extra="allow")

    id: str
    amount: int = 0
    currency: Optional[str] = None
    receipt_email: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.metadata.get("userId")

    @property
    def from_checkout(self) -> bool:
        """Whether a checkout session created this intent."""
        return self.metadata.get(CHECKOUT_ORIGIN_KEY) == CHECKOUT_ORIGIN


class ChargeObject(BaseModel):
    """Subject of ``charge.refunded``."""

    model_config = ConfigDict(extra="allow")

    id: str
    amount_refunded: int = 0
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    receipt_email: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.metadata.get("userId")
