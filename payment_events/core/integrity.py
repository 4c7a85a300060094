"""
Tamper-evidence tokens for purchase line items.

The token is computed when a checkout session is created, round-tripped
through the provider's opaque session metadata and recomputed from the
event's own line items when the completion webhook arrives.

Canonical form, in the order items were presented at checkout:

    "a x2:500|b x1:1000"

hashed with SHA-256 and truncated: 16 hex chars for a single item, 24 for
multi-item (bulk) purchases.
"""
import hashlib
import hmac
from typing import Any, Iterable, List, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field

SINGLE_ITEM_TOKEN_LENGTH = 16
MULTI_ITEM_TOKEN_LENGTH = 24
ITEM_DELIMITER = "|"


class PricedItem(BaseModel):
    """One line of a checkout: product, quantity and unit price in minor units."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    unit_amount: int = Field(..., ge=0)


ItemLike = Union[PricedItem, Mapping[str, Any]]


def _coerce(items: Iterable[ItemLike]) -> List[PricedItem]:
    return [
        item if isinstance(item, PricedItem) else PricedItem.model_validate(item)
        for item in items
    ]


def canonical_string(items: Iterable[ItemLike]) -> str:
    """Build the canonical string hashed into the token."""
    return ITEM_DELIMITER.join(
        f"{item.product_id} x{item.quantity}:{item.unit_amount}" for item in _coerce(items)
    )


def compute_token(items: Iterable[ItemLike]) -> str:
    """
    Compute the integrity token for a list of items.

    Args:
        items: Line items in checkout presentation order

    Returns:
        str: Truncated hex digest

    Raises:
        ValueError: If no items are given
    """
    priced = _coerce(items)
    if not priced:
        raise ValueError("Cannot compute an integrity token for zero items")

    digest = hashlib.sha256(canonical_string(priced).encode("utf-8")).hexdigest()
    length = SINGLE_ITEM_TOKEN_LENGTH if len(priced) == 1 else MULTI_ITEM_TOKEN_LENGTH
    return digest[:length]


def verify(token: str | None, items: Iterable[ItemLike]) -> bool:
    """
    Check a token against line items.

    Returns False for a missing token or an empty item list rather than raising:
    a mismatch flags the purchase for review, it never blocks it.
    """
    if not token:
        return False
    priced = _coerce(items)
    if not priced:
        return False
    return hmac.compare_digest(token.encode("utf-8"), compute_token(priced).encode("utf-8"))


def encode_items_metadata(items: Iterable[ItemLike]) -> str:
    """Compact ``"a:2,b:1"`` form stored in session metadata for bulk checkouts."""
    return ",".join(f"{item.product_id}:{item.quantity}" for item in _coerce(items))


def decode_items_metadata(value: str) -> List[tuple[str, int]]:
    """
    Parse the compact ``"a:2,b:1"`` form back into (product_id, quantity) pairs.

    Raises:
        ValueError: If an entry is malformed or a quantity is not a positive integer
    """
    pairs: List[tuple[str, int]] = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        product_id, sep, quantity = entry.rpartition(":")
        if not sep or not product_id:
            raise ValueError(f"Malformed items entry: {entry!r}")
        qty = int(quantity)
        if qty < 1:
            raise ValueError(f"Quantity must be positive: {entry!r}")
        pairs.append((product_id, qty))
    return pairs
