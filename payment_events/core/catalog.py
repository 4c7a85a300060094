"""
Read-only product catalog.

Supplied externally (JSON file or code) and passed to the services that need
it; there is no module-level catalog cache.

File format:

    {
      "products": [
        {"id": "lore_pack", "name": "Lore Pack", "amount": 500, "currency": "usd"},
        {"id": "premium_monthly", "name": "Premium", "amount": 999,
         "currency": "usd", "interval": "month",
         "payment_link": "https://buy.stripe.com/..."}
      ],
      "aliases": {"premium": "premium_monthly"}
    }
"""
import json
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from payment_events.core.exceptions import UnknownProduct


class Product(BaseModel):
    """A catalog entry. Amounts are in minor currency units."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    amount: int = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    interval: Optional[str] = None
    payment_link: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currencies are stored lower-case, as the provider reports them."""
        return v.lower()

    @property
    def is_subscription(self) -> bool:
        return self.interval is not None


class Catalog:
    """Products indexed by canonical id, with an alias table in front."""

    def __init__(
        self,
        products: Iterable[Product],
        aliases: Optional[Mapping[str, str]] = None,
    ):
        self._products: Dict[str, Product] = {p.id: p for p in products}
        self._aliases: Dict[str, str] = dict(aliases or {})

        dangling = [alias for alias, target in self._aliases.items() if target not in self._products]
        if dangling:
            raise ValueError(f"Aliases point at unknown products: {sorted(dangling)}")

    @classmethod
    def from_dict(cls, data: Mapping) -> "Catalog":
        products = [Product.model_validate(p) for p in data.get("products", [])]
        return cls(products, data.get("aliases") or {})

    @classmethod
    def from_file(cls, path: str | Path) -> "Catalog":
        """Load a catalog from a JSON file."""
        with open(path, encoding="utf-8") as fh:
            return cls.from_dict(json.load(fh))

    def canonical_id(self, product_id: str) -> str:
        """Follow the alias table; ids that are not aliases map to themselves."""
        return self._aliases.get(product_id, product_id)

    def get(self, product_id: str) -> Optional[Product]:
        """Product for an id or alias, or None."""
        return self._products.get(self.canonical_id(product_id))

    def resolve(self, product_id: str) -> Product:
        """
        Product for an id or alias.

        Raises:
            UnknownProduct: If neither an id nor an alias matches
        """
        product = self.get(product_id)
        if product is None:
            raise UnknownProduct(product_id)
        return product

    @property
    def products(self) -> List[Product]:
        return list(self._products.values())

    def __contains__(self, product_id: str) -> bool:
        return self.get(product_id) is not None

    def __len__(self) -> int:
        return len(self._products)
