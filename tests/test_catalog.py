"""
Unit tests for the product catalog.
"""
import json
from pathlib import Path

import pytest

from payment_events.core.catalog import Catalog, Product
from payment_events.core.exceptions import UnknownProduct


class TestCatalog:
    """Test suite for Catalog."""

    @pytest.mark.unit
    def test_resolve_follows_aliases(self, catalog: Catalog) -> None:
        """Test friendly ids resolve to their canonical product."""
        product = catalog.resolve("premium")

        assert product.id == "premium_monthly"
        assert product.is_subscription is True
        assert catalog.canonical_id("lore") == "lore_pack"
        assert catalog.canonical_id("lore_pack") == "lore_pack"

    @pytest.mark.unit
    def test_unknown_product_raises(self, catalog: Catalog) -> None:
        """Test unknown ids raise UnknownProduct with a 404 status."""
        with pytest.raises(UnknownProduct) as exc_info:
            catalog.resolve("nope")

        assert exc_info.value.http_status == 404
        assert "nope" not in catalog
        assert catalog.get("nope") is None

    @pytest.mark.unit
    def test_currency_normalized_to_lower_case(self, catalog: Catalog) -> None:
        """Test currencies are stored lower-case."""
        assert catalog.resolve("euro_pack").currency == "eur"

    @pytest.mark.unit
    def test_dangling_alias_rejected(self) -> None:
        """Test aliases must point at a known product."""
        product = Product(id="a", name="A", amount=100, currency="usd")

        with pytest.raises(ValueError, match="unknown products"):
            Catalog([product], aliases={"b": "missing"})

    @pytest.mark.unit
    def test_from_file(self, tmp_path: Path) -> None:
        """Test loading the JSON file format."""
        path = tmp_path / "catalog.json"
        path.write_text(
            json.dumps(
                {
                    "products": [{"id": "a", "name": "A", "amount": 250, "currency": "usd"}],
                    "aliases": {"alpha": "a"},
                }
            )
        )

        catalog = Catalog.from_file(path)

        assert len(catalog) == 1
        assert catalog.resolve("alpha").amount == 250
