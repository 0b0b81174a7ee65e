"""Catalog pricing adapter.

Implements PricingPort against the catalog service. The catalog resolves
the unit price with its own precedence (explicit pricing rule, then a
promotional rule matching quantity and time window, then variant price,
then product base price); this adapter only carries the request and maps
the answer.
"""

import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from groupbuy.core.errors import NotFound
from groupbuy.core.models import PriceQuote
from groupbuy.core.ports import PricingPort

from .client import CommerceAPIClient

logger = logging.getLogger(__name__)


class CatalogPricingAdapter(CommerceAPIClient, PricingPort):
    """Prices and stock levels from the catalog HTTP API."""

    async def price(
        self,
        product_id: str,
        variant_id: str | None,
        quantity: int,
        context: Mapping[str, Any] | None = None,
    ) -> PriceQuote:
        context = context or {}
        data = await self.get_json(
            f"/products/{product_id}/price",
            params={
                "variant_id": variant_id,
                "quantity": quantity,
                "store_id": context.get("store_id"),
                "pricing_rule_id": context.get("pricing_rule_id"),
            },
        )
        if data is None:
            raise NotFound(
                f"Product {product_id}"
                + (f" variant {variant_id}" if variant_id else "")
                + " not found"
            )
        try:
            unit_price = Decimal(str(data["unit_price"]))
        except (KeyError, InvalidOperation) as e:
            raise ValueError(f"Catalog returned an invalid price: {data!r}") from e
        return PriceQuote(unit_price=unit_price, applied_rule_id=data.get("applied_rule_id"))

    async def stock_available(self, product_id: str, variant_id: str | None) -> int:
        data = await self.get_json(
            f"/products/{product_id}/stock", params={"variant_id": variant_id}
        )
        if data is None:
            raise NotFound(f"Product {product_id} not found")
        return int(data.get("available", 0))
