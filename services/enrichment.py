"""
Product enrichment for recommendation payloads.

Turns ranked product ids into the display records a storefront block renders:
name, links, cover image, availability and (when enabled) the shop price.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from schemas.recommendation_schemas import RecommendedProduct, ScoredProduct
from services.collaborators import Catalog, Pricing, ProductDisplayData
from services.configuration import ConfigurationStore
from settings import (
    SETTINGS_DISPLAY_PRICE,
    SETTINGS_ORDER_OUT_OF_STOCK,
    SETTINGS_PRICE_TAX_INCLUDED,
    STORE_BASE_URL,
)

logger = logging.getLogger(__name__)

OUT_OF_STOCK_DENY = 0
OUT_OF_STOCK_ALLOW = 1
OUT_OF_STOCK_DEFAULT = 2

IMAGE_TYPE = "home_default"


def allows_out_of_stock_orders(policy: int, shop_allows: bool) -> bool:
    """Resolve a product's out-of-stock policy against the shop-wide setting."""
    if policy == OUT_OF_STOCK_DEFAULT:
        return shop_allows
    return policy == OUT_OF_STOCK_ALLOW


class ProductEnricher:
    def __init__(self, catalog: Catalog, pricing: Pricing, config: ConfigurationStore,
                 base_url: str = STORE_BASE_URL):
        self.catalog = catalog
        self.pricing = pricing
        self.config = config
        self.base_url = base_url.rstrip("/")

    def product_link(self, product: ProductDisplayData) -> str:
        slug = f"{product.product_id}-{product.link_rewrite}.html"
        if product.category_link_rewrite:
            return f"{self.base_url}/{product.category_link_rewrite}/{slug}"
        return f"{self.base_url}/{slug}"

    def image_link(self, product: ProductDisplayData) -> str:
        if product.cover_image_id:
            return f"{self.base_url}/{product.cover_image_id}-{IMAGE_TYPE}/{product.link_rewrite}.jpg"
        return f"{self.base_url}/img/p/default-{IMAGE_TYPE}.jpg"

    async def enrich(self, scored: List[ScoredProduct], shop_id: int) -> List[RecommendedProduct]:
        """Display records in the ranked order; products missing from the catalog are dropped."""
        if not scored:
            return []

        products = await self.catalog.get_products([item.product_id for item in scored])
        display_price = await self.config.get_bool(SETTINGS_DISPLAY_PRICE, shop_id)
        tax_included = await self.config.get_bool(SETTINGS_PRICE_TAX_INCLUDED, shop_id, default=True)
        shop_allows_oos = await self.config.get_bool(SETTINGS_ORDER_OUT_OF_STOCK, shop_id)

        enriched: List[RecommendedProduct] = []
        for item in scored:
            product = products.get(item.product_id)
            if product is None:
                logger.warning(f"Recommended product {item.product_id} missing from catalog, skipping")
                continue

            price: Optional[Decimal] = None
            if display_price:
                price = await self.pricing.get_price(item.product_id, shop_id, tax_included)

            enriched.append(
                RecommendedProduct(
                    product_id=item.product_id,
                    score=item.score,
                    name=product.name,
                    description=product.short_description,
                    link_rewrite=product.link_rewrite,
                    show_price=product.show_price,
                    category=product.category_link_rewrite,
                    ean13=product.ean13,
                    id_image=f"{product.product_id}-{product.cover_image_id or 0}",
                    image=self.image_link(product),
                    link=self.product_link(product),
                    allow_oosp=allows_out_of_stock_orders(product.out_of_stock, shop_allows_oos),
                    quantity=product.quantity,
                    displayed_price=price,
                )
            )
        return enriched
