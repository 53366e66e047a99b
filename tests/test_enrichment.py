import asyncio
from decimal import Decimal

from schemas.recommendation_schemas import ScoredProduct
from services.enrichment import allows_out_of_stock_orders
from settings import SETTINGS_DISPLAY_PRICE, SETTINGS_ORDER_OUT_OF_STOCK, SETTINGS_PRICE_TAX_INCLUDED


def test_out_of_stock_policy_resolution():
    assert allows_out_of_stock_orders(0, shop_allows=True) is False
    assert allows_out_of_stock_orders(1, shop_allows=False) is True
    assert allows_out_of_stock_orders(2, shop_allows=True) is True
    assert allows_out_of_stock_orders(2, shop_allows=False) is False


def test_enrich_builds_display_records(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.config.set(SETTINGS_DISPLAY_PRICE, True, shop_id=1)
            await env.config.update_global(SETTINGS_ORDER_OUT_OF_STOCK, True)
            await env.add_product(
                20,
                price="10.00",
                tax_rate="20",
                name="Canvas Tote",
                link_rewrite="canvas-tote",
                category_link_rewrite="bags",
                ean13="4006381333931",
                cover_image_id=7,
                out_of_stock=2,
                quantity=0,
            )
            await env.add_product(30, price="4.995", out_of_stock=0)
            return await env.service.enricher.enrich(
                [ScoredProduct(20, 9), ScoredProduct(30, 4)], 1
            )

    tote, plain = asyncio.run(scenario())

    payload = tote.to_dict()
    assert payload["product_id"] == 20
    assert payload["score"] == 9
    assert payload["name"] == "Canvas Tote"
    assert payload["description"] == "About product 20"
    assert payload["category"] == "bags"
    assert payload["ean13"] == "4006381333931"
    assert payload["id_image"] == "20-7"
    assert payload["image"] == "http://shop.test/7-home_default/canvas-tote.jpg"
    assert payload["link"] == "http://shop.test/bags/20-canvas-tote.html"
    assert payload["displayed_price"] == "12.00"
    assert payload["allow_oosp"] is True
    assert payload["quantity"] == 0

    assert plain.displayed_price == Decimal("5.00")
    assert plain.allow_oosp is False
    assert plain.id_image == "30-0"
    assert plain.link == "http://shop.test/30-product-30.html"
    assert plain.image == "http://shop.test/img/p/default-home_default.jpg"


def test_price_is_omitted_when_display_is_off_and_tax_mode_is_respected(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.add_product(20, price="10.00", tax_rate="20")
            hidden_price = await env.service.enricher.enrich([ScoredProduct(20, 1)], 1)

            await env.config.update_global(SETTINGS_DISPLAY_PRICE, True)
            await env.config.update_global(SETTINGS_PRICE_TAX_INCLUDED, False)
            tax_excluded = await env.service.enricher.enrich([ScoredProduct(20, 1)], 1)
            return hidden_price[0], tax_excluded[0]

    hidden_price, tax_excluded = asyncio.run(scenario())

    assert "displayed_price" not in hidden_price.to_dict()
    assert tax_excluded.to_dict()["displayed_price"] == "10.00"


def test_products_missing_from_catalog_are_dropped(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.add_product(20)
            return await env.service.enricher.enrich([ScoredProduct(99, 5), ScoredProduct(20, 3)], 1)

    enriched = asyncio.run(scenario())

    assert [p.product_id for p in enriched] == [20]


def test_cart_recommendations_use_unique_cart_products(env_factory):
    async def scenario():
        async with env_factory() as env:
            for product_id in (1, 2, 3, 4):
                await env.add_product(product_id)
            await env.add_order(1, [1, 3])
            await env.add_order(2, [2, 3, 4])
            await env.add_order(3, [2, 4])
            cart = [{"id_product": 1, "quantity": 2}, {"id_product": "2"}, {"id_product": 1}, {"id_product": 0}]
            return await env.service.for_cart(cart, 1, limit=5)

    recommended = asyncio.run(scenario())

    assert [(p.product_id, p.score) for p in recommended] == [(3, 2), (4, 2)]
    assert all(p.link.startswith("http://shop.test/") for p in recommended)


def test_product_page_recommendations(env_factory):
    async def scenario():
        async with env_factory() as env:
            for product_id in (1, 2, 3):
                await env.add_product(product_id)
            await env.add_order(1, [1, 2])
            await env.add_order(2, [1, 2, 3])
            return await env.service.for_product(1, 1)

    recommended = asyncio.run(scenario())

    assert [(p.product_id, p.score) for p in recommended] == [(2, 2), (3, 1)]
