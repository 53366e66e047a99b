import asyncio

from services.recommendation_service import cart_product_ids
from settings import SETTINGS_DISPLAY_PRICE, SETTINGS_LAST_UPDATE, SETTINGS_NUMBER_OF_PRODUCTS


class _Line:
    def __init__(self, id_product):
        self.id_product = id_product


def test_cart_product_ids_accepts_dicts_objects_and_ids():
    lines = [{"id_product": 5}, {"product_id": "6"}, _Line(5), 7, "8", {"id_product": None}, -1]

    assert cart_product_ids(lines) == [5, 6, 7, 8]
    assert cart_product_ids(None) == []


def test_settings_defaults_and_sanitized_updates(env_factory):
    async def scenario():
        async with env_factory() as env:
            defaults = await env.service.get_settings(1)
            updated = await env.service.update_settings(display_price=True, number_of_products=0)
            shop_override = await env.service.update_settings(number_of_products=4, shop_id=2)
            shop_one = await env.service.get_settings(1)
            stored = await env.config.get_global(SETTINGS_NUMBER_OF_PRODUCTS)
            return defaults, updated, shop_override, shop_one, stored

    defaults, updated, shop_override, shop_one, stored = asyncio.run(scenario())

    assert defaults == {"shop_id": 1, "display_price": False, "number_of_products": 10, "last_update": 0}
    assert updated["display_price"] is True
    assert updated["number_of_products"] == 10
    assert stored == "10"
    assert shop_override["shop_id"] == 2
    assert shop_override["number_of_products"] == 4
    assert shop_one["number_of_products"] == 10


def test_clear_settings_removes_module_keys(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.service.update_settings(display_price=True, number_of_products=6)
            await env.service.update_settings(number_of_products=3, shop_id=2)
            await env.service.refresh()
            removed = await env.service.clear_settings()
            remaining = [
                await env.config.get(SETTINGS_DISPLAY_PRICE, 2),
                await env.config.get(SETTINGS_NUMBER_OF_PRODUCTS, 2),
                await env.config.get_global(SETTINGS_LAST_UPDATE),
            ]
            return removed, remaining

    removed, remaining = asyncio.run(scenario())

    assert removed == 4
    assert remaining == ["0", None, None]


def test_status_reports_index_state(env_factory):
    async def scenario():
        async with env_factory() as env:
            before = await env.service.status()
            await env.add_order(1, [10, 20])
            await env.service.refresh()
            after = await env.service.status()
            return before, after, int(env.clock.now)

    before, after, now = asyncio.run(scenario())

    assert before["last_update"] == 0
    assert before["stale"] is True
    assert before["lock_backend"] == "lease"
    assert after["last_update"] == now
    assert after["stale"] is False
    assert after["processed_orders"] == 1
    assert after["pair_rows"] == 2
    assert after["lock_held"] is False
