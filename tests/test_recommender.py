import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from services.errors import QueryFailure, StoreWriteFailure
from services.obs.metrics import MetricsCollector
from services.recommender import CoPurchaseRecommender
from services.refresh_trigger import RefreshTrigger
from settings import SETTINGS_GROUP_FEATURE_ACTIVE, SETTINGS_NUMBER_OF_PRODUCTS, UPDATE_PERIOD_SECONDS

P, Q, R, S = 1, 20, 30, 40


def _ids(scored):
    return [item.product_id for item in scored]


def _stub_recommender(pairs=None, trigger=None):
    if pairs is None:
        pairs = MagicMock()
        pairs.ranked_candidates = AsyncMock(return_value=[])
    catalog = MagicMock()
    catalog.visible_in_shop = AsyncMock(return_value={})
    groups = MagicMock()
    groups.is_feature_active = AsyncMock(return_value=False)
    config = MagicMock()
    config.get = AsyncMock(return_value=None)
    trigger = trigger or MagicMock(maybe_refresh=AsyncMock(return_value=None))
    recommender = CoPurchaseRecommender(pairs, catalog, groups, config, trigger=trigger, metrics=MetricsCollector())
    return recommender, pairs, trigger


def test_ranks_by_summed_count_and_honours_limit(env_factory):
    async def scenario():
        async with env_factory() as env:
            for product_id in (P, Q, R, S):
                await env.add_product(product_id)
            await env.set_pairs([(P, Q, 5), (P, R, 9), (P, S, 1)])
            return await env.service.recommend([P], 1, limit=2)

    scored = asyncio.run(scenario())

    assert [(s.product_id, s.score) for s in scored] == [(R, 9), (Q, 5)]


def test_empty_seeds_never_touch_the_store():
    recommender, pairs, trigger = _stub_recommender()

    assert asyncio.run(recommender.recommend([], 1)) == []
    assert asyncio.run(recommender.recommend([0, -3, None, "x"], 1)) == []
    trigger.maybe_refresh.assert_not_awaited()
    pairs.ranked_candidates.assert_not_awaited()


def test_store_errors_raise_query_failure():
    pairs = MagicMock()
    pairs.ranked_candidates = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))
    recommender, _, _ = _stub_recommender(pairs=pairs)

    with pytest.raises(QueryFailure) as excinfo:
        asyncio.run(recommender.recommend([P], 3))

    assert excinfo.value.status_code == 503
    assert excinfo.value.details["shop_id"] == 3


def test_inline_refresh_failure_propagates():
    trigger = MagicMock(maybe_refresh=AsyncMock(side_effect=StoreWriteFailure("fold_batch", RuntimeError("boom"))))
    recommender, pairs, _ = _stub_recommender(trigger=trigger)

    with pytest.raises(StoreWriteFailure):
        asyncio.run(recommender.recommend([P], 1))
    pairs.ranked_candidates.assert_not_awaited()


def test_unreadable_refresh_timestamp_raises_query_failure():
    config = MagicMock(get_int=AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down"))))
    aggregator = MagicMock(refresh=AsyncMock())
    trigger = RefreshTrigger(aggregator, config, update_period=UPDATE_PERIOD_SECONDS)
    recommender, pairs, _ = _stub_recommender(trigger=trigger)

    with pytest.raises(QueryFailure) as excinfo:
        asyncio.run(recommender.recommend([P], 1))

    assert excinfo.value.status_code == 503
    assert excinfo.value.details["error_type"] == "OperationalError"
    aggregator.refresh.assert_not_awaited()
    pairs.ranked_candidates.assert_not_awaited()
    assert recommender.metrics.counters["query_failures"] == 1


def test_hidden_products_never_displace_visible_ones(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.add_product(P)
            hidden = list(range(100, 112))
            for index, product_id in enumerate(hidden):
                # inactive, search-only, or not sold in this shop at all
                if index % 3 == 0:
                    await env.add_product(product_id, active=False)
                elif index % 3 == 1:
                    await env.add_product(product_id, visibility="search")
                else:
                    await env.add_product(product_id, shop_id=2)
            await env.add_product(Q)
            await env.add_product(R)
            await env.set_pairs([(P, product_id, 50) for product_id in hidden])
            await env.set_pairs([(P, Q, 2), (P, R, 3)])
            return await env.service.recommend([P], 1, limit=2)

    assert _ids(asyncio.run(scenario())) == [R, Q]


def test_customer_groups_restrict_categories(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.config.update_global(SETTINGS_GROUP_FEATURE_ACTIVE, True)
            await env.link_category_group(5, 3)
            await env.link_category_group(6, 1)
            await env.add_product(P, category_id=6)
            await env.add_product(Q, category_id=5)
            await env.add_product(R, category_id=6)
            await env.add_product(S)  # no category: never visible to groups
            await env.set_pairs([(P, Q, 9), (P, R, 4), (P, S, 7)])

            members = await env.service.recommend([P], 1, customer_group_ids=[3])
            guests = await env.service.recommend([P], 1, customer_group_ids=[])
            both = await env.service.recommend([P], 1, customer_group_ids=[1, 3])

            await env.config.update_global(SETTINGS_GROUP_FEATURE_ACTIVE, False)
            unrestricted = await env.service.recommend([P], 1, customer_group_ids=[3])
            return members, guests, both, unrestricted

    members, guests, both, unrestricted = asyncio.run(scenario())

    assert _ids(members) == [Q]
    assert _ids(guests) == [R]
    assert _ids(both) == [Q, R]
    assert _ids(unrestricted) == [Q, S, R]


def test_limit_falls_back_to_configured_and_default_sizes(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.add_product(P)
            candidates = list(range(100, 112))
            for product_id in candidates:
                await env.add_product(product_id)
            await env.set_pairs([(P, product_id, 200 - product_id) for product_id in candidates])

            default_size = await env.service.recommend([P], 1)
            await env.config.set(SETTINGS_NUMBER_OF_PRODUCTS, 3, shop_id=1)
            configured = await env.service.recommend([P], 1)
            zero = await env.service.recommend([P], 1, limit=0)
            negative = await env.service.recommend([P], 1, limit=-5)
            explicit = await env.service.recommend([P], 1, limit=4)
            return default_size, configured, zero, negative, explicit

    default_size, configured, zero, negative, explicit = asyncio.run(scenario())

    assert len(default_size) == 10
    assert _ids(configured) == [100, 101, 102]
    assert len(zero) == 10
    assert len(negative) == 10
    assert len(explicit) == 4


def test_stale_index_refreshes_before_querying(env_factory):
    async def scenario():
        async with env_factory() as env:
            for product_id in (P, Q, R):
                await env.add_product(product_id)
            await env.add_order(1, [P, Q])

            first = await env.service.recommend([P], 1)

            await env.add_order(2, [P, R])
            env.clock.advance(UPDATE_PERIOD_SECONDS)
            within_period = await env.service.recommend([P], 1)

            env.clock.advance(1)
            after_period = await env.service.recommend([P], 1)
            return first, within_period, after_period, env.metrics.counters["refresh_completed"]

    first, within_period, after_period, completed = asyncio.run(scenario())

    assert _ids(first) == [Q]
    assert _ids(within_period) == [Q]
    assert _ids(after_period) == [Q, R]
    assert completed == 2


def test_seeds_are_excluded_and_scores_sum_across_seeds(env_factory):
    async def scenario():
        async with env_factory() as env:
            for product_id in (P, Q, R, S):
                await env.add_product(product_id)
            await env.set_pairs([(P, Q, 2), (R, Q, 2), (P, S, 3), (P, R, 10)])
            return await env.service.recommend([P, R, P], 1)

    scored = asyncio.run(scenario())

    assert [(s.product_id, s.score) for s in scored] == [(Q, 4), (S, 3)]


def test_catalog_visibility_checks(env_factory):
    async def scenario():
        async with env_factory() as env:
            await env.add_product(P, category_id=7)
            await env.add_product(Q, active=False)
            await env.add_product(R, visibility="search")
            await env.add_product(S, shop_id=2)
            visible = await env.service.catalog.visible_in_shop([P, Q, R, S, 999], 1)
            checks = [await env.service.catalog.is_active_and_visible(product_id, 1) for product_id in (P, Q, S)]
            return visible, checks

    visible, checks = asyncio.run(scenario())

    assert visible == {P: 7}
    assert checks == [True, False, False]
