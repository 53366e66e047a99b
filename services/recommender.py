"""
Co-purchase Recommender
Ranks products bought together with a seed set, filtered to what the shopper may see
"""
from typing import Any, Iterable, List, Optional, Sequence, Set
import logging
import time

from sqlalchemy.exc import SQLAlchemyError

from schemas.recommendation_schemas import ScoredProduct
from services.collaborators import Catalog, CustomerGroups
from services.configuration import ConfigurationStore
from services.errors import QueryFailure
from services.obs.metrics import MetricsCollector, metrics_collector
from services.refresh_trigger import RefreshTrigger
from services.storage import PairAggregateStore
from settings import (
    SETTINGS_NUMBER_OF_PRODUCTS,
    resolve_shop_id,
    sanitize_ids,
    sanitize_number_of_products,
)

logger = logging.getLogger(__name__)

# Candidates fetched per page = limit * factor; filtering may reject some
PAGE_SIZE_FACTOR = 4


class CoPurchaseRecommender:
    def __init__(
        self,
        pairs: PairAggregateStore,
        catalog: Catalog,
        groups: CustomerGroups,
        config: ConfigurationStore,
        trigger: Optional[RefreshTrigger] = None,
        metrics: Optional[MetricsCollector] = None,
        page_size_factor: int = PAGE_SIZE_FACTOR,
    ):
        self.pairs = pairs
        self.catalog = catalog
        self.groups = groups
        self.config = config
        self.trigger = trigger
        self.metrics = metrics or metrics_collector
        self.page_size_factor = max(1, page_size_factor)

    async def resolve_limit(self, limit: Optional[Any], shop_id: int) -> int:
        """Explicit limit, else the configured block size; non-positive values fall back to the default."""
        if limit is None:
            limit = await self.config.get(SETTINGS_NUMBER_OF_PRODUCTS, shop_id)
        return sanitize_number_of_products(limit)

    async def recommend(
        self,
        seed_product_ids: Iterable[Any],
        shop_id: Optional[Any] = None,
        customer_group_ids: Optional[Iterable[Any]] = None,
        limit: Optional[Any] = None,
    ) -> List[ScoredProduct]:
        """
        Top products co-purchased with the seeds, best first.

        - empty seed input returns [] without touching the store
        - a stale index triggers an inline refresh first; its failures propagate
        - seeds never appear in the result
        - only active products listed in the shop's catalog are returned, and when
          the group feature is on, only those whose default category is open to
          one of the shopper's groups
        - ties on score are broken by ascending product id
        - an empty list means there is nothing to recommend; read failures raise QueryFailure
        """
        seeds = sanitize_ids(seed_product_ids)
        if not seeds:
            return []
        shop = resolve_shop_id(shop_id)

        if self.trigger is not None:
            try:
                await self.trigger.maybe_refresh()
            except SQLAlchemyError as e:
                # Staleness check could not read the store; pass failures arrive as StoreWriteFailure
                self.metrics.record_query(0.0, 0, success=False)
                logger.error(f"Co-purchase staleness check failed for shop {shop}: {e}")
                raise QueryFailure(shop, e) from e

        start = time.monotonic()
        try:
            results = await self._ranked_visible(seeds, shop, customer_group_ids, limit)
        except SQLAlchemyError as e:
            self.metrics.record_query((time.monotonic() - start) * 1000, 0, success=False)
            logger.error(f"Co-purchase query failed for shop {shop}: {e}")
            raise QueryFailure(shop, e) from e

        self.metrics.record_query((time.monotonic() - start) * 1000, len(results))
        return results

    async def _ranked_visible(
        self,
        seeds: Sequence[int],
        shop_id: int,
        customer_group_ids: Optional[Iterable[Any]],
        limit: Optional[Any],
    ) -> List[ScoredProduct]:
        size = await self.resolve_limit(limit, shop_id)
        group_ids = await self._effective_groups(customer_group_ids)
        page_size = size * self.page_size_factor

        results: List[ScoredProduct] = []
        offset = 0
        while len(results) < size:
            async with self.metrics.phase_timer("rank"):
                page = await self.pairs.ranked_candidates(shop_id, seeds, limit=page_size, offset=offset)
            if not page:
                break

            async with self.metrics.phase_timer("filter", input_count=len(page)) as phase:
                allowed = await self._allowed(page, shop_id, group_ids)
                kept = [candidate for candidate in page if candidate.product_id in allowed]
                phase.output_count = len(kept)
            results.extend(kept)

            if len(page) < page_size:
                break
            offset += page_size

        return results[:size]

    async def _effective_groups(self, customer_group_ids: Optional[Iterable[Any]]) -> Optional[Set[int]]:
        """None when group restrictions are off; the default group when the shopper has none."""
        if not await self.groups.is_feature_active():
            return None
        group_ids = set(sanitize_ids(customer_group_ids))
        if not group_ids:
            group_ids = {self.groups.default_group_id()}
        return group_ids

    async def _allowed(self, page: List[ScoredProduct], shop_id: int, group_ids: Optional[Set[int]]) -> Set[int]:
        visible = await self.catalog.visible_in_shop([c.product_id for c in page], shop_id)
        if group_ids is None:
            return set(visible)

        categories = {category for category in visible.values() if category is not None}
        category_groups = await self.groups.category_groups(categories)
        return {
            product_id
            for product_id, category in visible.items()
            if category is not None and category_groups.get(category, set()) & group_ids
        }
