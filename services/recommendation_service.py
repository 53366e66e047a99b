"""
Recommendation Service
Entry point used by the HTTP layer and scripts: wires the aggregator, the
query engine and the enricher over one database, and owns the merchant settings
"""
from typing import Any, Dict, Iterable, List, Optional
import logging
import time

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from database import AsyncSessionLocal, engine
from schemas.recommendation_schemas import RecommendedProduct, RefreshOutcome, ScoredProduct
from services.collaborators import (
    Catalog,
    CustomerGroups,
    OrderLedger,
    Pricing,
    SqlCatalog,
    SqlCustomerGroups,
    SqlOrderLedger,
    SqlPricing,
)
from services.concurrency_control import NamedLock
from services.configuration import ConfigurationStore
from services.copurchase_aggregator import CoPurchaseAggregator
from services.enrichment import ProductEnricher
from services.obs.metrics import MetricsCollector, metrics_collector
from services.recommender import CoPurchaseRecommender
from services.refresh_trigger import RefreshTrigger
from services.storage import PairAggregateStore, ProcessedOrderTracker
from settings import (
    BATCH_SIZE,
    LOCK_NAME,
    LOCK_TIMEOUT_SECONDS,
    MODULE_SETTINGS_KEYS,
    SETTINGS_DISPLAY_PRICE,
    SETTINGS_LAST_UPDATE,
    SETTINGS_NUMBER_OF_PRODUCTS,
    STORE_BASE_URL,
    UPDATE_PERIOD_SECONDS,
    resolve_shop_id,
    sanitize_id,
    sanitize_number_of_products,
)

logger = logging.getLogger(__name__)

CART_PRODUCT_KEYS = ("id_product", "product_id", "productId", "id")


def cart_product_ids(cart_lines: Optional[Iterable[Any]]) -> List[int]:
    """Unique positive product ids from cart lines (dicts, objects or bare ids), first-seen order."""
    ids: List[int] = []
    for line in cart_lines or []:
        raw: Any = line
        if isinstance(line, dict):
            raw = next((line[key] for key in CART_PRODUCT_KEYS if line.get(key) is not None), None)
        elif hasattr(line, "id_product"):
            raw = getattr(line, "id_product")
        product_id = sanitize_id(raw)
        if product_id is not None and product_id not in ids:
            ids.append(product_id)
    return ids


class RecommendationService:
    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        bind: Optional[AsyncEngine] = None,
        ledger: Optional[OrderLedger] = None,
        catalog: Optional[Catalog] = None,
        pricing: Optional[Pricing] = None,
        groups: Optional[CustomerGroups] = None,
        metrics: Optional[MetricsCollector] = None,
        batch_size: int = BATCH_SIZE,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS,
        update_period: int = UPDATE_PERIOD_SECONDS,
        base_url: str = STORE_BASE_URL,
        clock=time.time,
    ):
        self.bind = bind or session_factory.kw.get("bind") or engine
        self.metrics = metrics or metrics_collector
        self.config = ConfigurationStore(session_factory)
        self.tracker = ProcessedOrderTracker(session_factory)
        self.pairs = PairAggregateStore(session_factory)
        self.lock = NamedLock(self.bind)
        self.catalog = catalog or SqlCatalog(session_factory)
        self.pricing = pricing or SqlPricing(session_factory)
        self.groups = groups or SqlCustomerGroups(self.config, session_factory)
        self._clock = clock

        self.aggregator = CoPurchaseAggregator(
            session_factory=session_factory,
            ledger=ledger or SqlOrderLedger(session_factory),
            tracker=self.tracker,
            pairs=self.pairs,
            config=self.config,
            lock=self.lock,
            metrics=self.metrics,
            batch_size=batch_size,
            lock_timeout=lock_timeout,
            clock=clock,
        )
        self.trigger = RefreshTrigger(self.aggregator, self.config, update_period=update_period, clock=clock)
        self.recommender = CoPurchaseRecommender(
            pairs=self.pairs,
            catalog=self.catalog,
            groups=self.groups,
            config=self.config,
            trigger=self.trigger,
            metrics=self.metrics,
        )
        self.enricher = ProductEnricher(self.catalog, self.pricing, self.config, base_url=base_url)

    # ---------- queries ----------

    async def recommend(
        self,
        seed_product_ids: Iterable[Any],
        shop_id: Optional[Any] = None,
        customer_group_ids: Optional[Iterable[Any]] = None,
        limit: Optional[Any] = None,
    ) -> List[ScoredProduct]:
        return await self.recommender.recommend(seed_product_ids, shop_id, customer_group_ids, limit)

    async def recommend_products(
        self,
        seed_product_ids: Iterable[Any],
        shop_id: Optional[Any] = None,
        customer_group_ids: Optional[Iterable[Any]] = None,
        limit: Optional[Any] = None,
    ) -> List[RecommendedProduct]:
        scored = await self.recommend(seed_product_ids, shop_id, customer_group_ids, limit)
        if not scored:
            return []
        async with self.metrics.phase_timer("enrich", input_count=len(scored)) as phase:
            products = await self.enricher.enrich(scored, resolve_shop_id(shop_id))
            phase.output_count = len(products)
        return products

    async def for_product(
        self,
        product_id: Any,
        shop_id: Optional[Any] = None,
        customer_group_ids: Optional[Iterable[Any]] = None,
        limit: Optional[Any] = None,
    ) -> List[RecommendedProduct]:
        """Product page block"""
        return await self.recommend_products([product_id], shop_id, customer_group_ids, limit)

    async def for_cart(
        self,
        cart_lines: Optional[Iterable[Any]],
        shop_id: Optional[Any] = None,
        customer_group_ids: Optional[Iterable[Any]] = None,
        limit: Optional[Any] = None,
    ) -> List[RecommendedProduct]:
        """Cart / order confirmation block"""
        return await self.recommend_products(cart_product_ids(cart_lines), shop_id, customer_group_ids, limit)

    # ---------- index maintenance ----------

    async def refresh(self) -> RefreshOutcome:
        return await self.aggregator.refresh()

    async def trigger_full_rebuild(self) -> RefreshOutcome:
        return await self.aggregator.trigger_full_rebuild()

    async def status(self) -> Dict[str, Any]:
        last_update = await self.trigger.last_attempt()
        return {
            "last_update": last_update,
            "stale": await self.trigger.is_stale(),
            "update_period_seconds": self.trigger.update_period,
            "processed_orders": await self.tracker.count(),
            "pair_rows": await self.pairs.count_rows(),
            "lock_backend": self.lock.backend,
            "lock_held": await self.lock.is_locked(LOCK_NAME),
        }

    # ---------- merchant settings ----------

    async def get_settings(self, shop_id: Optional[Any] = None) -> Dict[str, Any]:
        shop = resolve_shop_id(shop_id)
        return {
            "shop_id": shop,
            "display_price": await self.config.get_bool(SETTINGS_DISPLAY_PRICE, shop),
            "number_of_products": sanitize_number_of_products(
                await self.config.get(SETTINGS_NUMBER_OF_PRODUCTS, shop)
            ),
            "last_update": await self.config.get_int(SETTINGS_LAST_UPDATE, default=0),
        }

    async def update_settings(
        self,
        display_price: Optional[bool] = None,
        number_of_products: Optional[Any] = None,
        shop_id: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """Persist merchant settings; a non-positive block size is stored as the default."""
        scope = sanitize_id(shop_id)
        if display_price is not None:
            await self.config.set(SETTINGS_DISPLAY_PRICE, bool(display_price), scope)
        if number_of_products is not None:
            await self.config.set(
                SETTINGS_NUMBER_OF_PRODUCTS, sanitize_number_of_products(number_of_products), scope
            )
        logger.info(f"Updated co-purchase settings (shop scope {scope or 'global'})")
        return await self.get_settings(shop_id)

    async def clear_settings(self) -> int:
        """Uninstall path: drop the module keys from every scope"""
        return await self.config.delete_many(MODULE_SETTINGS_KEYS)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "summary": self.metrics.get_performance_summary(),
            "phases": self.metrics.get_phase_diagnostics(),
            "real_time": self.metrics.get_real_time_metrics(),
        }


# Global instance for application use
recommendation_service = RecommendationService()
